"""
Error types raised by the MMA client, plus user-facing wording for them.

Only SubmissionError and JobTerminalError are meant to reach the user; the
others are raised and caught inside the component that owns the fallback.
"""

from typing import Any, Literal, Optional

from .utils import pick

UploadErrorReason = Literal["unsupported", "too_big", "broken", "link_broken"]

UI_ERROR_MESSAGES = {
    "upload_failed": "Upload failed. Please try again.",
    "upload_unsupported": "That file type isn't supported. Please upload a JPG, PNG, or WebP.",
    "upload_too_big": "That image is too large. Please choose one under 25MB.",
    "upload_broken": "We couldn't read that image. Please try a different file.",
    "upload_link_broken": "That link didn't load as an image. Please paste a direct image link.",
    "generic": "I couldn't make it. Please try again.",
    "insufficient_credits": "I need more matchas to do that.",
    "connection": "Connection issue. Please retry.",
    "background": "It's still generating in the background. Open Profile and refresh in a minute.",
    "too_complicated": "That was too complicated, try simpler task.",
}


class MmaError(Exception):
    """Base class for every error raised by this package."""


class SubmissionError(MmaError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class StreamDegraded(MmaError):
    pass


class JobTerminalError(MmaError):
    def __init__(self, code: str, message: str, job: Any = None):
        super().__init__(f"{code}: {message}" if message and message != code else code)
        self.code = code
        self.message = message
        self.job = job


class UploadFailure(MmaError):
    pass


class CreditsAnomaly(MmaError):
    pass


class AssetStabilizationFailure(MmaError):
    pass


def humanize_upload_error(reason: Optional[str]) -> str:
    return {
        "unsupported": UI_ERROR_MESSAGES["upload_unsupported"],
        "too_big": UI_ERROR_MESSAGES["upload_too_big"],
        "broken": UI_ERROR_MESSAGES["upload_broken"],
        "link_broken": UI_ERROR_MESSAGES["upload_link_broken"],
    }.get(reason or "", UI_ERROR_MESSAGES["upload_failed"])


def extract_error_text(result: Any) -> str:
    """
    Best available error text from a raw job record.
    Handles {error: "..."}, {error: {code, message}}, {mg_error: ...} and
    {mma_vars: {error: ...}}; an error status with no payload gives PIPELINE_ERROR.
    """
    if not isinstance(result, dict):
        return ""

    direct = pick(
        result,
        ("error", "mg_error", "mma_vars.error", "mmaVars.error", "mma_vars.mg_error"),
    )

    if isinstance(direct, dict):
        code = str(pick(direct, ("code", "error", "name"), "")).strip()
        msg = str(pick(direct, ("message", "detail", "reason"), "")).strip()
        provider = pick(direct, ("provider", "meta.provider"))
        provider_err = ""
        if isinstance(provider, dict):
            provider_err = str(pick(provider, ("error", "detail", "message", "logs"), "")).strip()
        # prefer the provider's own wording when it sent one
        best = provider_err or msg
        if code and best:
            return f"{code}: {best}"
        return code or best

    if isinstance(direct, str):
        return direct.strip()

    status = str(pick(result, ("status", "mg_status", "mg_mma_status"), "")).lower()
    if "error" in status or "failed" in status:
        return "PIPELINE_ERROR"
    return ""


def humanize_error(err: Any) -> str:
    """
    Collapse an exception, raw record or string into one short user-facing line.
    """
    if isinstance(err, str):
        raw = err
    elif isinstance(err, dict):
        raw = extract_error_text(err) or str(pick(err, ("message", "error.message", "detail"), ""))
    else:
        raw = str(err or "")

    raw = raw.strip()
    if not raw:
        return UI_ERROR_MESSAGES["generic"]

    s = raw.lower()
    if "insufficient_credits" in s:
        return UI_ERROR_MESSAGES["insufficient_credits"]
    if "failed to fetch" in s or "networkerror" in s or "connecterror" in s:
        return UI_ERROR_MESSAGES["connection"]
    if "timeout" in s or "still generating" in s or "in background" in s:
        return UI_ERROR_MESSAGES["background"]
    if "upper body" in s and ("detected" in s or "ensure" in s):
        return "This animation needs a clear photo of a person (upper body visible). Try a different image."
    if "image recognition failed" in s:
        return "That image can't be animated with this setting. Try a clearer image or a different one."
    if "image" in s and "too large" in s:
        return "That image is too large. Try a smaller image."
    if "code 1201" in s or ("duration" in s and "must not exceed 10 seconds" in s):
        return "That reference clip is too long. Use a 10s (or shorter) video."
    if any(k in s for k in ("video_no_url", "mma_no_url", "pipeline_error", "no_output_url", "no output url")):
        return UI_ERROR_MESSAGES["too_complicated"]
    return raw

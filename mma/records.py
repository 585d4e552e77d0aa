# mma/records.py
#
# One canonical GenerationJob out of the many record shapes the backend emits.
# Each field has a single ordered precedence list below.

from typing import Any, Dict, Mapping, Optional

from .errors import extract_error_text
from .model import (
    FAILED_STATUSES,
    OUTPUT_URL_KEYS,
    TERMINAL_STATUSES,
    VIDEO_OUTPUT_KEYS,
    GenerationJob,
    JobError,
)
from .utils import is_http_url, pick, pick_number, pick_str

STATUS_FIELDS = ("status", "mg_status", "mg_mma_status", "state")
ID_FIELDS = ("generation_id", "generationId", "id", "mg_generation_id")
PROMPT_FIELDS = ("prompt", "mg_prompt", "outputs.prompt", "mma_vars.prompt", "suggestion", "outputs.suggestion")
MODE_FIELDS = ("mode", "mg_mma_mode", "mma_mode", "type")
BALANCE_FIELDS = ("credits.balance", "credits_balance", "balance", "credits.remaining")
COST_FIELDS = ("credits.cost", "credits_cost", "cost")

# containers searched for output urls, most specific first
OUTPUT_CONTAINERS = ("outputs", "mma_vars.outputs", "mmaVars.outputs", "")

CAMEL_OUTPUT_KEYS = {
    "imageUrl": "image_url",
    "videoUrl": "video_url",
    "outputUrl": "output_url",
}


def normalize_status(raw: Any) -> str:
    return (pick_str(raw, STATUS_FIELDS) or "").lower()


def extract_outputs(raw: Any) -> Dict[str, str]:
    """
    Named output urls, canonical key -> url. Non-http values are ignored.
    """
    outputs: Dict[str, str] = {}
    if not isinstance(raw, Mapping):
        return outputs
    for container_path in OUTPUT_CONTAINERS:
        container = pick(raw, (container_path,)) if container_path else raw
        if not isinstance(container, Mapping):
            continue
        for key in OUTPUT_URL_KEYS:
            value = container.get(key)
            if key not in outputs and is_http_url(value):
                outputs[key] = value.strip()
        for camel, key in CAMEL_OUTPUT_KEYS.items():
            value = container.get(camel)
            if key not in outputs and is_http_url(value):
                outputs[key] = value.strip()
    return outputs


def is_terminal_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in TERMINAL_STATUSES


def is_terminal_record(raw: Any) -> bool:
    """
    Terminal by status, or by exposing any output url: outputs can land before
    the status field flips.
    """
    return is_terminal_status(normalize_status(raw)) or bool(extract_outputs(raw))


def extract_error(raw: Any, status: str) -> Optional[JobError]:
    text = extract_error_text(raw) if isinstance(raw, dict) else ""
    if not text:
        if status in FAILED_STATUSES:
            return JobError(code="PIPELINE_ERROR", message=status)
        return None
    code, sep, message = text.partition(": ")
    if sep and code and " " not in code:
        return JobError(code=code, message=message)
    return JobError(code="PIPELINE_ERROR", message=text)


def normalize_record(raw: Mapping[str, Any], job_id: Optional[str] = None) -> GenerationJob:
    status = normalize_status(raw) or "queued"
    outputs = extract_outputs(raw)

    mode_hint = (pick_str(raw, MODE_FIELDS) or "").lower()
    if mode_hint in ("video", "motion", "animate") or VIDEO_OUTPUT_KEYS.intersection(outputs):
        mode = "video"
    else:
        mode = "still"

    return GenerationJob(
        id=job_id or pick_str(raw, ID_FIELDS) or "",
        status=status,
        mode=mode,
        outputs=outputs,
        prompt=pick_str(raw, PROMPT_FIELDS),
        error=extract_error(raw, status),
        credits_balance=pick_number(raw, BALANCE_FIELDS),
        credits_cost=pick_number(raw, COST_FIELDS),
        raw=dict(raw),
    )

# mma/model.py
from pydantic import BaseModel, Field
from typing import Optional, Literal, Dict, Any, List

from .utils import is_http_url, strip_signed_query

Mode = Literal["still", "video"]

UploadOrigin = Literal["file", "url"]

UploadCategory = Literal["product", "logo", "inspiration"]

# Closed vocabulary: a job never changes again once it reports one of these
TERMINAL_STATUSES = frozenset(
    {
        "done",
        "error",
        "failed",
        "succeeded",
        "success",
        "completed",
        "cancelled",
        "canceled",
        "suggested",
    }
)

FAILED_STATUSES = frozenset({"error", "failed", "cancelled", "canceled"})

# Outputs keys in lookup order; the first one present is the primary output
OUTPUT_URL_KEYS = (
    "image_url",
    "video_url",
    "seedream_image_url",
    "nanobanana_image_url",
    "kling_video_url",
    "output_url",
    "url",
)

VIDEO_OUTPUT_KEYS = frozenset({"video_url", "kling_video_url"})


class JobError(BaseModel):
    code: str = "PIPELINE_ERROR"
    message: str = ""

    def __str__(self) -> str:
        if self.message and self.message != self.code:
            return f"{self.code}: {self.message}"
        return self.code


class GenerationJob(BaseModel):
    """
    Canonical view of one remote generation.
    Built from the submission ack, then replaced by each normalized poll record.
    """

    id: str
    status: str = "queued"
    mode: Mode = "still"
    outputs: Dict[str, str] = Field(default_factory=dict)
    prompt: Optional[str] = None
    error: Optional[JobError] = None
    credits_balance: Optional[float] = None
    credits_cost: Optional[float] = None
    scan_lines: List[str] = Field(default_factory=list)
    inconclusive: bool = False
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES or bool(self.outputs)

    @property
    def is_error(self) -> bool:
        if self.status in FAILED_STATUSES:
            return True
        return self.error is not None and not self.outputs

    @property
    def primary_url(self) -> Optional[str]:
        for key in OUTPUT_URL_KEYS:
            if key in self.outputs:
                return self.outputs[key]
        return next(iter(self.outputs.values()), None)


class Submission(BaseModel):
    generation_id: str
    status: str = "queued"
    sse_url: Optional[str] = None
    credits_cost: Optional[float] = None
    idempotency_key: Optional[str] = None


class ProgressEvent(BaseModel):
    job_id: str
    status: Optional[str] = None
    scan_lines: List[str] = Field(default_factory=list)


class CreditsMeta(BaseModel):
    image_cost: float = 1
    motion_cost: float = 5
    expires_at: Optional[str] = None


class CreditsState(BaseModel):
    balance: Optional[float] = None
    meta: CreditsMeta = Field(default_factory=CreditsMeta)
    fetched_at: Optional[float] = None
    dirty: bool = False


class UploadItem(BaseModel):
    id: str
    category: UploadCategory
    origin: UploadOrigin
    preview: str  # local preview file for files, the source link for urls
    remote_url: Optional[str] = None
    uploading: bool = True
    error: Optional[str] = None
    file_name: Optional[str] = None
    content_type: Optional[str] = None

    @property
    def reference(self) -> Optional[str]:
        """
        Best URL to send to the backend: durable first, then an http preview.
        Never carries a signing query.
        """
        if self.remote_url:
            return strip_signed_query(self.remote_url)
        if self.origin == "url" and is_http_url(self.preview):
            return strip_signed_query(self.preview.strip())
        return None

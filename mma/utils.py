import time
import uuid
from typing import Any, Iterable, Literal, Mapping, Optional
from urllib.parse import parse_qsl, urlsplit, urlunsplit

Intent = Literal["run", "suggest"]

_MISSING = object()

SUGGEST_INTENTS = ("suggest", "suggestion", "suggest_only", "prompt_only")


def pick(source: Any, paths: Iterable[str], default: Any = None) -> Any:
    """
    Return the first non-empty value found along dotted `paths`, in order.
    Every field read from a backend payload goes through one ordered list like this.
    """
    for path in paths:
        value = _dig(source, path)
        if value is _MISSING or value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return default


def _dig(source: Any, path: str) -> Any:
    cur = source
    for part in path.split("."):
        if not isinstance(cur, Mapping) or part not in cur:
            return _MISSING
        cur = cur[part]
    return cur


def pick_str(source: Any, paths: Iterable[str]) -> Optional[str]:
    value = pick(source, paths)
    if value is None:
        return None
    return str(value).strip() or None


def pick_number(source: Any, paths: Iterable[str]) -> Optional[float]:
    for path in paths:
        value = _dig(source, path)
        if isinstance(value, bool) or value is _MISSING or value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def infer_intent(payload: Mapping[str, Any]) -> Intent:
    """
    Full run vs. lightweight suggestion, read from the request itself.
    """
    inputs = payload.get("inputs") or {}
    if inputs.get("suggest_only") or payload.get("suggest_only"):
        return "suggest"
    intent = str(inputs.get("intent") or payload.get("intent") or "").strip().lower()
    if intent in SUGGEST_INTENTS:
        return "suggest"
    return "run"


def is_http_url(url: Any) -> bool:
    return isinstance(url, str) and url.strip().lower().startswith(("http://", "https://"))


def absolute_url(base: str, url: Optional[str]) -> Optional[str]:
    """
    Absolute http(s) urls pass through; root-relative paths hang off the API base.
    """
    if not url or not str(url).strip():
        return None
    url = str(url).strip()
    if is_http_url(url):
        return url
    return f"{base.rstrip('/')}/{url.lstrip('/')}"


def host_of(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


def gen_id(prefix: str = "") -> str:
    if prefix:
        return f"{prefix}_{uuid.uuid4().hex[:12]}"
    return str(uuid.uuid4())


def gen_token() -> str:
    return uuid.uuid4().hex


def get_timestamp_ms() -> int:
    return int(time.time() * 1000)


SIGNING_PARAMS = frozenset(
    {
        "signature",
        "x-amz-signature",
        "x-amz-credential",
        "x-amz-security-token",
        "x-amz-expires",
        "x-goog-signature",
        "x-goog-credential",
        "x-goog-expires",
        "credential",
        "policy",
        "expires",
        "expiry",
        "key-pair-id",
    }
)


def _is_signing_param(name: str) -> bool:
    name = name.strip().lower()
    return name in SIGNING_PARAMS or "signature" in name


def strip_signed_query(url: str) -> str:
    """
    Drop query and fragment when the query carries any signing parameter.
    Unsigned urls come back untouched.
    """
    if not url or "?" not in url:
        return url
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    if not any(_is_signing_param(name) for name, _ in params):
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))

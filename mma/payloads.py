# mma/payloads.py

import copy
from typing import Any, Dict, List, Optional

STILL_CREATE_PATH = "/mma/still/create"
VIDEO_ANIMATE_PATH = "/mma/video/animate"


def tweak_path(mode: str, generation_id: str) -> str:
    kind = "video" if mode == "video" else "still"
    return f"/mma/{kind}/{generation_id}/tweak"


def _compact(section: Dict[str, Any]) -> Dict[str, Any]:
    """
    Drop None / empty-string / empty-list values so the backend sees only what was set.
    False and 0 are kept.
    """
    out = {}
    for key, value in section.items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        if isinstance(value, (list, tuple)) and not value:
            continue
        out[key] = list(value) if isinstance(value, tuple) else value
    return out


def _history(session_id: Optional[str], session_title: Optional[str]) -> Dict[str, Any]:
    return _compact({"sessionId": session_id, "sessionTitle": session_title})


def _envelope(
    pass_id: str,
    assets: Dict[str, Any],
    inputs: Dict[str, Any],
    session_id: Optional[str],
    session_title: Optional[str],
    settings_section: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "passId": pass_id,
        "assets": _compact(assets),
        "inputs": _compact(inputs),
    }
    history = _history(session_id, session_title)
    if history:
        payload["history"] = history
    if settings_section:
        payload["settings"] = _compact(settings_section)
    return payload


def build_still_payload(
    pass_id: str,
    brief: str,
    *,
    tone: Optional[str] = None,
    platform: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
    style_preset_keys: Optional[List[str]] = None,
    vision_enabled: bool = False,
    assets: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
    session_title: Optional[str] = None,
    settings_section: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Body for POST /mma/still/create.
    `assets` is normally UploadPipeline.asset_payload():
    product_image_url, logo_image_url, inspiration_image_urls.
    """
    inputs = {
        "brief": brief.strip(),
        "tone": tone,
        "platform": platform,
        "aspect_ratio": aspect_ratio,
        "stylePresetKeys": list(style_preset_keys or []),
        "minaVisionEnabled": bool(vision_enabled),
    }
    return _envelope(pass_id, copy.deepcopy(assets or {}), inputs, session_id, session_title, settings_section)


def build_video_payload(
    pass_id: str,
    start_image_url: str,
    *,
    motion_description: Optional[str] = None,
    end_image_url: Optional[str] = None,
    reference_image_urls: Optional[List[str]] = None,
    suggest_only: bool = False,
    tone: Optional[str] = None,
    platform: Optional[str] = None,
    aspect_ratio: Optional[str] = None,
    session_id: Optional[str] = None,
    session_title: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Body for POST /mma/video/animate.
    With suggest_only the backend only writes a motion prompt (status "suggested").
    """
    assets = {
        "start_image_url": start_image_url,
        "end_image_url": end_image_url,
        "kling_image_urls": list(reference_image_urls or []),
    }
    inputs: Dict[str, Any] = {
        "motionDescription": (motion_description or "").strip(),
        "tone": tone,
        "platform": platform,
        "aspect_ratio": aspect_ratio,
    }
    if suggest_only:
        inputs["intent"] = "suggest"
        inputs["suggest_only"] = True
    else:
        inputs["intent"] = "animate"
    return _envelope(pass_id, assets, inputs, session_id, session_title)


def build_tweak_payload(
    pass_id: str,
    generation_id: str,
    feedback: str,
    *,
    session_id: Optional[str] = None,
    session_title: Optional[str] = None,
    extra_inputs: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Body for POST /mma/{still|video}/:id/tweak.
    The tweak text goes both top-level (`feedback`) and under inputs.
    """
    text = feedback.strip()
    inputs = dict(extra_inputs or {})
    inputs["feedback"] = text
    inputs["tweak"] = text
    payload = _envelope(pass_id, {}, inputs, session_id, session_title)
    payload["generation_id"] = generation_id
    payload["feedback"] = text
    return payload

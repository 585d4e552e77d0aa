import logging

import pytest

from config.settings import setup_logging
from mma.errors import JobTerminalError, humanize_error, humanize_upload_error
from mma.payloads import build_still_payload, build_tweak_payload, build_video_payload, tweak_path
from mma.utils import absolute_url, infer_intent, pick, pick_number


def test_still_payload_drops_unset_fields():
    payload = build_still_payload(
        "pass_1",
        "  perfume on wet stone ",
        aspect_ratio="4:5",
        assets={"product_image_url": "https://assets.faltastudio.com/p.png", "logo_image_url": None},
        session_id="sess_1",
    )
    assert payload["passId"] == "pass_1"
    assert payload["inputs"] == {
        "brief": "perfume on wet stone",
        "aspect_ratio": "4:5",
        "minaVisionEnabled": False,
    }
    assert payload["assets"] == {"product_image_url": "https://assets.faltastudio.com/p.png"}
    assert payload["history"] == {"sessionId": "sess_1"}
    assert "settings" not in payload


def test_video_payload_intents():
    run = build_video_payload("p", "https://a/s.png", motion_description="orbit", reference_image_urls=["https://a/r.png"])
    suggest = build_video_payload("p", "https://a/s.png", suggest_only=True)

    assert run["inputs"]["intent"] == "animate"
    assert run["assets"]["kling_image_urls"] == ["https://a/r.png"]
    assert infer_intent(run) == "run"
    assert suggest["inputs"]["suggest_only"] is True
    assert infer_intent(suggest) == "suggest"


def test_tweak_payload_and_path():
    payload = build_tweak_payload("p", "gen-3", " more contrast ")
    assert payload["feedback"] == payload["inputs"]["feedback"] == "more contrast"
    assert payload["generation_id"] == "gen-3"
    assert tweak_path("video", "gen-3") == "/mma/video/gen-3/tweak"
    assert tweak_path("anything", "gen-3") == "/mma/still/gen-3/tweak"


def test_pick_helpers():
    data = {"a": {"b": ""}, "c": {"d": 0}, "flag": True, "n": "3.5"}
    assert pick(data, ("a.b", "c.d")) == 0
    assert pick(data, ("missing",), "x") == "x"
    assert pick_number(data, ("flag", "n")) == 3.5


def test_absolute_url():
    assert absolute_url("https://api.test/", "/mma/x/stream") == "https://api.test/mma/x/stream"
    assert absolute_url("https://api.test", "https://other/x") == "https://other/x"
    assert absolute_url("https://api.test", "") is None


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("INSUFFICIENT_CREDITS: need 5", "I need more matchas to do that."),
        ("Failed to fetch", "Connection issue. Please retry."),
        ("PIPELINE_ERROR", "That was too complicated, try simpler task."),
        ("", "I couldn't make it. Please try again."),
        ("Something specific", "Something specific"),
        ({"status": "failed"}, "That was too complicated, try simpler task."),
    ],
)
def test_humanize_error(raw, expected):
    assert humanize_error(raw) == expected


def test_upload_error_wording():
    assert "JPG" in humanize_upload_error("unsupported")
    assert humanize_upload_error("weird") == "Upload failed. Please try again."


def test_terminal_error_message():
    assert str(JobTerminalError("NO_OUTPUT_URL", "nothing came back")) == "NO_OUTPUT_URL: nothing came back"
    assert str(JobTerminalError("PIPELINE_ERROR", "PIPELINE_ERROR")) == "PIPELINE_ERROR"


def test_setup_logging_accepts_level(monkeypatch):
    seen = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kw: seen.update(kw))
    setup_logging("debug")
    assert seen["level"] == "DEBUG"

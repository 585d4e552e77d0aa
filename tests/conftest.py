"""
Shared fixtures: isolated settings, fake HTTP transports and tiny images.
"""

from io import BytesIO

import httpx
import pytest
from PIL import Image

from config.settings import Settings
from mma.api_client import MmaApiClient

API_BASE = "https://api.mina.test"
ASSET_HOST = "assets.faltastudio.com"
PASS_ID = "pass_TEST0001"


@pytest.fixture
def test_settings(tmp_path):
    s = Settings()
    s.MMA_API_BASE_URL = API_BASE
    s.MMA_API_TOKEN = "test-token"
    s.ASSET_HOST = ASSET_HOST
    s.REQUEST_TIMEOUT = 5.0
    s.POLL_INTERVAL_SECONDS = 0.01
    s.POLL_TIMEOUT_SECONDS = 1.0
    s.STREAM_GRACE_SECONDS = 0.05
    s.STREAM_IDLE_SECONDS = 0.5
    s.CREDITS_STALE_SECONDS = 30.0
    s.PREVIEW_DIR = str(tmp_path / "previews")
    s.UPLOAD_MAX_BYTES = 1024 * 1024
    return s


@pytest.fixture
def make_api(test_settings):
    """
    Build an MmaApiClient whose requests go to `handler` (sync or async).
    """

    def _make(handler, pass_id: str = PASS_ID) -> MmaApiClient:
        return MmaApiClient(pass_id, settings=test_settings, transport=httpx.MockTransport(handler))

    return _make


def make_png(color=(200, 40, 40), size=(4, 4)) -> bytes:
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()


class FakePutResponse:
    def __init__(self, status: int):
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def text(self):
        return "" if self.status < 400 else "denied"


class FakePutSession:
    """
    Stand-in for aiohttp.ClientSession used by the presigned PUT.
    URLs listed in `failing` answer 403.
    """

    puts = []
    failing = set()

    def __init__(self, *args, **kwargs):
        self.timeout = kwargs.get("timeout")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def put(self, url, data=None, headers=None):
        FakePutSession.puts.append({"url": url, "size": len(data or b""), "headers": headers or {}})
        return FakePutResponse(403 if url in FakePutSession.failing else 200)


@pytest.fixture
def fake_put(monkeypatch):
    FakePutSession.puts = []
    FakePutSession.failing = set()
    monkeypatch.setattr("aiohttp.ClientSession", FakePutSession)
    return FakePutSession

import logging
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment overrides from .env next to this file
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


class Settings:
    MMA_API_BASE_URL: str = os.getenv("MMA_API_BASE_URL", "https://mina-editorial-ai-api.onrender.com")
    MMA_API_TOKEN: str | None = os.getenv("MMA_API_TOKEN")

    PASS_ID_HEADER: str = os.getenv("PASS_ID_HEADER", "X-Mina-Pass-Id")

    # Host that serves stabilized assets; anything else gets republished
    ASSET_HOST: str = os.getenv("ASSET_HOST", "assets.faltastudio.com")

    REQUEST_TIMEOUT: float = _env_float("REQUEST_TIMEOUT", 60.0)

    POLL_INTERVAL_SECONDS: float = _env_float("POLL_INTERVAL_SECONDS", 0.9)
    POLL_TIMEOUT_SECONDS: float = _env_float("POLL_TIMEOUT_SECONDS", 180.0)
    STREAM_GRACE_SECONDS: float = _env_float("STREAM_GRACE_SECONDS", 1.0)
    # longest silence tolerated on an open progress channel
    STREAM_IDLE_SECONDS: float = _env_float("STREAM_IDLE_SECONDS", 30.0)

    CREDITS_STALE_SECONDS: float = _env_float("CREDITS_STALE_SECONDS", 30.0)

    PREVIEW_DIR: str = os.getenv("PREVIEW_DIR", str(BASE_DIR.parent / ".previews"))
    UPLOAD_MAX_BYTES: int = int(_env_float("UPLOAD_MAX_BYTES", 25 * 1024 * 1024))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def setup_logging(level: str | None = None) -> None:
    """
    Configure root logging once for scripts embedding the client.
    """
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

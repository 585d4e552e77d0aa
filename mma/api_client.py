import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
import httpx

from config.settings import settings as default_settings, Settings

from .errors import AssetStabilizationFailure, SubmissionError, UploadFailure, humanize_error
from .model import Submission
from .utils import absolute_url, is_http_url, pick, pick_number, pick_str

logger = logging.getLogger(__name__)

GENERATION_ID_FIELDS = ("generation_id", "generationId", "id", "mg_generation_id", "generation.id")
SSE_URL_FIELDS = ("sse_url", "sseUrl", "stream_url", "streamUrl")
R2_URL_FIELDS = ("url", "publicUrl", "signedUrl", "result.url", "data.url")
UPLOAD_TARGET_FIELDS = ("uploadUrl", "signedUrl", "upload_url", "signed_url", "data.uploadUrl")
UPLOAD_PUBLIC_FIELDS = ("publicUrl", "public_url", "url", "data.publicUrl")


def pick_url(data: Any, fields=R2_URL_FIELDS) -> Optional[str]:
    """
    First http(s) url found along `fields`.
    """
    if not isinstance(data, dict):
        return None
    for field in fields:
        value = pick(data, (field,))
        if is_http_url(value):
            return value.strip()
    return None


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class MmaApiClient:
    """
    Thin async client for the MMA HTTP API.
    Opens one httpx.AsyncClient per call; pass `transport` to run against a fake.
    """

    def __init__(
        self,
        pass_id: str,
        settings: Settings = default_settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token: Optional[str] = None,
    ):
        self.pass_id = pass_id
        self.settings = settings
        self.base_url = settings.MMA_API_BASE_URL.rstrip("/")
        self.token = token if token is not None else settings.MMA_API_TOKEN
        self._transport = transport

    def headers(self, pass_id: Optional[str] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        headers[self.settings.PASS_ID_HEADER] = pass_id or self.pass_id
        return headers

    def http_client(self, timeout: Optional[float] = None, pass_id: Optional[str] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers(pass_id),
            timeout=timeout if timeout is not None else self.settings.REQUEST_TIMEOUT,
            transport=self._transport,
        )

    def absolute(self, url: Optional[str]) -> Optional[str]:
        return absolute_url(self.base_url, url)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def submit(self, path: str, payload: Dict[str, Any]) -> Submission:
        """
        POST a creation request; returns the job id and the absolute progress url.
        """
        try:
            async with self.http_client() as client:
                r = await client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.warning("[Submitter] POST %s failed: %s", path, e)
            raise SubmissionError(humanize_error(f"failed to fetch: {e}")) from e

        data = _json_or_empty(r)
        if r.status_code >= 400 or data.get("ok") is False:
            logger.warning("[Submitter] POST %s returned %s: %s", path, r.status_code, r.text[:500])
            message = pick_str(data, ("message", "error.message", "error", "detail"))
            raise SubmissionError(
                humanize_error(message or f"Error {r.status_code}: creation rejected"),
                status_code=r.status_code,
                body=data,
            )

        generation_id = pick_str(data, GENERATION_ID_FIELDS)
        if not generation_id:
            logger.warning("[Submitter] POST %s returned no id: %s", path, data)
            raise SubmissionError("no id returned", status_code=r.status_code, body=data)

        submission = Submission(
            generation_id=generation_id,
            status=(pick_str(data, ("status", "mg_status")) or "queued").lower(),
            sse_url=self.absolute(pick_str(data, SSE_URL_FIELDS)),
            credits_cost=pick_number(data, ("credits_cost", "creditsCost", "credits.cost")),
            idempotency_key=pick_str(payload, ("idempotency_key",)),
        )
        logger.info("[Submitter] Got generation_id: %s", generation_id)
        return submission

    async def fetch_generation(self, generation_id: str) -> Dict[str, Any]:
        """
        GET the authoritative job record. Raises httpx.HTTPError on any failure.
        """
        async with self.http_client() as client:
            r = await client.get(f"/mma/generations/{generation_id}")
            r.raise_for_status()
            data = r.json()
        if not isinstance(data, dict):
            raise httpx.DecodingError(f"unexpected job record: {data!r}")
        # some deployments wrap the record
        inner = data.get("generation")
        return inner if isinstance(inner, dict) else data

    async def record_event(
        self,
        generation_id: str,
        event_type: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        body = {
            "passId": self.pass_id,
            "generation_id": generation_id,
            "event_type": event_type,
            "payload": payload or {},
        }
        async with self.http_client() as client:
            r = await client.post("/mma/events", json=body)
            r.raise_for_status()

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    async def credits_balance(self, pass_id: Optional[str] = None) -> Dict[str, Any]:
        pass_id = pass_id or self.pass_id
        async with self.http_client(pass_id=pass_id) as client:
            r = await client.get("/credits/balance", params={"passId": pass_id})
            r.raise_for_status()
            data = r.json()
        if not isinstance(data, dict):
            raise httpx.DecodingError(f"unexpected balance payload: {data!r}")
        return data

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    async def request_signed_upload(self, content_type: str, file_name: str, folder: str, kind: str) -> Dict[str, str]:
        """
        Ask the backend for a presigned PUT target.
        Returns {"upload_url": ..., "public_url": ...}.
        """
        body = {
            "contentType": content_type,
            "fileName": file_name,
            "folder": folder,
            "kind": kind,
            "passId": self.pass_id,
        }
        try:
            async with self.http_client() as client:
                r = await client.post("/api/r2/upload-signed", json=body)
        except httpx.HTTPError as e:
            raise UploadFailure(f"upload-signed request failed: {e}") from e

        data = _json_or_empty(r)
        if r.status_code >= 400 or data.get("ok") is False:
            message = pick_str(data, ("message", "error")) or f"Upload failed ({r.status_code})"
            raise UploadFailure(message)

        upload_url = pick_url(data, UPLOAD_TARGET_FIELDS)
        public_url = pick_url(data, UPLOAD_PUBLIC_FIELDS)
        if not upload_url or not public_url:
            raise UploadFailure("Upload succeeded but no URL returned")
        return {"upload_url": upload_url, "public_url": public_url}

    async def put_bytes(self, upload_url: str, data: bytes, content_type: str) -> None:
        """
        PUT raw bytes to a presigned storage url (third-party host, no API headers).
        """
        timeout = aiohttp.ClientTimeout(total=self.settings.REQUEST_TIMEOUT)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.put(upload_url, data=data, headers={"Content-Type": content_type}) as resp:
                    if resp.status >= 400:
                        body_text = await resp.text()
                        logger.warning("[Upload] PUT returned %s: %s", resp.status, body_text[:300])
                        raise UploadFailure(f"Upload failed ({resp.status})")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise UploadFailure(f"Upload failed: {e}") from e

    async def store_remote(self, url: str, folder: str, kind: str) -> str:
        """
        Ask the backend to fetch `url` server-side and republish it on the asset host.
        """
        body = {
            "sourceUrl": url,
            "url": url,
            "folder": folder,
            "kind": kind,
            "passId": self.pass_id,
        }
        try:
            async with self.http_client() as client:
                r = await client.post("/api/r2/store-remote-signed", json=body)
        except httpx.HTTPError as e:
            raise AssetStabilizationFailure(f"store-remote failed: {e}") from e

        data = _json_or_empty(r)
        if r.status_code >= 400 or data.get("ok") is False:
            raise AssetStabilizationFailure(f"store-remote returned {r.status_code}")

        stored = pick_url(data)
        if not stored:
            raise AssetStabilizationFailure("store-remote returned no url")
        return stored

"""
Push-channel (server-sent events) consumer for one job's progress.

The channel is best effort: it never raises to the caller. When it breaks the
consumer gives it one bounded chance to come back, then resolves so the
orchestrator can fall through to polling.
"""

import asyncio
import inspect
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Tuple, Union

import httpx

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .errors import StreamDegraded
from .model import ProgressEvent
from .utils import pick_str

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]

STREAM_STATUS_FIELDS = ("status", "state", "mg_status", "mma_status", "stage")
STREAM_LINES_FIELDS = ("scan_lines", "scanLines", "lines")
STREAM_LINE_FIELDS = ("text", "line", "message", "scan_line")

CHANNEL_ERRORS = (httpx.HTTPError, StreamDegraded)

_DONE = "done"
_UPDATE = "update"


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """
    Minimal text/event-stream framing: yields (event name, data) per dispatched event.
    """
    event, data = "message", []
    async for line in lines:
        line = line.rstrip("\r")
        if not line:
            if data or event != "message":
                yield event, "\n".join(data)
            event, data = "message", []
            continue
        if line.startswith(":"):
            continue  # heartbeat
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value.strip() or "message"
        elif name == "data":
            data.append(value)
    if data or event != "message":
        yield event, "\n".join(data)


async def _idle_bounded(lines: AsyncIterator[str], idle: float) -> AsyncIterator[str]:
    """
    Pass lines through; a gap longer than `idle` seconds breaks the channel.
    """
    it = lines.__aiter__()
    while True:
        try:
            line = await asyncio.wait_for(it.__anext__(), timeout=idle)
        except StopAsyncIteration:
            return
        except asyncio.TimeoutError:
            raise StreamDegraded(f"no data for {idle:.1f}s") from None
        yield line


def _decode(data: str) -> Any:
    try:
        return json.loads(data)
    except ValueError:
        return data.strip()


class StreamState:
    """Accumulated progress for one subscription."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.status: Optional[str] = None
        self.scan_lines: List[str] = []

    def snapshot(self) -> ProgressEvent:
        return ProgressEvent(job_id=self.job_id, status=self.status, scan_lines=list(self.scan_lines))

    def apply(self, event: str, data: str) -> Optional[str]:
        """
        Fold one channel message into the state.
        Returns "done", "update", or None when the message carried nothing usable.
        """
        event = event.strip().lower()
        if event == "done":
            return _DONE

        payload = _decode(data) if data else None

        if event == "status":
            status = payload if isinstance(payload, str) else pick_str(payload, STREAM_STATUS_FIELDS)
            if not status:
                return None
            self.status = status.strip().lower()
            return _UPDATE

        if event in ("scan_line", "scanline"):
            line = payload if isinstance(payload, str) else pick_str(payload, STREAM_LINE_FIELDS)
            if not line:
                return None
            self.scan_lines.append(line)
            return _UPDATE

        if isinstance(payload, str):
            if not payload:
                return None
            self.status = payload.lower()
            return _UPDATE

        if isinstance(payload, dict):
            changed = False
            status = pick_str(payload, STREAM_STATUS_FIELDS)
            if status:
                self.status = status.lower()
                changed = True
            for field in STREAM_LINES_FIELDS:
                lines = payload.get(field)
                if isinstance(lines, list):
                    # full list: replaces whatever was shown before
                    self.scan_lines = [str(x) for x in lines if x is not None and str(x).strip()]
                    changed = True
                    break
            return _UPDATE if changed else None

        return None


class ProgressStream:
    """
    Holds at most one live subscription. Subscribing for another job closes the
    previous one; subscribing again for the same job joins it.
    """

    def __init__(
        self,
        api: MmaApiClient,
        settings: Settings = default_settings,
        grace_seconds: Optional[float] = None,
        idle_seconds: Optional[float] = None,
    ):
        self.api = api
        self.grace_seconds = settings.STREAM_GRACE_SECONDS if grace_seconds is None else grace_seconds
        self.idle_seconds = settings.STREAM_IDLE_SECONDS if idle_seconds is None else idle_seconds
        self._job_id: Optional[str] = None
        self._task: Optional["asyncio.Task[bool]"] = None
        self._listeners: List[ProgressCallback] = []

    @property
    def active_job_id(self) -> Optional[str]:
        if self._task is not None and not self._task.done():
            return self._job_id
        return None

    async def subscribe(self, job_id: str, url: str, on_event: Optional[ProgressCallback] = None) -> bool:
        """
        Follow the channel until `done` (True) or until it ends, breaks or is
        superseded (False). Never raises for channel problems.
        """
        if self.active_job_id == job_id and self._task is not None:
            task = self._task
            listeners = self._listeners
        else:
            await self.close()
            listeners = []
            task = asyncio.ensure_future(self._consume(job_id, url, listeners))
            self._job_id, self._task, self._listeners = job_id, task, listeners

        if on_event is not None:
            listeners.append(on_event)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            if on_event in listeners:
                listeners.remove(on_event)
            if not listeners:
                task.cancel()
            raise
        finally:
            if task.done() and self._task is task:
                self._task = None

        if task.cancelled():
            logger.info("[Stream] subscription for %s was closed", job_id)
            return False
        return task.result()

    async def close(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})

    async def _consume(self, job_id: str, url: str, listeners: List[ProgressCallback]) -> bool:
        state = StreamState(job_id)
        try:
            return await self._read(url, state, listeners)
        except CHANNEL_ERRORS as e:
            logger.warning("[Stream] channel for %s failed: %s (grace %.1fs)", job_id, e, self.grace_seconds)

        # a reconnect replays the channel from the start; keep only the last status
        retry_state = StreamState(job_id)
        retry_state.status = state.status

        # bounded race: a reconnect that still delivers `done` vs. the grace window
        try:
            return await asyncio.wait_for(self._read(url, retry_state, listeners), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.info("[Stream] grace elapsed for %s, falling back to polling", job_id)
        except CHANNEL_ERRORS as e:
            logger.info("[Stream] reconnect for %s failed: %s", job_id, e)
        return False

    async def _read(self, url: str, state: StreamState, listeners: List[ProgressCallback]) -> bool:
        async with self.api.http_client(timeout=self.idle_seconds) as client:
            async with client.stream("GET", url, headers={"Accept": "text/event-stream"}) as resp:
                if resp.status_code >= 400:
                    raise StreamDegraded(f"channel returned {resp.status_code}")
                lines = _idle_bounded(resp.aiter_lines(), self.idle_seconds)
                async for event, data in iter_sse(lines):
                    outcome = state.apply(event, data)
                    if outcome == _DONE:
                        logger.info("[Stream] %s done", state.job_id)
                        return True
                    if outcome == _UPDATE:
                        await self._emit(state.snapshot(), listeners)
        logger.info("[Stream] channel for %s ended without done", state.job_id)
        return False

    async def _emit(self, event: ProgressEvent, listeners: List[ProgressCallback]) -> None:
        for listener in list(listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Stream] progress callback failed for %s", event.job_id)

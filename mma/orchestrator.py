# mma/orchestrator.py

import inspect
import logging
from typing import Any, Dict, Optional

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .idempotency import IdempotencyGuard, action_key, attach_token
from .model import GenerationJob, ProgressEvent, Submission
from .poller import ResultPoller
from .stream import ProgressCallback, ProgressStream

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """
    "Submit and wait": dedupe the creation call, follow the push channel, then
    confirm with one poll. Only network I/O; applying the result is up to the caller.
    """

    def __init__(
        self,
        api: MmaApiClient,
        guard: Optional[IdempotencyGuard] = None,
        stream: Optional[ProgressStream] = None,
        poller: Optional[ResultPoller] = None,
        settings: Settings = default_settings,
    ):
        self.api = api
        self.guard = guard if guard is not None else IdempotencyGuard()
        self.stream = stream if stream is not None else ProgressStream(api, settings=settings)
        self.poller = poller if poller is not None else ResultPoller(api, settings=settings)

    async def submit(self, endpoint: str, payload: Dict[str, Any]) -> Submission:
        key = action_key(endpoint, payload)

        async def create(token: str) -> Submission:
            logger.info("[Orchestrator] POST %s (%s)", endpoint, key)
            return await self.api.submit(endpoint, attach_token(payload, token))

        return await self.guard.run_deduplicated(key, create)

    async def submit_and_wait(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationJob:
        submission = await self.submit(endpoint, payload)
        job_id = submission.generation_id

        last_event: Optional[ProgressEvent] = None

        async def forward(event: ProgressEvent) -> None:
            nonlocal last_event
            last_event = event
            if on_progress is None:
                return
            try:
                result = on_progress(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Orchestrator] progress callback failed for %s", job_id)

        await forward(ProgressEvent(job_id=job_id, status=submission.status or "queued"))

        if submission.sse_url:
            finished = await self.stream.subscribe(job_id, submission.sse_url, forward)
            logger.info("[Orchestrator] stream for %s ended (done=%s), confirming by poll", job_id, finished)
        else:
            logger.info("[Orchestrator] no progress channel for %s, polling only", job_id)

        job = await self.poller.wait(job_id)

        updates: Dict[str, Any] = {}
        if last_event is not None and last_event.scan_lines and not job.scan_lines:
            updates["scan_lines"] = list(last_event.scan_lines)
        if job.credits_cost is None and submission.credits_cost is not None:
            updates["credits_cost"] = submission.credits_cost
        if updates:
            job = job.model_copy(update=updates)
        return job

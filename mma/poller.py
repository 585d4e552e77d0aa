# mma/poller.py

import asyncio
import logging
import time
from typing import Optional

import httpx

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .model import GenerationJob
from .records import normalize_record

logger = logging.getLogger(__name__)


class ResultPoller:
    """
    Pull side of the pipeline: the authoritative record, fetched on a fixed interval.
    """

    def __init__(
        self,
        api: MmaApiClient,
        settings: Settings = default_settings,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.api = api
        self.interval = settings.POLL_INTERVAL_SECONDS if interval is None else interval
        self.timeout = settings.POLL_TIMEOUT_SECONDS if timeout is None else timeout

    async def fetch_once(self, job_id: str) -> Optional[GenerationJob]:
        """
        One attempt. Any HTTP failure means "still queued" and returns None.
        """
        try:
            raw = await self.api.fetch_generation(job_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.info("[Poller] %s not ready (%s)", job_id, e)
            return None
        return normalize_record(raw, job_id=job_id)

    async def wait(self, job_id: str) -> GenerationJob:
        """
        Poll /mma/generations/{id} until the record is terminal or the timeout
        elapses. On timeout the last record comes back flagged `inconclusive`.
        """
        deadline = time.monotonic() + self.timeout
        last: Optional[GenerationJob] = None
        attempts = 0

        while True:
            attempts += 1
            job = await self.fetch_once(job_id)
            if job is not None:
                last = job
                if job.is_terminal:
                    logger.info("[Poller] %s terminal (%s) after %d attempts", job_id, job.status, attempts)
                    return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.interval, remaining))

        logger.warning("[Poller] %s still not terminal after %.1fs", job_id, self.timeout)
        if last is None:
            last = GenerationJob(id=job_id, status="queued")
        return last.model_copy(update={"inconclusive": True})

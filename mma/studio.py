"""
Caller-side composition of the MMA client.

JobOrchestrator stops at the final record; Studio is what a front end does
with it: raise on failed jobs, swap provider links for stable ones and fold the
reported balance into the credits cache.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .assets import AssetStabilizer
from .credits import CreditsLedger
from .errors import JobTerminalError
from .idempotency import IdempotencyGuard
from .model import GenerationJob
from .orchestrator import JobOrchestrator
from .payloads import (
    STILL_CREATE_PATH,
    VIDEO_ANIMATE_PATH,
    build_still_payload,
    build_tweak_payload,
    build_video_payload,
    tweak_path,
)
from .stream import ProgressCallback
from .uploads import UploadPipeline

logger = logging.getLogger(__name__)


class Studio:
    def __init__(
        self,
        api: MmaApiClient,
        orchestrator: Optional[JobOrchestrator] = None,
        stabilizer: Optional[AssetStabilizer] = None,
        credits: Optional[CreditsLedger] = None,
        uploads: Optional[UploadPipeline] = None,
        guard: Optional[IdempotencyGuard] = None,
        settings: Settings = default_settings,
    ):
        self.api = api
        self.pass_id = api.pass_id
        self.orchestrator = orchestrator or JobOrchestrator(api, guard=guard, settings=settings)
        self.stabilizer = stabilizer or AssetStabilizer(api, settings=settings)
        self.credits = credits or CreditsLedger(api, settings=settings)
        self.uploads = uploads or UploadPipeline(api, stabilizer=self.stabilizer, settings=settings)

    async def balance(self) -> Optional[float]:
        return await self.credits.read(self.pass_id)

    async def create_still(
        self,
        brief: str,
        *,
        tone: Optional[str] = None,
        platform: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        style_preset_keys: Optional[List[str]] = None,
        vision_enabled: bool = False,
        session_id: Optional[str] = None,
        session_title: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationJob:
        payload = build_still_payload(
            self.pass_id,
            brief,
            tone=tone,
            platform=platform,
            aspect_ratio=aspect_ratio,
            style_preset_keys=style_preset_keys,
            vision_enabled=vision_enabled,
            assets=self.uploads.asset_payload(),
            session_id=session_id,
            session_title=session_title,
        )
        return await self.run(STILL_CREATE_PATH, payload, on_progress)

    async def animate(
        self,
        start_image_url: str,
        motion_description: str,
        *,
        end_image_url: Optional[str] = None,
        reference_image_urls: Optional[List[str]] = None,
        tone: Optional[str] = None,
        platform: Optional[str] = None,
        aspect_ratio: Optional[str] = None,
        session_id: Optional[str] = None,
        session_title: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationJob:
        payload = build_video_payload(
            self.pass_id,
            start_image_url,
            motion_description=motion_description,
            end_image_url=end_image_url,
            reference_image_urls=reference_image_urls,
            tone=tone,
            platform=platform,
            aspect_ratio=aspect_ratio,
            session_id=session_id,
            session_title=session_title,
        )
        return await self.run(VIDEO_ANIMATE_PATH, payload, on_progress)

    async def suggest_motion(
        self,
        start_image_url: str,
        *,
        tone: Optional[str] = None,
        platform: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[str]:
        """
        Lightweight run: the backend only writes a motion prompt. Returns it.
        """
        payload = build_video_payload(
            self.pass_id,
            start_image_url,
            suggest_only=True,
            tone=tone,
            platform=platform,
        )
        job = await self.run(VIDEO_ANIMATE_PATH, payload, on_progress)
        return job.prompt

    async def tweak(
        self,
        generation_id: str,
        feedback: str,
        *,
        mode: str = "still",
        session_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationJob:
        if not feedback.strip():
            raise ValueError("Type a tweak first.")
        payload = build_tweak_payload(self.pass_id, generation_id, feedback, session_id=session_id)
        return await self.run(tweak_path(mode, generation_id), payload, on_progress)

    async def run(
        self,
        endpoint: str,
        payload: Dict[str, Any],
        on_progress: Optional[ProgressCallback] = None,
    ) -> GenerationJob:
        job = await self.orchestrator.submit_and_wait(endpoint, payload, on_progress)

        if job.is_error:
            error = job.error
            code = error.code if error else "PIPELINE_ERROR"
            message = error.message if error else job.status
            self.credits.invalidate(self.pass_id)
            raise JobTerminalError(code, message, job=job)

        if job.inconclusive:
            logger.warning("[Studio] %s inconclusive (last status %s)", job.id, job.status)

        job = await self.stabilizer.stabilize_outputs(job)

        if job.credits_balance is not None:
            self.credits.apply_delta(self.pass_id, job.credits_balance)
        else:
            self.credits.invalidate(self.pass_id)
        return job

    async def like(self, job: GenerationJob) -> bool:
        return await self._event(job, "like", {"url": job.primary_url, "mode": job.mode})

    async def send_feedback(self, job: GenerationJob, comment: str) -> bool:
        comment = comment.strip()
        if not comment:
            return False
        return await self._event(job, "feedback", {"comment": comment, "url": job.primary_url, "mode": job.mode})

    async def _event(self, job: GenerationJob, event_type: str, payload: Dict[str, Any]) -> bool:
        try:
            await self.api.record_event(job.id, event_type, payload)
        except httpx.HTTPError as e:
            logger.warning("[Studio] %s event for %s not recorded: %s", event_type, job.id, e)
            return False
        return True

"""
Turning ephemeral output links into durable ones.

Provider outputs arrive as signed, expiring or third-party URLs. Anything that
ends up in job inputs or history must first lose its signing query and be
republished on our own asset host.
"""

import logging
from typing import Optional

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .errors import AssetStabilizationFailure
from .model import GenerationJob
from .utils import host_of, is_http_url, strip_signed_query

logger = logging.getLogger(__name__)


class AssetStabilizer:
    def __init__(self, api: MmaApiClient, settings: Settings = default_settings):
        self.api = api
        self.asset_host = settings.ASSET_HOST.lower()

    def is_own_host(self, url: str) -> bool:
        host = host_of(url)
        return bool(host) and (host == self.asset_host or host.endswith("." + self.asset_host))

    async def ensure_stable(self, url: Optional[str], category: str) -> Optional[str]:
        """
        Durable url for `url`. Already-stable urls are returned as they are; a failed
        republish falls back to the stripped original.
        """
        if not url or not is_http_url(url):
            return url
        url = url.strip()
        stripped = strip_signed_query(url)
        if self.is_own_host(stripped):
            return stripped
        try:
            # the server fetches the original, signature included
            stored = await self.api.store_remote(url, folder=category, kind=category)
        except AssetStabilizationFailure as e:
            logger.warning("[Assets] could not stabilize %s: %s", stripped, e)
            return stripped
        stable = strip_signed_query(stored)
        logger.info("[Assets] %s -> %s", stripped, stable)
        return stable

    async def stabilize_outputs(self, job: GenerationJob) -> GenerationJob:
        if not job.outputs:
            return job
        category = "video" if job.mode == "video" else "still"
        outputs = {}
        for key, url in job.outputs.items():
            outputs[key] = await self.ensure_stable(url, category) or url
        return job.model_copy(update={"outputs": outputs})

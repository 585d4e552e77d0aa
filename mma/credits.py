"""
Process-wide credit balance cache, keyed by pass id.

Balances reported alongside job results are adopted optimistically, but a
malformed value, or a zero that contradicts a known-positive balance (the
reporting field races the ledger on the backend), is never displayed: the
cache keeps the previous value, goes dirty and refreshes from /credits/balance.
"""

import asyncio
import logging
import math
import time
from typing import Any, Callable, Dict, Optional, Set

import httpx

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .errors import CreditsAnomaly
from .model import CreditsMeta, CreditsState
from .utils import pick, pick_number

logger = logging.getLogger(__name__)


def _valid_balance(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    if not math.isfinite(value) or value < 0:
        return None
    return value


class CreditsLedger:
    def __init__(
        self,
        api: MmaApiClient,
        settings: Settings = default_settings,
        stale_after: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api = api
        self.stale_after = settings.CREDITS_STALE_SECONDS if stale_after is None else stale_after
        self._clock = clock
        self._states: Dict[str, CreditsState] = {}
        self._refreshing: Dict[str, "asyncio.Task[Optional[float]]"] = {}
        self._scheduled: Set["asyncio.Task[Any]"] = set()
        # bumped on every adopted job-reported balance
        self._versions: Dict[str, int] = {}

    def _state(self, identity: str) -> CreditsState:
        state = self._states.get(identity)
        if state is None:
            state = self._states[identity] = CreditsState()
        return state

    def snapshot(self, identity: str) -> CreditsState:
        return self._state(identity).model_copy(deep=True)

    def meta(self, identity: str) -> CreditsMeta:
        return self._state(identity).meta

    def cost_for(self, identity: str, mode: str) -> float:
        meta = self.meta(identity)
        return meta.motion_cost if mode == "video" else meta.image_cost

    def is_fresh(self, identity: str) -> bool:
        state = self._states.get(identity)
        if state is None or state.dirty or state.fetched_at is None or state.balance is None:
            return False
        return self._clock() - state.fetched_at < self.stale_after

    async def read(self, identity: str) -> Optional[float]:
        if self.is_fresh(identity):
            return self._states[identity].balance
        return await self.refresh(identity)

    async def refresh(self, identity: str) -> Optional[float]:
        """
        Fetch the balance now; concurrent refreshes for one identity share a request.
        """
        task = self._refreshing.get(identity)
        if task is None:
            task = asyncio.ensure_future(self._fetch(identity))
            self._refreshing[identity] = task
            task.add_done_callback(lambda t, i=identity: self._refreshing.pop(i, None))
        return await asyncio.shield(task)

    async def _fetch(self, identity: str) -> Optional[float]:
        state = self._state(identity)
        started = self._versions.get(identity, 0)
        try:
            data = await self.api.credits_balance(identity)
            balance = _valid_balance(pick(data, ("balance", "credits.balance", "credits")))
            if balance is None:
                raise CreditsAnomaly(f"unusable balance in refresh: {data!r}")
        except (httpx.HTTPError, ValueError, CreditsAnomaly) as e:
            logger.warning("[Credits] refresh for %s failed: %s", identity, e)
            return state.balance

        if self._versions.get(identity, 0) != started:
            logger.info("[Credits] dropping refresh for %s, a newer balance arrived meanwhile", identity)
            return state.balance

        meta = data.get("meta") if isinstance(data.get("meta"), dict) else {}
        state.meta = CreditsMeta(
            image_cost=pick_number(meta, ("imageCost", "image_cost")) or state.meta.image_cost,
            motion_cost=pick_number(meta, ("motionCost", "motion_cost")) or state.meta.motion_cost,
            expires_at=pick(meta, ("expiresAt", "expires_at"), state.meta.expires_at),
        )
        state.balance = balance
        state.fetched_at = self._clock()
        state.dirty = False
        return balance

    def apply_delta(self, identity: str, reported: Any) -> bool:
        """
        Adopt a balance reported by a job response. Returns False when the value was
        rejected; the cache is then dirty and a refresh is scheduled.
        """
        state = self._state(identity)
        try:
            balance = self._check_reported(state, reported)
        except CreditsAnomaly as e:
            return self._reject(identity, e)

        state.balance = balance
        state.fetched_at = self._clock()
        state.dirty = False
        self._versions[identity] = self._versions.get(identity, 0) + 1
        return True

    def invalidate(self, identity: str) -> None:
        self._state(identity).dirty = True

    @staticmethod
    def _check_reported(state: CreditsState, reported: Any) -> float:
        balance = _valid_balance(reported)
        if balance is None:
            raise CreditsAnomaly(f"non-numeric or negative balance {reported!r}")
        if balance == 0 and state.balance is not None and state.balance > 0:
            raise CreditsAnomaly(f"reported 0 while cached balance is {state.balance}")
        return balance

    def _reject(self, identity: str, reason: CreditsAnomaly) -> bool:
        logger.info("[Credits] %s: %s; keeping previous balance", identity, reason)
        self.invalidate(identity)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: the next read() refreshes because the state is dirty
            return False
        task = loop.create_task(self.refresh(identity))
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return False

    async def aclose(self) -> None:
        if self._scheduled:
            await asyncio.gather(*list(self._scheduled), return_exceptions=True)

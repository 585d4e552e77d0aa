"""
Deduplication of concurrent submissions.

Repeated triggers of the same logical action (same creation endpoint, same
intent) while one is still in flight share that submission instead of creating
a second billed job.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from .utils import gen_token, infer_intent

logger = logging.getLogger(__name__)

T = TypeVar("T")


def action_key(endpoint: str, payload: Mapping[str, Any]) -> str:
    return f"{endpoint}|{infer_intent(payload)}"


def attach_token(payload: Mapping[str, Any], token: str) -> Dict[str, Any]:
    """
    Copy of `payload` carrying the token top-level and under `inputs`.
    """
    out = copy.deepcopy(dict(payload))
    out["idempotency_key"] = token
    inputs = out.get("inputs")
    out["inputs"] = dict(inputs) if isinstance(inputs, Mapping) else {}
    out["inputs"]["idempotency_key"] = token
    return out


@dataclass
class _Entry:
    task: Optional["asyncio.Task[Any]"] = None
    _token: Optional[str] = field(default=None, repr=False)

    @property
    def token(self) -> str:
        if self._token is None:
            self._token = gen_token()
        return self._token


class IdempotencyGuard:
    """
    In-flight action map. One instance per process (or per test); never a module global.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def in_flight(self, key: str) -> bool:
        return key in self._entries

    async def run_deduplicated(self, key: str, work: Callable[[str], Awaitable[T]]) -> T:
        """
        Run `work(token)` unless an entry for `key` is already running, in which case
        wait for that one. Every caller of one entry gets the same result or exception.
        """
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry()
            self._entries[key] = entry
            entry.task = asyncio.ensure_future(self._run(key, entry, work))
        else:
            logger.info("[Guard] %s already in flight, joining it", key)
        # shield: one waiter being cancelled must not cancel the shared submission
        return await asyncio.shield(entry.task)

    async def _run(self, key: str, entry: _Entry, work: Callable[[str], Awaitable[T]]) -> T:
        try:
            return await work(entry.token)
        finally:
            if self._entries.get(key) is entry:
                del self._entries[key]

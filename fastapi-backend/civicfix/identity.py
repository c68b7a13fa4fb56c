"""
Principal resolution with a short-lived role cache.

Read paths get a best-effort role immediately (from the cache, or the token's
role claim) while an authoritative lookup refreshes the cache in the
background; the returned `Principal` says whether the role may be stale.
Mutating paths await the authoritative lookup.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Awaitable, Callable, Dict, Optional, Tuple
import asyncio
import logging
import time

from .models import Role

logger = logging.getLogger("civicfix.identity")

RoleLookup = Callable[[str], Awaitable[Optional[Role]]]


@dataclass(frozen=True)
class Principal:
    """The acting identity handed to every workflow call."""

    id: str
    role: Role
    email: Optional[str] = None
    stale: bool = False

    def fresh(self, role: Role) -> "Principal":
        return replace(self, role=role, stale=False)


def parse_role(value) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    try:
        return Role((value or "").strip().lower())
    except ValueError:
        return None


class RoleResolver:
    """Caches principal roles for `ttl_seconds` and refreshes them in the background."""

    def __init__(
        self,
        lookup: RoleLookup,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lookup = lookup
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[Role, float]] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}

    def remember(self, user_id: str, role: Role) -> None:
        self._entries[user_id] = (role, self._clock())

    def forget(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def cached(self, user_id: str) -> Optional[Tuple[Role, bool]]:
        """Return (role, stale) from the cache without touching the lookup."""
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        role, fetched_at = entry
        return role, (self._clock() - fetched_at) > self._ttl

    async def refresh(self, user_id: str) -> Optional[Role]:
        role = await self._lookup(user_id)
        if role is None:
            self.forget(user_id)
        else:
            self.remember(user_id, role)
        return role

    async def authoritative(self, user_id: str) -> Optional[Role]:
        return await self.refresh(user_id)

    async def best_effort(
        self, user_id: str, fallback: Optional[Role] = None
    ) -> Optional[Tuple[Role, bool]]:
        """Return (role, stale) without waiting on the lookup when anything is known."""
        cached = self.cached(user_id)
        if cached is not None:
            if cached[1]:
                self._schedule_refresh(user_id)
            return cached
        if fallback is not None:
            self._schedule_refresh(user_id)
            return fallback, True
        role = await self.refresh(user_id)
        if role is None:
            return None
        return role, False

    def _schedule_refresh(self, user_id: str) -> None:
        task = self._refreshing.get(user_id)
        if task is not None and not task.done():
            return
        task = asyncio.get_running_loop().create_task(self.refresh(user_id))
        self._refreshing[user_id] = task
        task.add_done_callback(lambda t, uid=user_id: self._refresh_done(uid, t))

    def _refresh_done(self, user_id: str, task: asyncio.Task) -> None:
        if self._refreshing.get(user_id) is task:
            del self._refreshing[user_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background role refresh failed for %s: %s", user_id, exc)

    async def drain(self) -> None:
        """Wait for in-flight background refreshes to finish."""
        pending = [t for t in self._refreshing.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = ["Principal", "RoleResolver", "parse_role"]

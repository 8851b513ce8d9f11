"""
At-most-once protection for storybook dispatch.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .models import AutomationRun, utcnow
from .store import RunStore

logger = logging.getLogger(__name__)


class StorybookDispatchGuard:
    """
    Serializes storybook dispatch so each run triggers at most one assembly job.

    Two layers are combined: a process-local set that closes the race between
    notifications handled by this process, and a claim persisted on the run record
    (with a TTL) that survives restarts and covers other orchestrator processes.
    """

    def __init__(
        self,
        store: RunStore,
        *,
        claim_ttl: timedelta = timedelta(minutes=10),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._claim_ttl = claim_ttl
        self._clock = clock
        self._pending: set[str] = set()

    def is_engaged(self, run: AutomationRun) -> bool:
        """True while a dispatch for ``run`` is in flight here or claimed elsewhere."""
        if run.id in self._pending:
            return True
        claimed_at = run.storybook_dispatch_claimed_at
        return claimed_at is not None and self._clock() - claimed_at < self._claim_ttl

    async def acquire(self, run_id: str) -> bool:
        # The local check-and-add happens before the first await so two coroutines for
        # the same run cannot both pass it.
        if run_id in self._pending:
            return False
        self._pending.add(run_id)
        try:
            claimed = await self._store.claim_storybook_dispatch(run_id, self._clock(), self._claim_ttl)
        except Exception:
            self._pending.discard(run_id)
            raise
        if not claimed:
            self._pending.discard(run_id)
            logger.info("Storybook dispatch for run %s already claimed; skipping.", run_id)
        return claimed

    async def release(self, run_id: str) -> None:
        try:
            await self._store.release_storybook_dispatch(run_id)
        except Exception:
            logger.warning("Failed to release storybook dispatch claim for run %s.", run_id, exc_info=True)
        finally:
            self._pending.discard(run_id)

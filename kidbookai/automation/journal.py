"""
Write path shared by the stage drivers and the reconciler: patch the store, then broadcast.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from .events import RunBroadcaster
from .models import AutomationRun, RunEvent, RunStatus
from .progress import next_run_progress
from .store import RunStore


class RunJournal:
    def __init__(self, store: RunStore, broadcaster: RunBroadcaster) -> None:
        self._store = store
        self._broadcaster = broadcaster

    @property
    def store(self) -> RunStore:
        return self._store

    async def create(self, run: AutomationRun) -> AutomationRun:
        created = await self._store.create(run)
        await self._broadcaster.publish(created)
        return created

    async def record(
        self,
        run_id: str,
        *,
        events: Iterable[RunEvent] = (),
        **changes: Any,
    ) -> AutomationRun | None:
        updated = await self._store.update(run_id, events=list(events), **changes)
        if updated is not None:
            await self._broadcaster.publish(updated)
        return updated

    async def fail(
        self,
        run_id: str,
        error: str,
        *,
        event_type: str = "error",
        event_message: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> AutomationRun | None:
        """
        Move a run to ``failed``, freezing its progress. Terminal runs are left untouched.
        """
        run = await self._store.get(run_id)
        if run is None or run.is_terminal:
            return run
        return await self.record(
            run_id,
            status=RunStatus.FAILED,
            error=error,
            progress=next_run_progress(run.progress, RunStatus.FAILED, run.training_progress),
            events=[RunEvent(event_type, event_message or error, metadata)],
        )

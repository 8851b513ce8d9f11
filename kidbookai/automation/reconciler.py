"""
Folds asynchronous training and storybook notifications into automation runs.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Callable

from kidbookai.integrations.contracts import AssemblyUpdated, TrainingUpdated

from .events import NotificationHub
from .guard import StorybookDispatchGuard
from .journal import RunJournal
from .models import AutomationRun, JobStatus, RunEvent, RunStatus, StorybookSnapshot, TrainingSnapshot
from .progress import next_run_progress
from .stages import StageDrivers
from .transitions import resolve_transition

logger = logging.getLogger(__name__)


def _is_stale(
    previous: TrainingSnapshot | StorybookSnapshot | None,
    snapshot: TrainingSnapshot | StorybookSnapshot,
) -> bool:
    """A non-terminal update arriving after the job already finished."""
    return (
        previous is not None
        and previous.id == snapshot.id
        and previous.status in JobStatus.TERMINAL
        and snapshot.status not in JobStatus.TERMINAL
    )


class EventReconciler:
    """
    Long-lived subscriber that owns every run mutation after the synchronous stages.

    Notifications for the same run are folded one at a time; different runs interleave
    freely. Folding is idempotent, so a redelivered notification only refreshes the
    snapshot.
    """

    def __init__(
        self,
        *,
        journal: RunJournal,
        hub: NotificationHub,
        guard: StorybookDispatchGuard,
        drivers: StageDrivers,
    ) -> None:
        self._journal = journal
        self._store = journal.store
        self._hub = hub
        self._guard = guard
        self._drivers = drivers
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def started(self) -> bool:
        return bool(self._unsubscribers)

    def start(self) -> None:
        """Subscribe to the notification hub. Calling it again is a no-op."""
        if self._unsubscribers:
            return
        self._unsubscribers = [
            self._hub.training.subscribe(self.handle_training_update),
            self._hub.assembly.subscribe(self.handle_assembly_update),
        ]

    def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def handle_training_update(self, update: TrainingUpdated) -> None:
        try:
            await self._reconcile_training(update)
        except Exception:
            logger.exception("Training update handler failed for training %s.", update.training_id)

    async def handle_assembly_update(self, update: AssemblyUpdated) -> None:
        try:
            await self._reconcile_assembly(update)
        except Exception:
            logger.exception("Storybook update handler failed for job %s.", update.job_id)

    async def _reconcile_training(self, update: TrainingUpdated) -> None:
        owner = await self._store.find_by_training_id(update.training_id)
        if owner is None:
            logger.debug("Ignoring training %s: not owned by an automation run.", update.training_id)
            return

        async with self._locks[owner.id]:
            run = await self._store.get(owner.id)
            if run is None:
                return
            previous = run.training_snapshot
            snapshot = TrainingSnapshot.from_update(update, previous)
            if _is_stale(previous, snapshot):
                logger.debug("Run %s: ignoring stale training update (%s).", run.id, snapshot.status)
                return

            if run.is_terminal:
                await self._journal.record(run.id, training_snapshot=snapshot)
                return

            if snapshot.failed:
                candidate = RunStatus.FAILED
            elif snapshot.succeeded:
                racing = run.storybook_job_id is not None or self._guard.is_engaged(run)
                candidate = RunStatus.STORYBOOK if racing else RunStatus.STORYBOOK_PENDING
            else:
                candidate = RunStatus.TRAINING
            status = resolve_transition(run.status, candidate)

            events: list[RunEvent] = []
            if status is RunStatus.FAILED:
                error = snapshot.error or "Training failed"
                changes = {
                    "status": status,
                    "error": error,
                    "progress": next_run_progress(run.progress, status, snapshot.progress),
                }
                events.append(RunEvent("training_failed", error, {"training_id": snapshot.id}))
            else:
                changes = {
                    "status": status,
                    "progress": next_run_progress(run.progress, status, snapshot.progress, run.storybook_progress),
                }
                if snapshot.succeeded and not (previous is not None and previous.succeeded):
                    events.append(
                        RunEvent(
                            "training_completed",
                            "Training completed successfully",
                            {"model_version": snapshot.model_version},
                        )
                    )

            updated = await self._journal.record(run.id, training_snapshot=snapshot, events=events, **changes)

        if updated is not None and self._should_dispatch_storybook(updated):
            await self._trigger_storybook(updated)

    def _should_dispatch_storybook(self, run: AutomationRun) -> bool:
        return (
            run.training_snapshot is not None
            and run.training_snapshot.succeeded
            and not run.is_terminal
            and run.storybook_job_id is None
            and not self._guard.is_engaged(run)
        )

    async def _trigger_storybook(self, run: AutomationRun) -> None:
        if not await self._guard.acquire(run.id):
            return
        try:
            # Re-read after claiming: another process may have finished the dispatch.
            current = await self._store.get(run.id)
            if current is None or current.storybook_job_id is not None or current.is_terminal:
                return
            training = current.training_snapshot
            if training is None:
                return

            try:
                job = await self._drivers.dispatch_storybook(current, training)
            except Exception as exc:
                logger.exception("Run %s: storybook dispatch failed.", run.id)
                await self._journal.fail(
                    run.id,
                    str(exc) or "Failed to start storybook automation",
                    event_message="Storybook automation failed to start",
                    metadata={"error": str(exc)},
                )
                return

            async with self._locks[run.id]:
                current = await self._store.get(run.id)
                if current is None:
                    return
                status = resolve_transition(current.status, RunStatus.STORYBOOK)
                await self._journal.record(
                    run.id,
                    storybook_job_id=job.id,
                    storybook_snapshot=job,
                    status=status,
                    progress=(
                        current.progress
                        if status.is_terminal
                        else next_run_progress(
                            current.progress,
                            status,
                            current.training_progress or 100,
                            job.progress,
                        )
                    ),
                    events=[RunEvent("storybook_started", "Storybook automation started", {"job_id": job.id})],
                )
        finally:
            await self._guard.release(run.id)

    async def _reconcile_assembly(self, update: AssemblyUpdated) -> None:
        owner = await self._store.find_by_storybook_job_id(update.job_id)
        if owner is None:
            logger.debug("Ignoring storybook job %s: not owned by an automation run.", update.job_id)
            return

        async with self._locks[owner.id]:
            run = await self._store.get(owner.id)
            if run is None:
                return
            snapshot = StorybookSnapshot.from_update(update)
            if _is_stale(run.storybook_snapshot, snapshot):
                logger.debug("Run %s: ignoring stale storybook update (%s).", run.id, snapshot.status)
                return

            if run.is_terminal:
                await self._journal.record(run.id, storybook_snapshot=snapshot)
                return

            if snapshot.failed:
                candidate = RunStatus.FAILED
            elif snapshot.succeeded:
                candidate = RunStatus.COMPLETED
            else:
                candidate = RunStatus.STORYBOOK
            status = resolve_transition(run.status, candidate)

            events: list[RunEvent] = []
            if status is RunStatus.FAILED:
                error = snapshot.error or "Storybook automation failed"
                changes = {
                    "status": status,
                    "error": error,
                    "progress": next_run_progress(run.progress, status, run.training_progress),
                }
                events.append(RunEvent("storybook_failed", error, {"job_id": snapshot.id}))
            else:
                changes = {
                    "status": status,
                    "progress": next_run_progress(
                        run.progress,
                        status,
                        run.training_progress or 100,
                        snapshot.progress,
                    ),
                }
                if status is RunStatus.COMPLETED:
                    events.append(
                        RunEvent(
                            "storybook_completed",
                            "Storybook automation completed",
                            {"pdf_asset": dict(snapshot.pdf_asset) if snapshot.pdf_asset else None},
                        )
                    )

            await self._journal.record(run.id, storybook_snapshot=snapshot, events=events, **changes)

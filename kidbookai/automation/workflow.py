"""
Entry point that starts automation runs and exposes their live state.
"""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, AsyncIterator, Mapping, Sequence

from kidbookai.integrations.contracts import (
    AssemblyProvider,
    BookStore,
    ObjectStorage,
    PhotoEvaluator,
    PhotoUpload,
    TrainingProvider,
    UserDetails,
    UserStore,
)

from .config import AutomationSettings
from .errors import AutomationValidationError, StageFailure
from .events import Listener, NotificationHub, RunBroadcaster, Unsubscribe
from .guard import StorybookDispatchGuard
from .journal import RunJournal
from .models import AutomationRun, RunEvent, RunStatus, new_run_id
from .progress import STATUS_CHECKPOINTS, next_run_progress
from .reconciler import EventReconciler
from .stages import StageDrivers, UploadBatch
from .store import InMemoryRunStore, RunStore

logger = logging.getLogger(__name__)


def _normalize_overrides(overrides: Sequence[Any] | str | None) -> list[Any]:
    if overrides is None or overrides == "":
        return []
    if isinstance(overrides, str):
        try:
            parsed = json.loads(overrides)
        except json.JSONDecodeError as exc:
            raise AutomationValidationError("Invalid overrides payload") from exc
        if not isinstance(parsed, list):
            raise AutomationValidationError("Invalid overrides payload")
        return parsed
    if isinstance(overrides, Sequence):
        return list(overrides)
    raise AutomationValidationError("Invalid overrides payload")


class AutomationOrchestrator:
    """
    High-level coordinator for the user -> photos -> training -> storybook saga.

    ``start_run`` performs the fast stages synchronously and fires the training request;
    everything after that is driven by provider notifications published on :attr:`hub`.
    """

    def __init__(
        self,
        *,
        users: UserStore,
        books: BookStore,
        evaluator: PhotoEvaluator | None = None,
        storage: ObjectStorage | None = None,
        training_provider: TrainingProvider | None = None,
        assembly_provider: AssemblyProvider | None = None,
        store: RunStore | None = None,
        broadcaster: RunBroadcaster | None = None,
        hub: NotificationHub | None = None,
        settings: AutomationSettings | None = None,
        guard: StorybookDispatchGuard | None = None,
    ) -> None:
        if evaluator is None:
            from kidbookai.integrations.evaluator import LiteLLMPhotoEvaluator

            evaluator = LiteLLMPhotoEvaluator()
        if storage is None:
            from kidbookai.integrations.s3_storage import S3ObjectStorage

            storage = S3ObjectStorage()
        if training_provider is None:
            from kidbookai.integrations.replicate_training import ReplicateTrainingProvider

            training_provider = ReplicateTrainingProvider()
        if assembly_provider is None:
            from kidbookai.integrations.storybook_service import HttpAssemblyProvider

            assembly_provider = HttpAssemblyProvider()

        self._settings = settings or AutomationSettings.from_env()
        self._store = store or InMemoryRunStore()
        self._broadcaster = broadcaster or RunBroadcaster()
        self._hub = hub or NotificationHub()
        self._journal = RunJournal(self._store, self._broadcaster)
        self._guard = guard or StorybookDispatchGuard(
            self._store,
            claim_ttl=timedelta(seconds=self._settings.dispatch_claim_ttl_seconds),
        )
        self._drivers = StageDrivers(
            journal=self._journal,
            users=users,
            books=books,
            evaluator=evaluator,
            storage=storage,
            training_provider=training_provider,
            assembly_provider=assembly_provider,
            settings=self._settings,
        )
        self._reconciler = EventReconciler(
            journal=self._journal,
            hub=self._hub,
            guard=self._guard,
            drivers=self._drivers,
        )

    @property
    def hub(self) -> NotificationHub:
        """Channel on which webhook handlers and pollers publish provider updates."""
        return self._hub

    @property
    def settings(self) -> AutomationSettings:
        return self._settings

    @property
    def reconciler(self) -> EventReconciler:
        return self._reconciler

    def start(self) -> None:
        """Register the reconciler with the notification hub (idempotent)."""
        self._reconciler.start()

    def stop(self) -> None:
        self._reconciler.stop()

    async def start_run(
        self,
        book_id: str,
        user_input: UserDetails | Mapping[str, Any],
        photos: Sequence[PhotoUpload],
        overrides: Sequence[Any] | str | None = None,
    ) -> AutomationRun:
        """
        Create a run, provision the user, take in the photos and dispatch training.

        Raises
        ------
        AutomationValidationError
            The request is malformed; nothing was persisted.
        StageFailure
            A stage failed; the run is stored as ``failed`` and its side effects were
            compensated.
        """
        book_id = str(book_id or "").strip()
        if not book_id:
            raise AutomationValidationError("Invalid book ID")
        if isinstance(user_input, UserDetails):
            details = user_input
        else:
            try:
                details = UserDetails.from_mapping(user_input)
            except ValueError as exc:
                raise AutomationValidationError(str(exc)) from exc
        uploads = [photo for photo in photos or () if photo]
        if not uploads:
            raise AutomationValidationError("Upload at least one reference photo")
        override_flags = _normalize_overrides(overrides)

        self.start()

        run = await self._journal.create(
            AutomationRun(
                id=new_run_id(),
                book_id=book_id,
                status=RunStatus.CREATING_USER,
                progress=STATUS_CHECKPOINTS[RunStatus.CREATING_USER],
                events=[RunEvent("created", "Automation run created", {"book_id": book_id})],
            )
        )
        logger.info("Run %s: started for book %s", run.id, book_id)

        user_id: str | None = None
        batch = UploadBatch()
        stage = RunStatus.CREATING_USER
        try:
            user_id = await self._drivers.create_user(run, details)

            stage = RunStatus.UPLOADING_IMAGES
            await self._drivers.intake_photos(run, user_id, uploads, override_flags, batch)
            await self._journal.record(
                run.id,
                status=RunStatus.TRAINING,
                steps={"uploads": "completed"},
                progress=next_run_progress(STATUS_CHECKPOINTS[RunStatus.UPLOADING_IMAGES], RunStatus.TRAINING),
                events=[RunEvent("images_uploaded", "Reference photos uploaded", {"count": len(batch.assets)})],
            )

            stage = RunStatus.TRAINING
            training = await self._drivers.dispatch_training(run, user_id, details.name, batch)
            current = await self._store.get(run.id)
            await self._journal.record(
                run.id,
                training_id=training.id,
                training_snapshot=training,
                progress=next_run_progress(
                    current.progress if current else 0,
                    RunStatus.TRAINING,
                    training.progress,
                ),
                events=[RunEvent("training_started", "Training started", {"training_id": training.id})],
            )
        except Exception as exc:
            await self._drivers.compensate(run.id, user_id, batch)
            message = str(exc) or "Automation failed to start"
            try:
                await self._journal.fail(run.id, message)
            except Exception:
                logger.warning("Run %s: could not record failure", run.id, exc_info=True)
            logger.warning("Run %s: failed during %s: %s", run.id, stage.value, message)
            if isinstance(exc, StageFailure):
                raise
            raise StageFailure(message, stage=stage.value) from exc

        started = await self._store.get(run.id)
        if started is None:
            raise RuntimeError(f"Automation run {run.id} disappeared from the run store.")
        return started

    async def list_runs(self, limit: int | None = None) -> list[AutomationRun]:
        """Most recent runs first; ``limit`` is clamped to the configured bounds."""
        resolved = self._settings.list_limit_default if limit is None else int(limit)
        resolved = min(max(resolved, 1), self._settings.list_limit_max)
        return await self._store.list_recent(resolved)

    async def get_run(self, run_id: str) -> AutomationRun | None:
        return await self._store.get(run_id)

    def subscribe(self, listener: Listener[AutomationRun]) -> Unsubscribe:
        """Receive the full run on every mutation. Returns a callable that unsubscribes."""
        return self._broadcaster.subscribe(listener)

    def stream(self, *, max_pending: int = 100) -> AsyncIterator[AutomationRun]:
        """
        Iterate over run updates as they happen.

        A consumer that falls more than ``max_pending`` updates behind loses the oldest
        ones and a warning is logged. Updates carry the whole run, so the newest one for
        a run is always current, but a run whose only update was dropped must be re-read
        with :meth:`get_run` (or :meth:`list_runs`) to resync.
        """
        return self._broadcaster.stream(max_pending=max_pending)

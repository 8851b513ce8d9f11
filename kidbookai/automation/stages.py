"""
Stage drivers: the side effect behind each automation stage.

Drivers raise :class:`StageFailure`; :meth:`StageDrivers.compensate` undoes whatever an
interrupted intake or training dispatch left behind.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Callable, Sequence

from kidbookai.integrations.contracts import (
    AssemblyProvider,
    AssemblyRequest,
    BookStore,
    ObjectStorage,
    PhotoAsset,
    PhotoEvaluator,
    PhotoUpload,
    TrainingImage,
    TrainingProvider,
    TrainingRequest,
    UserDetails,
    UserStore,
)

from .config import AutomationSettings
from .errors import PhotoRejectedError, StageFailure
from .journal import RunJournal
from .models import AutomationRun, RunEvent, RunStatus, StorybookSnapshot, TrainingSnapshot, utcnow
from .progress import STATUS_CHECKPOINTS

logger = logging.getLogger(__name__)

_UNSAFE_MODEL_CHARS = re.compile(r"[^a-z0-9-]")
_WHITESPACE = re.compile(r"\s+")


def _timestamp_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def derive_model_name(user_name: str | None, timestamp_ms: int) -> str:
    """Unique model name (also used as the LoRA trigger word) for one training run."""
    base = _UNSAFE_MODEL_CHARS.sub("-", user_name.lower()) if user_name else "model"
    return f"{base}-{timestamp_ms}"


def photo_storage_key(user_id: str, file_name: str, timestamp_ms: int, index: int) -> str:
    safe_name = _WHITESPACE.sub("-", PurePath(file_name).name).lower() if file_name else "image.jpg"
    return f"users/{user_id}/images/{timestamp_ms}-{index + 1}-{safe_name}"


def training_archive_key(model_name: str) -> str:
    return f"trainings/{model_name}/{model_name}.zip"


def build_training_archive(images: Sequence[TrainingImage]) -> bytes:
    """Pack the approved photos into a single zip archive for the trainer."""
    buffer = io.BytesIO()
    used_names: set[str] = set()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for index, image in enumerate(images, start=1):
            extension = image.content_type.split("/")[-1] or "jpg"
            name = PurePath(image.file_name).name or f"training-image-{index}.{extension}"
            if name in used_names:
                stem, dot, suffix = name.rpartition(".")
                name = f"{stem}-{index}.{suffix}" if dot else f"{name}-{index}"
            used_names.add(name)
            archive.writestr(name, image.content)
    return buffer.getvalue()


def is_override(overrides: Sequence[Any], index: int) -> bool:
    if index >= len(overrides):
        return False
    flag = overrides[index]
    return flag is True or (isinstance(flag, str) and flag.strip().lower() == "true")


@dataclass
class UploadBatch:
    """Side effects produced during one start request, kept for compensation."""

    assets: list[PhotoAsset] = field(default_factory=list)
    training_images: list[TrainingImage] = field(default_factory=list)
    storage_keys: list[str] = field(default_factory=list)

    @property
    def photo_keys(self) -> list[str]:
        return [asset.key for asset in self.assets]


class StageDrivers:
    """
    Performs the user, photo intake, training and storybook stages of a run.
    """

    def __init__(
        self,
        *,
        journal: RunJournal,
        users: UserStore,
        books: BookStore,
        evaluator: PhotoEvaluator,
        storage: ObjectStorage,
        training_provider: TrainingProvider,
        assembly_provider: AssemblyProvider,
        settings: AutomationSettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._journal = journal
        self._users = users
        self._books = books
        self._evaluator = evaluator
        self._storage = storage
        self._training_provider = training_provider
        self._assembly_provider = assembly_provider
        self._settings = settings
        self._clock = clock

    async def create_user(self, run: AutomationRun, details: UserDetails) -> str:
        book = await self._books.get_book(run.book_id)
        if book is None:
            raise StageFailure("Book not found", stage=RunStatus.CREATING_USER.value)

        user_id = await self._users.create_user(details)
        await self._journal.record(
            run.id,
            user_id=user_id,
            status=RunStatus.UPLOADING_IMAGES,
            progress=STATUS_CHECKPOINTS[RunStatus.UPLOADING_IMAGES],
            events=[RunEvent("user_created", "User created for automation", {"user_id": user_id})],
        )
        logger.info("Run %s: created user %s for book %s", run.id, user_id, run.book_id)
        return user_id

    async def intake_photos(
        self,
        run: AutomationRun,
        user_id: str,
        photos: Sequence[PhotoUpload],
        overrides: Sequence[Any],
        batch: UploadBatch,
    ) -> UploadBatch:
        """
        Evaluate and upload photos one by one. The first rejected photo without an
        override aborts the whole batch.
        """
        stage = RunStatus.UPLOADING_IMAGES.value
        included = [photo for photo in photos if photo][: self._settings.max_training_images]
        if not included:
            raise StageFailure("No reference photos uploaded for automation.", stage=stage)

        for index, photo in enumerate(included):
            override = is_override(overrides, index)
            content_type = photo.resolved_content_type
            try:
                evaluation = await self._evaluator.evaluate(photo.content, photo.file_name, content_type)
            except Exception as exc:
                raise StageFailure(str(exc) or "Image evaluation failed", stage=stage) from exc

            if not override and not evaluation.acceptable:
                raise PhotoRejectedError(photo.file_name, verdict=evaluation.verdict)

            key = photo_storage_key(user_id, photo.file_name, _timestamp_ms(self._clock), index)
            try:
                url = await self._storage.put(photo.content, key, content_type)
            except Exception as exc:
                raise StageFailure(f"Failed to upload {photo.file_name}: {exc}", stage=stage) from exc
            batch.storage_keys.append(key)

            asset = PhotoAsset(
                key=key,
                url=url,
                original_name=photo.file_name,
                content_type=content_type,
                size=photo.size,
                uploaded_at=utcnow(),
                evaluation=evaluation,
                override=override,
            )
            batch.assets.append(asset)
            batch.training_images.append(
                TrainingImage(file_name=photo.file_name, content=photo.content, content_type=content_type)
            )
            await self._users.append_photos(user_id, [asset])

        return batch

    async def dispatch_training(
        self,
        run: AutomationRun,
        user_id: str,
        user_name: str,
        batch: UploadBatch,
    ) -> TrainingSnapshot:
        stage = RunStatus.TRAINING.value
        if not batch.training_images:
            raise StageFailure("No training assets available for automation run.", stage=stage)

        model_name = derive_model_name(user_name, _timestamp_ms(self._clock))
        archive = build_training_archive(batch.training_images)
        archive_key = training_archive_key(model_name)
        try:
            archive_url = await self._storage.put(archive, archive_key, "application/zip")
        except Exception as exc:
            raise StageFailure(f"Failed to upload training archive: {exc}", stage=stage) from exc
        batch.storage_keys.append(archive_key)

        request = TrainingRequest(
            run_id=run.id,
            user_id=user_id,
            user_name=user_name,
            model_name=model_name,
            trigger_word=model_name,
            archive_url=archive_url,
            archive_key=archive_key,
            image_count=len(batch.training_images),
            hyperparameters=dict(self._settings.training_hyperparameters),
        )
        try:
            training_id = await self._training_provider.dispatch(request)
        except Exception as exc:
            raise StageFailure(f"Failed to dispatch training: {exc}", stage=stage) from exc

        logger.info("Run %s: dispatched training %s (%s)", run.id, training_id, model_name)
        return TrainingSnapshot(id=str(training_id), status="queued", progress=0.0, model_name=model_name)

    async def dispatch_storybook(
        self,
        run: AutomationRun,
        training: TrainingSnapshot,
    ) -> StorybookSnapshot:
        """
        Ask the assembly service for a storybook built on the trained model.
        """
        stage = RunStatus.STORYBOOK.value
        book = await self._books.get_book(run.book_id)
        if book is None:
            raise StageFailure("Book not found for automation run", stage=stage)

        user = await self._users.get_user(run.user_id) if run.user_id else None
        reader_name = (user.details.name if user else "") or training.model_name or ""
        request = AssemblyRequest(
            book_id=run.book_id,
            training_id=training.id or run.training_id or "",
            user_id=run.user_id or "",
            reader_id=run.user_id or "",
            reader_name=reader_name,
            title=f"{book.name} Storybook",
        )
        job_id = await self._assembly_provider.dispatch(request)
        logger.info("Run %s: dispatched storybook job %s", run.id, job_id)
        return StorybookSnapshot(id=str(job_id), status="queued", progress=0.0)

    async def compensate(self, run_id: str, user_id: str | None, batch: UploadBatch) -> None:
        """
        Best-effort undo of an interrupted start: delete stored objects and prune the
        user's photo list. Secondary failures are logged, never raised.
        """
        if batch.storage_keys:
            results = await asyncio.gather(
                *(self._storage.delete(key) for key in batch.storage_keys),
                return_exceptions=True,
            )
            for key, result in zip(batch.storage_keys, results):
                if isinstance(result, BaseException):
                    logger.warning("Run %s: failed to delete %s during cleanup: %s", run_id, key, result)

        if user_id and batch.assets:
            try:
                await self._users.remove_photos(user_id, batch.photo_keys)
            except Exception as exc:
                logger.warning("Run %s: failed to prune photos from user %s: %s", run_id, user_id, exc)

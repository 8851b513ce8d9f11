"""
Structured representations of an automation run and its denormalized snapshots.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

import yaml

from kidbookai.integrations.contracts import AssemblyUpdated, TrainingUpdated, clamp_percent


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return uuid.uuid4().hex


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as exc:
        raise ValueError(f"Expected an ISO-8601 timestamp, got {value!r}") from exc
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class RunStatus(str, Enum):
    """Stages of the automation run state machine."""

    CREATING_USER = "creating_user"
    UPLOADING_IMAGES = "uploading_images"
    TRAINING = "training"
    STORYBOOK_PENDING = "storybook_pending"
    STORYBOOK = "storybook"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class JobStatus:
    """Status strings reported by the training and assembly providers."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    TERMINAL = frozenset({SUCCEEDED, FAILED, CANCELED})


@dataclass(frozen=True)
class RunEvent:
    """One entry of a run's append-only audit log."""

    type: str
    message: str = ""
    metadata: Mapping[str, Any] | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "metadata": dict(self.metadata) if self.metadata is not None else None,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RunEvent":
        if not _coerce_optional_str(data.get("type")):
            raise ValueError("Run event must include a non-empty 'type' field.")
        metadata = data.get("metadata")
        return cls(
            type=str(data["type"]).strip(),
            message=str(data.get("message") or ""),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else None,
            timestamp=_coerce_datetime(data.get("timestamp")) or utcnow(),
        )


@dataclass(frozen=True)
class TrainingSnapshot:
    """
    Most recently observed public state of the training job.

    The authoritative record lives with the training provider; this copy only exists so
    run state can be rendered without a round-trip.
    """

    id: str
    status: str
    progress: float = 0.0
    error: str | None = None
    model_name: str | None = None
    model_version: str | None = None
    logs_url: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status in (JobStatus.FAILED, JobStatus.CANCELED)

    @classmethod
    def from_update(
        cls,
        update: TrainingUpdated,
        previous: "TrainingSnapshot | None" = None,
    ) -> "TrainingSnapshot":
        progress = clamp_percent(update.progress)
        if update.status == JobStatus.SUCCEEDED:
            progress = 100.0
        return cls(
            id=str(update.training_id),
            status=str(update.status),
            progress=progress,
            error=update.error,
            model_name=update.model_name or (previous.model_name if previous else None),
            model_version=update.model_version or (previous.model_version if previous else None),
            logs_url=update.logs_url or (previous.logs_url if previous else None),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "error": self.error,
            "model_name": self.model_name,
            "model_version": self.model_version,
            "logs_url": self.logs_url,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TrainingSnapshot":
        return cls(
            id=str(data["id"]),
            status=str(data.get("status") or "unknown"),
            progress=clamp_percent(data.get("progress")),
            error=_coerce_optional_str(data.get("error")),
            model_name=_coerce_optional_str(data.get("model_name")),
            model_version=_coerce_optional_str(data.get("model_version")),
            logs_url=_coerce_optional_str(data.get("logs_url")),
            updated_at=_coerce_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class StorybookSnapshot:
    """Most recently observed public state of the storybook assembly job."""

    id: str
    status: str
    progress: float = 0.0
    error: str | None = None
    pdf_asset: Mapping[str, Any] | None = None
    estimated_seconds_remaining: int | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status in (JobStatus.FAILED, JobStatus.CANCELED)

    @classmethod
    def from_update(cls, update: AssemblyUpdated) -> "StorybookSnapshot":
        progress = clamp_percent(update.progress)
        if update.status == JobStatus.SUCCEEDED:
            progress = 100.0
        return cls(
            id=str(update.job_id),
            status=str(update.status),
            progress=progress,
            error=update.error,
            pdf_asset=dict(update.pdf_asset) if update.pdf_asset else None,
            estimated_seconds_remaining=update.estimated_seconds_remaining,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "progress": self.progress,
            "error": self.error,
            "pdf_asset": dict(self.pdf_asset) if self.pdf_asset else None,
            "estimated_seconds_remaining": self.estimated_seconds_remaining,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StorybookSnapshot":
        pdf_asset = data.get("pdf_asset")
        remaining = data.get("estimated_seconds_remaining")
        return cls(
            id=str(data["id"]),
            status=str(data.get("status") or "unknown"),
            progress=clamp_percent(data.get("progress")),
            error=_coerce_optional_str(data.get("error")),
            pdf_asset=dict(pdf_asset) if isinstance(pdf_asset, Mapping) else None,
            estimated_seconds_remaining=int(remaining) if remaining is not None else None,
            updated_at=_coerce_datetime(data.get("updated_at")) or utcnow(),
        )


@dataclass
class AutomationRun:
    """
    Aggregate root of one automation saga.

    ``events`` is the record of what happened; ``status``, ``progress`` and the two
    snapshots are a cache derived from it and from the providers' latest state.
    """

    id: str
    book_id: str
    status: RunStatus = RunStatus.CREATING_USER
    progress: int = 0
    user_id: str | None = None
    training_id: str | None = None
    storybook_job_id: str | None = None
    training_snapshot: TrainingSnapshot | None = None
    storybook_snapshot: StorybookSnapshot | None = None
    error: str | None = None
    steps: dict[str, str] = field(default_factory=dict)
    events: list[RunEvent] = field(default_factory=list)
    storybook_dispatch_claimed_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def training_progress(self) -> float:
        return self.training_snapshot.progress if self.training_snapshot else 0.0

    @property
    def storybook_progress(self) -> float:
        return self.storybook_snapshot.progress if self.storybook_snapshot else 0.0

    def event_types(self) -> list[str]:
        return [event.type for event in self.events]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "training_id": self.training_id,
            "storybook_job_id": self.storybook_job_id,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "steps": dict(self.steps),
            "training_snapshot": self.training_snapshot.to_dict() if self.training_snapshot else None,
            "storybook_snapshot": self.storybook_snapshot.to_dict() if self.storybook_snapshot else None,
            "events": [event.to_dict() for event in self.events],
            "storybook_dispatch_claimed_at": self.storybook_dispatch_claimed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, allow_unicode=True)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "AutomationRun":
        if not _coerce_optional_str(payload.get("id")):
            raise ValueError("Automation run payload must include 'id'.")
        if not _coerce_optional_str(payload.get("book_id")):
            raise ValueError("Automation run payload must include 'book_id'.")

        try:
            status = RunStatus(payload.get("status") or RunStatus.CREATING_USER.value)
        except ValueError as exc:
            raise ValueError(f"Unknown automation run status: {payload.get('status')!r}") from exc

        training_payload = payload.get("training_snapshot")
        storybook_payload = payload.get("storybook_snapshot")
        now = utcnow()
        return cls(
            id=str(payload["id"]),
            book_id=str(payload["book_id"]),
            status=status,
            progress=int(payload.get("progress") or 0),
            user_id=_coerce_optional_str(payload.get("user_id")),
            training_id=_coerce_optional_str(payload.get("training_id")),
            storybook_job_id=_coerce_optional_str(payload.get("storybook_job_id")),
            training_snapshot=(
                TrainingSnapshot.from_mapping(training_payload)
                if isinstance(training_payload, Mapping)
                else None
            ),
            storybook_snapshot=(
                StorybookSnapshot.from_mapping(storybook_payload)
                if isinstance(storybook_payload, Mapping)
                else None
            ),
            error=_coerce_optional_str(payload.get("error")),
            steps={str(key): str(value) for key, value in (payload.get("steps") or {}).items()},
            events=[RunEvent.from_mapping(entry) for entry in payload.get("events") or []],
            storybook_dispatch_claimed_at=_coerce_datetime(payload.get("storybook_dispatch_claimed_at")),
            created_at=_coerce_datetime(payload.get("created_at")) or now,
            updated_at=_coerce_datetime(payload.get("updated_at")) or now,
        )

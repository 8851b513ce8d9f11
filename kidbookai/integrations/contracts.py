"""
Narrow contracts for the collaborators the automation orchestrator depends on.

Every collaborator is described as a :class:`typing.Protocol` so the orchestrator can be
wired against real services (Replicate, S3, LiteLLM, the storybook service) or the
in-memory doubles shipped in :mod:`kidbookai.integrations.memory`.
"""

from __future__ import annotations

import math
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence

REQUIRED_USER_FIELDS = ("name", "age", "gender", "email", "country_code", "phone_number")

_CONTENT_TYPES = {
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def clamp_percent(value: Any, default: float = 0.0) -> float:
    """
    Coerce ``value`` into the 0-100 range; non-numeric input yields ``default``.
    """
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(numeric) or numeric <= 0:
        return 0.0
    if numeric >= 100:
        return 100.0
    return numeric


def guess_content_type(file_name: str) -> str:
    """Return the image MIME type for ``file_name``, defaulting to JPEG."""
    suffix = Path(file_name or "").suffix.lower()
    if suffix in _CONTENT_TYPES:
        return _CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(file_name or "")
    if guessed and guessed.startswith("image/"):
        return guessed
    return "image/jpeg"


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None

    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class UserDetails:
    """
    Reader details collected by the automation form.

    Attributes
    ----------
    name:
        Child's display name; also seeds the trained model name.
    age:
        Age in years.
    gender:
        Gender or pronoun preference.
    email, country_code, phone_number:
        Guardian contact details.
    """

    name: str
    age: int
    gender: str
    email: str
    country_code: str
    phone_number: str

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UserDetails":
        """
        Build the details from a dict-like payload, accepting camelCase aliases.
        """
        normalized = {
            "name": data.get("name"),
            "age": data.get("age"),
            "gender": data.get("gender"),
            "email": data.get("email"),
            "country_code": data.get("country_code", data.get("countryCode")),
            "phone_number": data.get("phone_number", data.get("phoneNumber")),
        }
        missing = [key for key in REQUIRED_USER_FIELDS if _coerce_optional_str(normalized[key]) is None]
        if missing:
            raise ValueError(f"Missing required user fields: {', '.join(missing)}.")

        try:
            age = int(normalized["age"])
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Expected an integer-compatible value for age, got {normalized['age']!r}") from exc

        return cls(
            name=str(normalized["name"]).strip(),
            age=age,
            gender=str(normalized["gender"]).strip(),
            email=str(normalized["email"]).strip(),
            country_code=str(normalized["country_code"]).strip(),
            phone_number=str(normalized["phone_number"]).strip(),
        )


@dataclass(frozen=True)
class PhotoUpload:
    """A reference photo received from the caller, still in memory."""

    file_name: str
    content: bytes
    content_type: str | None = None

    @property
    def resolved_content_type(self) -> str:
        return self.content_type or guess_content_type(self.file_name)

    @property
    def size(self) -> int:
        return len(self.content)

    @classmethod
    def from_path(cls, path: str | Path) -> "PhotoUpload":
        photo_path = Path(path).expanduser()
        if not photo_path.exists():
            raise FileNotFoundError(f"Reference photo not found at '{photo_path}'.")
        return cls(
            file_name=photo_path.name,
            content=photo_path.read_bytes(),
            content_type=guess_content_type(photo_path.name),
        )


@dataclass(frozen=True)
class PhotoEvaluation:
    """Verdict returned by the photo-quality evaluator for a single image."""

    acceptable: bool
    verdict: str | None = None
    confidence: int | None = None
    score: int | None = None
    summary: str = ""


@dataclass(frozen=True)
class PhotoAsset:
    """A photo persisted to object storage and attached to a user."""

    key: str
    url: str
    original_name: str
    content_type: str
    size: int
    uploaded_at: datetime
    evaluation: PhotoEvaluation | None = None
    override: bool = False

    def to_dict(self) -> dict[str, Any]:
        evaluation = None
        if self.evaluation is not None:
            evaluation = {
                "verdict": self.evaluation.verdict,
                "acceptable": self.evaluation.acceptable,
                "score_percent": self.evaluation.score,
                "confidence_percent": self.evaluation.confidence,
                "summary": self.evaluation.summary,
            }
        return {
            "key": self.key,
            "url": self.url,
            "original_name": self.original_name,
            "content_type": self.content_type,
            "size": self.size,
            "uploaded_at": self.uploaded_at,
            "evaluation": evaluation,
            "override": self.override,
        }


@dataclass(frozen=True)
class Book:
    """The slice of a book record the orchestrator needs."""

    id: str
    name: str
    page_count: int = 0


@dataclass(frozen=True)
class UserRecord:
    """A provisioned user and the photos attached to it."""

    id: str
    details: UserDetails
    photos: tuple[PhotoAsset, ...] = ()


@dataclass(frozen=True)
class TrainingImage:
    """Photo bytes packaged into the training archive."""

    file_name: str
    content: bytes
    content_type: str


@dataclass(frozen=True)
class TrainingRequest:
    """Everything the training provider needs to fine-tune a model."""

    run_id: str
    user_id: str
    user_name: str
    model_name: str
    trigger_word: str
    archive_url: str
    archive_key: str
    image_count: int
    hyperparameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssemblyRequest:
    """Payload sent to the storybook assembly service."""

    book_id: str
    training_id: str
    user_id: str
    reader_id: str
    reader_name: str
    title: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "bookId": self.book_id,
            "trainingId": self.training_id,
            "userId": self.user_id,
            "readerId": self.reader_id,
            "readerName": self.reader_name,
            "title": self.title,
        }


@dataclass(frozen=True)
class TrainingUpdated:
    """Asynchronous notification describing the latest state of a training job."""

    training_id: str
    status: str
    progress: float | None = None
    error: str | None = None
    model_version: str | None = None
    model_name: str | None = None
    logs_url: str | None = None


@dataclass(frozen=True)
class AssemblyUpdated:
    """Asynchronous notification describing the latest state of a storybook job."""

    job_id: str
    status: str
    progress: float | None = None
    error: str | None = None
    pdf_asset: Mapping[str, Any] | None = None
    estimated_seconds_remaining: int | None = None


class UserStore(Protocol):
    async def create_user(self, details: UserDetails) -> str: ...

    async def get_user(self, user_id: str) -> UserRecord | None: ...

    async def append_photos(self, user_id: str, photos: Sequence[PhotoAsset]) -> None: ...

    async def remove_photos(self, user_id: str, keys: Sequence[str]) -> None: ...


class BookStore(Protocol):
    async def get_book(self, book_id: str) -> Book | None: ...


class PhotoEvaluator(Protocol):
    async def evaluate(
        self,
        photo_bytes: bytes,
        file_name: str,
        content_type: str | None = None,
    ) -> PhotoEvaluation: ...


class ObjectStorage(Protocol):
    async def put(self, data: bytes, key: str, content_type: str) -> str: ...

    async def delete(self, key: str) -> None: ...


class TrainingProvider(Protocol):
    async def dispatch(self, request: TrainingRequest) -> str: ...


class AssemblyProvider(Protocol):
    async def dispatch(self, request: AssemblyRequest) -> str: ...

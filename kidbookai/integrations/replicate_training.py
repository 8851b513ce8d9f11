"""
Integration with Replicate for fine-tuning a personalised Flux LoRA per reader.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from typing import Any, Mapping

import replicate

from .contracts import TrainingRequest, TrainingUpdated, clamp_percent

logger = logging.getLogger(__name__)

DEFAULT_TRAINER_VERSION = (
    "ostris/flux-dev-lora-trainer:e440909d3512c31646ee2e0c7d6f6f4923224863a6a10c494606e79fb5844497"
)
TRAINING_WEBHOOK_EVENTS = ("start", "logs", "output", "completed")

_PROGRESS_KEYS = ("progress", "pct_complete", "percent_complete", "percentage", "completion", "percent")
_STEP_PAIRS = (
    ("current_step", "total_steps"),
    ("current_steps", "total_steps"),
    ("completed_steps", "total_steps"),
    ("step", "steps"),
    ("step", "max_steps"),
)
_LOG_PERCENT_PATTERN = re.compile(r"(\d{1,3})%")
_TRAINER_LOG_MARKER = "flux_train_replicate"


def _field(source: Any, name: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(name)
    return getattr(source, name, None)


def normalize_progress(value: Any) -> float | None:
    """
    Convert a fraction (0-1) or percentage into a 0-100 value rounded to one decimal.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    percentage = value * 100 if value <= 1 else value
    if percentage <= 0:
        return 0.0
    if percentage >= 100:
        return 100.0
    return round(percentage, 1)


def parse_progress_from_logs(logs: str | None) -> float | None:
    """
    Return the most recent trainer percentage printed in the logs.

    Log percentages are already on the 0-100 scale; ``1%`` means one percent.
    """
    if not logs:
        return None
    for line in reversed(logs.splitlines()):
        stripped = line.strip()
        if not stripped or _TRAINER_LOG_MARKER not in stripped.lower():
            continue
        match = _LOG_PERCENT_PATTERN.search(stripped)
        if match:
            return clamp_percent(match.group(1))
    return None


def extract_training_progress(training: Any) -> float | None:
    candidates: list[Any] = [_field(training, "progress")]

    metrics = _field(training, "metrics")
    if isinstance(metrics, Mapping):
        candidates.extend(metrics.get(key) for key in _PROGRESS_KEYS)
        for current_key, total_key in _STEP_PAIRS:
            current, total = metrics.get(current_key), metrics.get(total_key)
            if isinstance(current, (int, float)) and isinstance(total, (int, float)) and total > 0:
                candidates.append(current / total)

    for candidate in candidates:
        normalized = normalize_progress(candidate)
        if normalized is not None:
            return normalized

    return parse_progress_from_logs(_field(training, "logs"))


def training_update_from_replicate(training: Any) -> TrainingUpdated:
    """
    Translate a Replicate training object (or its webhook JSON body) into a notification.
    """
    training_id = _field(training, "id")
    if not training_id:
        raise ValueError("Replicate training payload must include an 'id'.")

    status = str(_field(training, "status") or "starting")
    output = _field(training, "output")
    model_version = _field(output, "version") if output is not None else None
    urls = _field(training, "urls")
    error = _field(training, "error")
    if status == "failed" and not error:
        error = "Training failed"

    return TrainingUpdated(
        training_id=str(training_id),
        status=status,
        progress=100.0 if status == "succeeded" else extract_training_progress(training),
        error=str(error) if error else None,
        model_version=str(model_version) if model_version else None,
        logs_url=_field(urls, "get") if urls is not None else None,
    )


class ReplicateTrainingProvider:
    """
    Dispatch LoRA trainings on Replicate and read their state back.

    Parameters
    ----------
    api_token:
        Replicate API token. Falls back to ``REPLICATE_API_TOKEN`` environment variable.
    username:
        Replicate account that owns the destination models. Falls back to
        ``REPLICATE_USERNAME``; without it the trained weights are not pushed to a model.
    trainer_version:
        Trainer in the ``owner/model:version`` format. Falls back to
        ``KIDBOOKAI_TRAINER_VERSION`` and then the Flux LoRA trainer.
    webhook_url:
        Optional webhook receiving training events. Falls back to
        ``REPLICATE_TRAINING_WEBHOOK_URL``.
    client:
        Optional pre-configured :class:`replicate.Client`. Mainly useful for testing.
    """

    def __init__(
        self,
        *,
        api_token: str | None = None,
        username: str | None = None,
        trainer_version: str | None = None,
        webhook_url: str | None = None,
        hardware: str = "gpu-t4",
        client: replicate.Client | None = None,
    ) -> None:
        self._api_token = api_token or os.getenv("REPLICATE_API_TOKEN")
        if not self._api_token and not client:
            raise ValueError(
                "Replicate API token is required. Set REPLICATE_API_TOKEN or pass api_token."
            )

        self._username = username or os.getenv("REPLICATE_USERNAME")
        self._trainer_version = (
            trainer_version or os.getenv("KIDBOOKAI_TRAINER_VERSION") or DEFAULT_TRAINER_VERSION
        )
        self._webhook_url = webhook_url or os.getenv("REPLICATE_TRAINING_WEBHOOK_URL")
        self._hardware = hardware
        self._client = client or replicate.Client(api_token=self._api_token)

    @property
    def trainer_version(self) -> str:
        """Return the trainer identifier currently used."""
        return self._trainer_version

    async def dispatch(self, request: TrainingRequest) -> str:
        return await asyncio.to_thread(self._dispatch_sync, request)

    async def fetch_update(self, training_id: str) -> TrainingUpdated:
        training = await asyncio.to_thread(self._client.trainings.get, training_id)
        return training_update_from_replicate(training)

    def _dispatch_sync(self, request: TrainingRequest) -> str:
        training_input: dict[str, Any] = {
            "input_images": request.archive_url,
            "trigger_word": request.trigger_word,
        }
        training_input.update(request.hyperparameters)

        create_kwargs: dict[str, Any] = {
            "version": self._trainer_version,
            "input": training_input,
        }

        if self._username:
            try:
                self._client.models.create(
                    owner=self._username,
                    name=request.model_name,
                    visibility="private",
                    hardware=self._hardware,
                    description=f"Fine-tuned Flux model for {request.user_name or 'automation reader'}",
                )
            except Exception as exc:
                raise RuntimeError(f"Failed to create model on Replicate: {exc}") from exc
            create_kwargs["destination"] = f"{self._username}/{request.model_name}"
        else:
            logger.warning("REPLICATE_USERNAME not set - training will not persist a model destination.")

        if self._webhook_url:
            create_kwargs["webhook"] = self._webhook_url
            create_kwargs["webhook_events_filter"] = list(TRAINING_WEBHOOK_EVENTS)

        training = self._client.trainings.create(**create_kwargs)
        logger.info(
            "Dispatched Replicate training %s for run %s (%d images).",
            training.id,
            request.run_id,
            request.image_count,
        )
        return str(training.id)

"""
Runtime settings for the automation orchestrator.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

DEFAULT_TRAINING_HYPERPARAMETERS: Mapping[str, Any] = {
    "steps": 1000,
    "lora_rank": 16,
    "batch_size": 1,
    "learning_rate": 0.0004,
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class AutomationSettings:
    """
    Configuration knobs for the automation pipeline.

    Attributes
    ----------
    max_training_images:
        Upper bound on photos taken from one start request; extra photos are ignored.
    training_hyperparameters:
        Values forwarded to the LoRA trainer (steps, rank, batch size, learning rate).
    dispatch_claim_ttl_seconds:
        Lifetime of a persisted storybook dispatch claim before another process may
        take it over.
    list_limit_default, list_limit_max:
        Defaults and upper bound for :meth:`AutomationOrchestrator.list_runs`.
    """

    max_training_images: int = 25
    training_hyperparameters: Mapping[str, Any] = field(
        default_factory=lambda: dict(DEFAULT_TRAINING_HYPERPARAMETERS)
    )
    dispatch_claim_ttl_seconds: float = 600.0
    list_limit_default: int = 20
    list_limit_max: int = 50

    def __post_init__(self) -> None:
        if self.max_training_images < 1:
            raise ValueError("max_training_images must be at least 1.")
        if self.dispatch_claim_ttl_seconds <= 0:
            raise ValueError("dispatch_claim_ttl_seconds must be positive.")

    @classmethod
    def from_env(cls, **overrides: Any) -> "AutomationSettings":
        """
        Resolve settings from explicit overrides, then ``KIDBOOKAI_*`` variables, then defaults.
        """
        hyperparameters = dict(DEFAULT_TRAINING_HYPERPARAMETERS)
        hyperparameters["steps"] = _env_int("KIDBOOKAI_TRAINING_STEPS", hyperparameters["steps"])
        hyperparameters["lora_rank"] = _env_int("KIDBOOKAI_TRAINING_LORA_RANK", hyperparameters["lora_rank"])
        hyperparameters["batch_size"] = _env_int("KIDBOOKAI_TRAINING_BATCH_SIZE", hyperparameters["batch_size"])
        hyperparameters["learning_rate"] = _env_float(
            "KIDBOOKAI_TRAINING_LEARNING_RATE", hyperparameters["learning_rate"]
        )

        values: dict[str, Any] = {
            "max_training_images": _env_int("KIDBOOKAI_MAX_TRAINING_IMAGES", 25),
            "training_hyperparameters": hyperparameters,
            "dispatch_claim_ttl_seconds": _env_float("KIDBOOKAI_DISPATCH_CLAIM_TTL", 600.0),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AutomationSettings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown automation settings: {', '.join(sorted(unknown))}.")

        values = dict(data)
        if "training_hyperparameters" in values:
            merged = dict(DEFAULT_TRAINING_HYPERPARAMETERS)
            merged.update(values["training_hyperparameters"] or {})
            values["training_hyperparameters"] = merged
        return cls.from_env(**values)

    @classmethod
    def from_yaml(cls, source: str | Path) -> "AutomationSettings":
        path = Path(source)
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, Mapping):
            raise ValueError("Automation settings YAML must deserialize to a mapping.")
        return cls.from_mapping(data)

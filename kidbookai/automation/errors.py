"""
Exception hierarchy raised by the automation orchestrator.
"""

from __future__ import annotations


class AutomationError(RuntimeError):
    """Base class for automation failures."""


class AutomationValidationError(AutomationError, ValueError):
    """
    Raised when a start request is rejected before any run is persisted.
    """


class StageFailure(AutomationError):
    """
    A stage raised a fatal error and the run has been (or will be) marked failed.
    """

    def __init__(self, message: str, *, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


class PhotoRejectedError(StageFailure):
    """The evaluator rejected a photo and no override was supplied for it."""

    def __init__(self, file_name: str, *, verdict: str | None = None) -> None:
        super().__init__(
            f'Image "{file_name}" rejected by evaluator. '
            "Enable override if you still want to include it.",
            stage="uploading_images",
        )
        self.file_name = file_name
        self.verdict = verdict


class InvalidTransitionError(AutomationError):
    """Raised when a run is asked to move along an edge missing from the state graph."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move automation run from '{current}' to '{target}'.")
        self.current = current
        self.target = target

"""
Progress weighting for automation runs.

Training dominates wall-clock time, so it also dominates the visible progress bar even
though it is only one of four stages.
"""

from __future__ import annotations

from typing import Any

from kidbookai.integrations.contracts import clamp_percent

from .models import RunStatus

STATUS_CHECKPOINTS: dict[RunStatus, int] = {
    RunStatus.CREATING_USER: 5,
    RunStatus.UPLOADING_IMAGES: 15,
    RunStatus.TRAINING: 20,
    RunStatus.STORYBOOK_PENDING: 60,
    RunStatus.STORYBOOK: 65,
    RunStatus.COMPLETED: 100,
}

# Floor reported for a failed run: the checkpoint reached once training is under way.
FAILED_FLOOR = 40


def compute_run_progress(
    status: RunStatus | str,
    training_progress: Any = 0,
    storybook_progress: Any = 0,
) -> int:
    """
    Map a run stage and the providers' sub-progress onto a single 0-100 score.
    """
    status = RunStatus(status)
    training = clamp_percent(training_progress)
    storybook = clamp_percent(storybook_progress)

    match status:
        case RunStatus.CREATING_USER | RunStatus.UPLOADING_IMAGES | RunStatus.COMPLETED:
            return STATUS_CHECKPOINTS[status]
        case RunStatus.TRAINING:
            return max(STATUS_CHECKPOINTS[RunStatus.UPLOADING_IMAGES], round(20 + training * 0.4))
        case RunStatus.STORYBOOK_PENDING:
            return max(STATUS_CHECKPOINTS[status], round(60 + training * 0.2))
        case RunStatus.STORYBOOK:
            return max(STATUS_CHECKPOINTS[status], round(65 + storybook * 0.35))
        case RunStatus.FAILED:
            return max(FAILED_FLOOR, round(training))
    raise ValueError(f"Unsupported run status: {status!r}")


def next_run_progress(
    previous: int,
    status: RunStatus,
    training_progress: Any = 0,
    storybook_progress: Any = 0,
) -> int:
    """
    Progress to store for a run moving to ``status``: never lower than ``previous``.
    """
    computed = compute_run_progress(status, training_progress, storybook_progress)
    return min(100, max(int(previous or 0), computed))

"""
Forward-only state graph for automation runs.
"""

from __future__ import annotations

from .errors import InvalidTransitionError
from .models import RunStatus

_FORWARD_EDGES: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.CREATING_USER: frozenset({RunStatus.UPLOADING_IMAGES}),
    RunStatus.UPLOADING_IMAGES: frozenset({RunStatus.TRAINING}),
    RunStatus.TRAINING: frozenset({RunStatus.STORYBOOK_PENDING, RunStatus.STORYBOOK}),
    RunStatus.STORYBOOK_PENDING: frozenset({RunStatus.STORYBOOK}),
    RunStatus.STORYBOOK: frozenset({RunStatus.COMPLETED}),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    """
    Return True when ``current -> target`` is an edge of the graph or a self-loop on a
    non-terminal stage.
    """
    if current.is_terminal:
        return False
    if target is current:
        return True
    if target is RunStatus.FAILED:
        return True
    return target in _FORWARD_EDGES[current]


def ensure_transition(current: RunStatus, target: RunStatus) -> RunStatus:
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    return target


def resolve_transition(current: RunStatus, candidate: RunStatus) -> RunStatus:
    """
    Status a run should hold after a notification suggests ``candidate``.

    Notifications may arrive late or out of order; anything that is not a legal
    forward move leaves the current status in place.
    """
    if can_transition(current, candidate):
        return candidate
    return current

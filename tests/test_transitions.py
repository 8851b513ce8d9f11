import pytest

from kidbookai.automation import InvalidTransitionError, RunStatus, can_transition
from kidbookai.automation.transitions import ensure_transition, resolve_transition


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (RunStatus.CREATING_USER, RunStatus.UPLOADING_IMAGES),
        (RunStatus.UPLOADING_IMAGES, RunStatus.TRAINING),
        (RunStatus.TRAINING, RunStatus.STORYBOOK_PENDING),
        (RunStatus.TRAINING, RunStatus.STORYBOOK),
        (RunStatus.STORYBOOK_PENDING, RunStatus.STORYBOOK),
        (RunStatus.STORYBOOK, RunStatus.COMPLETED),
        (RunStatus.TRAINING, RunStatus.TRAINING),
        (RunStatus.CREATING_USER, RunStatus.FAILED),
        (RunStatus.STORYBOOK, RunStatus.FAILED),
    ],
)
def test_allowed_transitions(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize(
    ("current", "target"),
    [
        (RunStatus.TRAINING, RunStatus.UPLOADING_IMAGES),
        (RunStatus.STORYBOOK, RunStatus.STORYBOOK_PENDING),
        (RunStatus.CREATING_USER, RunStatus.TRAINING),
        (RunStatus.TRAINING, RunStatus.COMPLETED),
        (RunStatus.COMPLETED, RunStatus.FAILED),
        (RunStatus.FAILED, RunStatus.TRAINING),
        (RunStatus.COMPLETED, RunStatus.COMPLETED),
    ],
)
def test_rejected_transitions(current, target):
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(current, target)


def test_resolve_transition_ignores_out_of_order_candidates():
    assert resolve_transition(RunStatus.STORYBOOK, RunStatus.TRAINING) is RunStatus.STORYBOOK
    assert resolve_transition(RunStatus.STORYBOOK, RunStatus.STORYBOOK_PENDING) is RunStatus.STORYBOOK
    assert resolve_transition(RunStatus.COMPLETED, RunStatus.FAILED) is RunStatus.COMPLETED
    assert resolve_transition(RunStatus.TRAINING, RunStatus.STORYBOOK_PENDING) is RunStatus.STORYBOOK_PENDING

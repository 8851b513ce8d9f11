import pytest

from kidbookai.automation import RunStatus, compute_run_progress, next_run_progress


@pytest.mark.parametrize(
    ("status", "training", "storybook", "expected"),
    [
        (RunStatus.CREATING_USER, 0, 0, 5),
        (RunStatus.UPLOADING_IMAGES, 0, 0, 15),
        (RunStatus.TRAINING, 0, 0, 20),
        (RunStatus.TRAINING, 50, 0, 40),
        (RunStatus.TRAINING, 100, 0, 60),
        (RunStatus.STORYBOOK_PENDING, 100, 0, 80),
        (RunStatus.STORYBOOK_PENDING, 0, 0, 60),
        (RunStatus.STORYBOOK, 100, 0, 65),
        (RunStatus.STORYBOOK, 100, 100, 100),
        (RunStatus.COMPLETED, 0, 0, 100),
        (RunStatus.FAILED, 10, 0, 40),
        (RunStatus.FAILED, 75, 0, 75),
    ],
)
def test_compute_run_progress(status, training, storybook, expected):
    assert compute_run_progress(status, training, storybook) == expected


def test_compute_run_progress_accepts_status_strings_and_bad_input():
    assert compute_run_progress("training", "not-a-number") == 20
    assert compute_run_progress("training", 250) == 60
    assert compute_run_progress("training", -5) == 20


def test_compute_run_progress_rejects_unknown_status():
    with pytest.raises(ValueError):
        compute_run_progress("paused")


def test_next_run_progress_never_decreases():
    # Entering storybook after a strong training phase must not pull the bar back.
    assert next_run_progress(80, RunStatus.STORYBOOK, 100, 0) == 80
    assert next_run_progress(40, RunStatus.TRAINING, 10) == 40
    assert next_run_progress(20, RunStatus.TRAINING, 60) == 44


def test_next_run_progress_on_failure_keeps_what_was_reached():
    assert next_run_progress(20, RunStatus.FAILED, 0) == 40
    assert next_run_progress(65, RunStatus.FAILED, 100) == 100
    assert next_run_progress(55, RunStatus.FAILED, 30) == 55

import pytest
import yaml

from kidbookai.automation import AutomationRun, RunEvent, RunStatus, StorybookSnapshot, TrainingSnapshot
from kidbookai.integrations import AssemblyUpdated, TrainingUpdated, UserDetails


def test_training_snapshot_keeps_model_reference_between_updates():
    first = TrainingSnapshot.from_update(
        TrainingUpdated(training_id="t-1", status="processing", progress=42.5, model_name="laura-1", logs_url="https://logs")
    )
    second = TrainingSnapshot.from_update(
        TrainingUpdated(training_id="t-1", status="succeeded", model_version="owner/laura-1:abc"),
        first,
    )

    assert second.succeeded
    assert second.progress == 100.0
    assert second.model_name == "laura-1"
    assert second.logs_url == "https://logs"
    assert second.model_version == "owner/laura-1:abc"


def test_snapshot_failure_flags_cover_canceled_jobs():
    canceled = StorybookSnapshot.from_update(AssemblyUpdated(job_id="j-1", status="canceled", progress=None))
    assert canceled.failed
    assert canceled.progress == 0.0


def test_run_yaml_document_round_trips():
    run = AutomationRun(
        id="run-1",
        book_id="book-1",
        status=RunStatus.STORYBOOK,
        progress=72,
        user_id="user-1",
        training_id="t-1",
        storybook_job_id="j-1",
        training_snapshot=TrainingSnapshot(id="t-1", status="succeeded", progress=100.0, model_version="v1"),
        storybook_snapshot=StorybookSnapshot(id="j-1", status="processing", progress=20.0, pdf_asset={"url": "x"}),
        steps={"uploads": "completed"},
        events=[RunEvent("created", "Automation run created", {"book_id": "book-1"})],
    )

    document = yaml.safe_load(run.to_yaml())
    restored = AutomationRun.from_mapping(document)

    assert document["status"] == "storybook"
    assert restored == run


@pytest.mark.parametrize(
    "payload",
    [
        {"book_id": "book-1"},
        {"id": "run-1"},
        {"id": "run-1", "book_id": "book-1", "status": "paused"},
    ],
)
def test_run_from_mapping_rejects_bad_payloads(payload):
    with pytest.raises(ValueError):
        AutomationRun.from_mapping(payload)


def test_user_details_validation():
    details = UserDetails.from_mapping(
        {
            "name": " Laura ",
            "age": "6",
            "gender": "girl",
            "email": "parent@example.com",
            "countryCode": "+972",
            "phoneNumber": "555-0100",
        }
    )
    assert details.name == "Laura"
    assert details.age == 6
    assert details.country_code == "+972"

    with pytest.raises(ValueError, match="phone_number"):
        UserDetails.from_mapping({"name": "Laura", "age": 6, "gender": "girl", "email": "a@b.c", "country_code": "+1"})
    with pytest.raises(ValueError, match="age"):
        UserDetails.from_mapping(
            {"name": "Laura", "age": "six", "gender": "girl", "email": "a@b.c", "country_code": "+1", "phone_number": "1"}
        )

from datetime import datetime, timedelta, timezone

import pytest

from kidbookai.automation import (
    AutomationRun,
    InMemoryRunStore,
    InvalidTransitionError,
    RunEvent,
    RunStatus,
    TrainingSnapshot,
    YamlRunStore,
)

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def make_run(run_id="run-1", **kwargs):
    return AutomationRun(id=run_id, book_id="book-1", **kwargs)


@pytest.mark.anyio
async def test_update_patches_fields_and_appends_events():
    store = InMemoryRunStore()
    await store.create(make_run(events=[RunEvent("created")]))

    updated = await store.update(
        "run-1",
        status=RunStatus.UPLOADING_IMAGES,
        user_id="user-1",
        progress=15,
        events=[RunEvent("user_created")],
    )

    assert updated.status is RunStatus.UPLOADING_IMAGES
    assert updated.user_id == "user-1"
    assert updated.event_types() == ["created", "user_created"]
    assert updated.updated_at >= updated.created_at


@pytest.mark.anyio
async def test_returned_runs_are_copies():
    store = InMemoryRunStore()
    created = await store.create(make_run())
    created.progress = 99
    created.events.append(RunEvent("tampered"))

    stored = await store.get("run-1")
    assert stored.progress == 0
    assert stored.events == []


@pytest.mark.anyio
async def test_update_rejects_illegal_status_and_immutable_fields():
    store = InMemoryRunStore()
    await store.create(make_run(status=RunStatus.TRAINING))

    with pytest.raises(InvalidTransitionError):
        await store.update("run-1", status=RunStatus.UPLOADING_IMAGES)
    with pytest.raises(ValueError):
        await store.update("run-1", book_id="other")
    with pytest.raises(ValueError):
        await store.update("run-1", created_at=NOW)
    with pytest.raises(ValueError):
        await store.update("run-1", unknown_field=1)

    assert await store.update("missing", progress=10) is None


@pytest.mark.anyio
async def test_create_rejects_duplicate_ids():
    store = InMemoryRunStore()
    await store.create(make_run())
    with pytest.raises(ValueError):
        await store.create(make_run())


@pytest.mark.anyio
async def test_lookup_by_external_ids_and_recent_listing():
    store = InMemoryRunStore()
    await store.create(make_run("old", created_at=NOW - timedelta(hours=1), training_id="training-old"))
    await store.create(make_run("new", created_at=NOW, storybook_job_id="job-new"))

    assert (await store.find_by_training_id("training-old")).id == "old"
    assert (await store.find_by_storybook_job_id("job-new")).id == "new"
    assert await store.find_by_training_id("unknown") is None
    assert [run.id for run in await store.list_recent(10)] == ["new", "old"]
    assert [run.id for run in await store.list_recent(1)] == ["new"]


@pytest.mark.anyio
async def test_storybook_dispatch_claim_honours_ttl():
    store = InMemoryRunStore()
    await store.create(make_run(status=RunStatus.STORYBOOK_PENDING))
    ttl = timedelta(minutes=10)

    assert await store.claim_storybook_dispatch("run-1", NOW, ttl)
    assert not await store.claim_storybook_dispatch("run-1", NOW + timedelta(minutes=1), ttl)
    # A claim older than the TTL belongs to a dead process and can be taken over.
    assert await store.claim_storybook_dispatch("run-1", NOW + timedelta(minutes=11), ttl)

    await store.release_storybook_dispatch("run-1")
    assert (await store.get("run-1")).storybook_dispatch_claimed_at is None

    await store.update("run-1", storybook_job_id="job-1")
    assert not await store.claim_storybook_dispatch("run-1", NOW + timedelta(hours=1), ttl)


@pytest.mark.anyio
async def test_yaml_store_survives_reload(tmp_path):
    path = tmp_path / "runs.yaml"
    store = YamlRunStore(path)
    await store.create(make_run(status=RunStatus.TRAINING, progress=20, events=[RunEvent("created", "Run created")]))
    await store.update(
        "run-1",
        training_id="training-1",
        training_snapshot=TrainingSnapshot(id="training-1", status="processing", progress=35.0, model_name="laura-1"),
        events=[RunEvent("training_started", metadata={"training_id": "training-1"})],
    )

    reloaded = YamlRunStore(path)
    run = await reloaded.get("run-1")

    assert run.status is RunStatus.TRAINING
    assert run.progress == 20
    assert run.training_snapshot.progress == 35.0
    assert run.training_snapshot.model_name == "laura-1"
    assert run.event_types() == ["created", "training_started"]
    assert run.events[1].metadata == {"training_id": "training-1"}
    assert (await reloaded.find_by_training_id("training-1")).id == "run-1"

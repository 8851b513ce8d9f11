import asyncio

import pytest

from kidbookai.automation import RunStatus
from kidbookai.integrations import AssemblyUpdated, TrainingUpdated

BOOK_ID = "book-1"


async def start_training(orchestrator, reader, photos):
    run = await orchestrator.start_run(BOOK_ID, reader, photos)
    return run.training_id


async def publish_training(orchestrator, training_id, status, **kwargs):
    await orchestrator.hub.publish_training_update(TrainingUpdated(training_id=training_id, status=status, **kwargs))


async def publish_assembly(orchestrator, job_id, status, **kwargs):
    await orchestrator.hub.publish_assembly_update(AssemblyUpdated(job_id=job_id, status=status, **kwargs))


async def only_run(orchestrator):
    [run] = await orchestrator.list_runs()
    return run


@pytest.mark.anyio
async def test_training_progress_moves_the_bar(orchestrator, reader, photos):
    training_id = await start_training(orchestrator, reader, photos)

    await publish_training(orchestrator, training_id, "processing", progress=50)
    run = await only_run(orchestrator)
    assert run.status is RunStatus.TRAINING
    assert run.progress == 40
    assert run.training_snapshot.progress == 50

    # A late, lower reading refreshes the snapshot but never lowers the run.
    await publish_training(orchestrator, training_id, "processing", progress=30)
    run = await only_run(orchestrator)
    assert run.training_snapshot.progress == 30
    assert run.progress == 40
    assert "training_completed" not in run.event_types()


@pytest.mark.anyio
async def test_training_success_dispatches_storybook(orchestrator, reader, photos, assembly_provider):
    training_id = await start_training(orchestrator, reader, photos)

    await publish_training(orchestrator, training_id, "succeeded", model_version="owner/laura:v1")

    run = await only_run(orchestrator)
    assert run.status is RunStatus.STORYBOOK
    assert run.progress >= 60
    assert run.storybook_job_id == "job-1"
    assert run.storybook_snapshot.status == "queued"
    assert run.training_snapshot.model_version == "owner/laura:v1"
    assert run.training_snapshot.model_name.startswith("laura-")
    assert run.storybook_dispatch_claimed_at is None
    assert run.event_types()[-2:] == ["training_completed", "storybook_started"]

    [request] = assembly_provider.requests
    assert request.book_id == BOOK_ID
    assert request.training_id == training_id
    assert request.user_id == run.user_id
    assert request.reader_id == run.user_id
    assert request.reader_name == "Laura"
    assert request.title == "Space Adventure Storybook"


@pytest.mark.anyio
async def test_storybook_success_completes_run(orchestrator, reader, photos):
    training_id = await start_training(orchestrator, reader, photos)
    await publish_training(orchestrator, training_id, "succeeded")

    await publish_assembly(orchestrator, "job-1", "processing", progress=50, estimated_seconds_remaining=90)
    run = await only_run(orchestrator)
    assert run.status is RunStatus.STORYBOOK
    assert run.progress >= 80
    assert run.storybook_snapshot.estimated_seconds_remaining == 90

    pdf = {"url": "https://cdn.example.com/laura.pdf", "pages": 12}
    await publish_assembly(orchestrator, "job-1", "succeeded", pdf_asset=pdf)
    run = await only_run(orchestrator)
    assert run.status is RunStatus.COMPLETED
    assert run.progress == 100
    assert run.storybook_snapshot.pdf_asset == pdf
    assert run.events[-1].type == "storybook_completed"
    assert run.events[-1].metadata == {"pdf_asset": pdf}


@pytest.mark.anyio
async def test_concurrent_success_notifications_dispatch_once(orchestrator, reader, photos, assembly_provider):
    training_id = await start_training(orchestrator, reader, photos)

    await asyncio.gather(
        publish_training(orchestrator, training_id, "succeeded"),
        publish_training(orchestrator, training_id, "succeeded"),
    )

    run = await only_run(orchestrator)
    assert len(assembly_provider.requests) == 1
    assert run.status is RunStatus.STORYBOOK
    assert run.event_types().count("training_completed") == 1
    assert run.event_types().count("storybook_started") == 1


@pytest.mark.anyio
async def test_redelivered_notification_is_idempotent(orchestrator, reader, photos, assembly_provider):
    training_id = await start_training(orchestrator, reader, photos)
    await publish_training(orchestrator, training_id, "succeeded")
    before = await only_run(orchestrator)

    await publish_training(orchestrator, training_id, "succeeded")

    after = await only_run(orchestrator)
    assert after.status is before.status
    assert after.progress == before.progress
    assert after.event_types() == before.event_types()
    assert len(assembly_provider.requests) == 1


@pytest.mark.anyio
async def test_training_failure_freezes_progress(orchestrator, reader, photos, assembly_provider):
    training_id = await start_training(orchestrator, reader, photos)
    await publish_training(orchestrator, training_id, "processing", progress=50)

    await publish_training(orchestrator, training_id, "failed", progress=55, error="CUDA out of memory")
    run = await only_run(orchestrator)
    assert run.status is RunStatus.FAILED
    assert run.error == "CUDA out of memory"
    assert run.progress == 55
    assert run.events[-1].type == "training_failed"

    await publish_training(orchestrator, training_id, "processing", progress=80)
    await publish_training(orchestrator, training_id, "succeeded")
    run = await only_run(orchestrator)
    assert run.status is RunStatus.FAILED
    assert run.progress == 55
    assert run.events[-1].type == "training_failed"
    assert assembly_provider.requests == []


@pytest.mark.anyio
async def test_storybook_failure_keeps_trained_model(orchestrator, reader, photos):
    training_id = await start_training(orchestrator, reader, photos)
    await publish_training(orchestrator, training_id, "succeeded", model_version="owner/laura:v1")

    await publish_assembly(orchestrator, "job-1", "failed", error="renderer crashed")

    run = await only_run(orchestrator)
    assert run.status is RunStatus.FAILED
    assert run.error == "renderer crashed"
    assert run.training_snapshot.succeeded
    assert run.training_snapshot.model_version == "owner/laura:v1"
    assert run.storybook_snapshot.failed
    assert run.events[-1].type == "storybook_failed"

    frozen = run.progress
    await publish_assembly(orchestrator, "job-1", "succeeded")
    run = await only_run(orchestrator)
    assert run.status is RunStatus.FAILED
    assert run.progress == frozen


@pytest.mark.anyio
async def test_storybook_dispatch_error_fails_run(orchestrator, reader, photos, assembly_provider):
    assembly_provider.error = RuntimeError("assembly service unavailable")
    training_id = await start_training(orchestrator, reader, photos)

    await publish_training(orchestrator, training_id, "succeeded")

    run = await only_run(orchestrator)
    assert run.status is RunStatus.FAILED
    assert run.error == "assembly service unavailable"
    assert run.events[-1].type == "error"
    assert run.events[-1].message == "Storybook automation failed to start"
    assert run.training_snapshot.succeeded
    assert run.storybook_job_id is None
    assert run.storybook_dispatch_claimed_at is None


@pytest.mark.anyio
async def test_notifications_for_unknown_jobs_are_ignored(orchestrator, reader, photos):
    await start_training(orchestrator, reader, photos)
    before = await only_run(orchestrator)

    await publish_training(orchestrator, "someone-elses-training", "succeeded")
    await publish_assembly(orchestrator, "someone-elses-job", "succeeded")

    after = await only_run(orchestrator)
    assert after.status is before.status
    assert after.event_types() == before.event_types()


@pytest.mark.anyio
async def test_handler_errors_are_logged_not_raised(orchestrator, reader, photos, run_store, monkeypatch, caplog):
    training_id = await start_training(orchestrator, reader, photos)

    async def broken_lookup(_training_id):
        raise RuntimeError("store offline")

    monkeypatch.setattr(run_store, "find_by_training_id", broken_lookup)

    await publish_training(orchestrator, training_id, "succeeded")

    assert f"Training update handler failed for training {training_id}." in caplog.text
    run = await only_run(orchestrator)
    assert run.status is RunStatus.TRAINING

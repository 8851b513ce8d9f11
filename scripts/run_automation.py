"""
CLI example that drives a single automation run from reader profile to storybook.

Usage:
    python scripts/run_automation.py \
        --profile reader_profile.yaml \
        --photo example_images/laura_1.jpg \
        --photo example_images/laura_2.jpg \
        --book-id space-adventure \
        --output automation_run.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

from tqdm.auto import tqdm

# Ensure project root is on the Python path when running as a script.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from kidbookai.automation import (
    AutomationOrchestrator,
    AutomationRun,
    AutomationSettings,
    AutomationValidationError,
    JobStatus,
    StageFailure,
    YamlRunStore,
)
from kidbookai.integrations import Book, InMemoryBookStore, InMemoryUserStore, PhotoUpload
from kidbookai.integrations.evaluator import LiteLLMPhotoEvaluator
from kidbookai.integrations.replicate_training import ReplicateTrainingProvider
from kidbookai.integrations.s3_storage import S3ObjectStorage
from kidbookai.integrations.storybook_service import HttpAssemblyProvider


class RunProgressBar:
    """
    Mirrors broadcaster updates for one run onto a tqdm bar.
    """

    def __init__(self) -> None:
        self._bar = tqdm(total=100, desc="Automation", unit="%")
        self._run_id: str | None = None
        self._last_status: str | None = None

    def follow(self, run_id: str) -> None:
        self._run_id = run_id

    def __call__(self, run: AutomationRun) -> None:
        if self._run_id is not None and run.id != self._run_id:
            return
        if run.status.value != self._last_status:
            self._last_status = run.status.value
            tqdm.write(f"Run {run.id}: {run.status.value}")
        self._bar.set_description(run.status.value)
        self._bar.n = run.progress
        self._bar.refresh()

    def close(self) -> None:
        self._bar.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the KidBookAI automation saga for one reader.")
    parser.add_argument("--profile", required=True, help="Path to the reader profile YAML/JSON file.")
    parser.add_argument(
        "--photo",
        action="append",
        default=[],
        required=True,
        help="Reference photo path (repeatable).",
    )
    parser.add_argument(
        "--override",
        action="append",
        type=int,
        default=[],
        metavar="INDEX",
        help="Zero-based index of a photo to keep even if the evaluator rejects it (repeatable).",
    )
    parser.add_argument("--book-id", required=True, help="Identifier of the book to personalise.")
    parser.add_argument("--book-name", default=None, help="Display name of the book (defaults to the id).")
    parser.add_argument("--settings", default=None, help="Optional automation settings YAML file.")
    parser.add_argument(
        "--run-store",
        default=None,
        help="Optional YAML file persisting run state between invocations.",
    )
    parser.add_argument(
        "--output",
        default="automation_run.yaml",
        help="Output YAML file receiving the final run document.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=15.0,
        help="Seconds between provider status polls.",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def load_profile_mapping(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif suffix == ".json":
        data = json.loads(text)
    else:
        raise ValueError("Unsupported profile file format. Use YAML or JSON.")

    if not isinstance(data, Dict):
        raise ValueError("Profile file must deserialize to a mapping.")
    return data


def build_overrides(indices: list[int], photo_count: int) -> list[bool]:
    overrides = [False] * photo_count
    for index in indices:
        if not 0 <= index < photo_count:
            raise ValueError(f"--override {index} does not match any of the {photo_count} photos.")
        overrides[index] = True
    return overrides


async def follow_run(
    orchestrator: AutomationOrchestrator,
    training_provider: ReplicateTrainingProvider,
    assembly_provider: HttpAssemblyProvider,
    run_id: str,
    poll_interval: float,
) -> AutomationRun:
    """Poll the providers and feed their state to the hub until the run is terminal."""
    while True:
        run = await orchestrator.get_run(run_id)
        if run is None:
            raise RuntimeError(f"Run {run_id} disappeared while polling.")
        if run.is_terminal:
            return run

        await asyncio.sleep(poll_interval)

        if run.storybook_job_id:
            update = await assembly_provider.fetch_update(run.storybook_job_id)
            await orchestrator.hub.publish_assembly_update(update)
        elif run.training_id:
            snapshot = run.training_snapshot
            if snapshot is None or snapshot.status not in JobStatus.TERMINAL:
                update = await training_provider.fetch_update(run.training_id)
                await orchestrator.hub.publish_training_update(update)


async def run_automation(args: argparse.Namespace) -> AutomationRun:
    profile = load_profile_mapping(Path(args.profile))
    photos = [PhotoUpload.from_path(path) for path in args.photo]
    overrides = build_overrides(args.override, len(photos))

    settings = (
        AutomationSettings.from_yaml(args.settings) if args.settings else AutomationSettings.from_env()
    )
    training_provider = ReplicateTrainingProvider()
    assembly_provider = HttpAssemblyProvider()
    orchestrator = AutomationOrchestrator(
        users=InMemoryUserStore(),
        books=InMemoryBookStore([Book(id=args.book_id, name=args.book_name or args.book_id)]),
        evaluator=LiteLLMPhotoEvaluator(),
        storage=S3ObjectStorage(),
        training_provider=training_provider,
        assembly_provider=assembly_provider,
        store=YamlRunStore(args.run_store) if args.run_store else None,
        settings=settings,
    )

    tracker = RunProgressBar()
    unsubscribe = orchestrator.subscribe(tracker)
    try:
        run = await orchestrator.start_run(args.book_id, profile, photos, overrides)
        tracker.follow(run.id)
        tracker(run)
        return await follow_run(orchestrator, training_provider, assembly_provider, run.id, args.poll_interval)
    finally:
        unsubscribe()
        tracker.close()
        orchestrator.stop()


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        run = asyncio.run(run_automation(args))
    except AutomationValidationError as exc:
        print(f"Invalid request: {exc}", file=sys.stderr)
        return 2
    except StageFailure as exc:
        print(f"Automation failed during {exc.stage}: {exc}", file=sys.stderr)
        return 1

    output_path = Path(args.output)
    output_path.write_text(run.to_yaml(), encoding="utf-8")
    print(f"Run {run.id} finished as {run.status.value}; saved to {output_path}")
    return 0 if run.status.value == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())

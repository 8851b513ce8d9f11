"""
Persistence for automation runs.

Every mutation is a partial patch applied atomically to one run, so concurrent writers
(the reconciler and the synchronous stages) never overwrite each other's fields.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml

from .models import AutomationRun, RunEvent, RunStatus, utcnow
from .transitions import ensure_transition

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = frozenset({"id", "book_id", "events", "created_at"})
_PATCHABLE_FIELDS = frozenset(f.name for f in fields(AutomationRun)) - _IMMUTABLE_FIELDS


class RunStore(Protocol):
    async def create(self, run: AutomationRun) -> AutomationRun: ...

    async def get(self, run_id: str) -> AutomationRun | None: ...

    async def list_recent(self, limit: int) -> list[AutomationRun]: ...

    async def find_by_training_id(self, training_id: str) -> AutomationRun | None: ...

    async def find_by_storybook_job_id(self, job_id: str) -> AutomationRun | None: ...

    async def update(
        self,
        run_id: str,
        *,
        events: Iterable[RunEvent] = (),
        **changes: Any,
    ) -> AutomationRun | None: ...

    async def claim_storybook_dispatch(self, run_id: str, now: datetime, ttl: timedelta) -> bool: ...

    async def release_storybook_dispatch(self, run_id: str) -> None: ...


class InMemoryRunStore:
    """
    Process-local run store. Returned runs are copies; mutate through :meth:`update`.
    """

    def __init__(self, runs: Iterable[AutomationRun] = ()) -> None:
        self._runs: dict[str, AutomationRun] = {run.id: run for run in runs}
        self._lock = asyncio.Lock()

    async def create(self, run: AutomationRun) -> AutomationRun:
        async with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Automation run {run.id} already exists.")
            self._runs[run.id] = copy.deepcopy(run)
            await self._persist()
            return copy.deepcopy(run)

    async def get(self, run_id: str) -> AutomationRun | None:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    async def list_recent(self, limit: int) -> list[AutomationRun]:
        ordered = sorted(self._runs.values(), key=lambda run: run.created_at, reverse=True)
        return [copy.deepcopy(run) for run in ordered[: max(0, limit)]]

    async def find_by_training_id(self, training_id: str) -> AutomationRun | None:
        return self._find_one(lambda run: run.training_id == training_id)

    async def find_by_storybook_job_id(self, job_id: str) -> AutomationRun | None:
        return self._find_one(lambda run: run.storybook_job_id == job_id)

    async def update(
        self,
        run_id: str,
        *,
        events: Iterable[RunEvent] = (),
        **changes: Any,
    ) -> AutomationRun | None:
        unknown = set(changes) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch automation run fields: {', '.join(sorted(unknown))}.")

        async with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                return None

            if "status" in changes:
                target = RunStatus(changes["status"])
                if target is not run.status:
                    ensure_transition(run.status, target)
                changes["status"] = target

            for name, value in changes.items():
                setattr(run, name, copy.deepcopy(value))
            run.events.extend(events)
            run.updated_at = utcnow()
            await self._persist()
            return copy.deepcopy(run)

    async def claim_storybook_dispatch(self, run_id: str, now: datetime, ttl: timedelta) -> bool:
        """
        Atomically claim the right to dispatch the storybook job for ``run_id``.

        The claim fails when a job is already attached or another claim is younger than
        ``ttl``; stale claims (for example from a crashed process) are taken over.
        """
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.storybook_job_id is not None:
                return False
            claimed_at = run.storybook_dispatch_claimed_at
            if claimed_at is not None and now - claimed_at < ttl:
                return False
            run.storybook_dispatch_claimed_at = now
            await self._persist()
            return True

    async def release_storybook_dispatch(self, run_id: str) -> None:
        async with self._lock:
            run = self._runs.get(run_id)
            if run is None or run.storybook_dispatch_claimed_at is None:
                return
            run.storybook_dispatch_claimed_at = None
            await self._persist()

    def _find_one(self, predicate) -> AutomationRun | None:
        for run in self._runs.values():
            if predicate(run):
                return copy.deepcopy(run)
        return None

    async def _persist(self) -> None:
        """Hook for durable subclasses; called with the store lock held."""


class YamlRunStore(InMemoryRunStore):
    """
    Run store that mirrors every mutation into a YAML document on disk.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path).expanduser()
        super().__init__(self._load(self._path))

    @property
    def path(self) -> Path:
        return self._path

    @staticmethod
    def _load(path: Path) -> list[AutomationRun]:
        if not path.exists():
            return []
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError("Run store YAML must deserialize to a mapping.")
        runs = [AutomationRun.from_mapping(entry) for entry in data.get("runs") or []]
        logger.info("Loaded %d automation runs from %s", len(runs), path)
        return runs

    async def _persist(self) -> None:
        document = {"runs": [run.to_dict() for run in self._runs.values()]}
        text = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
        await asyncio.to_thread(self._write, text)

    def _write(self, text: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        tmp_path.replace(self._path)

"""
In-process fan-out channels for run updates and provider notifications.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import AsyncIterator, Awaitable, Callable, Generic, TypeVar

from kidbookai.integrations.contracts import AssemblyUpdated, TrainingUpdated

from .models import AutomationRun

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], "Awaitable[None] | None"]
Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """
    Named fan-out channel. Listeners may be plain callables or coroutine functions.

    A failing listener is logged and skipped; it never prevents delivery to the others
    and never propagates to the publisher.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._listeners: list[Listener[T]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener[T]) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener on channel '%s' failed.", self._name)


class RunBroadcaster(EventChannel[AutomationRun]):
    """
    Pushes the full current run to observers on every mutation.

    There is no replay: an observer that reconnects should re-read the run to resync.
    """

    def __init__(self) -> None:
        super().__init__("automation-update")

    async def stream(self, *, max_pending: int = 100) -> AsyncIterator[AutomationRun]:
        """
        Yield run updates as they are published until the consumer stops iterating.

        When the consumer falls more than ``max_pending`` updates behind, the oldest
        pending update is discarded; the consumer resyncs by re-reading the run.
        """
        queue: asyncio.Queue[AutomationRun] = asyncio.Queue(maxsize=max_pending)

        def _enqueue(run: AutomationRun) -> None:
            if queue.full():
                queue.get_nowait()
                logger.warning("Automation stream consumer is lagging; dropped an update.")
            queue.put_nowait(run)

        unsubscribe = self.subscribe(_enqueue)
        try:
            while True:
                yield await queue.get()
        finally:
            unsubscribe()


class NotificationHub:
    """
    Entry point for asynchronous provider notifications.

    Webhook handlers and pollers publish here; the reconciler subscribes once.
    """

    def __init__(self) -> None:
        self.training: EventChannel[TrainingUpdated] = EventChannel("training-update")
        self.assembly: EventChannel[AssemblyUpdated] = EventChannel("storybook-update")

    async def publish_training_update(self, update: TrainingUpdated) -> None:
        await self.training.publish(update)

    async def publish_assembly_update(self, update: AssemblyUpdated) -> None:
        await self.assembly.publish(update)

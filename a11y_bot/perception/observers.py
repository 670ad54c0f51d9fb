"""Subscription handles and debounced event delivery."""

import asyncio
import logging
from typing import Callable, Generic, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

Unsubscribe = Callable[[], None]


class ListenerRegistry(Generic[T]):
    """A list of callbacks; adding one returns the function that removes it."""

    def __init__(self, name: str):
        self.name = name
        self._listeners: list[Callable[[T], None]] = []

    def add(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def emit(self, value: T) -> None:
        for callback in list(self._listeners):
            try:
                callback(value)
            except Exception as e:
                # One broken listener must not starve the others
                logger.error(f"{self.name} listener {callback!r} failed: {e}")

    def __len__(self) -> int:
        return len(self._listeners)


class Debouncer(Generic[T]):
    """
    Bounded event queue drained in bursts.

    Events are pushed synchronously from channel callbacks. A background
    task waits for the first event, keeps collecting until ``quiet_window``
    passes with nothing new (or ``max_delay`` since the burst began), then
    hands the whole batch to ``on_flush``. When the queue is full the oldest
    event is dropped.
    """

    def __init__(
        self,
        quiet_window: float,
        on_flush: Callable[[list[T]], None],
        maxsize: int = 256,
        max_delay: Optional[float] = None,
    ):
        self.quiet_window = quiet_window
        self.max_delay = max_delay if max_delay is not None else quiet_window * 4
        self._on_flush = on_flush
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._task: Optional[asyncio.Task] = None
        self._collecting = False
        self.dropped = 0

    @property
    def pending(self) -> bool:
        """True while events are queued or a burst is being collected."""
        return self._collecting or not self._queue.empty()

    def push(self, item: T) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Event queue full, dropped {self.dropped} events so far")
        self._queue.put_nowait(item)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self):
        loop = asyncio.get_running_loop()
        while True:
            first = await self._queue.get()
            self._collecting = True
            batch = [first]
            burst_started = loop.time()
            while True:
                remaining = self.max_delay - (loop.time() - burst_started)
                if remaining <= 0:
                    break
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=min(self.quiet_window, remaining))
                except asyncio.TimeoutError:
                    break
                batch.append(item)
            self._collecting = False
            try:
                self._on_flush(batch)
            except Exception as e:
                logger.error(f"Debounced flush of {len(batch)} events failed: {e}")

    async def close(self):
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._collecting = False

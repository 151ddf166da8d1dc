"""Bounded progress channel between the agent stream parser and the display."""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """One display line; ``activity`` events describe the agent's current tool use."""

    kind: str
    text: str


class ProgressChannel:
    """Non-blocking publisher over a bounded FIFO; when full the oldest event is dropped."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: queue.Queue[ProgressEvent] = queue.Queue(maxsize=max(1, maxsize))
        self._lock = threading.Lock()
        self.dropped = 0

    def publish(self, kind: str, text: str) -> None:
        event = ProgressEvent(kind=kind, text=text)
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        continue

    def activity(self, text: str) -> None:
        self.publish("activity", text)

    def info(self, text: str) -> None:
        self.publish("info", text)

    def warning(self, text: str) -> None:
        self.publish("warning", text)

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


@contextmanager
def display_thread(
    channel: ProgressChannel,
    emit: Callable[[ProgressEvent], None],
    *,
    poll_seconds: float = 0.2,
) -> Iterator[None]:
    """Drain ``channel`` into ``emit`` on a daemon thread for the duration of the block."""

    stop = threading.Event()

    def _pump() -> None:
        while not stop.is_set():
            event = channel.get(timeout=poll_seconds)
            if event is not None:
                emit(event)
        for event in channel.drain():
            emit(event)

    thread = threading.Thread(target=_pump, daemon=True, name="taskloop-progress")
    thread.start()
    try:
        yield
    finally:
        stop.set()
        thread.join(timeout=5)

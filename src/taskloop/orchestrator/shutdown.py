"""Three-level graceful shutdown driven by repeated interrupt signals."""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)

FORCE_EXIT_CODE = 130


class ShutdownController:
    """Counts stop signals for one run.

    First signal: finish the current task, then stop.  Second: force the
    running agent to be terminated.  Third: exit the process immediately
    without any bookkeeping.
    """

    def __init__(self, *, exit_process: Callable[[int], object] = os._exit) -> None:
        self._exit_process = exit_process
        self._lock = threading.RLock()
        self._event = threading.Event()
        self.signal_count = 0
        self.signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self.signal_count >= 1

    @property
    def force_requested(self) -> bool:
        return self.signal_count >= 2

    def signal(self, name: str = "SIGINT") -> None:
        with self._lock:
            self.signal_count += 1
            count = self.signal_count
            self.signal_name = name
        self._event.set()

        if count == 1:
            logger.warning(
                "%s received: finishing the current task, then stopping. "
                "Signal again to force.",
                name,
            )
        elif count == 2:
            logger.warning(
                "%s received again: terminating the agent. Signal once more to exit immediately.",
                name,
            )
        else:
            self._exit_process(FORCE_EXIT_CODE)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns early (True) once a stop is requested."""

        if seconds <= 0:
            return self.stop_requested
        return self._event.wait(seconds)

    def reset(self) -> None:
        with self._lock:
            self.signal_count = 0
            self.signal_name = None
        self._event.clear()

    @contextmanager
    def install(self) -> Iterator[ShutdownController]:
        """Route SIGINT and SIGTERM here for the duration of the block, then reset."""

        originals: dict[int, object] = {}

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.signal(name)

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                originals[signum] = signal.getsignal(signum)
                signal.signal(signum, _handler)
            except ValueError:
                # Signal handlers can only be installed in the main thread.
                originals.pop(signum, None)
                break
        try:
            yield self
        finally:
            for signum, original in originals.items():
                try:
                    signal.signal(signum, original)
                except (TypeError, ValueError):
                    logger.debug("Could not restore handler for signal %s", signum)
            self.reset()

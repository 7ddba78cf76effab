"""
Progress reporting.

Workers never share a counter. They send Start / Advance / Complete
messages through a queue to a single ProgressAggregator thread, which keeps
the totals and forwards each message to a display sink (tqdm by default).
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple, Union

from tqdm import tqdm

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Start:
    task_name: str
    total: int


@dataclass(frozen=True)
class Advance:
    pass


@dataclass(frozen=True)
class Complete:
    pass


ProgressMessage = Union[Start, Advance, Complete]


class ProgressSink(Protocol):
    def start(self, task_name: str, total: int) -> None: ...

    def advance(self) -> None: ...

    def complete(self) -> None: ...


class NullProgressSink:
    def start(self, task_name: str, total: int) -> None:
        pass

    def advance(self) -> None:
        pass

    def complete(self) -> None:
        pass


class TqdmProgressSink:
    """Console progress bar, one bar per task."""

    def __init__(self, **tqdm_kwargs):
        self._kwargs = tqdm_kwargs
        self._bar: Optional[tqdm] = None

    def start(self, task_name: str, total: int) -> None:
        self.complete()
        self._bar = tqdm(total=total, desc=task_name, **self._kwargs)

    def advance(self) -> None:
        if self._bar is not None:
            self._bar.update(1)

    def complete(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None


class QueueProgressSink:
    """Fire-and-forget sink that posts messages to an aggregator's queue."""

    def __init__(self, messages: "queue.Queue[Optional[ProgressMessage]]"):
        self._messages = messages

    def start(self, task_name: str, total: int) -> None:
        self._messages.put(Start(task_name, total))

    def advance(self) -> None:
        self._messages.put(Advance())

    def complete(self) -> None:
        self._messages.put(Complete())


class ProgressAggregator:
    """
    Single consumer of progress messages.

    Usage:
        with ProgressAggregator(TqdmProgressSink()) as aggregator:
            task.run(progress=aggregator.sink())
    """

    def __init__(self, display: Optional[ProgressSink] = None):
        self.display = display or NullProgressSink()
        self._messages: "queue.Queue[Optional[ProgressMessage]]" = queue.Queue()
        self._state_lock = threading.Lock()
        self._task_name: Optional[str] = None
        self._total = 0
        self._done = 0
        self._completed = 0
        self._thread: Optional[threading.Thread] = None

    def sink(self) -> QueueProgressSink:
        return QueueProgressSink(self._messages)

    def start(self) -> "ProgressAggregator":
        if self._thread is None:
            self._thread = threading.Thread(target=self._run, name="progress-aggregator", daemon=True)
            self._thread.start()
        return self

    def close(self) -> None:
        """Process every queued message, then stop the consumer thread."""
        if self._thread is not None:
            self._messages.put(None)
            self._thread.join()
            self._thread = None

    def __enter__(self) -> "ProgressAggregator":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def snapshot(self) -> Tuple[Optional[str], int, int]:
        """(task name, items done, total) of the current or last task."""
        with self._state_lock:
            return self._task_name, self._done, self._total

    @property
    def completed_tasks(self) -> int:
        with self._state_lock:
            return self._completed

    def _run(self) -> None:
        while True:
            message = self._messages.get()
            if message is None:
                break
            self._apply(message)

    def _apply(self, message: ProgressMessage) -> None:
        with self._state_lock:
            if isinstance(message, Start):
                self._task_name = message.task_name
                self._total = message.total
                self._done = 0
            elif isinstance(message, Advance):
                self._done += 1
            elif isinstance(message, Complete):
                self._completed += 1

        if isinstance(message, Start):
            self.display.start(message.task_name, message.total)
        elif isinstance(message, Advance):
            self.display.advance()
        elif isinstance(message, Complete):
            self.display.complete()
            logger.debug("Progress for %s complete", self._task_name)

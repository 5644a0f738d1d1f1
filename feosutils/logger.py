"""Log sink that keeps a bounded history and broadcasts entries to readers."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum


class Level(IntEnum):
    """Log severity; a lower value is more severe."""

    ERROR = 1
    WARN = 2
    INFO = 3
    DEBUG = 4
    TRACE = 5

    def __str__(self) -> str:
        return self.name

    @property
    def python_level(self) -> int:
        """The matching level number of the ``logging`` module."""
        return _TO_PYTHON[self]

    @classmethod
    def from_python(cls, levelno: int) -> "Level":
        """Map a ``logging`` level number onto a Level."""
        if levelno >= logging.ERROR:
            return cls.ERROR
        if levelno >= logging.WARNING:
            return cls.WARN
        if levelno >= logging.INFO:
            return cls.INFO
        if levelno >= logging.DEBUG:
            return cls.DEBUG
        return cls.TRACE


_TRACE_LEVELNO = 5

_TO_PYTHON = {
    Level.ERROR: logging.ERROR,
    Level.WARN: logging.WARNING,
    Level.INFO: logging.INFO,
    Level.DEBUG: logging.DEBUG,
    Level.TRACE: _TRACE_LEVELNO,
}

_COLORS = {
    Level.ERROR: 31,
    Level.WARN: 33,
    Level.INFO: 32,
    Level.DEBUG: 34,
    Level.TRACE: 35,
}


class LoggerClosedError(RuntimeError):
    """Raised when the logger has shut down."""


@dataclass(frozen=True)
class LogEntry:
    """One recorded log message."""

    seq: int
    timestamp: datetime
    level: Level
    target: str
    message: str

    def __str__(self) -> str:
        millis = self.timestamp.microsecond // 1000
        stamp = f"{self.timestamp.strftime('%Y-%m-%d %H:%M:%S')}.{millis:03d}"
        return f"[{stamp} {str(self.level):<5} {self.target}] {self.message}"

    def stdout_line(self, color: bool) -> str:
        """The console form of the entry, with the level coloured if asked."""
        stamp = self.timestamp.strftime("%Y-%m-%dT%H:%M:%SZ")
        level = f"{str(self.level):<5}"
        if color:
            level = f"\x1b[1;{_COLORS[self.level]}m{level}\x1b[0m"
        return f"[{stamp} {level} {self.target}] {self.message}"


@dataclass(frozen=True)
class _LogMessage:
    level: Level
    target: str
    message: str


_STOP = object()


class _Subscription:
    def __init__(self, capacity: int) -> None:
        self.capacity = capacity
        self.items: deque[LogEntry] = deque()
        self.lagged = False
        self.closed = False
        self.detached = False
        self.event = asyncio.Event()

    def publish(self, entry: LogEntry) -> None:
        if len(self.items) >= self.capacity:
            self.lagged = True
        else:
            self.items.append(entry)
        self.event.set()

    def close(self) -> None:
        self.closed = True
        self.event.set()


def _use_color(stream) -> bool:
    try:
        is_tty = stream.isatty()
    except (AttributeError, ValueError):
        return False
    return is_tty and os.environ.get("TERM") != "dumb" and "NO_COLOR" not in os.environ


class _LoggerActor:
    def __init__(
        self,
        max_history: int,
        broadcast_capacity: int,
        mpsc_capacity: int,
        log_to_stdout: bool,
    ) -> None:
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.history: deque[LogEntry] = deque(maxlen=max(max_history, 0))
        self.broadcast_capacity = broadcast_capacity
        self.mpsc_capacity = mpsc_capacity
        self.log_to_stdout = log_to_stdout
        self.seq = 0
        self.subscribers: list[_Subscription] = []
        self.finished = False

    async def run(self) -> None:
        try:
            while True:
                item = await self.inbox.get()
                if item is _STOP:
                    break
                if isinstance(item, asyncio.Future):
                    self._answer(item)
                else:
                    self._record(item)
        finally:
            self.finished = True
            for subscription in self.subscribers:
                subscription.close()
            self.subscribers.clear()
            while not self.inbox.empty():
                item = self.inbox.get_nowait()
                if isinstance(item, asyncio.Future) and not item.done():
                    item.set_exception(
                        LoggerClosedError("Failed to receive history from logger actor")
                    )

    def offer(self, message: _LogMessage) -> None:
        if self.finished:
            return
        if self.inbox.qsize() >= self.mpsc_capacity:
            print("[LOGGER WARNING] Log channel is full. Dropping log message.", file=sys.stderr)
            return
        self.inbox.put_nowait(message)

    def _answer(self, future: asyncio.Future) -> None:
        if future.done():
            return
        subscription = _Subscription(self.broadcast_capacity)
        self.subscribers.append(subscription)
        future.set_result((list(self.history), subscription))

    def _record(self, message: _LogMessage) -> None:
        self.seq += 1
        entry = LogEntry(
            seq=self.seq,
            timestamp=datetime.now(timezone.utc),
            level=message.level,
            target=message.target,
            message=message.message,
        )
        if self.log_to_stdout:
            self._write(entry)
        self.history.append(entry)
        self.subscribers = [s for s in self.subscribers if not s.detached]
        for subscription in self.subscribers:
            subscription.publish(entry)

    @staticmethod
    def _write(entry: LogEntry) -> None:
        stream = sys.stdout
        try:
            stream.write(entry.stdout_line(_use_color(stream)) + "\n")
            stream.flush()
        except (OSError, ValueError):
            pass


class _FeosHandler(logging.Handler):
    def __init__(self, actor: _LoggerActor, loop: asyncio.AbstractEventLoop, level: Level) -> None:
        super().__init__()
        self._actor = actor
        self._loop = loop
        self._filter_level = level
        self._loop_thread = threading.get_ident()

    def emit(self, record: logging.LogRecord) -> None:
        level = Level.from_python(record.levelno)
        if level > self._filter_level:
            return
        try:
            text = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        message = _LogMessage(level=level, target=record.name, message=text)
        if threading.get_ident() == self._loop_thread:
            self._actor.offer(message)
        else:
            try:
                self._loop.call_soon_threadsafe(self._actor.offer, message)
            except RuntimeError:
                pass


class LogReader:
    """Yields the history snapshot first, then live entries."""

    def __init__(self, history: list[LogEntry], subscription: _Subscription) -> None:
        self._history = deque(history)
        self._subscription = subscription
        self._done = False

    async def next(self) -> LogEntry | None:
        """Return the next entry, or None once the stream has ended."""
        if self._history:
            return self._history.popleft()
        if self._done:
            return None
        subscription = self._subscription
        while True:
            if subscription.lagged:
                print(
                    "[LOG READER WARNING] Reader lagged and missed messages. Closing stream.",
                    file=sys.stderr,
                )
                self._finish()
                return None
            if subscription.items:
                return subscription.items.popleft()
            if subscription.closed:
                self._finish()
                return None
            subscription.event.clear()
            await subscription.event.wait()

    def _finish(self) -> None:
        self._done = True
        self._subscription.detached = True

    def __aiter__(self) -> "LogReader":
        return self

    async def __anext__(self) -> LogEntry:
        entry = await self.next()
        if entry is None:
            raise StopAsyncIteration
        return entry


class LogHandle:
    """Access to a running logger: opens readers and shuts it down."""

    def __init__(
        self,
        actor: _LoggerActor,
        task: asyncio.Task,
        logger: logging.Logger,
        handler: _FeosHandler,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._actor = actor
        self._task = task
        self._logger = logger
        self._handler = handler
        self._loop = loop
        self._closed = False

    async def new_reader(self) -> LogReader:
        """Open a reader that replays the current history, then follows live entries."""
        if self._closed or self._actor.finished:
            raise LoggerClosedError("Logger actor has shut down")
        future = self._loop.create_future()
        self._actor.inbox.put_nowait(future)
        history, subscription = await future
        return LogReader(history, subscription)

    def close(self) -> None:
        """Detach from the logger and stop the actor; readers end after draining."""
        if self._closed:
            return
        self._closed = True
        self._logger.removeHandler(self._handler)
        try:
            self._loop.call_soon_threadsafe(self._actor.inbox.put_nowait, _STOP)
        except RuntimeError:
            pass


class Builder:
    """Configures and installs the log sink."""

    def __init__(
        self,
        *,
        filter_level: Level = Level.INFO,
        max_history: int = 1000,
        broadcast_capacity: int = 1024,
        mpsc_capacity: int = 4096,
        log_to_stdout: bool = True,
    ) -> None:
        self._filter = filter_level
        self._max_history = max_history
        self._broadcast_capacity = broadcast_capacity
        self._mpsc_capacity = mpsc_capacity
        self._log_to_stdout = log_to_stdout

    def filter_level(self, level: Level) -> "Builder":
        self._filter = level
        return self

    def max_history(self, size: int) -> "Builder":
        self._max_history = size
        return self

    def log_to_stdout(self, enabled: bool) -> "Builder":
        self._log_to_stdout = enabled
        return self

    def init(self, logger: logging.Logger | None = None) -> LogHandle:
        """Install the sink on ``logger`` (the root logger by default).

        Must be called with an event loop running.
        """
        loop = asyncio.get_running_loop()
        target = logger if logger is not None else logging.getLogger()
        if any(isinstance(h, _FeosHandler) for h in target.handlers):
            raise RuntimeError("a log sink is already installed on this logger")

        actor = _LoggerActor(
            max_history=self._max_history,
            broadcast_capacity=self._broadcast_capacity,
            mpsc_capacity=self._mpsc_capacity,
            log_to_stdout=self._log_to_stdout,
        )
        task = loop.create_task(actor.run())
        handler = _FeosHandler(actor, loop, self._filter)
        target.addHandler(handler)
        target.setLevel(self._filter.python_level)
        return LogHandle(actor, task, target, handler, loop)
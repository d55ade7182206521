"""Fan-out of dev server output to live log stream subscribers.

A single coordinating task owns the subscriber set. Everything else talks to it
through its inbox (register, unregister, submit), so the set is never mutated
while being iterated and needs no lock. Delivery to each subscriber is a
non-blocking put into a bounded queue: when a subscriber's buffer is full the
message is dropped for that subscriber only, so a slow client never stalls the
producer or the other clients.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator
from typing import ClassVar, TextIO

from pydantic import BaseModel, ConfigDict

from controlplane.logging import LogComponent, get_logger

logger = get_logger(LogComponent.BROADCASTER)


class BroadcastMessage(BaseModel):
    """One output line and the stream it came from."""

    text: str
    is_error: bool = False

    model_config: ClassVar[ConfigDict] = ConfigDict(frozen=True)


class Subscriber:
    """An open log stream registered with the broadcaster.

    Only the broadcaster loop puts into the queue; the owning client reads from it.
    ``None`` in the queue marks that the broadcaster closed the subscriber.
    """

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[BroadcastMessage | None] = asyncio.Queue(
            maxsize=maxsize
        )
        self.dropped: int = 0
        self.closed: bool = False

    def offer(self, message: BroadcastMessage) -> bool:
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        # Evict the oldest line if needed so a waiting reader always sees the marker.
        while True:
            try:
                self._queue.put_nowait(None)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()

    async def get(self) -> BroadcastMessage | None:
        """Next message, or None once closed."""
        return await self._queue.get()


class _Register(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)
    subscriber: Subscriber


class _Unregister(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)
    subscriber: Subscriber


class _Stop(BaseModel):
    pass


_Command = _Register | _Unregister | _Stop | BroadcastMessage


class LogBroadcaster:
    """Single-task actor multiplexing one output stream to N subscribers.

    Every submitted line is also mirrored to this process's stdout/stderr, so
    container logs stay complete with zero subscribers.
    """

    def __init__(
        self,
        *,
        subscriber_buffer: int = 10,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self._subscriber_buffer: int = subscriber_buffer
        self._stdout: TextIO | None = stdout
        self._stderr: TextIO | None = stderr
        self._inbox: asyncio.Queue[_Command] = asyncio.Queue()
        self._subscribers: set[Subscriber] = set()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def start(self) -> None:
        """Start the coordinating loop (once per service lifetime)."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="log-broadcaster")

    async def stop(self) -> None:
        """Close every subscriber and end the loop. Only used at service shutdown."""
        if not self.running:
            return
        self._inbox.put_nowait(_Stop())
        assert self._task is not None
        await self._task
        self._task = None

    def register(self) -> Subscriber:
        subscriber = Subscriber(self._subscriber_buffer)
        self._inbox.put_nowait(_Register(subscriber=subscriber))
        return subscriber

    def unregister(self, subscriber: Subscriber) -> None:
        self._inbox.put_nowait(_Unregister(subscriber=subscriber))

    def submit(self, line: str, is_error: bool = False) -> None:
        self._inbox.put_nowait(BroadcastMessage(text=line, is_error=is_error))

    async def flush(self) -> None:
        """Wait until everything queued so far has been processed by the loop."""
        await self._inbox.join()

    async def _run(self) -> None:
        while True:
            command = await self._inbox.get()
            try:
                if isinstance(command, _Stop):
                    for subscriber in self._subscribers:
                        subscriber.close()
                    self._subscribers.clear()
                    return
                if isinstance(command, _Register):
                    self._subscribers.add(command.subscriber)
                    logger.info("Log stream client registered.")
                elif isinstance(command, _Unregister):
                    if command.subscriber in self._subscribers:
                        self._subscribers.discard(command.subscriber)
                        command.subscriber.close()
                        logger.info("Log stream client unregistered.")
                else:
                    self._deliver(command)
            except Exception as e:
                logger.error(f"Log broadcaster failed to process message: {e}")
            finally:
                self._inbox.task_done()

    def _deliver(self, message: BroadcastMessage) -> None:
        for subscriber in self._subscribers:
            if not subscriber.offer(message):
                logger.debug("Log stream client channel is full. Dropping message.")
        stream = (
            (self._stderr or sys.stderr) if message.is_error else (self._stdout or sys.stdout)
        )
        print(message.text, file=stream, flush=True)


async def read_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield the stream's lines, including a final unterminated one.

    A line longer than the reader's limit comes out in pieces of at most that size
    instead of failing the read.
    """
    split = False
    while True:
        try:
            line = await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            if e.partial:
                yield e.partial
            return
        except asyncio.LimitOverrunError as e:
            yield await stream.readexactly(e.consumed)
            split = True
            continue
        # A bare newline right after a split piece ends that long line.
        if not (split and line == b"\n"):
            yield line
        split = False


async def pipe_to_broadcaster(
    stream: asyncio.StreamReader | None,
    broadcaster: LogBroadcaster,
    *,
    is_error: bool,
    capture: list[str] | None = None,
) -> None:
    """Submit each line of a child's output stream as it arrives."""
    if stream is None:
        return
    async for raw in read_lines(stream):
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        broadcaster.submit(line, is_error=is_error)
        if capture is not None:
            capture.append(line)

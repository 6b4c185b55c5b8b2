"""One-way progress channel per job, delivered as Server-Sent Events.

Delivery is to the current subscriber only: events published while nobody
is listening are dropped, and a subscriber that reconnects never sees what
it missed. Disconnecting only stops delivery; the job keeps running.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from checkin_service.models import ProgressEvent

if TYPE_CHECKING:
    from checkin_service.jobs.registry import JobRegistry

logger = logging.getLogger(__name__)

KEEPALIVE_FRAME = ": keep-alive\n\n"


class JobNotFoundError(LookupError):
    pass


class ChannelClosedError(RuntimeError):
    pass


def format_sse(data: str, *, event: str | None = None) -> str:
    lines = [f"event: {event}"] if event else []
    lines.extend(f"data: {line}" for line in data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


class JobChannel:
    """Ordered event hand-off from a job to at most one subscriber."""

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._queue: asyncio.Queue[ProgressEvent | None] | None = None
        self._attached = asyncio.Event()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_subscriber(self) -> bool:
        return self._queue is not None

    def attach(self) -> asyncio.Queue[ProgressEvent | None]:
        if self._closed:
            raise ChannelClosedError(f"Channel for job {self.job_id} is closed")
        if self._queue is not None:
            # A newer connection replaces the old one
            self._queue.put_nowait(None)
        self._queue = asyncio.Queue()
        self._attached.set()
        return self._queue

    def detach(self, queue: asyncio.Queue[ProgressEvent | None]) -> None:
        if self._queue is queue:
            self._queue = None

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            logger.warning("Publish after close on job %s ignored", self.job_id)
            return
        if self._queue is not None:
            self._queue.put_nowait(event)
        if event.is_terminal:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._queue is not None:
            self._queue.put_nowait(None)
            self._queue = None

    async def wait_for_subscriber(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._attached.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True


class Subscription:
    def __init__(
        self,
        channel: JobChannel,
        queue: asyncio.Queue[ProgressEvent | None],
        *,
        keepalive_seconds: float,
    ) -> None:
        self.job_id = channel.job_id
        self._channel = channel
        self._queue = queue
        self._keepalive = keepalive_seconds

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events until the terminal one (or until replaced/closed)."""
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            self.close()

    async def sse(self) -> AsyncIterator[str]:
        """Same stream, framed as SSE with an ``open`` event and keep-alives."""
        try:
            yield format_sse(json.dumps({"jobId": self.job_id}), event="open")
            while True:
                try:
                    event = await asyncio.wait_for(self._queue.get(), timeout=self._keepalive)
                except TimeoutError:
                    yield KEEPALIVE_FRAME
                    continue
                if event is None:
                    return
                yield format_sse(event.to_json())
                if event.is_terminal:
                    return
        finally:
            self.close()

    def close(self) -> None:
        self._channel.detach(self._queue)


class ProgressStream:
    def __init__(self, registry: JobRegistry, *, keepalive_seconds: float = 15.0) -> None:
        self._registry = registry
        self._keepalive = keepalive_seconds

    def subscribe(self, job_id: str, *, kind: str | None = None) -> Subscription:
        """Attach to a live job, optionally only one of the given ``kind``.

        Raises:
            JobNotFoundError: unknown job id, or the job already finished.
        """
        job = self._registry.get(job_id)
        if job is None or job.channel.closed or (kind is not None and job.kind != kind):
            raise JobNotFoundError(f"Job {job_id} not found")
        queue = job.channel.attach()
        logger.info("Subscriber attached to job %s", job_id, extra={"job_id": job_id})
        return Subscription(job.channel, queue, keepalive_seconds=self._keepalive)

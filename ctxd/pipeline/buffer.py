"""
Event Buffer

The capture boundary. Producers call ``submit`` concurrently; a single
consumer drains the queue in arrival order. ``submit`` never awaits: it
filters, redacts and enqueues, or drops with a warning when the queue is
full or capture is paused. Classification, linking and synthesis happen
downstream and can never slow it down.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from ..common.errors import CaptureError
from ..common.redaction import Redactor
from ..common.schemas.events import CommitInfo, EventSource, RawEvent
from ..common.storage import sha256_hex
from .sources import EventProducer, parse_input_event

logger = logging.getLogger("ctxd.pipeline.buffer")


class EventBuffer:
    """Bounded single-consumer queue of redacted RawEvents"""

    def __init__(
        self,
        redactor: Optional[Redactor] = None,
        maxsize: int = 10000,
        min_prompt_length: int = 10,
        default_author: Optional[str] = None,
    ):
        self._redactor = redactor or Redactor()
        self._queue: "asyncio.Queue[RawEvent]" = asyncio.Queue(maxsize=maxsize)
        self._min_prompt_length = min_prompt_length
        self._default_author = default_author
        self._paused = False
        self.accepted = 0
        self.dropped = 0
        self.rejected = 0

    # ------------------------------------------------------------------
    # Capture side
    # ------------------------------------------------------------------

    def redact_event(self, event: RawEvent) -> RawEvent:
        """Return the redacted form of ``event``.

        A ``redacted`` flag set by the producer is not trusted; redaction is
        idempotent, so every event goes through it.
        """
        payload: Dict[str, Any] = dict(event.payload)
        if event.source == EventSource.TOOL:
            payload["prompt"] = self._redactor.redact_text(payload.get("prompt", ""))
            diff = payload.pop("diff", None)
            if diff:
                payload["diff_hash"] = sha256_hex(self._redactor.redact_text(diff))
        elif event.source == EventSource.VCS:
            payload["message"] = self._redactor.redact_text(payload.get("message", ""))
        return event.model_copy(update={"payload": payload, "redacted": True})

    def redact_commit(self, commit: CommitInfo) -> CommitInfo:
        """Redact a commit read outside the capture path (history import)"""
        return commit.model_copy(update={"message": self._redactor.redact_text(commit.message) or ""})

    def submit(self, event: RawEvent) -> bool:
        """Redact and enqueue one event without blocking. Returns whether it was accepted."""
        if self._paused:
            self.rejected += 1
            return False

        if event.source == EventSource.TOOL and len(event.prompt.strip()) <= self._min_prompt_length:
            logger.debug("Ignoring short prompt from %s", event.tool)
            self.rejected += 1
            return False

        redacted = self.redact_event(event)
        try:
            self._queue.put_nowait(redacted)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Event buffer full (%d); dropping %s event", self._queue.maxsize, event.source.value)
            return False

        self.accepted += 1
        return True

    def submit_input(self, data: Any, default_session: Optional[str] = None) -> int:
        """Parse one input-contract object and submit its events.

        Malformed input is logged and skipped. Returns the number of events
        accepted.
        """
        try:
            events = parse_input_event(data, default_session=default_session, default_author=self._default_author)
        except CaptureError as e:
            self.rejected += 1
            logger.warning("Skipping malformed input event: %s", e)
            return 0
        return sum(1 for event in events if self.submit(event))

    async def pump(self, producer: EventProducer) -> int:
        """Feed everything a producer yields into the buffer"""
        count = 0
        async for data in producer.produce_raw_events():
            count += self.submit_input(data)
        logger.info("Producer %s delivered %d events", producer.name, count)
        return count

    def pause(self) -> None:
        """Stop accepting new events. Queued and persisted events are kept."""
        self._paused = True
        logger.info("Capture paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Capture resumed")

    @property
    def paused(self) -> bool:
        return self._paused

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def get(self, timeout: Optional[float] = None) -> Optional[RawEvent]:
        """Next event, or None if ``timeout`` elapses first"""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def get_nowait(self) -> Optional[RawEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "queued": self.qsize(),
            "accepted": self.accepted,
            "dropped": self.dropped,
            "rejected": self.rejected,
            "paused": self._paused,
        }

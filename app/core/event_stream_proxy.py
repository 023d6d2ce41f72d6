"""
Event stream proxy for Decision Memo generation.

A transparent relay: one upstream SSE connection to the generation backend
per intake, forwarded byte-for-byte to exactly one downstream client.

    backend SSE ──► relay task ──► QueueSink ──► StreamingResponse ──► client

The relay only holds back the tail of an incomplete event until its blank
line arrives, so frames it synthesizes (the initial keepalive comment and
the terminal ``error`` event) never split an upstream event. Forwarded
events are observed, never rewritten: discoveries are appended to the
session, ``memo_ready`` delivers it, an upstream ``error`` fails it.
Losing the connection (connect error, early close, timeout) only ends the
relay: the intake keeps generating until the completion probe or the
backend webhook settles it.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Optional

from app.core.errors import Conflict, DecisionMemoError, UpstreamUnavailable
from app.core.intake_service import IntakeService, discovery_from_payload
from app.core.logging import get_logger, log_with_context
from app.core.schemas_intake import IntakeEvent, IntakeStatus, StreamEventType
from app.core.sse import KEEPALIVE_FRAME, SSEEvent, error_frame, parse_events, split_complete
from app.services.generation_client import GenerationClient

logger = get_logger(__name__)


class QueueSink:
    """Downstream side of the relay: a bounded queue drained by one consumer.

    The terminal frame is held outside the queue, so a full queue never
    drops it; it is delivered after everything already queued.
    """

    def __init__(self, max_chunks: int = 0):
        self._queue: asyncio.Queue[Optional[bytes]] = asyncio.Queue(max_chunks)
        self._final: Optional[bytes] = None
        self._closed = False
        self.claimed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def claim(self) -> None:
        """Mark the sink as attached to a client; a second claim is a conflict."""
        if self.claimed:
            raise Conflict("Stream already has a connected client")
        self.claimed = True

    async def send(self, chunk: bytes) -> None:
        if self._closed:
            return
        await self._queue.put(chunk)

    def send_nowait(self, chunk: bytes) -> bool:
        """Best-effort write; False when full or closed."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            return False
        return True

    def send_final(self, chunk: bytes) -> bool:
        """Set the one terminal frame. False if closed or already set."""
        if self._closed or self._final is not None:
            return False
        self._final = chunk
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Consumer drains the queue and then sees the closed flag.
            pass

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while not (self._closed and self._queue.empty()):
            chunk = await self._queue.get()
            if chunk is None:
                break
            yield chunk
        if self._final is not None:
            yield self._final


@dataclass
class StreamHandle:
    intake_id: str
    sink: QueueSink
    last_event_id: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)

    @property
    def live(self) -> bool:
        return self.task is not None and not self.task.done()


class EventStreamProxy:
    """Opens and supervises relay tasks, at most one per intake."""

    def __init__(
        self,
        intakes: IntakeService,
        generation: GenerationClient,
        timeout_seconds: float = 300.0,
        buffer_max_chunks: int = 512,
    ):
        self.intakes = intakes
        self.generation = generation
        self.timeout_seconds = timeout_seconds
        self.buffer_max_chunks = buffer_max_chunks
        self._streams: dict[str, StreamHandle] = {}

    def get(self, intake_id: str) -> Optional[StreamHandle]:
        handle = self._streams.get(intake_id)
        if handle is not None and not handle.live:
            self._streams.pop(intake_id, None)
            return None
        return handle

    def new_sink(self) -> QueueSink:
        return QueueSink(self.buffer_max_chunks)

    async def open(
        self,
        intake_id: str,
        sink: QueueSink,
        last_event_id: Optional[str] = None,
    ) -> StreamHandle:
        """
        Start relaying generation events for ``intake_id`` into ``sink``.

        Raises:
            Conflict: a live stream already exists, or the intake is not generating
            SessionNotFound: unknown intake
        """
        session = await self.intakes.get(intake_id)
        if session.status != IntakeStatus.GENERATING:
            raise Conflict(
                f"Intake {intake_id} is {session.status.value}; streams open only while generating"
            )

        # No awaits from the liveness check to registration.
        if self.get(intake_id) is not None:
            raise Conflict(f"Intake {intake_id} is already streaming")

        # Keep the client connection alive while upstream is still starting.
        sink.send_nowait(KEEPALIVE_FRAME)

        handle = StreamHandle(intake_id=intake_id, sink=sink, last_event_id=last_event_id)
        self._streams[intake_id] = handle
        handle.task = asyncio.create_task(self._relay(handle), name=f"memo-stream-{intake_id}")
        log_with_context(
            logger, logging.INFO, "Opened generation stream", intake_id=intake_id, last_event_id=last_event_id
        )
        return handle

    async def attach_or_open(self, intake_id: str, last_event_id: Optional[str] = None) -> StreamHandle:
        """Attach a client to a stream opened at payment time, or open a new one."""
        handle = self.get(intake_id)
        if handle is not None:
            handle.sink.claim()
            return handle

        sink = self.new_sink()
        sink.claim()
        return await self.open(intake_id, sink, last_event_id=last_event_id)

    def release(self, handle: StreamHandle) -> None:
        """Downstream went away: cancel the relay (and with it the upstream request)."""
        if handle.live:
            logger.info(f"Client disconnected from intake {handle.intake_id}; cancelling upstream")
            handle.task.cancel()
        handle.sink.close()

    async def close(self, intake_id: str) -> None:
        """Cancel a stream and wait for the relay to unwind."""
        handle = self._streams.get(intake_id)
        if handle is None or handle.task is None:
            return
        handle.task.cancel()
        try:
            await handle.task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def _relay(self, handle: StreamHandle) -> None:
        intake_id = handle.intake_id
        try:
            async with asyncio.timeout(self.timeout_seconds):
                await self._forward(handle)
        except TimeoutError:
            self._drop(handle, "Memo generation stream timed out", code="timeout")
        except UpstreamUnavailable as e:
            self._drop(handle, e.message)
        except asyncio.CancelledError:
            logger.info(f"Relay for intake {intake_id} cancelled")
            raise
        except Exception as e:
            logger.exception(f"Relay for intake {intake_id} crashed: {e}")
            self._drop(handle, "Stream failed")
        finally:
            if self._streams.get(intake_id) is handle:
                del self._streams[intake_id]
            handle.sink.close()

    async def _forward(self, handle: StreamHandle) -> None:
        pending = b""
        async with self.generation.stream_events(handle.intake_id, handle.last_event_id) as chunks:
            async for chunk in chunks:
                pending += chunk
                complete, pending = split_complete(pending)
                if not complete:
                    continue
                await handle.sink.send(complete)
                if await self._observe(handle, parse_events(complete)):
                    return
        raise UpstreamUnavailable("Generation stream closed before the memo was ready")

    async def _observe(self, handle: StreamHandle, events: list[SSEEvent]) -> bool:
        """Record what the forwarded events mean. Returns True on a terminal event."""
        discoveries = []
        terminal: Optional[SSEEvent] = None
        for event in events:
            if event.id:
                handle.last_event_id = event.id
            if event.event in (StreamEventType.MEMO_READY.value, StreamEventType.ERROR.value):
                terminal = event
                break
            found = discovery_from_payload(event.event, event.json(), event.id)
            if found is not None:
                discoveries.append(found)

        if discoveries:
            try:
                await self.intakes.record_discoveries(handle.intake_id, discoveries)
            except DecisionMemoError as e:
                logger.warning(f"Discoveries for intake {handle.intake_id} not recorded: {e.message}")

        if terminal is None:
            return False

        if terminal.event == StreamEventType.MEMO_READY.value:
            await self._finish(handle, IntakeEvent.ARTIFACT_READY)
        else:
            payload = terminal.json()
            message = payload.get("message") if isinstance(payload, dict) else None
            await self._finish(handle, IntakeEvent.BACKEND_ERROR, error=message or "Generation failed")
        return True

    async def _finish(self, handle: StreamHandle, event: IntakeEvent, **context) -> None:
        try:
            await self.intakes.apply(handle.intake_id, event, **context)
            log_with_context(
                logger, logging.INFO, f"{event.value} recorded from stream", intake_id=handle.intake_id
            )
        except DecisionMemoError as e:
            # Another channel (webhook, retry) may already have moved the session.
            logger.warning(f"Intake {handle.intake_id}: {event.value} not applied: {e.message}")

    def _drop(self, handle: StreamHandle, message: str, code: str = "upstream_unavailable") -> None:
        """The connection to the backend is gone; the generation job may not be.

        The client gets one ``error`` frame. The intake stays ``generating`` so
        the completion probe and the backend webhook can still finish it.
        """
        log_with_context(
            logger,
            logging.WARNING,
            f"Generation stream dropped: {message}",
            intake_id=handle.intake_id,
            code=code,
        )
        if not handle.sink.send_final(error_frame(message, code=code)):
            logger.info(f"Error frame for intake {handle.intake_id} not sent; downstream already closed")

"""Idempotent RabbitMQ consumer.

Delivery is at-least-once; the processed-event ledger turns it into an
effectively-once application of each event's side effect. The side effect and
the ledger row are written in one local transaction, so a crash between them
can never leave an applied-but-unrecorded event behind.
"""

import asyncio
import contextlib
import logging
import signal
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, Type

from aio_pika.abc import (
    AbstractChannel,
    AbstractIncomingMessage,
    AbstractQueue,
    AbstractRobustConnection,
)
from pydantic import BaseModel, ValidationError
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from app.core.config import (
    CONSUMER_MAX_RETRIES,
    CONSUMER_QUEUE_TYPE,
    CONSUMER_RETRY_DELAY,
    EVENT_EXCHANGE,
    SHUTDOWN_TIMEOUT_SECONDS,
)
from app.events.envelope import EventEnvelope, MalformedEnvelopeError
from app.messaging.broker import connect_robust
from app.messaging.topology import declare_consumer_topology
from app.models.processed_event import ProcessedEvent

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventHandler:
    """Payload shape for one routing key and the coroutine applying it (payload, conn)."""
    payload_model: Type[BaseModel]
    apply: Callable[[Any, Any], Awaitable[None]]


def _safe_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def delivery_attempts(headers: Optional[Mapping[str, Any]]) -> int:
    """
    Redelivery count derived from broker-supplied headers: the summed x-death counts
    (set when a message is dead-lettered) or the quorum queue x-delivery-count,
    whichever is larger.
    """
    if not headers:
        return 0

    dead_lettered = 0
    deaths = headers.get("x-death")
    if isinstance(deaths, (list, tuple)):
        for death in deaths:
            if isinstance(death, Mapping):
                dead_lettered += _safe_int(death.get("count"))

    return max(dead_lettered, _safe_int(headers.get("x-delivery-count")))


class IdempotentConsumer:
    """Consumes one durable queue with prefetch 1 and manual acknowledgements."""

    def __init__(
        self,
        *,
        queue_name: str,
        handlers: Mapping[str, EventHandler],
        exchange_name: str = EVENT_EXCHANGE,
        max_retry_count: int = CONSUMER_MAX_RETRIES,
        queue_type: Optional[str] = CONSUMER_QUEUE_TYPE,
        connection_factory: Callable[[], Awaitable[AbstractRobustConnection]] = connect_robust,
        retry_delay: float = CONSUMER_RETRY_DELAY,
    ) -> None:
        self.queue_name = queue_name
        self.handlers = dict(handlers)
        self.exchange_name = exchange_name
        self.max_retry_count = max_retry_count
        self.queue_type = queue_type
        self.retry_delay = retry_delay

        self._connection_factory = connection_factory
        self._connection: Optional[AbstractRobustConnection] = None
        self._channel: Optional[AbstractChannel] = None
        self._queue: Optional[AbstractQueue] = None
        self._consumer_tag: Optional[str] = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._stopping = asyncio.Event()
        self._startup_task: Optional[asyncio.Task] = None

    @property
    def is_consuming(self) -> bool:
        return self._consumer_tag is not None

    async def start(self) -> None:
        """Connects, declares the topology and subscribes; raises if any step fails."""
        self._connection = await self._connection_factory()
        try:
            self._channel = await self._connection.channel()
            # One unacknowledged message at a time
            await self._channel.set_qos(prefetch_count=1)
            self._queue = await declare_consumer_topology(
                self._channel,
                self.exchange_name,
                self.queue_name,
                self.handlers.keys(),
                self.queue_type,
            )
            self._consumer_tag = await self._queue.consume(self.handle_message, no_ack=False)
        except (Exception, asyncio.CancelledError):
            try:
                await self._close()
            except Exception:
                log.exception("Could not close the consumer connection after a failed start")
            raise
        log.info("Consumer listening on queue %s", self.queue_name)

    def start_in_background(self) -> None:
        """Starts the consumer from a task that keeps retrying until it succeeds or `stop()` is called."""
        if self._startup_task is not None:
            log.warning("Consumer on queue %s already starting", self.queue_name)
            return
        self._stopping.clear()
        self._startup_task = asyncio.create_task(self._start_with_retry())

    async def _start_with_retry(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.start()
                return
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Consumer on queue %s failed to start, retrying in %ss", self.queue_name, self.retry_delay)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.retry_delay)

    async def stop(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS) -> None:
        """Stops new deliveries, lets the in-flight message finish, then closes the channel and connection."""
        self._stopping.set()
        if self._startup_task is not None:
            try:
                await asyncio.wait_for(self._startup_task, timeout=timeout)
            except asyncio.TimeoutError:
                log.warning("Consumer startup did not finish before shutdown, cancelling")
            self._startup_task = None

        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Consumer shutdown timed out with a message still in flight")

        await self._close()
        log.info("Consumer on queue %s stopped", self.queue_name)

    async def _close(self) -> None:
        channel, connection = self._channel, self._connection
        self._channel = self._connection = self._queue = None
        self._consumer_tag = None
        try:
            if channel is not None:
                await channel.close()
        finally:
            if connection is not None:
                await connection.close()

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        self._idle.clear()
        try:
            await self._process(message)
        except Exception:
            log.exception("Unhandled error while handling message %s", message.message_id)
        finally:
            self._idle.set()

    async def _process(self, message: AbstractIncomingMessage) -> None:
        routing_key = message.routing_key

        # 1. Malformed envelopes can never succeed: straight to the DLQ
        try:
            envelope = EventEnvelope.parse(message.body)
        except MalformedEnvelopeError:
            log.warning("Failed to deserialize event envelope for %s, sending to DLQ", routing_key)
            await message.nack(requeue=False)
            return

        log.info("Processing event %s with ID %s", envelope.event_type, envelope.event_id)

        try:
            # 2. Idempotency check
            if await ProcessedEvent.filter(event_id=envelope.event_id).exists():
                log.info("Event %s already processed, skipping", envelope.event_id)
                await message.ack()
                return

            # 3. Inner payload
            handler = self.handlers.get(routing_key or envelope.event_type)
            payload = None
            if handler is None:
                log.warning("No handler for routing key %s, recording event as processed", routing_key)
            else:
                try:
                    payload = handler.payload_model.model_validate(envelope.data)
                except ValidationError:
                    log.warning("Failed to deserialize event data for %s, sending to DLQ", envelope.event_id)
                    await message.nack(requeue=False)
                    return

            # 4-5. Side effect and ledger row commit together
            try:
                duration_ms = await self._apply(envelope, handler, payload)
            except IntegrityError:
                if not await ProcessedEvent.filter(event_id=envelope.event_id).exists():
                    raise
                log.info("Event %s was processed concurrently by another consumer", envelope.event_id)
                await message.ack()
                return

            await message.ack()
            log.info("Successfully processed event %s in %dms", envelope.event_id, duration_ms)

        except Exception:
            # 6. Transient failure: requeue until the redelivery cap, then DLQ
            log.exception("Error processing event %s (%s)", envelope.event_id, routing_key)
            await self._retry_or_dead_letter(message)

    async def _apply(self, envelope: EventEnvelope, handler: Optional[EventHandler], payload: Any) -> int:
        async with in_transaction() as conn:
            started = time.perf_counter()
            if handler is not None:
                await handler.apply(payload, conn)
            duration_ms = int((time.perf_counter() - started) * 1000)

            await ProcessedEvent.create(
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                processing_duration_ms=duration_ms,
                using_db=conn,
            )
        return duration_ms

    async def _retry_or_dead_letter(self, message: AbstractIncomingMessage) -> None:
        attempts = delivery_attempts(message.headers)
        try:
            if attempts >= self.max_retry_count:
                log.error("Max retries (%d) exceeded for event, sending to DLQ", self.max_retry_count)
                await message.nack(requeue=False)
            else:
                log.warning("Requeuing event for retry (attempt %d)", attempts + 1)
                await message.nack(requeue=True)
        except Exception:
            # Channel is gone; the broker redelivers the unacked message on its own
            log.exception("Could not nack message %s", message.message_id)


async def run_consumer_service(consumer: IdempotentConsumer) -> None:
    """Runs `consumer` until SIGINT/SIGTERM."""
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    consumer.start_in_background()
    try:
        await stop_requested.wait()
    finally:
        await consumer.stop()

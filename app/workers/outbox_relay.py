"""Background relay that publishes outbox rows to RabbitMQ.

Each tick:
1. Selects due rows (pending, failed with an elapsed retry time, or processing
   with an expired claim lease) in creation order
2. Opens one broker connection and channel for the whole batch
3. Claims every row with a compare-and-set UPDATE before publishing it
4. Marks the row published, or failed with exponential backoff

A failing row never aborts the batch, and nothing escapes the main loop.
"""

import asyncio
import contextlib
import logging
import signal
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import aio_pika
from aio_pika.abc import AbstractExchange
from pydantic import ValidationError
from tortoise import timezone
from tortoise.expressions import Q

from app.core.config import (
    BATCH_SIZE,
    EVENT_EXCHANGE,
    MAX_ERROR_LENGTH,
    MAX_RETRY_EXPONENT,
    POLLING_INTERVAL,
    PROCESSING_TIMEOUT_SECONDS,
    PUBLISH_TIMEOUT_SECONDS,
    RELAY_MAX_RETRIES,
    SHUTDOWN_TIMEOUT_SECONDS,
)
from app.events.envelope import EventEnvelope
from app.messaging.broker import ConnectionFactory, connect
from app.messaging.topology import declare_event_exchange
from app.models.outbox import OutboxEvent, OutboxStatus

log = logging.getLogger(__name__)


def compute_next_retry_at(retry_count: int, now: datetime, max_exponent: int = MAX_RETRY_EXPONENT) -> datetime:
    """Backoff of 2^retry_count minutes; the exponent is capped to bound the maximum delay."""
    return now + timedelta(minutes=2 ** min(retry_count, max_exponent))


def truncate_error(message: str, limit: int = MAX_ERROR_LENGTH) -> str:
    return message if len(message) <= limit else message[:limit]


def due_filter(now: datetime) -> Q:
    """Rows the relay may (re)claim at `now`."""
    return Q(status=OutboxStatus.PENDING) | Q(
        status__in=[OutboxStatus.FAILED, OutboxStatus.PROCESSING],
        next_retry_at__lte=now,
    )


def build_message(event: OutboxEvent, published_at: datetime) -> aio_pika.Message:
    envelope = EventEnvelope.from_outbox(event)
    return aio_pika.Message(
        body=envelope.to_json_bytes(),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        message_id=event.event_id,
        timestamp=published_at,
        headers={
            "event-type": event.event_type,
            "aggregate-id": event.aggregate_id,
            "aggregate-type": event.aggregate_type,
        },
    )


class OutboxRelay:
    """Polls the outbox table and publishes due events to the topic exchange.

    Attributes:
        batch_size: Rows fetched per tick
        poll_interval: Seconds between ticks
        max_retry_exponent: Caps the backoff exponent
        max_retries: Failures before a row is parked as dead (0 = never)
        processing_timeout: Claim lease; an expired lease makes the row due again
    """

    def __init__(
        self,
        *,
        batch_size: int = BATCH_SIZE,
        poll_interval: float = POLLING_INTERVAL,
        max_retry_exponent: int = MAX_RETRY_EXPONENT,
        max_retries: int = RELAY_MAX_RETRIES,
        processing_timeout: int = PROCESSING_TIMEOUT_SECONDS,
        publish_timeout: float = PUBLISH_TIMEOUT_SECONDS,
        exchange_name: str = EVENT_EXCHANGE,
        connection_factory: ConnectionFactory = connect,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.max_retry_exponent = max_retry_exponent
        self.max_retries = max_retries
        self.processing_timeout = processing_timeout
        self.publish_timeout = publish_timeout
        self.exchange_name = exchange_name

        self._connection_factory = connection_factory
        self._now = clock or timezone.now
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    async def start(self) -> None:
        if self._task is not None:
            log.warning("Outbox relay already running")
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self.run_forever())

    def request_stop(self) -> None:
        """Stops accepting new ticks; the row being published is allowed to finish."""
        self._stopping.set()

    async def stop(self, timeout: float = SHUTDOWN_TIMEOUT_SECONDS) -> None:
        if self._task is None:
            return
        self.request_stop()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            log.warning("Outbox relay shutdown timed out, cancelling")
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

    async def run_forever(self) -> None:
        log.info(
            "Outbox relay started (batch_size=%s, poll_interval=%ss, exchange=%s)",
            self.batch_size, self.poll_interval, self.exchange_name
        )
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Error processing outbox events")
            await self._sleep(self.poll_interval)
        log.info("Outbox relay stopped")

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    # --- One tick ---

    async def run_once(self) -> int:
        """Relays one batch and returns the number of rows published."""
        events = await self.fetch_due_events(self._now())
        if not events:
            return 0

        log.info("Processing %d outbox events", len(events))
        published = 0

        connection = await self._connection_factory()
        try:
            channel = await connection.channel()
            try:
                exchange = await declare_event_exchange(channel, self.exchange_name)
                for event in events:
                    if self._stopping.is_set():
                        log.info("Shutdown requested, leaving remaining outbox rows for the next run")
                        break
                    try:
                        if await self.relay_event(exchange, event):
                            published += 1
                    except Exception:
                        # The claim lease expires and the row is picked up again
                        log.exception("Could not record outcome of outbox event %s", event.event_id)
            finally:
                await channel.close()
        finally:
            await connection.close()

        log.info("Outbox batch done: %d/%d published", published, len(events))
        return published

    async def fetch_due_events(self, now: datetime) -> List[OutboxEvent]:
        return await OutboxEvent.filter(due_filter(now)).order_by("created_at", "id").limit(self.batch_size)

    async def relay_event(self, exchange: AbstractExchange, event: OutboxEvent) -> bool:
        if not await self.claim(event, self._now()):
            log.info("Outbox event %s was claimed by another relay, skipping", event.event_id)
            return False

        try:
            message = build_message(event, self._now())
        except ValidationError as e:
            # Retrying cannot fix a payload that is not a JSON object
            log.error("Outbox event %s cannot be encoded as an envelope, parking it as dead", event.event_id)
            await self.mark_failed(event, e, self._now(), dead=True)
            return False

        try:
            await exchange.publish(message, routing_key=event.event_type, timeout=self.publish_timeout)
        except Exception as e:
            log.exception("Failed to publish outbox event %s", event.event_id)
            await self.mark_failed(event, e, self._now())
            return False

        await self.mark_published(event, self._now())
        log.info("Published outbox event %s of type %s", event.event_id, event.event_type)
        return True

    # --- Status transitions (one UPDATE per row) ---

    async def claim(self, event: OutboxEvent, now: datetime) -> bool:
        """Compare-and-set to processing; False when another relay got there first."""
        lease_expires_at = now + timedelta(seconds=self.processing_timeout)
        updated = await OutboxEvent.filter(due_filter(now), id=event.id).update(
            status=OutboxStatus.PROCESSING,
            next_retry_at=lease_expires_at,
        )
        if updated != 1:
            return False
        event.status = OutboxStatus.PROCESSING
        event.next_retry_at = lease_expires_at
        return True

    async def mark_published(self, event: OutboxEvent, now: datetime) -> None:
        await OutboxEvent.filter(id=event.id, status=OutboxStatus.PROCESSING).update(
            status=OutboxStatus.PUBLISHED,
            published_at=now,
            processed_at=now,
            next_retry_at=None,
        )
        event.status = OutboxStatus.PUBLISHED
        event.published_at = event.processed_at = now
        event.next_retry_at = None

    async def mark_failed(self, event: OutboxEvent, error: Exception, now: datetime, dead: bool = False) -> None:
        retry_count = event.retry_count + 1
        last_error = truncate_error(str(error) or error.__class__.__name__)

        if dead:
            status, next_retry_at = OutboxStatus.DEAD, None
        elif self.max_retries and retry_count >= self.max_retries:
            status, next_retry_at = OutboxStatus.DEAD, None
            log.error(
                "Outbox event %s reached %d failed attempts, parking it as dead",
                event.event_id, retry_count
            )
        else:
            status = OutboxStatus.FAILED
            next_retry_at = compute_next_retry_at(retry_count, now, self.max_retry_exponent)
            log.warning(
                "Outbox event %s scheduled for retry %d at %s",
                event.event_id, retry_count, next_retry_at.isoformat()
            )

        await OutboxEvent.filter(id=event.id, status=OutboxStatus.PROCESSING).update(
            status=status,
            retry_count=retry_count,
            last_error=last_error,
            next_retry_at=next_retry_at,
        )
        event.status = status
        event.retry_count = retry_count
        event.last_error = last_error
        event.next_retry_at = next_retry_at


async def run_relay_service() -> None:
    """Standalone relay process: runs until SIGINT/SIGTERM, then finishes the in-flight row."""
    from app.core.db import close_db, init_db
    from app.core.logging_config import setup_logging

    setup_logging()
    await init_db()
    relay = OutboxRelay()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relay.request_stop)

    try:
        await relay.run_forever()
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(run_relay_service())

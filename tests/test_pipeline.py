"""End to end: service write -> outbox -> relay -> broker -> idempotent consumer -> profile cache."""

import pytest

from app.consumers.user_event_consumer import create_user_event_consumer
from app.models.outbox import OutboxEvent, OutboxStatus
from app.models.processed_event import ProcessedEvent
from app.models.user_profile import UserProfile
from app.services.user_service import delete_user, register_user, update_user
from app.testing.fake_broker import FakeIncomingMessage
from app.workers.outbox_relay import OutboxRelay

EXCHANGE = "test.events"


async def deliver(broker, consumer, start=0):
    """Routes every message published since `start` to the consumer's bindings, like a topic exchange would."""
    messages = []
    for message, routing_key in broker.published[start:]:
        if routing_key not in consumer.handlers:
            continue
        incoming = FakeIncomingMessage(
            message.body, routing_key=routing_key, headers=dict(message.headers), message_id=message.message_id
        )
        await consumer.handle_message(incoming)
        messages.append(incoming)
    return messages


@pytest.mark.asyncio
async def test_user_lifecycle_reaches_profile_cache(db, broker, clock):
    relay = OutboxRelay(exchange_name=EXCHANGE, connection_factory=broker.connect, clock=clock)
    consumer = create_user_event_consumer(exchange_name=EXCHANGE, connection_factory=broker.connect)

    user = await register_user("alice", "alice@example.com", "Alice")
    assert await relay.run_once() == 2

    delivered = await deliver(broker, consumer)
    assert [m.routing_key for m in delivered] == ["user.created"]
    assert all(m.outcome == "ack" for m in delivered)

    profile = await UserProfile.get(user_id=user.id)
    assert profile.username == "alice"
    assert profile.display_name == "Alice"

    seen = len(broker.published)
    await update_user(user.id, display_name="Alice B.")
    await relay.run_once()
    await deliver(broker, consumer, start=seen)
    assert (await UserProfile.get(user_id=user.id)).display_name == "Alice B."

    seen = len(broker.published)
    await delete_user(user.id)
    await relay.run_once()
    await deliver(broker, consumer, start=seen)
    assert await UserProfile.get_or_none(user_id=user.id) is None

    assert await OutboxEvent.exclude(status=OutboxStatus.PUBLISHED).count() == 0
    assert await ProcessedEvent.all().count() == 3


@pytest.mark.asyncio
async def test_publish_retry_and_duplicate_delivery_apply_once(db, broker, clock):
    relay = OutboxRelay(exchange_name=EXCHANGE, connection_factory=broker.connect, clock=clock)
    consumer = create_user_event_consumer(exchange_name=EXCHANGE, connection_factory=broker.connect)

    user = await register_user("bob", "bob@example.com", "Bob")
    created = await OutboxEvent.get(event_type="user.created", aggregate_id=str(user.id))
    broker.fail_next(created.event_id)

    await relay.run_once()
    assert (await OutboxEvent.get(id=created.id)).status == OutboxStatus.FAILED

    clock.advance(minutes=2)
    await relay.run_once()
    assert (await OutboxEvent.get(id=created.id)).status == OutboxStatus.PUBLISHED

    # The broker hands the same message out twice
    first = await deliver(broker, consumer)
    second = await deliver(broker, consumer)

    assert [m.outcome for m in first + second] == ["ack", "ack"]
    assert await ProcessedEvent.filter(event_id=created.event_id).count() == 1
    assert await UserProfile.filter(user_id=user.id).count() == 1

import asyncio
from datetime import datetime, timezone

import asyncpg
import pytest
from redis import exceptions as redis_exceptions

from clstr.domain.messaging import realtime, service
from clstr.domain.messaging.models import Message
from clstr.domain.messaging.realtime import (
    ChangeEvent,
    InMemoryFeed,
    MessageBuffer,
    MessageFanout,
    RedisStreamFeed,
)


async def _wait_for(predicate, timeout=1.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


async def _settle():
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_scenario_c_single_callback_despite_redelivery(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    received = []
    calls = []
    buffer = MessageBuffer()

    def on_message(message):
        calls.append(message.id)
        if buffer.upsert(message):
            received.append(message)

    unsubscribe = await service.subscribe(u2, on_message)
    sent = await service.send_message(u1, u2.id, "ping")
    await feed.redeliver(feed.published[-1])
    await _wait_for(lambda: len(calls) == 2)

    assert [m.content for m in received] == ["ping"]
    assert received[0].id == sent.id
    assert [m.id for m in buffer.messages()] == [sent.id]
    unsubscribe()


@pytest.mark.asyncio
async def test_adapter_does_not_dedupe(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    raw = []

    unsubscribe = await service.subscribe(u2, raw.append)
    await service.send_message(u1, u2.id, "ping")
    await feed.redeliver(feed.published[-1])
    await _wait_for(lambda: len(raw) == 2)

    assert raw[0].id == raw[1].id
    unsubscribe()


@pytest.mark.asyncio
async def test_sender_and_receiver_both_see_inserts(make_user, connect, feed):
    u1 = await make_user(full_name="Sender")
    u2 = await make_user()
    outsider = await make_user()
    await connect(u1, u2)
    sender_view, receiver_view, outsider_view = [], [], []

    unsubscribers = [
        await service.subscribe(u1, sender_view.append),
        await service.subscribe(u2, receiver_view.append),
        await service.subscribe(outsider, outsider_view.append),
    ]
    await service.send_message(u1, u2.id, "hello")
    await _wait_for(lambda: sender_view and receiver_view)
    await _settle()

    assert sender_view[0].sender.full_name == "Sender"
    assert outsider_view == []
    for unsubscribe in unsubscribers:
        unsubscribe()


@pytest.mark.asyncio
async def test_read_flip_is_delivered_as_update(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    sender_view = []
    await service.send_message(u1, u2.id, "one")
    await service.send_message(u1, u2.id, "two")

    unsubscribe = await service.subscribe(u1, sender_view.append)
    await service.mark_read(u2, u1.id)
    await _wait_for(lambda: len(sender_view) == 2)

    assert all(m.read for m in sender_view)
    assert [e.kind for e in feed.published[-2:]] == ["update", "update"]
    unsubscribe()


@pytest.mark.asyncio
async def test_unsubscribe_releases_channel_and_stops_callbacks(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    received = []
    fanout = service.get_service().fanout

    unsubscribe = await service.subscribe(u2, received.append)
    assert feed.open_channels == 1
    assert fanout.subscription_count(u2.id) == 1

    unsubscribe()
    unsubscribe()
    await service.send_message(u1, u2.id, "after")
    await _settle()

    assert received == []
    assert feed.open_channels == 0
    assert fanout.subscription_count(u2.id) == 0


@pytest.mark.asyncio
async def test_unsubscribe_leaves_sibling_subscriptions(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    first, second = [], []

    unsubscribe_first = await service.subscribe(u2, first.append)
    unsubscribe_second = await service.subscribe(u2, second.append)
    unsubscribe_first()
    await service.send_message(u1, u2.id, "still listening")
    await _wait_for(lambda: len(second) == 1)
    await _settle()

    assert first == []
    assert feed.open_channels == 1
    assert service.get_service().fanout.subscription_count(u2.id) == 1
    unsubscribe_second()


@pytest.mark.asyncio
async def test_callback_failure_keeps_subscription_alive(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    delivered = []

    async def flaky(message):
        if message.content == "boom":
            raise RuntimeError("consumer bug")
        delivered.append(message.content)

    unsubscribe = await service.subscribe(u2, flaky)
    await service.send_message(u1, u2.id, "boom")
    await service.send_message(u1, u2.id, "fine")
    await _wait_for(lambda: delivered == ["fine"])
    unsubscribe()


@pytest.mark.asyncio
async def test_redis_stream_channel_filters_and_rewinds(fake_redis):
    stream_feed = RedisStreamFeed("x:test.changes", maxlen=100, block_ms=0, reconnect_delay=0)
    channel = stream_feed.open_channel("viewer")
    assert await channel.read_batch(None) == []

    await stream_feed.publish(ChangeEvent("insert", "m1", "other", "viewer"))
    await stream_feed.publish(ChangeEvent("insert", "m2", "a", "b"))
    await stream_feed.publish(ChangeEvent("update", "m3", "viewer", "other"))

    batch = await channel.read_batch(None)
    assert [(e.kind, e.message_id) for e in batch] == [("insert", "m1"), ("update", "m3")]

    channel.ack(batch[0].entry_id)
    channel.rewind()
    again = await channel.read_batch(None)
    assert [e.message_id for e in again] == ["m3"]

    channel.close()
    assert stream_feed.open_channels == 0


def test_get_feed_defaults_to_redis_stream():
    realtime.set_feed(None)
    assert isinstance(realtime.get_feed(), RedisStreamFeed)


@pytest.mark.asyncio
async def test_redis_stream_delivers_first_message_after_subscribe(make_user, connect):
    realtime.set_feed(RedisStreamFeed("x:test.fanout", maxlen=100, block_ms=20, reconnect_delay=0))
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    await service.send_message(u1, u2.id, "before subscribe")
    received = []

    unsubscribe = await service.subscribe(u2, received.append)
    await service.send_message(u1, u2.id, "first after subscribe")
    await service.send_message(u1, u2.id, "second")
    await _wait_for(lambda: len(received) == 2, timeout=2.0)

    assert [m.content for m in received] == ["first after subscribe", "second"]
    unsubscribe()


def _stored(message_id):
    now = datetime.now(timezone.utc)
    return Message(
        id=message_id,
        sender_id="sender",
        receiver_id="viewer",
        content=message_id,
        read=False,
        created_at=now,
        updated_at=now,
    )


@pytest.mark.asyncio
async def test_fanout_keeps_delivering_after_loader_error():
    memory_feed = InMemoryFeed()
    calls = []

    async def loader(message_id):
        calls.append(message_id)
        if len(calls) == 1:
            raise asyncpg.exceptions.QueryCanceledError("canceling statement due to statement timeout")
        return _stored(message_id)

    fanout = MessageFanout(memory_feed, loader)
    received = []
    unsubscribe = await fanout.subscribe("viewer", received.append)
    await memory_feed.publish(ChangeEvent("insert", "m1", "sender", "viewer"))
    await memory_feed.publish(ChangeEvent("insert", "m2", "sender", "viewer"))
    await _wait_for(lambda: len(received) == 1)

    assert [m.id for m in received] == ["m2"]
    assert fanout.subscription_count("viewer") == 1
    unsubscribe()


class _BrokenChannel(realtime.Channel):
    async def events(self):
        raise redis_exceptions.ResponseError("NOGROUP No such key")
        yield

    def close(self):
        self.closed = True


class _BrokenFeed(InMemoryFeed):
    def open_channel(self, viewer_id):
        return _BrokenChannel(viewer_id)


@pytest.mark.asyncio
async def test_dead_pump_releases_subscription():
    fanout = MessageFanout(_BrokenFeed(), lambda message_id: None)

    await fanout.subscribe("viewer", lambda message: None)
    await _wait_for(lambda: fanout.subscription_count("viewer") == 0)

    assert fanout.subscription_count() == 0


@pytest.mark.asyncio
async def test_switching_feed_closes_previous_fanout(make_user, connect, feed):
    u1 = await make_user()
    u2 = await make_user()
    await connect(u1, u2)
    stale, fresh = [], []

    await service.subscribe(u2, stale.append)
    assert feed.open_channels == 1
    replacement = InMemoryFeed()
    realtime.set_feed(replacement)
    unsubscribe = await service.subscribe(u2, fresh.append)
    await service.send_message(u1, u2.id, "on the new feed")
    await _wait_for(lambda: len(fresh) == 1)
    await _settle()

    assert feed.open_channels == 0
    assert replacement.open_channels == 1
    assert stale == []
    assert service.get_service().fanout.subscription_count(u2.id) == 1
    unsubscribe()

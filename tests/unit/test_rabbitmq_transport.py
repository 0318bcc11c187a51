"""
Unit tests for the RabbitMQ transport against a mocked aio-pika connection.
"""

from unittest.mock import AsyncMock, MagicMock

import aio_pika
import pytest
import pytest_asyncio
from aio_pika.exceptions import ChannelClosed

from eventsync.config import RabbitMQConfig
from eventsync.exceptions import TransportConnectionError
from eventsync.messaging.envelope import Envelope, EventType
from eventsync.messaging.rabbitmq import RETRY_COUNT_HEADER, RabbitMQTransport

QUEUE = "favorite_added_users_queue"
DLQ = "favorite_added_users_queue.dlq"


class FakeBroker:
    """Mocked aio-pika connection, channel, exchanges and queues."""

    def __init__(self):
        self.exchanges: dict[str, MagicMock] = {}
        self.queues: dict[str, MagicMock] = {}
        self.consumers: dict[str, list] = {}

        self.channel = self.make_channel()

        self.connection = MagicMock()
        self.connection.is_closed = False
        self.connection.close = AsyncMock()
        self.connection.channel = AsyncMock(return_value=self.channel)

        self.connect = AsyncMock(return_value=self.connection)

    def make_channel(self) -> MagicMock:
        channel = MagicMock()
        channel.is_closed = False
        channel.set_qos = AsyncMock()
        channel.declare_exchange = AsyncMock(side_effect=self._declare_exchange)
        channel.declare_queue = AsyncMock(side_effect=self._declare_queue)
        channel.default_exchange.publish = AsyncMock()
        return channel

    def _declare_exchange(self, name, *args, **kwargs):
        if name not in self.exchanges:
            exchange = MagicMock(name=name)
            exchange.publish = AsyncMock()
            self.exchanges[name] = exchange
        return self.exchanges[name]

    def _declare_queue(self, name, *args, **kwargs):
        if name not in self.queues:
            queue = MagicMock(name=name)
            queue.bind = AsyncMock()
            queue.cancel = AsyncMock()
            queue.get = AsyncMock(return_value=None)
            queue.declaration_result = MagicMock(message_count=0, consumer_count=0)

            async def consume(callback, no_ack=False, _name=name):
                self.consumers.setdefault(_name, []).append(callback)
                return f"ctag-{_name}"

            queue.consume = AsyncMock(side_effect=consume)
            self.queues[name] = queue
        return self.queues[name]

    async def deliver(self, queue: str, body: bytes) -> MagicMock:
        message = MagicMock()
        message.body = body
        message.ack = AsyncMock()
        message.reject = AsyncMock()
        message.nack = AsyncMock()
        await self.consumers[queue][-1](message)
        return message


@pytest.fixture
def broker(monkeypatch):
    broker = FakeBroker()
    monkeypatch.setattr("eventsync.messaging.rabbitmq.aio_pika.connect", broker.connect)
    return broker


@pytest_asyncio.fixture
async def transport(registry, transport_config, broker):
    transport = RabbitMQTransport(registry, transport_config, RabbitMQConfig())
    await transport.connect()
    yield transport
    await transport.close()


@pytest.mark.unit
class TestConnection:
    """Test connection lifecycle and topology."""

    @pytest.mark.asyncio
    async def test_connect_declares_durable_topic_exchanges(self, transport, broker):
        assert transport.is_ready
        assert set(broker.exchanges) == {
            "user_events",
            "reservation_events",
            "favorite_events",
            "notification_events",
        }
        broker.channel.declare_exchange.assert_any_await(
            "favorite_events", aio_pika.ExchangeType.TOPIC, durable=True
        )
        broker.channel.set_qos.assert_awaited_once_with(prefetch_count=10)
        broker.connection.close_callbacks.add.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_failure_is_a_connection_error(self, registry, transport_config, broker):
        broker.connect.side_effect = ConnectionRefusedError("refused")
        transport = RabbitMQTransport(registry, transport_config)

        with pytest.raises(TransportConnectionError):
            await transport.connect()
        assert not transport.is_ready

    @pytest.mark.asyncio
    async def test_close_closes_connection(self, transport, broker):
        await transport.close()
        assert not transport.is_ready
        broker.connection.close.assert_awaited_once()
        broker.connection.close_callbacks.discard.assert_called_once()

    @pytest.mark.asyncio
    async def test_dropped_connection_reconnects_and_resumes_consumers(
        self, transport, broker, eventually
    ):
        await transport.subscribe(EventType.FAVORITE_ADDED)
        callback = broker.connection.close_callbacks.add.call_args.args[0]

        callback(broker.connection, ConnectionResetError("gone"))
        assert not transport.is_ready
        assert transport.status()["reconnecting"] is True

        assert await eventually(lambda: transport.is_ready)
        assert broker.connect.await_count == 2
        assert len(broker.consumers[QUEUE]) == 2

    @pytest.mark.asyncio
    async def test_operations_fail_fast_while_reconnecting(
        self, transport, broker, make_envelope
    ):
        broker.connect.side_effect = ConnectionRefusedError("refused")
        callback = broker.connection.close_callbacks.add.call_args.args[0]
        callback(broker.connection, None)

        with pytest.raises(TransportConnectionError):
            await transport.send(make_envelope())


@pytest.mark.unit
class TestPublishing:
    """Test envelope publishing."""

    @pytest.mark.asyncio
    async def test_send_publishes_persistent_message(self, transport, broker, make_envelope):
        env = make_envelope(retry_count=1)

        await transport.send(env)

        exchange = broker.exchanges["favorite_events"]
        message = exchange.publish.await_args.args[0]
        assert exchange.publish.await_args.kwargs == {"routing_key": "favorite.added"}
        assert message.body == env.to_bytes()
        assert message.message_id == env.id
        assert message.delivery_mode == aio_pika.DeliveryMode.PERSISTENT
        assert message.headers[RETRY_COUNT_HEADER] == 1

    @pytest.mark.asyncio
    async def test_closed_channel_is_reopened_once(self, transport, broker, make_envelope):
        exchange = broker.exchanges["favorite_events"]
        exchange.publish.side_effect = [ChannelClosed(404, "NOT_FOUND"), None]

        await transport.send(make_envelope())

        assert exchange.publish.await_count == 2
        assert broker.connection.channel.await_count == 2

    @pytest.mark.asyncio
    async def test_reopened_channel_restarts_consumers(self, transport, broker, make_envelope):
        await transport.subscribe(EventType.FAVORITE_ADDED)
        fresh = broker.make_channel()
        broker.connection.channel.return_value = fresh
        broker.exchanges["favorite_events"].publish.side_effect = [
            ChannelClosed(404, "NOT_FOUND"),
            None,
        ]

        await transport.send(make_envelope())

        fresh.declare_queue.assert_any_await(
            QUEUE,
            durable=True,
            arguments={"x-dead-letter-exchange": "favorite_events.dlx"},
        )
        assert len(broker.consumers[QUEUE]) == 2

        env = make_envelope()
        await broker.deliver(QUEUE, env.to_bytes())
        delivery = await transport.receive(EventType.FAVORITE_ADDED, timeout=0.1)
        assert delivery.raw == env.to_bytes()

    @pytest.mark.asyncio
    async def test_publish_failure_is_a_connection_error(self, transport, broker, make_envelope):
        broker.exchanges["favorite_events"].publish.side_effect = ConnectionResetError("reset")

        with pytest.raises(TransportConnectionError):
            await transport.send(make_envelope())

    @pytest.mark.asyncio
    async def test_health_check_publishes_ping(self, transport, broker):
        report = await transport.health_check()

        assert report.healthy is True
        exchange = broker.exchanges["user_events"]
        message = exchange.publish.await_args.args[0]
        assert exchange.publish.await_args.kwargs == {"routing_key": "health.check"}
        assert Envelope.from_bytes(message.body).event_type is EventType.HEALTH_CHECK

    @pytest.mark.asyncio
    async def test_health_check_reports_failure(self, transport, broker):
        broker.exchanges["user_events"].publish.side_effect = ConnectionResetError("reset")
        report = await transport.health_check()
        assert report.healthy is False
        assert report.transport == "rabbitmq"


@pytest.mark.unit
class TestConsuming:
    """Test queue topology and delivery outcomes."""

    @pytest.mark.asyncio
    async def test_subscribe_declares_queue_with_dead_letter_exchange(self, transport, broker):
        queue_name = await transport.subscribe(EventType.FAVORITE_ADDED)

        assert queue_name == QUEUE
        broker.channel.declare_queue.assert_any_await(
            QUEUE,
            durable=True,
            arguments={"x-dead-letter-exchange": "favorite_events.dlx"},
        )
        broker.queues[QUEUE].bind.assert_awaited_with(
            broker.exchanges["favorite_events"], routing_key="favorite.added"
        )
        broker.queues[DLQ].bind.assert_awaited_with(
            broker.exchanges["favorite_events.dlx"], routing_key="favorite.added"
        )
        assert transport.status()["subscribed"] == ["FAVORITE_ADDED"]

    @pytest.mark.asyncio
    async def test_receive_returns_buffered_delivery(self, transport, broker, make_envelope):
        await transport.subscribe(EventType.FAVORITE_ADDED)
        env = make_envelope()
        message = await broker.deliver(QUEUE, env.to_bytes())

        delivery = await transport.receive(EventType.FAVORITE_ADDED, timeout=0.1)

        assert delivery.raw == env.to_bytes()
        assert delivery.queue == QUEUE
        await delivery.ack()
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_receive_subscribes_on_demand_and_times_out(self, transport, broker):
        assert await transport.receive(EventType.FAVORITE_ADDED, timeout=0.01) is None
        assert QUEUE in broker.consumers

    @pytest.mark.asyncio
    async def test_dead_letter_rejects_without_requeue(self, transport, broker, make_envelope):
        await transport.subscribe(EventType.FAVORITE_ADDED)
        message = await broker.deliver(QUEUE, make_envelope().to_bytes())
        delivery = await transport.receive(EventType.FAVORITE_ADDED, timeout=0.1)

        await delivery.dead_letter("retries exhausted")

        message.reject.assert_awaited_once_with(requeue=False)
        message.ack.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_requeue_sends_copy_to_own_queue_then_acks(
        self, transport, broker, make_envelope
    ):
        await transport.subscribe(EventType.FAVORITE_ADDED)
        env = make_envelope()
        message = await broker.deliver(QUEUE, env.to_bytes())
        delivery = await transport.receive(EventType.FAVORITE_ADDED, timeout=0.1)

        await delivery.requeue(env.next_attempt())

        default_exchange = broker.channel.default_exchange
        assert default_exchange.publish.await_args.kwargs == {"routing_key": QUEUE}
        published = default_exchange.publish.await_args.args[0]
        assert Envelope.from_bytes(published.body).retry_count == 1
        broker.exchanges["favorite_events"].publish.assert_not_awaited()
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unsubscribe_cancels_consumer(self, transport, broker):
        await transport.subscribe(EventType.FAVORITE_ADDED)
        await transport.unsubscribe(EventType.FAVORITE_ADDED)

        broker.queues[QUEUE].cancel.assert_awaited_once_with(f"ctag-{QUEUE}")
        assert transport.status()["subscribed"] == []


@pytest.mark.unit
class TestDeadLetters:
    """Test dead-letter inspection and replay."""

    @pytest.mark.asyncio
    async def test_queue_stats_reads_declaration_result(self, transport, broker):
        broker._declare_queue(QUEUE).declaration_result = MagicMock(message_count=5, consumer_count=1)
        broker._declare_queue(DLQ).declaration_result = MagicMock(message_count=2, consumer_count=0)

        stats = await transport.queue_stats(EventType.FAVORITE_ADDED)

        assert stats.length == 5
        assert stats.dead_letter_length == 2
        assert stats.consumers == 1

    @pytest.mark.asyncio
    async def test_replay_republishes_with_fresh_budget(self, transport, broker, make_envelope):
        dead = make_envelope(retry_count=2)
        good = MagicMock(body=dead.to_bytes(), ack=AsyncMock(), nack=AsyncMock())
        poison = MagicMock(body=b"garbage", ack=AsyncMock(), nack=AsyncMock())
        dlq = broker._declare_queue(DLQ)
        dlq.declaration_result = MagicMock(message_count=2, consumer_count=0)
        dlq.get.side_effect = [good, poison]

        replayed = await transport.replay_dead_letters(EventType.FAVORITE_ADDED)

        assert replayed == 1
        published = broker.exchanges["favorite_events"].publish.await_args.args[0]
        assert Envelope.from_bytes(published.body).retry_count == 0
        good.ack.assert_awaited_once()
        poison.nack.assert_awaited_once_with(requeue=True)
        dlq.get.assert_awaited_with(no_ack=False, fail=False)

    @pytest.mark.asyncio
    async def test_replay_respects_limit(self, transport, broker, make_envelope):
        dlq = broker._declare_queue(DLQ)
        dlq.declaration_result = MagicMock(message_count=10, consumer_count=0)
        dlq.get.side_effect = lambda **kwargs: MagicMock(
            body=make_envelope().to_bytes(), ack=AsyncMock(), nack=AsyncMock()
        )

        assert await transport.replay_dead_letters(EventType.FAVORITE_ADDED, limit=3) == 3
        assert dlq.get.await_count == 3

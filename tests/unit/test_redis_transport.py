"""
Unit tests for the Redis transport against mocked redis.asyncio clients.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from eventsync.config import RedisConfig
from eventsync.exceptions import TransportConnectionError, TransportUnavailableError
from eventsync.messaging.envelope import Envelope, EventType
from eventsync.messaging.redis import RedisTransport

QUEUE = "queue:favorite_added_users"
DLQ = "dlq:queue:favorite_added_users"


@pytest.fixture
def pipe():
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 0])
    return pipe


@pytest.fixture
def client(pipe):
    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    client.brpop = AsyncMock(return_value=None)
    client.lpush = AsyncMock(return_value=1)
    client.rpop = AsyncMock(return_value=None)
    client.llen = AsyncMock(return_value=0)
    client.pipeline.return_value.__aenter__.return_value = pipe
    return client


@pytest_asyncio.fixture
async def transport(registry, transport_config, client, monkeypatch):
    transport = RedisTransport(
        registry, transport_config, RedisConfig(max_reconnect_attempts=3)
    )
    monkeypatch.setattr(transport, "_client", lambda: client)
    await transport.connect()
    yield transport
    await transport.close()


@pytest.mark.unit
class TestConnection:
    """Test connection lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_pings_every_client(self, transport, client):
        assert transport.is_ready
        assert client.ping.await_count == 3

    @pytest.mark.asyncio
    async def test_failed_ping_is_a_connection_error(self, registry, transport_config, client, monkeypatch):
        client.ping.side_effect = RedisConnectionError("refused")
        transport = RedisTransport(registry, transport_config)
        monkeypatch.setattr(transport, "_client", lambda: client)

        with pytest.raises(TransportConnectionError):
            await transport.connect()
        assert not transport.is_ready
        client.aclose.assert_awaited()

    @pytest.mark.asyncio
    async def test_close_releases_clients(self, transport, client):
        await transport.close()
        assert not transport.is_ready
        assert client.aclose.await_count == 3

    @pytest.mark.asyncio
    async def test_commands_connect_lazily(self, registry, transport_config, client, monkeypatch, make_envelope):
        transport = RedisTransport(registry, transport_config)
        monkeypatch.setattr(transport, "_client", lambda: client)

        await transport.send(make_envelope())

        assert transport.is_ready
        await transport.close()


@pytest.mark.unit
class TestSendReceive:
    """Test the list-plus-channel delivery path."""

    @pytest.mark.asyncio
    async def test_send_pushes_and_publishes_atomically(self, transport, client, pipe, make_envelope):
        env = make_envelope()

        await transport.send(env)

        client.pipeline.assert_called_with(transaction=True)
        pipe.lpush.assert_called_once_with(QUEUE, env.to_bytes())
        pipe.ltrim.assert_called_once_with(QUEUE, 0, 9999)
        pipe.publish.assert_called_once_with("favorite:added", env.to_bytes())
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unconsumed_queue_is_capped(
        self, registry, transport_config, client, pipe, make_envelope, monkeypatch
    ):
        transport = RedisTransport(registry, transport_config, RedisConfig(max_queue_length=50))
        monkeypatch.setattr(transport, "_client", lambda: client)
        await transport.connect()
        env = make_envelope(EventType.USER_LOGGED_IN, {"userId": 1})

        await transport.send(env)

        pipe.ltrim.assert_called_once_with("queue:user_logged_in_main", 0, 49)
        await transport.close()

    @pytest.mark.asyncio
    async def test_queue_cap_can_be_disabled(
        self, registry, transport_config, client, pipe, make_envelope, monkeypatch
    ):
        transport = RedisTransport(registry, transport_config, RedisConfig(max_queue_length=0))
        monkeypatch.setattr(transport, "_client", lambda: client)
        await transport.connect()

        await transport.send(make_envelope())

        pipe.ltrim.assert_not_called()
        await transport.close()

    @pytest.mark.asyncio
    async def test_receive_blocks_for_whole_seconds(self, transport, client, make_envelope):
        env = make_envelope()
        client.brpop.return_value = (QUEUE.encode(), env.to_bytes())

        delivery = await transport.receive(EventType.FAVORITE_ADDED, timeout=0.05)

        client.brpop.assert_awaited_with([QUEUE], timeout=1)
        assert delivery.raw == env.to_bytes()
        assert delivery.queue == QUEUE
        assert delivery.event_type is EventType.FAVORITE_ADDED

    @pytest.mark.asyncio
    async def test_receive_timeout_returns_none(self, transport):
        assert await transport.receive(EventType.FAVORITE_ADDED, timeout=2.5) is None

    @pytest.mark.asyncio
    async def test_requeue_and_dead_letter(self, transport, client, make_envelope):
        env = make_envelope()
        client.brpop.return_value = (QUEUE.encode(), env.to_bytes())
        delivery = await transport.receive(EventType.FAVORITE_ADDED, timeout=1)

        retry = env.next_attempt()
        await delivery.requeue(retry)
        client.lpush.assert_awaited_with(QUEUE, retry.to_bytes())

        await delivery.dead_letter("retries exhausted")
        client.lpush.assert_awaited_with(DLQ, env.to_bytes())

    @pytest.mark.asyncio
    async def test_queue_stats(self, transport, client):
        client.llen.side_effect = [4, 1]

        stats = await transport.queue_stats(EventType.FAVORITE_ADDED)

        assert stats.queue == QUEUE
        assert stats.dead_letter_queue == DLQ
        assert stats.length == 4
        assert stats.dead_letter_length == 1


@pytest.mark.unit
class TestFailures:
    """Test error translation and giving up."""

    @pytest.mark.asyncio
    async def test_transport_gives_up_after_repeated_failures(self, transport, client, make_envelope):
        client.brpop.side_effect = RedisConnectionError("connection reset")

        for _ in range(2):
            with pytest.raises(TransportConnectionError) as exc_info:
                await transport.receive(EventType.FAVORITE_ADDED, timeout=1)
            assert not isinstance(exc_info.value, TransportUnavailableError)

        with pytest.raises(TransportUnavailableError):
            await transport.receive(EventType.FAVORITE_ADDED, timeout=1)
        assert transport.given_up
        assert transport.status()["given_up"] is True

        with pytest.raises(TransportUnavailableError):
            await transport.send(make_envelope())

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, transport, client):
        client.brpop.side_effect = [
            RedisConnectionError("reset"),
            RedisConnectionError("reset"),
            None,
            RedisConnectionError("reset"),
        ]
        for _ in range(2):
            with pytest.raises(TransportConnectionError):
                await transport.receive(EventType.FAVORITE_ADDED, timeout=1)
        assert await transport.receive(EventType.FAVORITE_ADDED, timeout=1) is None

        with pytest.raises(TransportConnectionError):
            await transport.receive(EventType.FAVORITE_ADDED, timeout=1)
        assert not transport.given_up

    @pytest.mark.asyncio
    async def test_connect_after_giving_up_resets(self, transport, client):
        client.brpop.side_effect = RedisConnectionError("reset")
        for _ in range(3):
            with pytest.raises(TransportConnectionError):
                await transport.receive(EventType.FAVORITE_ADDED, timeout=1)
        assert transport.given_up

        client.brpop.side_effect = None
        await transport.connect()

        assert not transport.given_up
        assert await transport.receive(EventType.FAVORITE_ADDED, timeout=1) is None

    @pytest.mark.asyncio
    async def test_command_errors_do_not_count_as_outages(self, transport, client):
        client.llen.side_effect = ResponseError("WRONGTYPE")

        with pytest.raises(TransportConnectionError):
            await transport.queue_stats(EventType.FAVORITE_ADDED)
        assert transport.status()["given_up"] is False

    @pytest.mark.asyncio
    async def test_health_check(self, transport, client):
        assert (await transport.health_check()).healthy is True

        client.ping.side_effect = RedisConnectionError("gone")
        report = await transport.health_check()
        assert report.healthy is False
        assert report.transport == "redis"


@pytest.mark.unit
class TestDeadLetterReplay:
    """Test moving dead letters back to the live queue."""

    @pytest.mark.asyncio
    async def test_replay_resets_retries_and_keeps_poison(self, transport, client, make_envelope):
        dead = make_envelope(retry_count=2)
        client.llen.return_value = 2
        client.rpop.side_effect = [dead.to_bytes(), b"garbage"]

        replayed = await transport.replay_dead_letters(EventType.FAVORITE_ADDED)

        assert replayed == 1
        pushed = {call.args[0]: call.args[1] for call in client.lpush.await_args_list}
        assert Envelope.from_bytes(pushed[QUEUE]).retry_count == 0
        assert Envelope.from_bytes(pushed[QUEUE]).id == dead.id
        assert pushed[DLQ] == b"garbage"

    @pytest.mark.asyncio
    async def test_replay_respects_limit(self, transport, client, make_envelope):
        client.llen.return_value = 10
        client.rpop.return_value = make_envelope().to_bytes()

        assert await transport.replay_dead_letters(EventType.FAVORITE_ADDED, limit=3) == 3
        assert client.rpop.await_count == 3


@pytest.mark.unit
class TestBroadcast:
    """Test pub/sub channel listeners."""

    @pytest.mark.asyncio
    async def test_channel_messages_reach_handler(self, transport, client, make_envelope, eventually):
        env = make_envelope(EventType.USER_LOGGED_IN, {"userId": 1})
        messages = [
            {"type": "message", "data": b"not json"},
            {"type": "message", "data": env.to_bytes()},
        ]

        async def get_message(**kwargs):
            if messages:
                return messages.pop(0)
            await asyncio.sleep(0.01)
            return None

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.get_message = get_message
        client.pubsub.return_value = pubsub

        received = []

        async def handler(e):
            received.append(e)

        channel = await transport.subscribe_channel(EventType.USER_LOGGED_IN, handler)

        assert channel == "user:logged_in"
        pubsub.subscribe.assert_awaited_once_with("user:logged_in")
        assert await eventually(lambda: received)
        assert received[0].id == env.id

        await transport.close()
        pubsub.aclose.assert_awaited_once()

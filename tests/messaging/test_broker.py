"""Tests for deployer.messaging.broker against fakeredis."""

from __future__ import annotations

import fakeredis
import pytest

from conftest import FakeBroker
from deployer.core.errors import BrokerError
from deployer.messaging.broker import Broker, RedisBroker


def make_broker(server: fakeredis.FakeServer | None = None, **kwargs) -> tuple[RedisBroker, fakeredis.FakeAsyncRedis]:
    client = fakeredis.FakeAsyncRedis(server=server or fakeredis.FakeServer())
    return RedisBroker("redis://unused", "deploys", client=client, **kwargs), client


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_fifo_order(self):
        broker, _ = make_broker()
        await broker.connect()
        await broker.publish(b"one")
        await broker.publish(b"two")

        first = await broker.receive()
        second = await broker.receive()
        assert (first.body, second.body) == (b"one", b"two")
        assert (first.delivery_id, second.delivery_id) == (1, 2)
        assert first.received_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_uses_named_list(self):
        broker, client = make_broker()
        await broker.connect()
        await broker.publish(b"x")
        assert await client.lrange("deploys", 0, -1) == [b"x"]

    @pytest.mark.asyncio
    @pytest.mark.slow
    async def test_receive_timeout_returns_none(self):
        broker, _ = make_broker(receive_timeout=1)
        await broker.connect()
        assert await broker.receive() is None


class TestFailures:
    @pytest.mark.asyncio
    async def test_connect_failure(self):
        server = fakeredis.FakeServer()
        server.connected = False
        broker, _ = make_broker(server)

        with pytest.raises(BrokerError, match="failed to connect"):
            await broker.connect()
        assert broker.last_error is not None

    @pytest.mark.asyncio
    async def test_receive_failure_is_broker_error(self):
        server = fakeredis.FakeServer()
        broker, _ = make_broker(server)
        await broker.connect()
        server.connected = False

        with pytest.raises(BrokerError) as exc_info:
            await broker.receive()
        assert exc_info.value.fatal

    @pytest.mark.asyncio
    async def test_publish_failure(self):
        server = fakeredis.FakeServer()
        broker, _ = make_broker(server)
        await broker.connect()
        server.connected = False

        with pytest.raises(BrokerError, match="failed to publish"):
            await broker.publish(b"x")

    @pytest.mark.asyncio
    async def test_receive_before_connect(self):
        broker = RedisBroker("redis://unused", "deploys")
        with pytest.raises(BrokerError, match="not connected"):
            await broker.receive()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        broker, _ = make_broker()
        await broker.connect()
        await broker.close()
        await broker.close()
        assert broker.is_closed
        with pytest.raises(BrokerError):
            await broker.publish(b"x")

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, monkeypatch):
        client = fakeredis.FakeAsyncRedis()
        monkeypatch.setattr("deployer.messaging.broker.aioredis.from_url", lambda url: client)
        closed = []

        async def fake_aclose():
            closed.append(True)

        monkeypatch.setattr(client, "aclose", fake_aclose)
        broker = RedisBroker("redis://localhost:6379/0", "deploys")
        await broker.connect()
        await broker.close()
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_close_skipped_after_failure(self, monkeypatch):
        server = fakeredis.FakeServer()
        server.connected = False
        client = fakeredis.FakeAsyncRedis(server=server)
        monkeypatch.setattr("deployer.messaging.broker.aioredis.from_url", lambda url: client)
        closed = []

        async def fake_aclose():
            closed.append(True)

        monkeypatch.setattr(client, "aclose", fake_aclose)
        broker = RedisBroker("redis://localhost:6379/0", "deploys")
        with pytest.raises(BrokerError):
            await broker.connect()
        await broker.close()
        assert closed == []


class TestProtocol:
    def test_redis_broker_satisfies_protocol(self):
        broker, _ = make_broker()
        assert isinstance(broker, Broker)
        assert broker.is_closed is False

    def test_fake_broker_satisfies_protocol(self):
        assert isinstance(FakeBroker(), Broker)

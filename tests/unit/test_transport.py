import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

from quantaflow.core.bus import EventBus
from quantaflow.core.contracts import ConnectionStatus, EventKind, ModuleConfig
from quantaflow.core.errors import NotConnectedError
from quantaflow.modules.transport import ReconnectingTransport, TransportMessage


class FakeClient:
    def __init__(self, server: "FakeServer", url: str) -> None:
        self.server = server
        self.url = url
        self.inbox: asyncio.Queue[str | Exception] = asyncio.Queue()
        self.closed = False

    async def connect(self) -> None:
        self.server.connect_calls += 1
        if self.server.hang_connect:
            await asyncio.Event().wait()
        if self.server.always_fail:
            raise ConnectionError("connection refused")

    async def send(self, text: str) -> None:
        self.server.sent.append(json.loads(text))

    async def recv(self) -> str:
        item = await self.inbox.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True


class FakeServer:
    def __init__(self) -> None:
        self.always_fail = False
        self.hang_connect = False
        self.connect_calls = 0
        self.clients: list[FakeClient] = []
        self.sent: list[dict[str, Any]] = []

    def factory(self, url: str) -> FakeClient:
        client = FakeClient(self, url)
        self.clients.append(client)
        return client

    @property
    def current(self) -> FakeClient:
        return self.clients[-1]

    def sent_types(self) -> list[str]:
        return [message["type"] for message in self.sent]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout=timeout)


async def _transport(bus: EventBus, server: FakeServer, **options: Any) -> ReconnectingTransport:
    transport = ReconnectingTransport(client_factory=server.factory)
    transport.set_bus(bus)
    settings = {
        "url": "ws://example.test/events",
        "reconnect_interval_ms": 1,
        "max_reconnect_attempts": 3,
        "heartbeat_interval_ms": 0,
    }
    settings.update(options)
    await transport.configure(ModuleConfig(options=settings))
    return transport


def _connection_trace(recorder) -> list[tuple[ConnectionStatus, int]]:
    return [(event.data.status, event.data.attempt) for event in recorder.of(EventKind.CONNECTION)]


@pytest.mark.asyncio
async def test_connect_reports_connecting_then_connected(bus: EventBus, recorder) -> None:
    server = FakeServer()
    transport = await _transport(bus, server)

    status = await transport.connect()
    await bus.join()

    assert status is ConnectionStatus.CONNECTED
    assert transport.attempt == 0
    assert _connection_trace(recorder) == [
        (ConnectionStatus.CONNECTING, 1),
        (ConnectionStatus.CONNECTED, 0),
    ]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts_until_manual_connect(bus: EventBus, recorder) -> None:
    server = FakeServer()
    server.always_fail = True
    transport = await _transport(bus, server)

    first = await transport.connect()
    assert first is ConnectionStatus.DISCONNECTED

    await _wait_until(lambda: transport.status is ConnectionStatus.ERROR)
    await asyncio.sleep(0.05)
    await bus.join()
    assert server.connect_calls == 3
    assert _connection_trace(recorder) == [
        (ConnectionStatus.CONNECTING, 1),
        (ConnectionStatus.DISCONNECTED, 1),
        (ConnectionStatus.CONNECTING, 2),
        (ConnectionStatus.DISCONNECTED, 2),
        (ConnectionStatus.CONNECTING, 3),
        (ConnectionStatus.ERROR, 3),
    ]
    assert recorder.of(EventKind.CONNECTION)[-1].data.error == "connection refused"
    assert (await transport.health()).status == "error"

    server.always_fail = False
    status = await transport.connect()
    assert status is ConnectionStatus.CONNECTED
    assert server.connect_calls == 4
    await transport.disconnect()


@pytest.mark.asyncio
async def test_manual_connect_resets_attempt_counter(bus: EventBus, recorder) -> None:
    server = FakeServer()
    server.always_fail = True
    transport = await _transport(bus, server, reconnect_interval_ms=1000)

    await transport.connect()
    assert transport.attempt == 1
    await transport.connect()
    assert transport.attempt == 1
    await bus.join()

    attempts = [attempt for status, attempt in _connection_trace(recorder)]
    assert attempts == [1, 1, 1, 1]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_unexpected_disconnect_triggers_reconnect(bus: EventBus, recorder) -> None:
    server = FakeServer()
    transport = await _transport(bus, server)
    await transport.subscribe_channel("job.update", lambda data: None)
    await transport.connect()

    first_client = server.current
    first_client.inbox.put_nowait(ConnectionResetError("peer went away"))
    await _wait_until(lambda: len(server.clients) == 2 and transport.is_connected)
    await bus.join()

    assert first_client.closed
    assert _connection_trace(recorder) == [
        (ConnectionStatus.CONNECTING, 1),
        (ConnectionStatus.CONNECTED, 0),
        (ConnectionStatus.DISCONNECTED, 0),
        (ConnectionStatus.CONNECTING, 1),
        (ConnectionStatus.CONNECTED, 0),
    ]
    # Channel subscriptions are announced on every (re)connect.
    assert server.sent_types() == ["subscribe", "subscribe"]
    assert server.sent[-1]["data"] == {"channels": ["job.update"]}
    await transport.disconnect()


@pytest.mark.asyncio
async def test_disconnect_does_not_reconnect(bus: EventBus) -> None:
    server = FakeServer()
    transport = await _transport(bus, server)
    await transport.connect()

    await transport.disconnect()
    await asyncio.sleep(0.02)

    assert transport.status is ConnectionStatus.DISCONNECTED
    assert server.connect_calls == 1
    assert server.current.closed


@pytest.mark.asyncio
async def test_disconnect_during_connect_closes_pending_client(bus: EventBus) -> None:
    server = FakeServer()
    server.hang_connect = True
    transport = await _transport(bus, server)
    pending = asyncio.create_task(transport.connect())
    await _wait_until(lambda: server.connect_calls == 1)

    await transport.disconnect()
    await asyncio.wait_for(pending, timeout=1.0)

    assert server.current.closed
    assert transport.status is ConnectionStatus.DISCONNECTED
    assert transport._client is None


@pytest.mark.asyncio
async def test_send_policy(bus: EventBus) -> None:
    server = FakeServer()
    transport = await _transport(bus, server)

    assert await transport.send("job.update", {"progress": 1}) is False
    with pytest.raises(NotConnectedError):
        await transport.send("job.update", {"progress": 1}, strict=True)
    assert server.sent == []

    await transport.connect()
    assert await transport.send("job.update", {"progress": 2}) is True
    assert server.sent[-1]["type"] == "job.update"
    assert server.sent[-1]["data"] == {"progress": 2}
    assert "timestamp" in server.sent[-1]
    await transport.disconnect()


@pytest.mark.asyncio
async def test_inbound_messages_reach_channels_and_iterator(bus: EventBus) -> None:
    server = FakeServer()
    transport = await _transport(bus, server)
    await transport.connect()

    received: list[Any] = []
    subscription_id = await transport.subscribe_channel("job.update", received.append)
    assert server.sent[-1] == {
        "type": "subscribe",
        "data": {"channels": ["job.update"]},
        "timestamp": server.sent[-1]["timestamp"],
    }

    server.current.inbox.put_nowait("not json")
    server.current.inbox.put_nowait(json.dumps({"type": "job.update", "data": {"progress": 40}}))
    server.current.inbox.put_nowait(json.dumps({"type": "other", "data": None}))

    iterator = transport.messages()
    first = await asyncio.wait_for(anext(iterator), timeout=1.0)
    second = await asyncio.wait_for(anext(iterator), timeout=1.0)
    await iterator.aclose()

    assert isinstance(first, TransportMessage)
    assert (first.type, first.data) == ("job.update", {"progress": 40})
    assert second.type == "other"
    assert received == [{"progress": 40}]

    await transport.unsubscribe_channel(subscription_id)
    assert server.sent_types()[-1] == "unsubscribe"
    await transport.disconnect()


@pytest.mark.asyncio
async def test_heartbeat_sends_ping(bus: EventBus) -> None:
    server = FakeServer()
    transport = await _transport(bus, server, heartbeat_interval_ms=5)
    await transport.connect()

    await _wait_until(lambda: "ping" in server.sent_types())
    await transport.disconnect()


@pytest.mark.asyncio
async def test_exponential_backoff_is_capped(bus: EventBus) -> None:
    transport = await _transport(
        bus,
        FakeServer(),
        reconnect_interval_ms=100,
        backoff="exponential",
        backoff_multiplier=2.0,
        max_reconnect_interval_ms=300,
    )

    assert [transport.reconnect_delay(failures) for failures in (0, 1, 2, 3, 4)] == [
        0.1,
        0.1,
        0.2,
        0.3,
        0.3,
    ]


@pytest.mark.asyncio
async def test_configure_rejects_unknown_backoff(bus: EventBus) -> None:
    with pytest.raises(ValueError):
        await _transport(bus, FakeServer(), backoff="random")


@pytest.mark.asyncio
async def test_start_requires_url(bus: EventBus) -> None:
    transport = ReconnectingTransport(client_factory=FakeServer().factory)
    transport.set_bus(bus)
    with pytest.raises(RuntimeError):
        await transport.start()

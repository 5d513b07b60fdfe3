"""
Reconnecting transport towards a remote event source.

The module keeps a logical connection alive across transient network
failures. The network client is pluggable so tests can inject in-memory
fakes; the default client speaks WebSocket through the `websockets` library.
Connection status changes are published on the bus under the `connection`
event kind and are never raised to callers.
"""

from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect

from ...core.contracts import (
    BaseModule,
    ConnectionPayload,
    ConnectionStatus,
    EventKind,
    HealthStatus,
    ModuleConfig,
    utc_now,
)
from ...core.errors import NotConnectedError, TransportError

logger = logging.getLogger(__name__)

ChannelCallback = Callable[[Any], None]


class TransportMessage(BaseModel):
    """JSON envelope exchanged with the remote event source."""

    model_config = ConfigDict(frozen=True)

    type: str
    data: Any = None
    timestamp: dt.datetime = Field(default_factory=utc_now)


class TransportClient(Protocol):
    async def connect(self) -> None: ...

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


class WebSocketClient:
    """Default client backed by `websockets`."""

    def __init__(self, url: str) -> None:
        self._url = url
        self._connection: ClientConnection | None = None

    async def connect(self) -> None:
        # Keepalive is handled by the transport heartbeat.
        self._connection = await ws_connect(self._url, ping_interval=None)

    async def send(self, text: str) -> None:
        if self._connection is None:
            raise TransportError(f"WebSocket to {self._url} is not open.")
        await self._connection.send(text)

    async def recv(self) -> str:
        if self._connection is None:
            raise TransportError(f"WebSocket to {self._url} is not open.")
        message = await self._connection.recv()
        if isinstance(message, bytes):
            return message.decode("utf-8")
        return message

    async def close(self) -> None:
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        await connection.close()


class ReconnectingTransport(BaseModule):
    """Maintain a connection with bounded, configurable reconnect backoff."""

    name = "modules.transport.reconnecting"

    def __init__(
        self,
        *,
        client_factory: Callable[[str], TransportClient] | None = None,
        inbound_buffer: int = 256,
    ) -> None:
        super().__init__()
        self._client_factory = client_factory or WebSocketClient
        self._url = ""
        self._reconnect_interval = 3.0
        self._max_attempts = 5
        self._backoff: Literal["fixed", "exponential"] = "fixed"
        self._backoff_multiplier = 2.0
        self._max_reconnect_interval = 30.0
        self._heartbeat_interval = 30.0
        self._connect_timeout = 10.0
        self._status = ConnectionStatus.DISCONNECTED
        self._attempt = 0
        self._last_error: str | None = None
        self._closing = False
        self._client: TransportClient | None = None
        self._supervisor: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._channels: dict[str, tuple[str, ChannelCallback]] = {}
        self._inbound: asyncio.Queue[TransportMessage] = asyncio.Queue(maxsize=inbound_buffer)

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._url = options.get("url", self._url)
        self._reconnect_interval = (
            float(options.get("reconnect_interval_ms", self._reconnect_interval * 1000)) / 1000
        )
        self._max_attempts = int(options.get("max_reconnect_attempts", self._max_attempts))
        backoff = options.get("backoff", self._backoff)
        if backoff not in ("fixed", "exponential"):
            raise ValueError(f"Unknown backoff policy {backoff!r}")
        self._backoff = backoff
        self._backoff_multiplier = float(
            options.get("backoff_multiplier", self._backoff_multiplier)
        )
        self._max_reconnect_interval = (
            float(options.get("max_reconnect_interval_ms", self._max_reconnect_interval * 1000))
            / 1000
        )
        self._heartbeat_interval = (
            float(options.get("heartbeat_interval_ms", self._heartbeat_interval * 1000)) / 1000
        )
        self._connect_timeout = (
            float(options.get("connect_timeout_ms", self._connect_timeout * 1000)) / 1000
        )

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED and self._client is not None

    async def start(self) -> None:
        await self.connect()

    async def stop(self) -> None:
        await self.disconnect()

    async def health(self) -> HealthStatus:
        if self._status is ConnectionStatus.CONNECTED:
            status = "healthy"
        elif self._status is ConnectionStatus.ERROR:
            status = "error"
        else:
            status = "degraded"
        return HealthStatus(
            status=status,
            details={
                "url": self._url,
                "connection": self._status.value,
                "attempt": self._attempt,
                "last_error": self._last_error,
                "channels": sorted({channel for channel, _ in self._channels.values()}),
            },
        )

    async def connect(self) -> ConnectionStatus:
        """
        (Re)start the connection supervisor with a fresh attempt counter.

        Returns once the first attempt has settled; later retries continue in
        the background.
        """
        if not self._url:
            raise RuntimeError("ReconnectingTransport requires a url to be configured.")
        await self._cancel_supervisor()
        self._closing = False
        self._attempt = 0
        settled: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._supervisor = asyncio.create_task(
            self._supervise(settled), name=f"{self.name}-supervisor"
        )
        await settled
        return self._status

    async def disconnect(self) -> None:
        """Close deliberately; no automatic reconnect follows."""
        self._closing = True
        await self._cancel_supervisor()
        if self._status is not ConnectionStatus.DISCONNECTED:
            self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info("Transport to %s disconnected", self._url)

    async def send(self, message_type: str, data: Any = None, *, strict: bool = False) -> bool:
        """
        Send one message.

        When not connected this is a no-op returning False, unless `strict`
        is set, in which case `NotConnectedError` is raised.
        """
        client = self._client
        if not self.is_connected or client is None:
            if strict:
                raise NotConnectedError(
                    f"Cannot send {message_type!r}: transport is {self._status.value}."
                )
            logger.debug("Dropping %s message; transport is %s", message_type, self._status.value)
            return False
        message = TransportMessage(type=message_type, data=data)
        try:
            await client.send(message.model_dump_json())
        except Exception as exc:
            logger.warning("Failed to send %s message: %s", message_type, exc)
            if strict:
                raise TransportError(f"Failed to send {message_type!r}") from exc
            return False
        return True

    async def subscribe_channel(self, channel: str, callback: ChannelCallback) -> str:
        """Route inbound messages whose type equals `channel` to `callback`."""
        subscription_id = uuid.uuid4().hex[:9]
        self._channels[subscription_id] = (channel, callback)
        if self.is_connected:
            await self.send("subscribe", {"channels": [channel]})
        return subscription_id

    async def unsubscribe_channel(self, subscription_id: str) -> None:
        entry = self._channels.pop(subscription_id, None)
        if entry is None:
            return
        if self.is_connected:
            await self.send("unsubscribe", {"channels": [entry[0]]})

    async def messages(self) -> AsyncIterator[TransportMessage]:
        """Iterate over inbound messages as they arrive."""
        while True:
            yield await self._inbound.get()

    def reconnect_delay(self, failures: int) -> float:
        """Delay in seconds before the next try after `failures` consecutive failures."""
        if self._backoff == "fixed" or failures <= 1:
            return self._reconnect_interval
        delay = self._reconnect_interval * (self._backoff_multiplier ** (failures - 1))
        return min(delay, self._max_reconnect_interval)

    async def _supervise(self, settled: asyncio.Future[None]) -> None:
        wait_first = False
        try:
            while not self._closing:
                if wait_first:
                    await asyncio.sleep(self.reconnect_delay(self._attempt))
                self._attempt += 1
                self._set_status(ConnectionStatus.CONNECTING)
                client = self._client_factory(self._url)
                try:
                    await asyncio.wait_for(client.connect(), timeout=self._connect_timeout)
                except asyncio.CancelledError:
                    await self._close_client(client)
                    raise
                except Exception as exc:
                    error = str(exc) or exc.__class__.__name__
                    await self._close_client(client)
                    if self._attempt >= self._max_attempts:
                        logger.error(
                            "Transport to %s failed after %d attempts: %s",
                            self._url,
                            self._attempt,
                            error,
                        )
                        self._set_status(ConnectionStatus.ERROR, error=error)
                        return
                    logger.warning(
                        "Connection attempt %d/%d to %s failed: %s",
                        self._attempt,
                        self._max_attempts,
                        self._url,
                        error,
                    )
                    self._set_status(ConnectionStatus.DISCONNECTED, error=error)
                    self._settle(settled)
                    wait_first = True
                    continue

                self._client = client
                self._attempt = 0
                self._set_status(ConnectionStatus.CONNECTED)
                self._settle(settled)
                logger.info("Transport connected to %s", self._url)
                reason = await self._serve(client)
                if self._closing:
                    return
                logger.warning("Transport to %s dropped (%s); reconnecting.", self._url, reason)
                self._set_status(ConnectionStatus.DISCONNECTED, error=reason)
                wait_first = True
        finally:
            self._settle(settled)

    async def _serve(self, client: TransportClient) -> str:
        """Run one connected session; returns the reason it ended."""
        try:
            channels = sorted({channel for channel, _ in self._channels.values()})
            if channels:
                await self.send("subscribe", {"channels": channels})
            if self._heartbeat_interval > 0:
                self._heartbeat_task = asyncio.create_task(
                    self._heartbeat(), name=f"{self.name}-heartbeat"
                )
            while True:
                raw = await client.recv()
                self._dispatch(raw)
        except Exception as exc:
            return str(exc) or exc.__class__.__name__
        finally:
            await self._stop_heartbeat()
            self._client = None
            await self._close_client(client)

    def _dispatch(self, raw: str) -> None:
        try:
            message = TransportMessage.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding undecodable transport frame: %.120s", raw)
            return
        for channel, callback in list(self._channels.values()):
            if channel != message.type:
                continue
            try:
                callback(message.data)
            except Exception:
                logger.exception("Channel callback for %s failed", channel)
        if self._inbound.full():
            logger.warning("Inbound transport buffer full; dropping oldest message.")
            self._inbound.get_nowait()
        self._inbound.put_nowait(message)

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await self.send("ping", {})

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cancel_supervisor(self) -> None:
        task, self._supervisor = self._supervisor, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _close_client(self, client: TransportClient) -> None:
        try:
            await client.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing transport client: %s", exc)

    def _settle(self, settled: asyncio.Future[None]) -> None:
        if not settled.done():
            settled.set_result(None)

    def _set_status(self, status: ConnectionStatus, *, error: str | None = None) -> None:
        self._status = status
        if error is not None:
            self._last_error = error
        self.bus.publish(
            EventKind.CONNECTION,
            ConnectionPayload(status=status, attempt=self._attempt, url=self._url, error=error),
        )


__all__ = ["ReconnectingTransport", "TransportClient", "TransportMessage", "WebSocketClient"]

"""Connectivity to remote event sources."""

from .reconnecting import ReconnectingTransport, TransportClient, TransportMessage, WebSocketClient

__all__ = ["ReconnectingTransport", "TransportClient", "TransportMessage", "WebSocketClient"]

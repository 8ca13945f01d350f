"""
RabbitMQ transport with automatic reconnection.

This package provides the pieces the RPC layer builds on:
- AmqpConnectionManager: Owns the connection and its IO thread, reconnects
  and emits `connect` / `disconnect` events
- ChannelWrapper: A channel whose setup (queue declaration, consumers) is
  re-run on every reconnect; publish/ack are safe from any thread

Usage:
    manager = AmqpConnectionManager(["amqp://localhost"]).start()
    wrapper = manager.create_channel(setup=lambda ch: ch.queue_declare("q"))
    wrapper.wait_for_connect()
    wrapper.send_to_queue("q", b"payload").result()
"""

from .channel import ChannelState, ChannelWrapper
from .connection import AmqpConnectionManager
from .exceptions import MessageMiddlewareDisconnectedError, MessageMiddlewareMessageError

__all__ = [
    "AmqpConnectionManager",
    "ChannelWrapper",
    "ChannelState",
    "MessageMiddlewareDisconnectedError",
    "MessageMiddlewareMessageError",
]

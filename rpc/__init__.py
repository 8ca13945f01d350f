"""
Request/response RPC on top of RabbitMQ.

Usage:
    connection = connect(["amqp://localhost"])

    # Worker side
    connection.create_rpc_server("rpc_queue", handle_request)

    # Caller side
    client = connection.create_rpc_client("rpc_queue", ttl=60)
    client.wait_for_connect()
    reply = client.send_rpc({"a": 1, "b": 2}).result()
"""

from .connection import RPCConnection, connect
from .client import RPCClient
from .server import RPCServer, RequestMessage
from .registry import PendingCall, PendingCallRegistry
from .errors import (
    ChannelNotReady,
    MalformedReplyError,
    RemoteError,
    RPCError,
    TimeExpired,
    error_to_json,
    json_to_error,
)

__all__ = [
    "connect",
    "RPCConnection",
    "RPCClient",
    "RPCServer",
    "RequestMessage",
    "PendingCall",
    "PendingCallRegistry",
    "RPCError",
    "ChannelNotReady",
    "TimeExpired",
    "RemoteError",
    "MalformedReplyError",
    "error_to_json",
    "json_to_error",
]

import traceback

from protocol.envelope import MalformedReplyError


STACK_KEY = "stack"
UNKNOWN_ERROR_MESSAGE = "unknown"


class RPCError(Exception):
    pass


class ChannelNotReady(RPCError):
    """send_rpc was called before the client finished its channel setup"""

    def __init__(self, message="ChannelNotReady"):
        super().__init__(message)


class TimeExpired(RPCError):
    """No reply arrived within the call's ttl"""

    def __init__(self, correlation_id=None, ttl=None):
        super().__init__("Time expired")
        self.correlation_id = correlation_id
        self.ttl = ttl


class RemoteError(RPCError):
    """
    An exception raised by the remote RPC callback, rebuilt on the client.

    Every key of the serialized error is available both in `payload` and
    as an attribute (`err.message`, `err.name`, custom fields...).
    """

    _RESERVED = frozenset(["payload", "args"])

    def __init__(self, payload):
        payload = dict(payload or {})
        super().__init__(payload.get("message") or UNKNOWN_ERROR_MESSAGE)
        for key, value in payload.items():
            if key.startswith("_") or key in self._RESERVED:
                continue
            if hasattr(type(self), key):
                continue
            setattr(self, key, value)
        self.payload = payload

    @property
    def message(self):
        return str(self)


def error_to_json(err, include_stack=False):
    """
    Turn a raised exception into a JSON friendly dict.

    Keeps the class name, the message and every public instance attribute.
    The formatted traceback goes under "stack" only with `include_stack`.
    """
    if isinstance(err, RemoteError):
        # Re-raised remote failure: forward what the other side sent
        payload = dict(err.payload)
        payload.setdefault("message", str(err))
    else:
        payload = {"name": type(err).__name__, "message": str(err)}
        for key, value in getattr(err, "__dict__", {}).items():
            if key.startswith("_"):
                continue
            payload[key] = value

    payload.pop(STACK_KEY, None)
    if include_stack:
        payload[STACK_KEY] = "".join(
            traceback.format_exception(type(err), err, err.__traceback__)
        )
    return payload


def json_to_error(payload):
    return RemoteError(payload)


__all__ = [
    "RPCError",
    "ChannelNotReady",
    "TimeExpired",
    "RemoteError",
    "MalformedReplyError",
    "error_to_json",
    "json_to_error",
]

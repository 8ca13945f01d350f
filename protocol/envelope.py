"""
JSON envelopes exchanged between RPC clients and servers.

Request body:  any JSON value.
Reply body:    exactly one of {"msg": <result>} or {"err": <serialized error>}.

Correlation id, reply queue and expiration travel as AMQP message
properties, never inside the body.
"""
import json


REPLY_RESULT_KEY = "msg"
REPLY_ERROR_KEY = "err"

ENCODING = "utf-8"


class MalformedReplyError(ValueError):
    """A reply body that is not valid JSON or not a {msg}/{err} object"""


def _encode(value):
    # Values JSON cannot represent (datetimes, sets, ...) travel as strings
    return json.dumps(value, default=str).encode(ENCODING)


def encode_request(message):
    return _encode(message)


def decode_request(body):
    """Decode a request body, raises ValueError if it is not JSON"""
    return json.loads(body.decode(ENCODING))


def reply_ok(result):
    return {REPLY_RESULT_KEY: result}


def reply_error(error_payload):
    return {REPLY_ERROR_KEY: error_payload}


def encode_reply(reply):
    return _encode(reply)


def decode_reply(body):
    """
    Decode a reply body into `(is_error, value)`.

    `value` is the result for a {msg} reply and the serialized error
    (always a dict) for an {err} reply.
    """
    try:
        reply = json.loads(body.decode(ENCODING))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedReplyError(f"reply is not valid JSON: {e}") from e

    if not isinstance(reply, dict):
        raise MalformedReplyError(
            f"reply must be a JSON object, got {type(reply).__name__}"
        )

    has_result = REPLY_RESULT_KEY in reply
    has_error = REPLY_ERROR_KEY in reply
    if has_result == has_error:
        raise MalformedReplyError(
            f"reply must carry exactly one of '{REPLY_RESULT_KEY}' or '{REPLY_ERROR_KEY}'"
        )

    if has_error:
        error_payload = reply[REPLY_ERROR_KEY]
        if not isinstance(error_payload, dict):
            error_payload = {"message": str(error_payload)}
        return True, error_payload

    return False, reply[REPLY_RESULT_KEY]

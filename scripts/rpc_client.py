#!/usr/bin/env python3

"""
Send the example request to the configured RPC queue.

Run from the repository root: python -m scripts.rpc_client '{"a": 1, "b": 2}'
"""
import json
import sys

from common.config import initialize_config
from main import initialize_log
from rpc import connect

CONNECT_TIMEOUT = 30


def send_example_request(request):
    """
    Send one request to the configured RPC queue and print the reply
    """
    rpc_config, middleware_config = initialize_config()
    initialize_log(rpc_config.logging_level)

    connection = connect(
        middleware_config.urls,
        heartbeat=middleware_config.heartbeat,
        reconnect_time_in_seconds=middleware_config.reconnect_time_in_seconds,
    )
    client = connection.create_rpc_client(rpc_config.queue_name, rpc_config.ttl)
    try:
        if not client.wait_for_connect(CONNECT_TIMEOUT):
            print("action: rpc_client_connect | result: fail")
            return False

        try:
            reply = client.call(request)
        except Exception as e:
            print(f"action: rpc_call | result: fail | error: {e}")
            return False

        print(f"action: rpc_call | result: success | reply: {json.dumps(reply)}")
        return True
    finally:
        client.close()
        connection.close()


if __name__ == "__main__":
    payload = json.loads(sys.argv[1]) if len(sys.argv) > 1 else {"a": 1, "b": 2}
    sys.exit(0 if send_example_request(payload) else 1)

#!/usr/bin/env python3

from common.config import initialize_config
from common.utils import log_action
from rpc import connect
import logging
import signal
import sys
import threading


def initialize_log(logging_level):
    """
    Python custom logging initialization

    Current timestamp is added to be able to identify in docker
    compose logs the date when the log has arrived
    """
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(message)s",
        level=logging_level,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def do_rpc_job(message, _raw_message):
    """Example job: exceptions are sent back to the RPC client"""
    if not message.get("b"):
        raise ValueError("B is not set")
    return {"a": message["a"] + 1 if message.get("a") else None}


def log_connect(url):
    log_action("rabbitmq_connected", "success", extra_fields={"url": url})


def log_disconnect(err):
    log_action("rabbitmq_disconnected", "success", level=logging.WARNING, error=err)


def main():
    try:
        rpc_config, middleware_config = initialize_config()

        initialize_log(rpc_config.logging_level)

        # Log config parameters at the beginning of the program to verify the configuration
        # of the component
        logging.debug(
            "action: config | result: success | queue: %s | ttl: %s | send_error_stack: %s | logging_level: %s",
            rpc_config.queue_name,
            rpc_config.ttl,
            rpc_config.send_error_stack,
            rpc_config.logging_level,
        )

        connection = connect(
            middleware_config.urls,
            heartbeat=middleware_config.heartbeat,
            reconnect_time_in_seconds=middleware_config.reconnect_time_in_seconds,
        )
        connection.on("connect", log_connect)
        connection.on("disconnect", log_disconnect)

        server = connection.create_rpc_server(
            rpc_config.queue_name,
            do_rpc_job,
            send_error_stack=rpc_config.send_error_stack,
        )

        shutdown_event = threading.Event()
        signal.signal(signal.SIGTERM, lambda _signum, _frame: shutdown_event.set())

        logging.info(
            "action: rpc_server_run | result: in_progress | queue: %s",
            rpc_config.queue_name,
        )
        try:
            shutdown_event.wait()
        finally:
            server.close()
            connection.close()
            logging.info("action: shutdown | result: success")

    except KeyError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
    except ValueError as e:
        print(f"Configuration Parse Error: {e}", file=sys.stderr)
    except KeyboardInterrupt:
        logging.info(
            "action: shutdown | result: in_progress | msg: received keyboard interrupt"
        )


if __name__ == "__main__":
    main()

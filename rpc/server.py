# pylint: disable=broad-exception-caught
import asyncio
import inspect
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from common.utils import JSON_CONTENT_TYPE, SERVER_PREFETCH_COUNT
from protocol.envelope import decode_request, encode_reply, reply_error, reply_ok
from rpc.errors import error_to_json


# How long a worker waits for the IO thread to hand a reply to the broker
REPLY_PUBLISH_TIMEOUT = 30


@dataclass
class RequestMessage:
    """The raw AMQP delivery behind a request, passed to the callback"""

    method: Any
    properties: Any
    body: bytes


async def _await(awaitable):
    return await awaitable


def resolve_result(result):
    """Wait for a callback result that may be a Future or an awaitable"""
    if isinstance(result, Future):
        return result.result()
    if inspect.isawaitable(result):
        return asyncio.run(_await(result))
    return result


class RPCServer:
    """
    Consumes an RPC queue and answers every request on its reply_to queue.

    `callback(request, message)` may return a value, a Future or a
    coroutine. Whatever it raises is sent back as {"err": ...}. Requests
    are always acked after the reply attempt, never requeued.
    """

    def __init__(self, manager, queue_name, callback, send_error_stack=False, setup=None):
        self.queue_name = queue_name
        self.callback = callback
        self.send_error_stack = send_error_stack
        self._custom_setup = setup
        self.logger = logging.getLogger(__name__)
        # prefetch=1 means at most one request in flight
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"RPCServer-{queue_name}"
        )
        self.channel_wrapper = manager.create_channel(
            setup=self._setup, name=f"rpc_server:{queue_name}"
        )

    @property
    def state(self):
        return self.channel_wrapper.state

    def wait_for_connect(self, timeout=None):
        return self.channel_wrapper.wait_for_connect(timeout)

    def _setup(self, channel):
        if self._custom_setup is not None:
            queue_name = self._custom_setup(channel)
        else:
            channel.basic_qos(prefetch_count=SERVER_PREFETCH_COUNT)
            channel.queue_declare(queue=self.queue_name, durable=False)
            queue_name = self.queue_name

        channel.basic_consume(
            queue=queue_name,
            on_message_callback=self._on_request,
            auto_ack=False,
        )
        self.logger.info(
            "action: rpc_server_setup | result: success | queue: %s", queue_name
        )

    def _on_request(self, channel, method, properties, body):
        """pika consumer callback, hands the request to the worker thread"""
        try:
            self._executor.submit(
                self._handle_request, channel, method, properties, body
            )
        except RuntimeError as e:
            # Executor already shut down by close(); the unacked request is requeued
            self.logger.warning(
                "action: rpc_request | result: skip | queue: %s | delivery_tag: %s | error: %s",
                self.queue_name,
                method.delivery_tag,
                e,
            )

    def _handle_request(self, channel, method, properties, body):
        try:
            reply = self.process_request(RequestMessage(method, properties, body))
            self._send_reply(properties, reply)
        except Exception as e:
            self.logger.error(
                "action: rpc_request | result: fail | queue: %s | error: %s",
                self.queue_name,
                e,
            )
        finally:
            self.channel_wrapper.ack(channel, method.delivery_tag)

    def process_request(self, message):
        """Run the callback for one request and build its reply envelope"""
        correlation_id = message.properties.correlation_id
        try:
            request = decode_request(message.body)
            result = resolve_result(self.callback(request, message))
        except Exception as e:
            self.logger.info(
                "action: rpc_request | result: fail | queue: %s | correlation_id: %s | error: %s",
                self.queue_name,
                correlation_id,
                e,
            )
            return reply_error(error_to_json(e, include_stack=self.send_error_stack))

        self.logger.debug(
            "action: rpc_request | result: success | queue: %s | correlation_id: %s",
            self.queue_name,
            correlation_id,
        )
        return reply_ok(result)

    def _send_reply(self, properties, reply):
        reply_to = properties.reply_to
        if not reply_to:
            self.logger.warning(
                "action: rpc_reply | result: skip | queue: %s | correlation_id: %s | msg: request has no reply_to",
                self.queue_name,
                properties.correlation_id,
            )
            return

        publish_future = self.channel_wrapper.send_to_queue(
            reply_to,
            encode_reply(reply),
            correlation_id=properties.correlation_id,
            content_type=JSON_CONTENT_TYPE,
        )
        publish_future.result(REPLY_PUBLISH_TIMEOUT)

    def close(self):
        self.channel_wrapper.close()
        self._executor.shutdown(wait=False)

import logging
import uuid
from concurrent.futures import Future

from common.utils import DEFAULT_EXCHANGE, JSON_CONTENT_TYPE
from protocol.envelope import MalformedReplyError, decode_reply, encode_request
from rpc.errors import ChannelNotReady, json_to_error
from rpc.registry import PendingCallRegistry


class RPCClient:
    """
    Sends requests to an RPC queue and matches replies by correlation id.

    On every (re)connect the client declares an exclusive, server-named
    reply queue (or whatever a custom `setup(channel)` returns) and
    consumes it with auto-ack. Replies for unknown correlation ids are
    dropped.
    """

    def __init__(self, manager, queue_name=None, ttl=0, setup=None):
        self.queue_name = queue_name
        self.ttl = ttl or 0
        self.registry = PendingCallRegistry(default_ttl=self.ttl)
        self.reply_queue = None
        self.last_correlation_id = None
        self._custom_setup = setup
        self.logger = logging.getLogger(__name__)
        self.channel_wrapper = manager.create_channel(
            setup=self._setup, name=f"rpc_client:{queue_name or '-'}"
        )

    @property
    def state(self):
        return self.channel_wrapper.state

    def is_ready(self):
        return self.channel_wrapper.is_ready()

    def wait_for_connect(self, timeout=None):
        return self.channel_wrapper.wait_for_connect(timeout)

    def _setup(self, channel):
        if self._custom_setup is not None:
            reply_queue = self._custom_setup(channel)
        else:
            result = channel.queue_declare(queue="", exclusive=True)
            reply_queue = result.method.queue

        channel.basic_consume(
            queue=reply_queue,
            on_message_callback=self._on_reply,
            auto_ack=True,
        )
        self.reply_queue = reply_queue
        self.logger.info(
            "action: rpc_client_setup | result: success | queue: %s | reply_queue: %s",
            self.queue_name,
            reply_queue,
        )

    def _on_reply(self, _channel, _method, properties, body):
        correlation_id = properties.correlation_id
        call = self.registry.take(correlation_id)
        if call is None:
            self.logger.debug(
                "action: rpc_reply | result: discard | correlation_id: %s | msg: no pending call",
                correlation_id,
            )
            return

        try:
            is_error, value = decode_reply(body)
        except MalformedReplyError as e:
            self.logger.error(
                "action: rpc_reply | result: fail | correlation_id: %s | error: %s",
                correlation_id,
                e,
            )
            call.reject(e)
            return

        if is_error:
            call.reject(json_to_error(value))
        else:
            call.resolve(value)

    def send_rpc(self, message, ttl=None, exchange=DEFAULT_EXCHANGE, routing_key=None):
        """
        Publish `message` and return a Future settled by its reply.

        `ttl` (seconds) overrides the client default, 0 waits forever.
        Raises ChannelNotReady, without publishing, until setup completed.
        """
        if not self.channel_wrapper.is_ready():
            raise ChannelNotReady()

        if routing_key is None:
            routing_key = self.queue_name
        if routing_key is None:
            raise ValueError("routing_key is required when the client has no queue_name")

        body = encode_request(message)
        ttl = self.registry.effective_ttl(ttl)
        correlation_id = str(uuid.uuid4())

        future = Future()
        # Calls cannot be cancelled, only expired
        future.set_running_or_notify_cancel()
        self.registry.register(
            correlation_id, ttl, future.set_result, future.set_exception
        )
        self.last_correlation_id = correlation_id

        properties = {
            "correlation_id": correlation_id,
            "reply_to": self.reply_queue,
            "content_type": JSON_CONTENT_TYPE,
        }
        if ttl:
            properties["expiration"] = str(int(ttl * 1000))

        publish_future = self.channel_wrapper.publish(
            exchange, routing_key, body, **properties
        )
        publish_future.add_done_callback(
            lambda published: self._on_published(correlation_id, published)
        )
        return future

    def _on_published(self, correlation_id, publish_future):
        error = publish_future.exception()
        if error is None:
            return
        call = self.registry.take(correlation_id)
        if call is not None:
            self.logger.error(
                "action: rpc_request | result: fail | correlation_id: %s | error: %s",
                correlation_id,
                error,
            )
            call.reject(error)

    def call(self, message, ttl=None, timeout=None, exchange=DEFAULT_EXCHANGE, routing_key=None):
        """Blocking send_rpc: returns the reply or raises the remote/timeout error"""
        return self.send_rpc(
            message, ttl=ttl, exchange=exchange, routing_key=routing_key
        ).result(timeout)

    def close(self):
        self.registry.close()
        self.channel_wrapper.close()

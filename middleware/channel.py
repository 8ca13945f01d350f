import logging
import threading
from concurrent.futures import Future
from enum import Enum

import pika
from pika.exceptions import AMQPConnectionError, AMQPError

from common.utils import DEFAULT_EXCHANGE
from middleware.exceptions import (
    MessageMiddlewareDisconnectedError,
    MessageMiddlewareMessageError,
)


class ChannelState(Enum):
    DISCONNECTED = "disconnected"
    SETTING_UP = "setting_up"
    READY = "ready"


class ChannelWrapper:
    """
    A channel that survives reconnections.

    The connection manager opens a fresh pika channel for every connection
    it establishes and hands it to `setup`, which must be idempotent: it
    declares queues and registers consumers again after each reconnect.
    All pika calls run on the manager's IO thread; `publish` and `ack` may
    be called from any thread.
    """

    def __init__(self, manager, setup=None, name="channel"):
        self._manager = manager
        self._setup = setup
        self.name = name
        self._channel = None
        self._state = ChannelState.DISCONNECTED
        self._ready = threading.Event()
        self._closed = False
        self.logger = logging.getLogger(__name__)

    @property
    def state(self):
        return self._state

    @property
    def channel(self):
        return self._channel

    def is_ready(self):
        return self._state is ChannelState.READY

    def wait_for_connect(self, timeout=None):
        """Block until setup completed on a connection, returns False on timeout"""
        return self._ready.wait(timeout)

    def handle_connect(self, connection):
        """Open a channel on `connection` and run setup (IO thread)"""
        if self._closed:
            return

        self._state = ChannelState.SETTING_UP
        self.logger.debug(
            "action: channel_setup | result: in_progress | channel: %s", self.name
        )
        channel = None
        try:
            channel = connection.channel()
            self._channel = channel
            if self._setup is not None:
                self._setup(channel)
        except Exception as e:
            self.logger.error(
                "action: channel_setup | result: fail | channel: %s | error: %s",
                self.name,
                e,
            )
            if channel is not None:
                self._close_channel(channel)
            self._channel = None
            self._state = ChannelState.DISCONNECTED
            return

        self._state = ChannelState.READY
        self._ready.set()
        self.logger.info(
            "action: channel_setup | result: success | channel: %s", self.name
        )

    def handle_disconnect(self):
        self._channel = None
        self._ready.clear()
        self._state = ChannelState.DISCONNECTED
        self.logger.debug(
            "action: channel_disconnect | result: success | channel: %s", self.name
        )

    def publish(self, exchange, routing_key, body, **properties):
        """
        Publish `body` (bytes) with the given pika BasicProperties fields.

        Returns a Future that settles once the IO thread handed the message
        to the broker. Transport failures settle it with
        MessageMiddlewareDisconnectedError or MessageMiddlewareMessageError.
        """
        future = Future()
        future.set_running_or_notify_cancel()

        def _publish():
            channel = self._channel
            if channel is None or not channel.is_open:
                future.set_exception(
                    MessageMiddlewareDisconnectedError(
                        f"channel {self.name} is not open"
                    )
                )
                return
            try:
                channel.basic_publish(
                    exchange=exchange,
                    routing_key=routing_key,
                    body=body,
                    properties=pika.BasicProperties(**properties),
                )
            except AMQPConnectionError as e:
                self.logger.error(
                    "action: publish | result: fail | exchange: %s | routing_key: %s | error: %s",
                    exchange,
                    routing_key,
                    e,
                )
                future.set_exception(MessageMiddlewareDisconnectedError(str(e)))
                return
            except AMQPError as e:
                self.logger.error(
                    "action: publish | result: fail | exchange: %s | routing_key: %s | error: %s",
                    exchange,
                    routing_key,
                    e,
                )
                future.set_exception(MessageMiddlewareMessageError(str(e)))
                return

            self.logger.debug(
                "action: publish | result: success | exchange: %s | routing_key: %s",
                exchange,
                routing_key,
            )
            future.set_result(None)

        try:
            self._manager.call_threadsafe(_publish)
        except MessageMiddlewareDisconnectedError as e:
            future.set_exception(e)
        return future

    def send_to_queue(self, queue_name, body, **properties):
        """Publish through the default exchange straight into `queue_name`"""
        return self.publish(DEFAULT_EXCHANGE, queue_name, body, **properties)

    def ack(self, channel, delivery_tag):
        """
        Acknowledge a delivery received on `channel`.

        Deliveries from a channel that has since been replaced by a
        reconnect cannot be acknowledged; the broker requeues them.
        """

        def _ack():
            if channel is not self._channel or not channel.is_open:
                self.logger.warning(
                    "action: ack | result: skip | channel: %s | delivery_tag: %s | msg: stale channel",
                    self.name,
                    delivery_tag,
                )
                return
            try:
                channel.basic_ack(delivery_tag=delivery_tag)
            except AMQPError as e:
                self.logger.error(
                    "action: ack | result: fail | channel: %s | delivery_tag: %s | error: %s",
                    self.name,
                    delivery_tag,
                    e,
                )

        try:
            self._manager.call_threadsafe(_ack)
        except MessageMiddlewareDisconnectedError as e:
            self.logger.warning(
                "action: ack | result: skip | channel: %s | delivery_tag: %s | error: %s",
                self.name,
                delivery_tag,
                e,
            )

    def close(self):
        """Detach from the connection manager and close the pika channel"""
        self._closed = True
        self._manager.remove_channel(self)
        channel = self._channel
        self.handle_disconnect()
        if channel is None:
            return

        try:
            self._manager.call_threadsafe(lambda: self._close_channel(channel))
        except MessageMiddlewareDisconnectedError as e:
            self.logger.debug(
                "action: channel_close | result: skip | channel: %s | error: %s",
                self.name,
                e,
            )

    def _close_channel(self, channel):
        """Close a pika channel (IO thread)"""
        try:
            if channel.is_open:
                channel.close()
                self.logger.debug(
                    "action: channel_close | result: success | channel: %s",
                    self.name,
                )
        except AMQPError as e:
            self.logger.error(
                "action: channel_close | result: fail | channel: %s | error: %s",
                self.name,
                e,
            )

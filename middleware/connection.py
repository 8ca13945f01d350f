# pylint: disable=broad-exception-caught
import logging
import threading

import pika
from pika.exceptions import AMQPConnectionError, AMQPError

from common.config import DEFAULT_HEARTBEAT, DEFAULT_RECONNECT_TIME
from common.utils import BLOCKED_CONNECTION_TIMEOUT
from middleware.channel import ChannelWrapper
from middleware.exceptions import MessageMiddlewareDisconnectedError


CONNECT_EVENT = "connect"
DISCONNECT_EVENT = "disconnect"

# Upper bound on how long the IO loop blocks before checking for shutdown
PROCESS_EVENTS_TIME_LIMIT = 0.5


class AmqpConnectionManager:
    """
    Keeps a RabbitMQ connection alive and re-runs channel setups on reconnect.

    Follows standard pattern:
    1. Connect to the next url (round robin over `urls`)
    2. Emit `connect` and run the setup of every registered channel
    3. Pump pika events on the IO thread until the connection drops
    4. Emit `disconnect`, wait `reconnect_time_in_seconds` and start over

    Listeners are registered with `on("connect", fn)` (called as
    `fn(url=...)`) and `on("disconnect", fn)` (called as `fn(err=...)`).
    """

    def __init__(
        self,
        urls,
        heartbeat=DEFAULT_HEARTBEAT,
        reconnect_time_in_seconds=DEFAULT_RECONNECT_TIME,
        connection_factory=None,
    ):
        if isinstance(urls, str):
            urls = [urls]
        if not urls:
            raise ValueError("at least one AMQP url is required")

        self.urls = list(urls)
        self.heartbeat = heartbeat
        self.reconnect_time_in_seconds = reconnect_time_in_seconds
        self._connection_factory = connection_factory or pika.BlockingConnection

        self._connection = None
        self._channels = []
        self._listeners = {CONNECT_EVENT: [], DISCONNECT_EVENT: []}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._io_thread = None
        self._url_index = 0
        self.logger = logging.getLogger(__name__)

    def on(self, event, listener):
        """Register a lifecycle listener for `connect` or `disconnect`"""
        if event not in self._listeners:
            raise ValueError(f"unknown event '{event}'")
        self._listeners[event].append(listener)
        return self

    def _emit(self, event, **kwargs):
        for listener in list(self._listeners[event]):
            try:
                listener(**kwargs)
            except Exception as e:
                self.logger.error(
                    "action: emit_event | result: fail | event: %s | error: %s",
                    event,
                    e,
                )

    def start(self):
        """Start the IO thread, connecting in the background"""
        with self._lock:
            if self._io_thread is not None:
                return self
            self._stop_event.clear()
            self._io_thread = threading.Thread(
                target=self._run, name="AmqpConnectionManager-IO", daemon=True
            )
            self._io_thread.start()
        self.logger.info(
            "action: connection_manager_start | result: success | urls: %s",
            len(self.urls),
        )
        return self

    def _next_url(self):
        url = self.urls[self._url_index % len(self.urls)]
        self._url_index += 1
        return url

    def _parameters(self, url):
        parameters = pika.URLParameters(url)
        parameters.heartbeat = self.heartbeat
        parameters.blocked_connection_timeout = BLOCKED_CONNECTION_TIMEOUT
        return parameters

    def _run(self):
        """IO thread: connect, set channels up, pump events, reconnect"""
        while not self._stop_event.is_set():
            url = self._next_url()
            try:
                parameters = self._parameters(url)
                self.logger.info(
                    "action: rabbitmq_connect | result: in_progress | host: %s",
                    parameters.host,
                )
                connection = self._connection_factory(parameters)
            except Exception as e:
                self.logger.error(
                    "action: rabbitmq_connect | result: fail | url_index: %s | error: %s",
                    self.urls.index(url),
                    e,
                )
                self._emit(DISCONNECT_EVENT, err=e)
                self._stop_event.wait(self.reconnect_time_in_seconds)
                continue

            with self._lock:
                self._connection = connection
                channels = list(self._channels)

            self.logger.info(
                "action: rabbitmq_connect | result: success | host: %s",
                parameters.host,
            )
            self._emit(CONNECT_EVENT, url=url)

            for channel in channels:
                channel.handle_connect(connection)

            error = self._pump_events(connection)

            with self._lock:
                self._connection = None
                channels = list(self._channels)
            for channel in channels:
                channel.handle_disconnect()

            self._close_connection(connection)
            if self._stop_event.is_set():
                break

            self.logger.warning(
                "action: rabbitmq_disconnect | result: success | host: %s | error: %s",
                parameters.host,
                error,
            )
            self._emit(DISCONNECT_EVENT, err=error)
            self._stop_event.wait(self.reconnect_time_in_seconds)

        self.logger.info("action: connection_manager_stop | result: success")

    def _pump_events(self, connection):
        """Process pika events until the connection is lost or a stop is requested"""
        try:
            while not self._stop_event.is_set() and connection.is_open:
                connection.process_data_events(time_limit=PROCESS_EVENTS_TIME_LIMIT)
        except AMQPError as e:
            return e
        except Exception as e:
            # pika re-raises consumer callback errors from process_data_events
            self.logger.error(
                "action: process_events | result: fail | error: %s", e
            )
            return e
        if not connection.is_open:
            return AMQPConnectionError("connection closed")
        return None

    def _close_connection(self, connection):
        try:
            if connection.is_open:
                connection.close()
                self.logger.debug("action: connection_close | result: success")
        except AMQPError as e:
            self.logger.error("action: connection_close | result: fail | error: %s", e)

    def _in_io_thread(self):
        return (
            self._io_thread is not None
            and threading.current_thread() is self._io_thread
        )

    def call_threadsafe(self, callback):
        """
        Run `callback` on the IO thread, inline when already on it.

        Raises MessageMiddlewareDisconnectedError when there is no
        connection to schedule the callback on.
        """
        if self._in_io_thread():
            callback()
            return

        connection = self._connection
        if connection is None:
            raise MessageMiddlewareDisconnectedError("not connected to RabbitMQ")
        try:
            connection.add_callback_threadsafe(callback)
        except AMQPError as e:
            raise MessageMiddlewareDisconnectedError(str(e)) from e

    def create_channel(self, setup=None, name="channel"):
        """Create a ChannelWrapper whose `setup` runs on every (re)connect"""
        wrapper = ChannelWrapper(self, setup=setup, name=name)
        with self._lock:
            self._channels.append(wrapper)
            connection = self._connection

        if connection is not None:

            def _setup_on_current_connection():
                if self._connection is connection:
                    wrapper.handle_connect(connection)

            try:
                self.call_threadsafe(_setup_on_current_connection)
            except MessageMiddlewareDisconnectedError as e:
                self.logger.warning(
                    "action: channel_setup | result: deferred | channel: %s | error: %s",
                    name,
                    e,
                )
        return wrapper

    def remove_channel(self, wrapper):
        with self._lock:
            if wrapper in self._channels:
                self._channels.remove(wrapper)

    def is_connected(self):
        """Check if connection is active"""
        connection = self._connection
        return connection is not None and connection.is_open

    def close(self, timeout=None):
        """Stop reconnecting, close the connection and join the IO thread"""
        self.logger.info("action: connection_manager_close | result: in_progress")
        self._stop_event.set()
        thread = self._io_thread
        if thread is not None and not self._in_io_thread():
            thread.join(timeout)
        with self._lock:
            self._io_thread = None
        self.logger.info("action: connection_manager_close | result: success")

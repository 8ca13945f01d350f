import threading
import time
import uuid
import itertools

import pika
import pika.frame
import pika.spec
import pika.exceptions
import pytest

from rpc import RPCConnection


# --------- In-memory stand-in for RabbitMQ ----------


class FakeBroker:
    """
    Routes default-exchange publishes to the consumer of the target queue.
    Messages published to a queue nobody consumes are only recorded.
    """

    def __init__(self):
        self.queues = {}
        self.consumers = {}
        self.published = []
        self._lock = threading.RLock()
        self._delivery_tags = itertools.count(1)

    def declare(self, queue, **kwargs):
        with self._lock:
            if not queue:
                queue = f"amq.gen-{uuid.uuid4().hex[:12]}"
            self.queues.setdefault(queue, kwargs)
            return queue

    def add_consumer(self, queue, channel, callback):
        with self._lock:
            self.consumers.setdefault(queue, []).append((channel, callback))

    def publish(self, exchange, routing_key, body, properties):
        with self._lock:
            self.published.append((exchange, routing_key, body, properties))
            consumer = None
            if exchange == "":
                consumers = [
                    (channel, callback)
                    for channel, callback in self.consumers.get(routing_key, [])
                    if channel.is_open
                ]
                if consumers:
                    consumer = consumers[0]
            delivery_tag = next(self._delivery_tags)

        if consumer is not None:
            channel, callback = consumer
            method = pika.spec.Basic.Deliver(
                consumer_tag="ctag",
                delivery_tag=delivery_tag,
                exchange=exchange,
                routing_key=routing_key,
            )
            callback(channel, method, properties, body)

    def published_to(self, routing_key):
        with self._lock:
            return [entry for entry in self.published if entry[1] == routing_key]


class FakeChannel:
    def __init__(self, broker, channel_number):
        self.broker = broker
        self.channel_number = channel_number
        self.is_open = True
        self.prefetch_count = None
        self.declared = []
        self.consumed = []
        self.acked = []

    def queue_declare(self, queue, **kwargs):
        name = self.broker.declare(queue, **kwargs)
        self.declared.append((name, kwargs))
        return pika.frame.Method(
            self.channel_number, pika.spec.Queue.DeclareOk(queue=name)
        )

    def basic_qos(self, prefetch_count=0):
        self.prefetch_count = prefetch_count

    def basic_consume(self, queue, on_message_callback, auto_ack=False):
        self.consumed.append((queue, auto_ack))
        self.broker.add_consumer(queue, self, on_message_callback)

    def basic_publish(self, exchange, routing_key, body, properties=None):
        if not self.is_open:
            raise pika.exceptions.ChannelWrongStateError("Channel is closed.")
        self.broker.publish(exchange, routing_key, body, properties)

    def basic_ack(self, delivery_tag):
        self.acked.append(delivery_tag)

    def close(self):
        self.is_open = False


class FakeConnection:
    """
    BlockingConnection look-alike. Thread-safe callbacks run inline on
    the calling thread; `drop()` makes the next event pump fail.
    """

    def __init__(self, broker, parameters=None):
        self.broker = broker
        self.parameters = parameters
        self.is_open = True
        self.channels = []
        self.scheduled = []
        self._dropped = threading.Event()

    def channel(self):
        channel = FakeChannel(self.broker, len(self.channels) + 1)
        self.channels.append(channel)
        return channel

    def add_callback_threadsafe(self, callback):
        if not self.is_open:
            raise pika.exceptions.ConnectionWrongStateError("Connection is closed.")
        callback()

    def schedule(self, callback):
        """Run `callback` on the next event pump, like a pika consumer dispatch"""
        self.scheduled.append(callback)

    def process_data_events(self, time_limit=0):
        while self.scheduled:
            self.scheduled.pop(0)()
        if self._dropped.wait(min(time_limit, 0.01)):
            self.is_open = False
            for channel in self.channels:
                channel.is_open = False
            raise pika.exceptions.StreamLostError("Stream connection lost")

    def drop(self):
        self._dropped.set()

    def close(self):
        self.is_open = False
        for channel in self.channels:
            channel.is_open = False


# --------- Common test helpers ----------


def wait_until(predicate, timeout: float, check_interval: float = 0.01) -> bool:
    """
    Evaluates predicate() every check_interval until timeout.
    Returns True if it held, False if it expired.
    """
    end = time.time() + timeout
    while time.time() < end:
        if predicate():
            return True
        time.sleep(check_interval)
    return False


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def connections(broker):
    """Every FakeConnection handed out by the connection factory, in order"""
    return []


@pytest.fixture
def connection_factory(broker, connections):
    def _factory(parameters):
        connection = FakeConnection(broker, parameters)
        connections.append(connection)
        return connection

    return _factory


@pytest.fixture
def rpc_connection(connection_factory):
    """A started RPCConnection talking to the fake broker"""
    connection = RPCConnection(
        ["amqp://localhost"],
        reconnect_time_in_seconds=0.01,
        connection_factory=connection_factory,
    ).start()
    assert wait_until(connection.is_connected, timeout=2.0)
    yield connection
    connection.close(timeout=2.0)


@pytest.fixture
def idle_connection(connection_factory):
    """An RPCConnection that was never started"""
    return RPCConnection(["amqp://localhost"], connection_factory=connection_factory)

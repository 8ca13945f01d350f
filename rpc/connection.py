from middleware.connection import AmqpConnectionManager
from rpc.client import RPCClient
from rpc.server import RPCServer


class RPCConnection(AmqpConnectionManager):
    """Connection manager able to create RPC clients and servers"""

    def create_rpc_server(self, queue_name, callback, send_error_stack=False, setup=None):
        """
        Create a new RPC worker (server).

        Args:
            queue_name: Name of the queue to consume RPC requests from
            callback: Called as callback(request, message); its return value
                (or the exception it raises) is sent back to the caller
            send_error_stack: Include tracebacks in error replies
            setup: Optional setup(channel) replacing the default queue
                declaration; must return the queue name to consume
        """
        return RPCServer(
            self,
            queue_name,
            callback,
            send_error_stack=send_error_stack,
            setup=setup,
        )

    def create_rpc_client(self, queue_name=None, ttl=0, setup=None):
        """
        Create a new RPC client.

        Args:
            queue_name: Default queue requests are routed to
            ttl: Time to live of a request in seconds, 0 for infinite
            setup: Optional setup(channel) replacing the private reply queue
                declaration; must return the reply queue name
        """
        return RPCClient(self, queue_name=queue_name, ttl=ttl, setup=setup)


def connect(urls, **options):
    """Create an RPCConnection and start connecting in the background"""
    return RPCConnection(urls, **options).start()

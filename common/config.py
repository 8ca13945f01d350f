#!/usr/bin/env python3

import os
from configparser import ConfigParser
from dataclasses import dataclass, field
from typing import List


DEFAULT_HEARTBEAT = 600
DEFAULT_RECONNECT_TIME = 5


@dataclass
class MiddlewareConfig:
    """Configuration for the RabbitMQ connection manager"""

    urls: List[str] = field(default_factory=lambda: ["amqp://localhost"])
    heartbeat: int = DEFAULT_HEARTBEAT
    reconnect_time_in_seconds: float = DEFAULT_RECONNECT_TIME


@dataclass
class RpcConfig:
    """Configuration for the RPC client/server"""

    queue_name: str
    ttl: int
    send_error_stack: bool
    logging_level: str


def _parse_bool(value):
    normalized = str(value).strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"invalid boolean value '{value}'")


def _parse_urls(value):
    urls = [url.strip() for url in str(value).split(",") if url.strip()]
    if not urls:
        raise ValueError("RABBITMQ_URLS must contain at least one url")
    return urls


def initialize_config(path="config.ini"):
    """Parse config file to find program config params

    Function that searches for program configuration parameters in the config file.
    Environment variables take precedence over config file values.
    If a required config parameter is not found a KeyError exception
    is thrown. If a parameter could not be parsed, a ValueError is thrown.
    If parsing succeeded, the function returns RpcConfig and MiddlewareConfig objects
    """

    config = ConfigParser()

    config_files_read = config.read(path)
    if not config_files_read:
        raise KeyError(f"Configuration file '{path}' not found or could not be read")

    def _get_config(env_key, config_key, default=None):
        """Get configuration value from environment variable or config file"""
        env_value = os.getenv(env_key)
        if env_value is not None:
            return env_value

        try:
            return config["DEFAULT"][config_key]
        except KeyError:
            if default is not None:
                return default
            raise KeyError(
                f"Required configuration parameter '{config_key}' not found in environment variable '{env_key}' or config file"
            )

    try:
        rpc_config = RpcConfig(
            queue_name=_get_config("RPC_QUEUE_NAME", "RPC_QUEUE_NAME"),
            ttl=int(_get_config("RPC_TTL", "RPC_TTL", "0")),
            send_error_stack=_parse_bool(
                _get_config("RPC_SEND_ERROR_STACK", "RPC_SEND_ERROR_STACK", "false")
            ),
            logging_level=_get_config("LOGGING_LEVEL", "LOGGING_LEVEL"),
        )

        middleware_config = MiddlewareConfig(
            urls=_parse_urls(_get_config("RABBITMQ_URLS", "RABBITMQ_URLS")),
            heartbeat=int(
                _get_config("RABBITMQ_HEARTBEAT", "RABBITMQ_HEARTBEAT", str(DEFAULT_HEARTBEAT))
            ),
            reconnect_time_in_seconds=float(
                _get_config(
                    "RABBITMQ_RECONNECT_TIME",
                    "RABBITMQ_RECONNECT_TIME",
                    str(DEFAULT_RECONNECT_TIME),
                )
            ),
        )

    except KeyError as e:
        raise KeyError("Configuration error: {}. Aborting".format(e))
    except ValueError as e:
        raise ValueError("Configuration parsing error: {}. Aborting".format(e))

    if rpc_config.ttl < 0:
        raise ValueError("Configuration parsing error: RPC_TTL must be >= 0. Aborting")

    return rpc_config, middleware_config

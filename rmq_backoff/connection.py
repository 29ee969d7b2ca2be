"""
RabbitMQ connection management.

One connection per process, created lazily from parameters stored by
init_rabbitmq(). Connecting retries transient errors.
"""

import logging
import os
import ssl
import threading
from typing import Optional

import amqpstorm

from rmq_backoff.reconnect import ReconnectConfig, reconnecting

logger = logging.getLogger(__name__)

# Global state for connection management
_GLOBALS = {}
_connection_lock = threading.Lock()


def init_rabbitmq(
    host: str,
    port: int,
    username: str,
    password: str,
    virtual_host: str = "/",
    ssl_enabled: bool = False,
    ssl_hostname: Optional[str] = None,
    reconnect_config: Optional[ReconnectConfig] = None,
) -> None:
    """
    Store RabbitMQ connection parameters for later use.

    Args:
        host: RabbitMQ server hostname
        port: RabbitMQ server port (usually 5672 or 5671 for SSL)
        username: Authentication username
        password: Authentication password
        virtual_host: Virtual host to connect to (default: "/")
        ssl_enabled: Whether to use SSL/TLS
        ssl_hostname: Hostname for certificate verification (required if ssl_enabled)
        reconnect_config: Backoff used while connecting

    Raises:
        RuntimeError: If SSL is enabled without a hostname
    """
    if ssl_enabled and not ssl_hostname:
        raise RuntimeError(
            "SSL is enabled but no hostname provided. "
            "Please set RABBITMQ_SSL_HOSTNAME"
        )
    _GLOBALS["rmq_parameters"] = {
        "host": host,
        "port": port,
        "username": username,
        "password": password,
        "virtual_host": virtual_host,
        "ssl": ssl_enabled,
        "ssl_hostname": ssl_hostname,
    }
    _GLOBALS["reconnect_config"] = reconnect_config or ReconnectConfig()
    logger.info("RabbitMQ parameters stored for %s:%s%s", host, port, virtual_host)


def get_rabbitmq_ssl_options(hostname: str) -> dict:
    """
    Create SSL options for a RabbitMQ connection.

    A fresh context is built per call so forked processes never share one.
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.load_default_certs(purpose=ssl.Purpose.SERVER_AUTH)
    return {
        "context": context,
        "server_hostname": hostname,
    }


def _connect(params: dict) -> amqpstorm.Connection:
    ssl_options = None
    if params["ssl"]:
        ssl_options = get_rabbitmq_ssl_options(params["ssl_hostname"])
    return amqpstorm.Connection(
        hostname=params["host"],
        port=params["port"],
        username=params["username"],
        password=params["password"],
        virtual_host=params["virtual_host"],
        ssl=params["ssl"],
        ssl_options=ssl_options,
    )


def get_rabbitmq_connection() -> amqpstorm.Connection:
    """
    Get or create the RabbitMQ connection for the current process.

    Returns:
        Active RabbitMQ connection

    Raises:
        RuntimeError: If init_rabbitmq() has not been called
    """
    with _connection_lock:
        connection_key = f"rmq_connection_{os.getpid()}"

        connection = _GLOBALS.get(connection_key)
        if connection is not None:
            if connection.is_open:
                return connection
            logger.warning("RabbitMQ connection is closed, creating new one")
            del _GLOBALS[connection_key]

        if "rmq_parameters" not in _GLOBALS:
            raise RuntimeError(
                "rmq_parameters not defined - init_rabbitmq() must be called first"
            )

        connect = reconnecting(_GLOBALS["reconnect_config"])(_connect)
        connection = connect(_GLOBALS["rmq_parameters"])
        _GLOBALS[connection_key] = connection
        logger.info("RabbitMQ connection established for process %d", os.getpid())
        return connection


def cleanup_rabbitmq_connections() -> None:
    """
    Gracefully close the current process' RabbitMQ connection.

    Should be called during worker shutdown, after all channels are closed.
    """
    with _connection_lock:
        connection_key = f"rmq_connection_{os.getpid()}"
        connection = _GLOBALS.pop(connection_key, None)
        if connection is None:
            return
        try:
            if connection.is_open:
                connection.close()
                logger.info("RabbitMQ connection closed for process %d", os.getpid())
        except Exception as e:
            logger.warning("Error closing RabbitMQ connection: %s", e)

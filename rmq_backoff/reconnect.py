"""
Reconnection with exponential backoff for transient broker errors.

Only used while establishing connections. Topology declarations and message
handling are never retried here.
"""

import logging
import random
import time
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional

from amqpstorm.exception import AMQPChannelError, AMQPConnectionError

logger = logging.getLogger(__name__)


@dataclass
class ReconnectConfig:
    """Configuration for reconnect behavior."""

    max_attempts: int = 5
    """Maximum number of attempts (including the initial attempt)"""

    initial_delay: float = 1.0
    """Delay in seconds before the first reattempt"""

    max_delay: float = 30.0
    """Maximum delay in seconds between attempts"""

    exponential_base: float = 2.0
    """Base for exponential backoff (delay *= base ** attempt)"""

    jitter: bool = True
    """Whether to add +/-10% random jitter to delays"""

    exception_filter: Optional[Callable[[Exception], bool]] = None
    """Decides which errors are transient; defaults to is_transient_broker_error"""


def is_transient_broker_error(exception: Exception) -> bool:
    """
    Determine if a broker error is transient and worth reconnecting for.

    Args:
        exception: Exception to check

    Returns:
        True for amqpstorm connection/channel errors and OS level connection errors
    """
    return isinstance(
        exception, (AMQPConnectionError, AMQPChannelError, ConnectionError, OSError)
    )


def _calculate_delay(config: ReconnectConfig, attempt: int) -> float:
    delay = min(config.initial_delay * (config.exponential_base ** attempt), config.max_delay)
    if config.jitter:
        jitter_amount = delay * 0.1
        delay += random.uniform(-jitter_amount, jitter_amount)
    return max(0.0, delay)


def reconnecting(config: Optional[ReconnectConfig] = None) -> Callable:
    """
    Decorator retrying a connect function on transient broker errors.

    Example:
        @reconnecting(ReconnectConfig(max_attempts=10))
        def connect():
            return amqpstorm.Connection("localhost", "guest", "guest")
    """
    if config is None:
        config = ReconnectConfig()
    is_transient = config.exception_filter or is_transient_broker_error

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not is_transient(e):
                        raise
                    if attempt + 1 >= config.max_attempts:
                        logger.warning(
                            "Giving up on %s after %d attempts",
                            func.__name__,
                            config.max_attempts,
                        )
                        raise

                    delay = _calculate_delay(config, attempt)
                    logger.warning(
                        "Attempt %d/%d failed for %s with %s: %s. Retrying in %.2fs...",
                        attempt + 1,
                        config.max_attempts,
                        func.__name__,
                        type(e).__name__,
                        e,
                        delay,
                    )
                    time.sleep(delay)
            raise RuntimeError("reconnect loop exited without result")

        return wrapper
    return decorator

"""
Per-consumer retry policy.

A RetryPolicy is fixed when a consumer is registered. It decides which errors
are retried, how many times, how long each attempt waits and which exchange
carries retried messages.
"""

import dataclasses
import inspect
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional, Tuple, Type, Union

from rmq_backoff.config import RetryExchangeOptions
from rmq_backoff.exceptions import ConfigurationError

DEFAULT_MAX_RETRIES = 5


def exp_backoff(attempt: int) -> int:
    """
    Delay in seconds before retry number ``attempt`` (0-indexed).

    Examples:
        >>> [exp_backoff(n) for n in range(5)]
        [33, 49, 115, 291, 661]
    """
    return (attempt + 1) ** 4 + 30 + (attempt + 2)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one consumer type."""

    max_retries: int = DEFAULT_MAX_RETRIES
    """Number of delayed redeliveries before a message is given up on"""

    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    """Error types that are retried"""

    retry_filter: Optional[Callable[[BaseException], bool]] = None
    """Optional predicate narrowing retry_on further"""

    backoff: Callable[[int], int] = exp_backoff
    """Maps an attempt number to a delay in whole seconds"""

    retry_exchange: RetryExchangeOptions = field(default_factory=RetryExchangeOptions)
    """Retry exchange name and durability"""

    queue_name: str = ""
    """Main queue of the consumer, set at registration"""

    forward_headers: bool = False
    """Copy the incoming application headers onto retried messages"""

    def __post_init__(self):
        if isinstance(self.max_retries, bool) or not isinstance(self.max_retries, int):
            raise ConfigurationError(
                f"max_retries must be an integer, got {self.max_retries!r}"
            )
        if self.max_retries < 0:
            raise ConfigurationError(
                f"max_retries must be >= 0, got {self.max_retries}"
            )
        object.__setattr__(self, "retry_on", _error_kinds(self.retry_on))
        if self.retry_filter is not None and not callable(self.retry_filter):
            raise ConfigurationError("retry_filter must be callable")
        if not callable(self.backoff):
            raise ConfigurationError("backoff must be callable")

    @classmethod
    def builder(cls) -> "RetryPolicyBuilder":
        return RetryPolicyBuilder()

    def bind(self, queue_name: str) -> "RetryPolicy":
        """Return a copy of this policy attached to a consumer queue."""
        return dataclasses.replace(self, queue_name=queue_name)

    def is_retryable(self, error: BaseException) -> bool:
        """
        Determine if an error should be retried.

        Args:
            error: Exception raised while handling a delivery

        Returns:
            True if the error matches retry_on and passes retry_filter
        """
        if not isinstance(error, self.retry_on):
            return False
        if self.retry_filter is not None:
            return bool(self.retry_filter(error))
        return True

    def delay_for(self, attempt: int) -> int:
        """
        Delay for the given attempt, validated.

        Raises:
            ConfigurationError: If the backoff function returns anything but a
                positive integer
        """
        delay = self.backoff(attempt)
        if isinstance(delay, bool) or not isinstance(delay, int) or delay <= 0:
            raise ConfigurationError(
                f"backoff({attempt}) must return a positive integer, got {delay!r}"
            )
        return delay

    def retry_exchange_name(self) -> str:
        if self.retry_exchange.name:
            return self.retry_exchange.name
        if not self.queue_name:
            raise ConfigurationError(
                "retry exchange name requires either an explicit name or a queue name"
            )
        return f"{self.queue_name}.retry"

    def retry_exchange_durable(self) -> bool:
        return self.retry_exchange.durable


def _error_kinds(kinds) -> Tuple[Type[BaseException], ...]:
    if inspect.isclass(kinds):
        kinds = (kinds,)
    try:
        kinds = tuple(kinds)
    except TypeError:
        raise ConfigurationError(f"retry_on must be error types, got {kinds!r}")
    for kind in kinds:
        if not (inspect.isclass(kind) and issubclass(kind, BaseException)):
            raise ConfigurationError(f"retry_on entries must be error types, got {kind!r}")
    return kinds


class RetryPolicyBuilder:
    """
    Collects retry settings during consumer registration.

    Example:
        policy = (
            RetryPolicy.builder()
            .max_retries(3)
            .retry_on([TimeoutError, ConnectionError])
            .retry_exchange_options(name="orders.retry", durable=True)
            .build()
        )
    """

    def __init__(self):
        self._max_retries = DEFAULT_MAX_RETRIES
        self._retry_on: Tuple[Type[BaseException], ...] = (Exception,)
        self._retry_filter: Optional[Callable[[BaseException], bool]] = None
        self._backoff: Callable[[int], int] = exp_backoff
        self._exchange_name: Optional[str] = None
        self._exchange_durable = True
        self._forward_headers = False

    def max_retries(self, count: int) -> "RetryPolicyBuilder":
        self._max_retries = count
        return self

    def retry_on(
        self,
        kinds: Union[Type[BaseException], Iterable[Type[BaseException]], Callable[[BaseException], bool]],
    ) -> "RetryPolicyBuilder":
        """Retry on the given error types, or on errors accepted by a predicate."""
        if callable(kinds) and not inspect.isclass(kinds):
            self._retry_on = (BaseException,)
            self._retry_filter = kinds
        else:
            self._retry_on = _error_kinds(kinds)
            self._retry_filter = None
        return self

    def retry_exchange_options(
        self, name: Optional[str] = None, durable: Optional[bool] = None
    ) -> "RetryPolicyBuilder":
        if name is not None:
            self._exchange_name = name
        if durable is not None:
            self._exchange_durable = durable
        return self

    def backoff(self, func: Callable[[int], int]) -> "RetryPolicyBuilder":
        self._backoff = func
        return self

    def forward_headers(self, enabled: bool = True) -> "RetryPolicyBuilder":
        self._forward_headers = enabled
        return self

    def build(self, queue_name: str = "") -> RetryPolicy:
        return RetryPolicy(
            max_retries=self._max_retries,
            retry_on=self._retry_on,
            retry_filter=self._retry_filter,
            backoff=self._backoff,
            retry_exchange=RetryExchangeOptions(
                name=self._exchange_name, durable=self._exchange_durable
            ),
            queue_name=queue_name,
            forward_headers=self._forward_headers,
        )

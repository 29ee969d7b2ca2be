"""
Failure routing for retry-capable consumers.

The router holds no per-message state. Every decision is rebuilt from the
``backoff-delay-count`` header carried by the delivery, so it is safe across
worker restarts and redeliveries to any replica.
"""

import logging
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Callable, Mapping

from rmq_backoff.config import BACKOFF_DELAY_COUNT_HEADER, BACKOFF_DELAY_HEADER
from rmq_backoff.exceptions import RetryPublishError
from rmq_backoff.interface import BrokerInterface
from rmq_backoff.message import Delivery
from rmq_backoff.retry.topology import RetryTopologyManager

logger = logging.getLogger(__name__)

# headers stamped by the broker on dead-lettering, never forwarded even with forward_headers
_BROKER_HEADER_PREFIX = "x-"


class RetryDecision(StrEnum):
    SCHEDULED = "scheduled"
    NON_RETRYABLE = "non_retryable"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self is not RetryDecision.SCHEDULED


def attempt_count(headers: Mapping[str, Any]) -> int:
    """
    Number of retries already scheduled for a message.

    Args:
        headers: Delivery headers

    Returns:
        The backoff-delay-count header as a non-negative int, 0 when absent
        or unreadable
    """
    raw = (headers or {}).get(BACKOFF_DELAY_COUNT_HEADER)
    if raw is None:
        return 0
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", "replace")
    try:
        count = int(raw)
    except (TypeError, ValueError):
        logger.warning("Ignoring unreadable %s header: %r", BACKOFF_DELAY_COUNT_HEADER, raw)
        return 0
    return max(count, 0)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc).replace(microsecond=0)


class RetryRouter:
    """
    Decides whether a failed delivery is rescheduled or finalized.

    Scheduling is performed by the router itself (ack, then republish).
    Finalization is left to the caller, which owns the error acknowledgement
    strategies.
    """

    def __init__(
        self,
        broker: BrokerInterface,
        topology: RetryTopologyManager,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._broker = broker
        self._topology = topology
        self._clock = clock

    def handle_retry(self, spec, delivery: Delivery, error: BaseException) -> RetryDecision:
        """
        Route a failed delivery.

        Args:
            spec: ConsumerSpec of a retry-capable consumer
            delivery: The failed delivery
            error: Error raised while handling it

        Returns:
            SCHEDULED if the message was republished into the delay ladder,
            otherwise the reason the caller has to finalize it

        Raises:
            RetryPublishError: If the republish failed after the original was acked
        """
        policy = spec.retry_policy

        if not policy.is_retryable(error):
            logger.debug(
                "Not retrying message_id=%s: %s is not retryable",
                delivery.message_id,
                type(error).__name__,
            )
            return RetryDecision.NON_RETRYABLE

        count = attempt_count(delivery.headers)
        if count >= policy.max_retries:
            logger.debug(
                "Max retries exceeded message_id=%s (%d/%d)",
                delivery.message_id,
                count,
                policy.max_retries,
            )
            return RetryDecision.EXHAUSTED

        delay = policy.delay_for(count)
        exchange = self._topology.retry_exchange(policy)
        logger.debug("Retry message_id=%s counter=%d", delivery.message_id, count + 1)

        # the original is superseded by the republished copy
        self._broker.ack(delivery.delivery_tag)
        try:
            self._broker.publish(
                exchange.name,
                delivery.payload,
                routing_key=delivery.routing_key,
                message_id=delivery.message_id,
                timestamp=self._clock(),
                headers=self._retry_headers(
                    delivery.headers if policy.forward_headers else {}, delay, count + 1
                ),
                content_type=delivery.content_type,
            )
        except Exception as e:
            logger.error(
                "Failed to republish message_id=%s to %s after ack: %s",
                delivery.message_id,
                exchange.name,
                e,
            )
            raise RetryPublishError(delivery.message_id, exchange.name, e) from e

        logger.info(
            "Scheduled retry %d/%d for message_id=%s in %ds",
            count + 1,
            policy.max_retries,
            delivery.message_id,
            delay,
        )
        return RetryDecision.SCHEDULED

    @staticmethod
    def _retry_headers(headers: Mapping[str, Any], delay: int, count: int) -> dict:
        retry_headers = {
            key: value
            for key, value in (headers or {}).items()
            if not key.startswith(_BROKER_HEADER_PREFIX)
        }
        retry_headers[BACKOFF_DELAY_HEADER] = delay
        retry_headers[BACKOFF_DELAY_COUNT_HEADER] = count
        return retry_headers

"""
Retry orchestration for RabbitMQ consumers.

This package provides:
- RetryPolicy: per-consumer retry settings and the backoff formula
- RetryTopologyManager: headers exchange plus TTL delay queues per consumer
- RetryRouter: reschedules or finalizes failed deliveries
"""

from rmq_backoff.retry.policy import (
    DEFAULT_MAX_RETRIES,
    RetryPolicy,
    RetryPolicyBuilder,
    exp_backoff,
)
from rmq_backoff.retry.router import RetryDecision, RetryRouter, attempt_count
from rmq_backoff.retry.topology import (
    RetryExchange,
    RetryQueue,
    RetryTopologyManager,
    build_ladder,
)

__all__ = [
    # Policy
    "DEFAULT_MAX_RETRIES",
    "RetryPolicy",
    "RetryPolicyBuilder",
    "exp_backoff",
    # Topology
    "RetryExchange",
    "RetryQueue",
    "RetryTopologyManager",
    "build_ladder",
    # Routing
    "RetryDecision",
    "RetryRouter",
    "attempt_count",
]

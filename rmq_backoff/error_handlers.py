"""
Failure observers and error acknowledgement strategies.

Observers only report. Acknowledgement strategies decide the terminal broker
action for a delivery that will not be retried.
"""

import logging

from rmq_backoff.interface import (
    BrokerInterface,
    ErrorAcknowledgementInterface,
    FailureObserverInterface,
)

logger = logging.getLogger(__name__)


class LoggingObserver(FailureObserverInterface):
    """Logs every failure with its traceback."""

    def __init__(self, log: logging.Logger = logger):
        self._logger = log

    def notify(self, delivery, error: BaseException) -> None:
        self._logger.error(
            "message(%s): error processing routing key %s: %s: %s",
            delivery.message_id or "-",
            delivery.routing_key,
            type(error).__name__,
            error,
            exc_info=(type(error), error, error.__traceback__),
        )


class NackOnAllFailures(ErrorAcknowledgementInterface):
    """Rejects the delivery without requeueing. This is the fallback behaviour."""

    def handle(self, delivery, broker: BrokerInterface, error: BaseException) -> bool:
        logger.debug("nacking message %s", delivery.message_id or "-")
        broker.nack(delivery.delivery_tag)
        return True


class RequeueFirstFailure(ErrorAcknowledgementInterface):
    """
    Puts a delivery back on its queue once.

    A delivery the broker reports as redelivered is left to the next strategy.
    """

    def handle(self, delivery, broker: BrokerInterface, error: BaseException) -> bool:
        if delivery.redelivered:
            return False
        logger.debug("requeueing message %s", delivery.message_id or "-")
        broker.requeue(delivery.delivery_tag)
        return True

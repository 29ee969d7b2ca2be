"""Exceptions raised by rmq_backoff."""


class RmqBackoffError(Exception):
    """Base class for all rmq_backoff errors."""


class ConfigurationError(RmqBackoffError):
    """Invalid retry policy or worker configuration."""


class RegistrationError(RmqBackoffError):
    """A consumer could not be registered."""


class TopologyError(RmqBackoffError):
    """
    Declaring retry exchanges or delay queues failed.

    Raised during worker startup only. It is never retried automatically since
    a broken topology means retried messages would have nowhere to go.
    """


class ConsumerTagError(RmqBackoffError):
    """Generated consumer tag exceeds the AMQP short string limit."""


class WorkerShutdownError(RmqBackoffError):
    """A subscription was requested after shutdown began."""


class RetryPublishError(RmqBackoffError):
    """
    Republishing a failed message into the delay ladder failed.

    The original delivery has already been acknowledged when this is raised.
    """

    def __init__(self, message_id, exchange: str, cause: Exception):
        self.message_id = message_id
        self.exchange = exchange
        super().__init__(
            f"failed to publish message {message_id or '-'} to retry exchange "
            f"{exchange}: {cause}"
        )

"""
Worker runtime.

Sets up every registered consumer, consumes on a background thread, hands
deliveries to a thread pool and shuts down without abandoning in-flight
handlers.
"""

import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional

from rmq_backoff.consumer import ConsumerRegistry
from rmq_backoff.dispatcher import DEFAULT_CONSUMER_TAG_PREFIX, MessageDispatcher
from rmq_backoff.exceptions import ConfigurationError
from rmq_backoff.interface import (
    BrokerInterface,
    ErrorAcknowledgementInterface,
    FailureObserverInterface,
    SerializerInterface,
)

logger = logging.getLogger(__name__)


class Worker:
    """Runs the consumers of a registry against one broker."""

    def __init__(
        self,
        broker: BrokerInterface,
        registry: ConsumerRegistry,
        threads: int = 4,
        serializer: Optional[SerializerInterface] = None,
        failure_observers: Optional[Iterable[FailureObserverInterface]] = None,
        error_acknowledgements: Iterable[ErrorAcknowledgementInterface] = (),
        consumer_tag_prefix: str = DEFAULT_CONSUMER_TAG_PREFIX,
    ):
        if threads < 1:
            raise ConfigurationError(f"threads must be >= 1, got {threads}")
        self._broker = broker
        self._registry = registry
        self._executor = ThreadPoolExecutor(
            max_workers=threads, thread_name_prefix="rmq-backoff-handler"
        )
        self.dispatcher = MessageDispatcher(
            broker,
            serializer=serializer,
            failure_observers=failure_observers,
            error_acknowledgements=error_acknowledgements,
            consumer_tag_prefix=consumer_tag_prefix,
            executor=self._executor,
        )
        self._stop_event = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._consumer_thread: Optional[threading.Thread] = None

    def setup(self) -> None:
        """
        Freeze the registry and set up every consumer queue.

        Raises:
            TopologyError: If a retry topology cannot be declared
        """
        self._registry.freeze()
        if len(self._registry) == 0:
            logger.warning("No consumers registered")
        for spec in self._registry:
            self.dispatcher.setup_queue(spec)
        logger.info("Worker set up %d consumer(s)", len(self._registry))

    def start(self) -> None:
        """Set up consumers and start consuming on a background thread."""
        self.setup()
        self._consumer_thread = threading.Thread(
            target=self._consume,
            name="rmq-backoff-consumer",
            daemon=True,
        )
        self._consumer_thread.start()

    def _consume(self) -> None:
        try:
            self._broker.start_consuming()
        except Exception as e:
            logger.exception("Consumer loop stopped with error: %s", e)
        finally:
            self._stop_event.set()

    def run(self) -> None:
        """Start and block until a signal arrives or consuming stops."""
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        self.start()
        try:
            self._stop_event.wait()
        finally:
            self.stop()

    def _handle_signal(self, signum, frame) -> None:
        logger.info("Received signal %s, shutting down", signal.Signals(signum).name)
        self._stop_event.set()

    def stop(self) -> None:
        """
        Stop the worker.

        Consumers are cancelled first, then in-flight handlers are awaited and
        only afterwards is the channel closed.
        """
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        logger.info("Stopping worker...")
        self._stop_event.set()
        self.dispatcher.shutdown()
        try:
            self._broker.stop_consuming()
        except Exception as e:
            logger.exception("Error stopping consuming: %s", e)

        self._executor.shutdown(wait=True)
        logger.info("In-flight handlers finished")

        if self._consumer_thread is not None:
            self._consumer_thread.join(timeout=5)
        self._broker.close()
        logger.info("Worker stopped")

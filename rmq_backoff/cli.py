"""
Command line interface for rmq_backoff workers.

Example:
    ```
    RABBITMQ_HOST=rabbit rmq-backoff worker --require myapp.consumers
    rmq-backoff ladder --queue-name orders --max-retries 5
    ```
"""

import importlib
import json
import logging
import os
import sys
from dataclasses import dataclass
from typing import List, Optional

import typer
from typing_extensions import Annotated

from rmq_backoff.broker import RabbitBroker
from rmq_backoff.connection import (
    cleanup_rabbitmq_connections,
    get_rabbitmq_connection,
    init_rabbitmq,
)
from rmq_backoff.consumer import registry
from rmq_backoff.dispatcher import DEFAULT_CONSUMER_TAG_PREFIX
from rmq_backoff.error_handlers import RequeueFirstFailure
from rmq_backoff.exceptions import RmqBackoffError
from rmq_backoff.log_setup import setup_logging
from rmq_backoff.retry.policy import DEFAULT_MAX_RETRIES, RetryPolicy
from rmq_backoff.retry.topology import build_ladder
from rmq_backoff.worker import Worker

logger = logging.getLogger(__name__)

app = typer.Typer(help="RabbitMQ worker with exponential backoff retries")


# Type aliases for CLI parameters
RabbitMQHost = Annotated[str, typer.Option(envvar="RABBITMQ_HOST")]
RabbitMQPort = Annotated[int, typer.Option(envvar="RABBITMQ_PORT")]
RabbitMQUser = Annotated[str, typer.Option(envvar="RABBITMQ_USER")]
RabbitMQPassword = Annotated[str, typer.Option(envvar="RABBITMQ_PASSWORD")]
RabbitMQVHost = Annotated[str, typer.Option(envvar="RABBITMQ_VHOST")]
RabbitMQEnableSSL = Annotated[bool, typer.Option(envvar="RABBITMQ_ENABLE_SSL")]
RabbitMQSSLHostname = Annotated[Optional[str], typer.Option(envvar="RABBITMQ_SSL_HOSTNAME")]
AppEnv = Annotated[Optional[str], typer.Option(envvar="APP_ENV")]
LogLevel = Annotated[str, typer.Option(envvar="LOG_LEVEL", help="Logging level")]
EnableOTLP = Annotated[bool, typer.Option("--log-otlp", help="Enable OTLP logging")]


@dataclass
class RabbitMQContext:
    """RabbitMQ connection configuration collected from the command line."""

    host: str
    port: int
    user: str
    password: str
    vhost: str = "/"
    enable_ssl: bool = False
    ssl_hostname: Optional[str] = None


@app.callback()
def callback(
    ctx: typer.Context,
    rabbitmq_host: RabbitMQHost = "localhost",
    rabbitmq_port: RabbitMQPort = 5672,
    rabbitmq_user: RabbitMQUser = "guest",
    rabbitmq_password: RabbitMQPassword = "guest",
    rabbitmq_vhost: RabbitMQVHost = "/",
    rabbitmq_enable_ssl: RabbitMQEnableSSL = False,
    rabbitmq_ssl_hostname: RabbitMQSSLHostname = None,
    app_env: AppEnv = None,
    log_level: LogLevel = "INFO",
    log_otlp: EnableOTLP = False,
):
    setup_logging(
        level=logging.getLevelName(log_level.upper()),
        app_name="rmq-backoff",
        app_type="worker",
        app_env=app_env,
        enable_otel=log_otlp,
    )
    ctx.obj = {
        "rabbitmq": RabbitMQContext(
            host=rabbitmq_host,
            port=rabbitmq_port,
            user=rabbitmq_user,
            password=rabbitmq_password,
            vhost=rabbitmq_vhost,
            enable_ssl=rabbitmq_enable_ssl,
            ssl_hostname=rabbitmq_ssl_hostname,
        ),
        "app_env": app_env,
    }


def load_consumer_modules(modules: List[str]) -> None:
    """Import modules whose consumers register themselves on the default registry."""
    if os.getcwd() not in sys.path:
        sys.path.insert(0, os.getcwd())
    for module in modules:
        logger.info("Loading consumers from %s", module)
        importlib.import_module(module)


@app.command()
def worker(
    ctx: typer.Context,
    require: Annotated[
        Optional[List[str]],
        typer.Option("--require", "-r", help="Module registering consumers (repeatable)"),
    ] = None,
    exchange: Annotated[
        str, typer.Option(envvar="WORKER_EXCHANGE", help="Main topic exchange")
    ] = "rmq_backoff",
    consumer_tag_prefix: Annotated[
        str, typer.Option(envvar="WORKER_CONSUMER_TAG_PREFIX")
    ] = DEFAULT_CONSUMER_TAG_PREFIX,
    threads: Annotated[
        int, typer.Option(envvar="WORKER_THREADS", help="Handler threads")
    ] = 4,
    prefetch: Annotated[
        int, typer.Option(envvar="WORKER_PREFETCH", help="Unacked deliveries per worker")
    ] = 10,
    requeue_first_failure: Annotated[
        bool,
        typer.Option(help="Requeue a failed, non-retried delivery once before rejecting it"),
    ] = False,
):
    """Run all consumers registered by the required modules."""
    load_consumer_modules(list(require or []))

    rmq: RabbitMQContext = ctx.obj["rabbitmq"]
    try:
        init_rabbitmq(
            host=rmq.host,
            port=rmq.port,
            username=rmq.user,
            password=rmq.password,
            virtual_host=rmq.vhost,
            ssl_enabled=rmq.enable_ssl,
            ssl_hostname=rmq.ssl_hostname,
        )
        broker = RabbitBroker(get_rabbitmq_connection(), exchange, prefetch_count=prefetch)
        acknowledgements = [RequeueFirstFailure()] if requeue_first_failure else []
        Worker(
            broker,
            registry,
            threads=threads,
            error_acknowledgements=acknowledgements,
            consumer_tag_prefix=consumer_tag_prefix,
        ).run()
    except RmqBackoffError as e:
        logger.error("Worker failed to start: %s", e)
        raise typer.Exit(code=1)
    finally:
        cleanup_rabbitmq_connections()


@app.command()
def ladder(
    queue_name: Annotated[str, typer.Option(help="Consumer queue name")],
    max_retries: Annotated[int, typer.Option(help="Retry attempts")] = DEFAULT_MAX_RETRIES,
    exchange_name: Annotated[
        Optional[str], typer.Option(help="Retry exchange name (default: <queue>.retry)")
    ] = None,
    format: Annotated[str, typer.Option(help="Output format (text or json)")] = "text",
):
    """Print the delay queues a consumer's retry policy declares."""
    try:
        policy = (
            RetryPolicy.builder()
            .max_retries(max_retries)
            .retry_exchange_options(name=exchange_name)
            .build(queue_name=queue_name)
        )
        rungs = build_ladder(policy)
    except RmqBackoffError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    if format == "json":
        typer.echo(json.dumps(
            [{"attempt": r.attempt, "delay": r.delay, "queue": r.queue_name} for r in rungs],
            indent=2,
        ))
        return
    typer.echo(f"exchange: {policy.retry_exchange_name()}")
    for rung in rungs:
        typer.echo(f"{rung.attempt}\t{rung.delay}s\t{rung.queue_name}")


if __name__ == "__main__":
    app()

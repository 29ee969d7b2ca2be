"""
Logging configuration for rmq_backoff workers.

Console logging carries the worker's app metadata (domain, app name, type and
environment) in every line. OTLP log export can be enabled on top.
"""

import logging
import os
import sys
from typing import Optional

from opentelemetry._logs import set_logger_provider
from opentelemetry.exporter.otlp.proto.grpc._log_exporter import OTLPLogExporter
from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.sdk.resources import Resource


def setup_logging(
    level: int = logging.INFO,
    app_name: Optional[str] = None,
    app_type: Optional[str] = "worker",
    domain: Optional[str] = None,
    app_env: Optional[str] = None,
    force_setup: bool = False,
    enable_otel: bool = False,
    enable_console: bool = True,
    otel_endpoint: Optional[str] = None,
) -> None:
    """
    Setup logging for a worker process.

    Args:
        level: Logging level (default: INFO)
        app_name: Application name
        app_type: Application type (default: 'worker')
        domain: Domain/category for the app
        app_env: Application environment (e.g., 'dev', 'staging', 'prod').
                 If not provided, reads from APP_ENV environment variable
        force_setup: Whether to force reconfiguration even if already setup
        enable_otel: Whether to export logs over OTLP (default: False)
        enable_console: Whether to log to stdout (default: True)
        otel_endpoint: OTLP collector endpoint (defaults to env var)
    """
    root_logger = logging.getLogger()
    if root_logger.handlers and not force_setup:
        # Logging already configured, just ensure our level is set
        root_logger.setLevel(level)
        return

    if force_setup:
        root_logger.handlers.clear()

    if app_env is None:
        app_env = os.getenv("APP_ENV")

    if enable_otel:
        _setup_otel_logging(
            app_name=app_name,
            app_type=app_type,
            domain=domain,
            app_env=app_env,
            otel_endpoint=otel_endpoint,
        )

    if enable_console:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            create_formatter(
                app_name=app_name, app_type=app_type, domain=domain, app_env=app_env
            )
        )
        root_logger.addHandler(handler)

    root_logger.setLevel(level)

    # amqpstorm logs every frame-level hiccup at INFO
    logging.getLogger("amqpstorm").setLevel(logging.WARNING)


def create_formatter(
    app_name: Optional[str] = None,
    app_type: Optional[str] = None,
    domain: Optional[str] = None,
    app_env: Optional[str] = None,
) -> logging.Formatter:
    """
    Create a formatter prefixed with the available app metadata.

    Returns:
        Formatter producing "<time> - [domain/app/type/env] <logger> - <level> - <message>"
    """
    context_parts = [part for part in (domain, app_name, app_type, app_env) if part]
    context_prefix = f"[{'/'.join(context_parts)}] " if context_parts else ""

    return logging.Formatter(
        f"%(asctime)s - {context_prefix}%(name)s - %(levelname)s - %(message)s"
    )


def _setup_otel_logging(
    app_name: Optional[str] = None,
    app_type: Optional[str] = None,
    domain: Optional[str] = None,
    app_env: Optional[str] = None,
    otel_endpoint: Optional[str] = None,
) -> None:
    resource_attrs = {
        "service.instance.id": os.uname().nodename,
    }
    if domain and app_name:
        resource_attrs["service.name"] = f"{domain}-{app_name}"
    elif app_name or domain:
        resource_attrs["service.name"] = app_name or domain
    if app_type:
        resource_attrs["service.type"] = app_type
    if app_env:
        resource_attrs["deployment.environment"] = app_env

    logger_provider = LoggerProvider(resource=Resource.create(resource_attrs))
    set_logger_provider(logger_provider)

    endpoint = otel_endpoint or os.getenv("OTEL_EXPORTER_OTLP_LOGS_ENDPOINT")
    logger_provider.add_log_record_processor(
        BatchLogRecordProcessor(OTLPLogExporter(endpoint=endpoint, insecure=True))
    )

    handler = LoggingHandler(level=logging.NOTSET, logger_provider=logger_provider)
    logging.getLogger().addHandler(handler)

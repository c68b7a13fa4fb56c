"""Observability module for logging, metrics, and error tracking."""

import logging
import json
import sys
import time
from typing import Any, Dict
from datetime import datetime, timezone

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Request, Response

from .config import get_settings

# Prometheus metrics, prefixed with METRICS_NAMESPACE
_NAMESPACE = get_settings().metrics_namespace

http_requests_total = Counter(
    'http_requests_total',
    'Total number of HTTP requests',
    ['method', 'endpoint', 'status'],
    namespace=_NAMESPACE,
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'Duration of HTTP requests in seconds',
    ['method', 'endpoint'],
    namespace=_NAMESPACE,
)

workflow_transitions_total = Counter(
    'workflow_transitions_total',
    'Report workflow requests by outcome',
    ['operation', 'outcome'],
    namespace=_NAMESPACE,
)

active_websocket_connections = Gauge(
    'websocket_connections_active',
    'Number of active WebSocket connections',
    ['role'],
    namespace=_NAMESPACE,
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        # Structured context passed as logger.info(..., extra={"extra": {...}})
        if hasattr(record, 'extra') and isinstance(record.extra, dict):
            log_data.update(record.extra)

        return json.dumps(log_data, default=str)


def setup_logging() -> None:
    """Configure structured JSON logging."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    for handler in logging.getLogger().handlers:
        handler.setFormatter(JSONFormatter())

    logger = logging.getLogger("civicfix")
    logger.setLevel(logging.INFO)

    logger.info("Structured JSON logging configured")


def init_sentry() -> None:
    """Initialize Sentry error tracking when SENTRY_DSN is configured."""
    settings = get_settings()
    if not settings.sentry_dsn:
        logging.getLogger("civicfix").info("Sentry DSN not configured, skipping initialization")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
    )
    logging.getLogger("civicfix").info("Sentry initialized for environment %s", settings.environment)


def setup_metrics_middleware(app):
    """Add Prometheus metrics middleware to FastAPI app."""
    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time

        # Use the route template so report ids don't explode label cardinality
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        method = request.method

        http_requests_total.labels(method=method, endpoint=endpoint, status=response.status_code).inc()
        http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)

        return response


def metrics_response() -> Response:
    """Prometheus metrics payload."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def get_health_check() -> Dict[str, Any]:
    """Get health check information including websocket counts."""
    from .websocket_manager import manager

    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "websocket_connections": manager.get_connection_count(),
        "websocket_by_role": manager.get_connections_by_role(),
    }

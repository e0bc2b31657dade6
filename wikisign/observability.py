"""
Observability Module - Logging and Metrics

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (signatures added, invalidations, failures)

Configuration:
- WIKISIGN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- WIKISIGN_LOG_FORMAT: json, text (default: json in production)
- WIKISIGN_PRODUCTION: Enable production mode

Usage:
    from wikisign.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Signature added", page_id=page_id, revision_id=rev_id)

Components never reach for a module-level logger on their own: each takes a
``logger`` argument and only falls back to ``get_logger`` when none is given.
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import defaultdict
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("WIKISIGN_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("WIKISIGN_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("WIKISIGN_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = (
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "wikisign.db.store",
        "message": "Signature added",
        "request_id": "abc-123",
        "actor_id": "42",
        "page_id": 10,
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        actor_id = actor_id_var.get()
        if actor_id:
            log_data["actor_id"] = actor_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Signatures invalidated", page_id=10, affected_rows=1)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        # Move non-standard kwargs to extra
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextLogger instance with structured output
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request
    - Logs request/response with timing
    - Extracts the actor ID from the session cookie if available
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        from wikisign.api.auth import SESSION_COOKIE, read_session_cookie
        cookie_val = request.cookies.get(SESSION_COOKIE)
        services = getattr(request.app.state, "services", None)
        if cookie_val and services is not None:
            actor_id = read_session_cookie(cookie_val, services.config.session_secret)
            if actor_id is not None:
                actor_id_var.set(str(actor_id))

        logger = get_logger("wikisign.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING

            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            raise

        finally:
            request_id_var.set("")
            actor_id_var.set("")


# ============================================================
# METRICS
# ============================================================

@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    signatures_added: int = 0
    sign_attempts: int = 0
    invalidation_events: int = 0
    rows_invalidated: int = 0
    sign_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Histograms (simplified as lists)
    sign_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_sign(self, latency_ms: float, failure_code: Optional[str] = None) -> None:
        """Record a sign attempt and its outcome."""
        with self._lock:
            self.sign_attempts += 1
            if failure_code is None:
                self.signatures_added += 1
            else:
                self.sign_failures[failure_code] += 1
            self.sign_latencies_ms.append(latency_ms)
            # Keep only last 1000 samples
            if len(self.sign_latencies_ms) > 1000:
                self.sign_latencies_ms = self.sign_latencies_ms[-1000:]

    def record_invalidation(self, affected_rows: int) -> None:
        """Record a content-change invalidation."""
        with self._lock:
            self.invalidation_events += 1
            self.rows_invalidated += affected_rows

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        with self._lock:
            return {
                "signatures_added": self.signatures_added,
                "sign_attempts": self.sign_attempts,
                "sign_failures": dict(self.sign_failures),
                "invalidation_events": self.invalidation_events,
                "rows_invalidated": self.rows_invalidated,
                "sign_latency_p50_ms": percentile(self.sign_latencies_ms, 0.5),
                "sign_latency_p95_ms": percentile(self.sign_latencies_ms, 0.95),
            }

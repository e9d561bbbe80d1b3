"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs
- Request/response logging middleware
- Metrics collection (claims, capacity rejections, posts, latencies)
- Health check utilities, including the capacity invariant scan

Configuration:
- KANJI_DAISUKI_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- KANJI_DAISUKI_LOG_FORMAT: json, text (default: json in production)
- KANJI_DAISUKI_PRODUCTION: Enable production mode

Usage:
    from kanji_daisuki.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Claim finalized", user_id=user_id, kanji_id=kanji_id)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("KANJI_DAISUKI_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("KANJI_DAISUKI_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("KANJI_DAISUKI_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_KEYS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message",
    "msecs", "relativeCreated", "thread", "threadName",
    "processName", "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2025-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "kanji_daisuki.core.allocator",
        "message": "Claim finalized",
        "request_id": "abc-123",
        "user_id": "user-456",
        "kanji_id": 7,
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

        user_id = user_id_var.get()
        if user_id:
            log_data["user_id"] = user_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data, ensure_ascii=False)


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
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.warning("Capacity exceeded", kanji_id=7, stage="finalize")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

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
    - Extracts the member id from the session cookie if present
    - Feeds request counters into the metrics collector
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        from kanji_daisuki.web.auth import SESSION_COOKIE, read_session_cookie
        cookie_val = request.cookies.get(SESSION_COOKIE)
        if cookie_val:
            session = read_session_cookie(cookie_val)
            if session:
                user_id_var.set(session.user_id)

        logger = get_logger("kanji_daisuki.request")
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
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

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
            get_metrics().record_request(duration_ms, success=False)
            raise

        finally:
            request_id_var.set("")
            user_id_var.set("")


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
    requests_total: int = 0
    requests_failed: int = 0
    claims_finalized: int = 0
    claims_revoked: int = 0
    capacity_rejections_confirm: int = 0
    capacity_rejections_finalize: int = 0
    posts_created: int = 0
    posts_rejected: int = 0

    # Histograms (simplified as lists)
    finalize_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    def record_finalize(self, latency_ms: float) -> None:
        """Record a successful claim finalization."""
        self.claims_finalized += 1
        self.finalize_latencies_ms.append(latency_ms)
        # Keep only last 1000 samples
        if len(self.finalize_latencies_ms) > 1000:
            self.finalize_latencies_ms = self.finalize_latencies_ms[-1000:]

    def record_capacity_rejection(self, stage: str) -> None:
        """stage is "confirm" or "finalize"."""
        if stage == "finalize":
            self.capacity_rejections_finalize += 1
        else:
            self.capacity_rejections_confirm += 1

    def record_post(self, accepted: bool) -> None:
        if accepted:
            self.posts_created += 1
        else:
            self.posts_rejected += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        """Record a request."""
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.append(latency_ms)
        if len(self.request_latencies_ms) > 1000:
            self.request_latencies_ms = self.request_latencies_ms[-1000:]

    def get_summary(self) -> Dict[str, Any]:
        """Get metrics summary."""
        def percentile(data: list, p: float) -> Optional[float]:
            if not data:
                return None
            sorted_data = sorted(data)
            idx = int(len(sorted_data) * p)
            return sorted_data[min(idx, len(sorted_data) - 1)]

        return {
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "claims_finalized": self.claims_finalized,
            "claims_revoked": self.claims_revoked,
            "capacity_rejections_confirm": self.capacity_rejections_confirm,
            "capacity_rejections_finalize": self.capacity_rejections_finalize,
            "posts_created": self.posts_created,
            "posts_rejected": self.posts_rejected,
            "finalize_latency_p50_ms": percentile(self.finalize_latencies_ms, 0.5),
            "finalize_latency_p95_ms": percentile(self.finalize_latencies_ms, 0.95),
            "finalize_latency_p99_ms": percentile(self.finalize_latencies_ms, 0.99),
            "request_latency_p50_ms": percentile(self.request_latencies_ms, 0.5),
            "request_latency_p95_ms": percentile(self.request_latencies_ms, 0.95),
        }

    def reset(self) -> None:
        """Zero every counter (for testing only)."""
        fresh = MetricsCollector()
        self.__dict__.update(fresh.__dict__)


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(store=None, capacity_limit: Optional[int] = None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        store: Store instance
        capacity_limit: Upper bound for current_users (defaults to CAPACITY_LIMIT)

    Returns:
        HealthStatus with all check results
    """
    from kanji_daisuki.schemas import CAPACITY_LIMIT

    limit = CAPACITY_LIMIT if capacity_limit is None else capacity_limit
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    # Check 1: Basic liveness
    checks["liveness"] = {"status": "healthy"}

    # Check 2: Store reachable
    if store is not None:
        try:
            checks["store"] = {"status": "healthy", **store.get_counts()}
        except Exception as e:
            checks["store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    # Check 3: No kanji above its capacity
    if store is not None and checks["store"]["status"] == "healthy":
        try:
            over = [k.id for k in store.list_kanjis() if not 0 <= k.current_users <= limit]
            checks["capacity_invariant"] = {
                "status": "healthy" if not over else "unhealthy",
                "limit": limit,
                "violations": over,
            }
            if over:
                all_healthy = False
        except Exception as e:
            checks["capacity_invariant"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )

"""
Monitoring for the Driver Compliance Service

Repository queries are timed with ``timed_query``; alert runs report their
duration and outcome per tenant with ``record_alert_run``. Both feed
Prometheus and an in-process ``ComplianceActivity`` snapshot that the health
endpoint returns.

Usage:
    from database.monitoring import timed_query, record_alert_run

    @timed_query("documents_for_drivers")
    def for_drivers(self, driver_ids):
        ...
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from prometheus_client import Counter, Histogram
from sqlalchemy import text

logger = logging.getLogger(__name__)


@dataclass
class MonitoringConfig:
    slow_query_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_prometheus: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_query_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_prometheus: bool = True
) -> None:
    """Set query thresholds and toggle Prometheus export."""
    global _config
    _config = MonitoringConfig(
        slow_query_threshold_ms=slow_query_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_prometheus=enable_prometheus
    )


# ============================================
# PROMETHEUS METRICS
# ============================================

repository_query_seconds = Histogram(
    'compliance_repository_query_seconds',
    'Repository query duration in seconds',
    ['operation']
)

alerts_total = Counter(
    'compliance_alerts_total',
    'Alert candidates processed, by outcome',
    ['outcome']
)

alert_run_seconds = Histogram(
    'compliance_alert_run_seconds',
    'Duration of one tenant alert run in seconds',
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0)
)


# ============================================
# IN-PROCESS ACTIVITY
# ============================================

@dataclass
class TenantAlertRun:
    """Most recent alert run for one tenant."""
    runs: int = 0
    last_duration_ms: float = 0.0
    last_sent: int = 0
    last_skipped: int = 0
    last_errors: int = 0
    last_run_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'runs': self.runs,
            'last_duration_ms': round(self.last_duration_ms, 2),
            'last_sent': self.last_sent,
            'last_skipped': self.last_skipped,
            'last_errors': self.last_errors,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
        }


class ComplianceActivity:
    """Thread-safe counters for queries and alert runs since startup or reset."""

    def __init__(self):
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        with self._lock:
            self._since = datetime.now(timezone.utc)
            self._queries: Dict[str, Dict[str, Any]] = {}
            self._alert_runs: Dict[str, TenantAlertRun] = {}

    def record_query(self, operation: str, duration_ms: float, failed: bool) -> None:
        with self._lock:
            entry = self._queries.setdefault(
                operation, {'count': 0, 'errors': 0, 'slow': 0, 'max_ms': 0.0}
            )
            entry['count'] += 1
            entry['max_ms'] = max(entry['max_ms'], round(duration_ms, 2))
            if failed:
                entry['errors'] += 1
            if duration_ms > _config.slow_query_threshold_ms:
                entry['slow'] += 1

    def record_alert_run(self, tenant_id: UUID, duration_ms: float, sent: int, skipped: int, errors: int) -> None:
        with self._lock:
            run = self._alert_runs.setdefault(str(tenant_id), TenantAlertRun())
            run.runs += 1
            run.last_duration_ms = duration_ms
            run.last_sent, run.last_skipped, run.last_errors = sent, skipped, errors
            run.last_run_at = datetime.now(timezone.utc)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'since': self._since.isoformat(),
                'queries': {op: dict(entry) for op, entry in self._queries.items()},
                'alert_runs': {tenant: run.to_dict() for tenant, run in self._alert_runs.items()},
            }


_activity = ComplianceActivity()


def get_activity() -> Dict[str, Any]:
    """Query and alert-run activity, as reported by the health endpoint."""
    return _activity.snapshot()


def reset_metrics() -> None:
    _activity.reset()


# ============================================
# RECORDING
# ============================================

def timed_query(operation: str):
    """Decorator timing a repository method under ``operation``."""
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            failed = False
            try:
                return func(*args, **kwargs)
            except Exception:
                failed = True
                raise
            finally:
                elapsed = time.perf_counter() - start
                elapsed_ms = elapsed * 1000
                _activity.record_query(operation, elapsed_ms, failed)
                if _config.enable_prometheus:
                    repository_query_seconds.labels(operation=operation).observe(elapsed)
                if elapsed_ms > _config.slow_query_threshold_ms:
                    logger.warning(f"SLOW QUERY: {operation} took {elapsed_ms:.2f}ms")
                elif elapsed_ms > _config.warning_threshold_ms and not failed:
                    logger.info(f"Query {operation} took {elapsed_ms:.2f}ms")
        return wrapper
    return decorator


def record_alert_run(tenant_id: UUID, duration_seconds: float, sent: int, skipped: int, errors: int) -> None:
    """Record one tenant alert run's duration and outcome counts."""
    _activity.record_alert_run(tenant_id, duration_seconds * 1000, sent, skipped, errors)
    if not _config.enable_prometheus:
        return
    alert_run_seconds.observe(duration_seconds)
    alerts_total.labels(outcome="sent").inc(sent)
    alerts_total.labels(outcome="skipped").inc(skipped)
    alerts_total.labels(outcome="error").inc(errors)


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    healthy: bool
    latency_ms: float
    error: Optional[str] = None
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'error': self.error,
            'checked_at': self.checked_at.isoformat(),
        }


def check_health(session_factory) -> HealthStatus:
    """Run ``SELECT 1`` on a fresh session and time it."""
    start = time.perf_counter()
    try:
        with session_factory() as session:
            session.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(healthy=False, latency_ms=(time.perf_counter() - start) * 1000, error=str(e))
    return HealthStatus(healthy=True, latency_ms=(time.perf_counter() - start) * 1000)

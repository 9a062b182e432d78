"""
Database Package for the Driver Compliance Service

This package provides:
- SQLAlchemy ORM models for tenants, drivers, rules, documents, alerts,
  snapshots and the audit trail
- Tenant-scoped sessions (the handle every compliance operation receives)
- Repository classes converting rows to compliance value types
- Query timing and alert-run monitoring
"""

from database.models import (
    Base,
    Tenant,
    Driver,
    ComplianceRuleRecord,
    DriverComplianceDocument,
    ComplianceAlert,
    ComplianceSnapshot,
    AuditLog,
    AlertChannel,
    AuditAction,
    DocumentStatus,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    TenantScope,
    TenantScopeError,
    ScopedSession,
    SYSTEM_ACTOR,
    get_db_provider,
    set_db_provider,
    init_db,
    close_db,
    create_sqlite_engine,
    create_test_provider,
)
from database.monitoring import (
    timed_query,
    get_activity,
    reset_metrics,
    configure_monitoring,
    record_alert_run,
    check_health,
    HealthStatus,
)

__all__ = [
    # Models
    'Base',
    'Tenant',
    'Driver',
    'ComplianceRuleRecord',
    'DriverComplianceDocument',
    'ComplianceAlert',
    'ComplianceSnapshot',
    'AuditLog',
    'AlertChannel',
    'AuditAction',
    'DocumentStatus',
    # Sessions
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'TenantScope',
    'TenantScopeError',
    'ScopedSession',
    'SYSTEM_ACTOR',
    'get_db_provider',
    'set_db_provider',
    'init_db',
    'close_db',
    # Testing support
    'create_sqlite_engine',
    'create_test_provider',
    # Monitoring
    'timed_query',
    'get_activity',
    'reset_metrics',
    'configure_monitoring',
    'record_alert_run',
    'check_health',
    'HealthStatus',
]

"""
Shared fixtures for the compliance test suite.

Tests run against SQLite through the same provider and scoped sessions the
service uses in production; ``seed`` helpers insert rows directly.
"""

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.connection import TenantScope, create_sqlite_engine, create_test_provider
from database.models import ComplianceRuleRecord, Driver, DriverComplianceDocument, Tenant
from database.monitoring import reset_metrics

NOW = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def days_from_now(days: float) -> datetime:
    return NOW + timedelta(days=days)


class Seeder:
    """Inserts tenants, drivers, documents and rules in committed transactions."""

    def __init__(self, provider):
        self.provider = provider

    def tenant(self, name: str = "Acme Fleet") -> uuid.UUID:
        tenant_id = uuid.uuid4()
        with self.provider.session_scope() as session:
            session.add(Tenant(id=tenant_id, name=name))
        return tenant_id

    def driver(
        self,
        tenant_id: uuid.UUID,
        first_name: str = "Ana",
        last_name: str = "Lopez",
        email: Optional[str] = None,
        deleted: bool = False
    ) -> uuid.UUID:
        driver_id = uuid.uuid4()
        with self.provider.session_scope() as session:
            session.add(Driver(
                id=driver_id,
                tenant_id=tenant_id,
                first_name=first_name,
                last_name=last_name,
                email=email,
                deleted_at=NOW if deleted else None
            ))
        return driver_id

    def document(
        self,
        tenant_id: uuid.UUID,
        driver_id: uuid.UUID,
        doc_type: str,
        expires_at: datetime,
        status: Optional[str] = None,
        deleted: bool = False
    ) -> uuid.UUID:
        doc_id = uuid.uuid4()
        with self.provider.session_scope() as session:
            session.add(DriverComplianceDocument(
                id=doc_id,
                tenant_id=tenant_id,
                driver_id=driver_id,
                doc_type=doc_type,
                expires_at=expires_at,
                status=status,
                deleted_at=NOW if deleted else None
            ))
        return doc_id

    def rule(
        self,
        tenant_id: uuid.UUID,
        doc_type: str,
        required: bool = True,
        grace_days: int = 0,
        alert_windows: Optional[Sequence[int]] = (30, 15, 7),
        role: str = "driver"
    ) -> uuid.UUID:
        rule_id = uuid.uuid4()
        with self.provider.session_scope() as session:
            session.add(ComplianceRuleRecord(
                id=rule_id,
                tenant_id=tenant_id,
                role=role,
                doc_type=doc_type,
                required=required,
                grace_days=grace_days,
                alert_windows=list(alert_windows) if alert_windows is not None else None
            ))
        return rule_id


@pytest.fixture(autouse=True)
def clear_query_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_provider():
    """In-memory SQLite provider with all tables created."""
    provider = create_test_provider()
    yield provider
    provider.close()


@pytest.fixture
def file_db_provider(tmp_path):
    """File-backed SQLite provider, safe to use from several threads at once."""
    engine = create_sqlite_engine(f"sqlite:///{tmp_path / 'compliance.db'}")
    provider = create_test_provider(engine=engine)
    yield provider
    provider.close()


@pytest.fixture
def seed(db_provider):
    return Seeder(db_provider)


@pytest.fixture
def tenant_id(seed):
    return seed.tenant()


@pytest.fixture
def scope(tenant_id):
    return TenantScope(tenant_id=tenant_id, actor_id=str(uuid.uuid4()), ip_address="10.0.0.5")

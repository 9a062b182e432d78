"""
Repository Pattern for Compliance Database Operations

Provides the data access layer used by the compliance core. Every
repository except ``TenantRepository`` is built from a ``ScopedSession`` and
filters on its tenant; rows are converted to ``compliance.types`` dataclasses
here and nowhere else.
"""

import logging
import uuid
from typing import List, Optional, Dict, Any, Iterable, Sequence, Tuple
from uuid import UUID
from datetime import datetime

from sqlalchemy import select, and_, or_
from sqlalchemy.orm import Session
from sqlalchemy.dialects import postgresql, sqlite

from compliance.types import (
    AlertCandidate,
    ComplianceDocument,
    ComplianceRule,
    ensure_utc,
    normalize_doc_type,
    utc_now,
)
from database.connection import ScopedSession
from database.models import (
    AuditLog,
    ComplianceAlert,
    ComplianceRuleRecord,
    ComplianceSnapshot,
    Driver,
    DriverComplianceDocument,
    Tenant,
)
from database.monitoring import timed_query

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when a driver or record is not found."""
    pass


def coerce_alert_windows(raw: Any, default_windows: Sequence[int]) -> Tuple[int, ...]:
    """
    Convert a stored alert-windows value into a tuple of positive ints.

    Anything that is not a list, or a list with no positive integers,
    yields the default windows.
    """
    if not isinstance(raw, (list, tuple)):
        return tuple(default_windows)

    windows = []
    for value in raw:
        try:
            days = int(value)
        except (TypeError, ValueError):
            continue
        if days > 0 and days not in windows:
            windows.append(days)

    return tuple(windows) if windows else tuple(default_windows)


def _to_rule(record: ComplianceRuleRecord, default_windows: Sequence[int]) -> ComplianceRule:
    return ComplianceRule(
        id=str(record.id),
        tenant_id=record.tenant_id,
        role=record.role,
        doc_type=record.doc_type,
        required=bool(record.required),
        grace_days=max(0, int(record.grace_days or 0)),
        alert_windows=coerce_alert_windows(record.alert_windows, default_windows),
    )


def _to_document(record: DriverComplianceDocument) -> ComplianceDocument:
    return ComplianceDocument(
        id=record.id,
        entity_id=record.driver_id,
        doc_type=record.doc_type,
        expires_at=ensure_utc(record.expires_at),
        status=record.status,
    )


# ============================================
# TENANT REPOSITORY (UNSCOPED)
# ============================================

class TenantRepository:
    """Cross-tenant reads; used only to enumerate tenants for scheduled jobs."""

    def __init__(self, session: Session):
        self.session = session

    @timed_query("tenants_list")
    def list_all(self) -> List[Tuple[UUID, str]]:
        """Return (id, name) for every tenant, ordered by name."""
        query = select(Tenant.id, Tenant.name).order_by(Tenant.name)
        return [(row.id, row.name) for row in self.session.execute(query)]


# ============================================
# RULE REPOSITORY
# ============================================

class RuleRepository:
    """Repository for compliance rule operations."""

    def __init__(self, handle: ScopedSession):
        self.handle = handle
        self.session = handle.session

    @timed_query("rules_for_role")
    def list_for_role(
        self,
        role: str,
        default_windows: Sequence[int]
    ) -> List[ComplianceRule]:
        """
        Get the stored rules for a role, ordered by doc type.

        Args:
            role: Role the rules apply to (e.g. "driver")
            default_windows: Windows used when a row holds no usable list

        Returns:
            List of ComplianceRule (empty when none are configured)
        """
        query = select(ComplianceRuleRecord).where(
            and_(
                ComplianceRuleRecord.tenant_id == self.handle.tenant_id,
                ComplianceRuleRecord.role == role
            )
        ).order_by(ComplianceRuleRecord.doc_type)

        records = self.session.execute(query).scalars().all()
        return [_to_rule(record, default_windows) for record in records]

    def upsert(
        self,
        role: str,
        doc_type: str,
        required: bool = True,
        grace_days: int = 0,
        alert_windows: Optional[Sequence[int]] = None
    ) -> Tuple[ComplianceRuleRecord, bool]:
        """
        Create or update the rule for (role, doc type).

        Doc types are matched case-insensitively against existing rows so a
        re-save never creates a second rule for the same normalized key.

        Returns:
            Tuple of (record, created)
        """
        key = normalize_doc_type(doc_type)
        query = select(ComplianceRuleRecord).where(
            and_(
                ComplianceRuleRecord.tenant_id == self.handle.tenant_id,
                ComplianceRuleRecord.role == role
            )
        )
        existing = next(
            (r for r in self.session.execute(query).scalars() if normalize_doc_type(r.doc_type) == key),
            None
        )

        windows = list(alert_windows) if alert_windows is not None else None

        if existing is not None:
            existing.required = required
            existing.grace_days = grace_days
            existing.alert_windows = windows
            self.session.flush()
            return existing, False

        record = ComplianceRuleRecord(
            tenant_id=self.handle.tenant_id,
            role=role,
            doc_type=doc_type.strip(),
            required=required,
            grace_days=grace_days,
            alert_windows=windows
        )
        self.session.add(record)
        self.session.flush()
        logger.debug(f"Created compliance rule: {record.id} ({record.doc_type})")
        return record, True


# ============================================
# DRIVER REPOSITORY
# ============================================

class DriverRepository:
    """Read-only access to the tenant's drivers."""

    def __init__(self, handle: ScopedSession):
        self.handle = handle
        self.session = handle.session

    def _active_conditions(self) -> list:
        return [
            Driver.tenant_id == self.handle.tenant_id,
            Driver.deleted_at.is_(None)
        ]

    def get(self, driver_id: UUID) -> Optional[Driver]:
        """Get an active driver by ID."""
        query = select(Driver).where(
            and_(Driver.id == driver_id, *self._active_conditions())
        )
        return self.session.execute(query).scalar_one_or_none()

    @timed_query("active_driver_ids")
    def list_active_ids(self, limit: Optional[int] = None) -> List[UUID]:
        """IDs of active drivers, ordered by name, optionally bounded."""
        query = select(Driver.id).where(
            and_(*self._active_conditions())
        ).order_by(Driver.last_name, Driver.first_name, Driver.id)

        if limit is not None:
            query = query.limit(limit)

        return list(self.session.execute(query).scalars().all())

    @timed_query("active_drivers")
    def list_active(
        self,
        search: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Driver]:
        """
        List active drivers with an optional name/email search.

        Args:
            search: Case-insensitive substring matched against first name,
                last name and email
            limit: Maximum results
        """
        conditions = self._active_conditions()

        if search:
            pattern = f"%{search.strip().lower()}%"
            conditions.append(
                or_(
                    Driver.first_name.ilike(pattern),
                    Driver.last_name.ilike(pattern),
                    Driver.email.ilike(pattern)
                )
            )

        query = select(Driver).where(and_(*conditions)).order_by(
            Driver.last_name, Driver.first_name, Driver.id
        )
        if limit is not None:
            query = query.limit(limit)

        return list(self.session.execute(query).scalars().all())


# ============================================
# DOCUMENT REPOSITORY
# ============================================

class DocumentRepository:
    """Non-deleted compliance documents of the tenant."""

    def __init__(self, handle: ScopedSession):
        self.handle = handle
        self.session = handle.session

    def _base_query(self):
        return select(DriverComplianceDocument).where(
            and_(
                DriverComplianceDocument.tenant_id == self.handle.tenant_id,
                DriverComplianceDocument.deleted_at.is_(None)
            )
        )

    @timed_query("documents_for_driver")
    def for_driver(self, driver_id: UUID) -> List[ComplianceDocument]:
        """Documents of one driver."""
        query = self._base_query().where(
            DriverComplianceDocument.driver_id == driver_id
        ).order_by(DriverComplianceDocument.doc_type, DriverComplianceDocument.id)

        return [_to_document(r) for r in self.session.execute(query).scalars()]

    @timed_query("documents_for_drivers")
    def for_drivers(self, driver_ids: Iterable[UUID]) -> List[ComplianceDocument]:
        """
        Documents of many drivers in a single query.

        Args:
            driver_ids: Driver IDs (duplicates allowed)
        """
        ids = list(dict.fromkeys(driver_ids))
        if not ids:
            return []

        query = self._base_query().where(
            DriverComplianceDocument.driver_id.in_(ids)
        ).order_by(DriverComplianceDocument.doc_type, DriverComplianceDocument.id)

        return [_to_document(r) for r in self.session.execute(query).scalars()]

    @timed_query("documents_all_active")
    def all_active(self) -> List[ComplianceDocument]:
        """Every non-deleted document of the tenant."""
        query = self._base_query().order_by(
            DriverComplianceDocument.driver_id, DriverComplianceDocument.id
        )
        return [_to_document(r) for r in self.session.execute(query).scalars()]


# ============================================
# ALERT REPOSITORY
# ============================================

class AlertRepository:
    """Append-only alert records, unique per (tenant, dedupe key)."""

    def __init__(self, handle: ScopedSession):
        self.handle = handle
        self.session = handle.session

    def exists(self, dedupe_key: str) -> bool:
        query = select(ComplianceAlert.id).where(
            and_(
                ComplianceAlert.tenant_id == self.handle.tenant_id,
                ComplianceAlert.dedupe_key == dedupe_key
            )
        ).limit(1)
        return self.session.execute(query).first() is not None

    def claim(
        self,
        candidate: AlertCandidate,
        channel: str,
        sent_at: Optional[datetime] = None
    ) -> Optional[UUID]:
        """
        Insert the alert record unless its dedupe key already exists.

        Uses INSERT ... ON CONFLICT DO NOTHING against the
        (tenant_id, dedupe_key) unique constraint, so two overlapping runs
        can never both record the same key.

        Returns:
            ID of the new record, or None when the key was already recorded
        """
        dialect = self.handle.dialect_name
        if dialect == "postgresql":
            insert = postgresql.insert
        elif dialect == "sqlite":
            insert = sqlite.insert
        else:
            raise RepositoryError(f"Unsupported dialect for alert claims: {dialect}")

        alert_id = uuid.uuid4()
        stmt = insert(ComplianceAlert.__table__).values(
            id=alert_id,
            tenant_id=self.handle.tenant_id,
            driver_id=candidate.entity_id,
            doc_id=candidate.doc_id,
            alert_type=candidate.alert_type.value,
            alert_window_days=candidate.alert_window_days,
            sent_at=sent_at or utc_now(),
            channel=channel,
            dedupe_key=candidate.dedupe_key
        ).on_conflict_do_nothing(index_elements=["tenant_id", "dedupe_key"])

        result = self.session.execute(stmt)
        return alert_id if result.rowcount == 1 else None

    def list_for_driver(self, driver_id: UUID) -> List[ComplianceAlert]:
        query = select(ComplianceAlert).where(
            and_(
                ComplianceAlert.tenant_id == self.handle.tenant_id,
                ComplianceAlert.driver_id == driver_id
            )
        ).order_by(ComplianceAlert.sent_at)
        return list(self.session.execute(query).scalars().all())


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log entries."""

    def __init__(self, handle: ScopedSession):
        self.handle = handle
        self.session = handle.session

    def log(
        self,
        table_name: str,
        action: str,
        after: Optional[Dict[str, Any]] = None,
        record_id: Optional[UUID] = None,
        error_message: Optional[str] = None
    ) -> AuditLog:
        """
        Append an audit entry attributed to the handle's actor.

        Args:
            table_name: Table the action concerns (e.g. "compliance_alerts")
            action: Action literal (e.g. "alert_generated")
            after: JSON payload describing the row after the action
            record_id: ID of the affected row, random when not given
            error_message: Error if the action failed
        """
        entry = AuditLog(
            tenant_id=self.handle.tenant_id,
            table_name=table_name,
            record_id=record_id or uuid.uuid4(),
            action=action,
            after=after,
            user_id=self.handle.scope.actor_id,
            ip_address=self.handle.scope.ip_address,
            error_message=error_message
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def search(
        self,
        table_name: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100
    ) -> List[AuditLog]:
        conditions = [AuditLog.tenant_id == self.handle.tenant_id]
        if table_name:
            conditions.append(AuditLog.table_name == table_name)
        if action:
            conditions.append(AuditLog.action == action)

        query = select(AuditLog).where(and_(*conditions)).order_by(
            AuditLog.timestamp.desc()
        ).limit(limit)
        return list(self.session.execute(query).scalars().all())


# ============================================
# SNAPSHOT REPOSITORY
# ============================================

class SnapshotRepository:
    """Repository for compliance snapshots."""

    def __init__(self, handle: ScopedSession):
        self.handle = handle
        self.session = handle.session

    def add(
        self,
        driver_id: Optional[UUID],
        compliance_score: int,
        compliant: bool,
        expired_count: int,
        expiring_count: int,
        missing_count: int,
        details: Optional[Dict[str, Any]] = None
    ) -> ComplianceSnapshot:
        snapshot = ComplianceSnapshot(
            tenant_id=self.handle.tenant_id,
            driver_id=driver_id,
            compliance_score=compliance_score,
            compliant=compliant,
            expired_count=expired_count,
            expiring_count=expiring_count,
            missing_count=missing_count,
            computed_at=utc_now(),
            details=details
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def list_for_driver(self, driver_id: Optional[UUID]) -> List[ComplianceSnapshot]:
        driver_condition = (
            ComplianceSnapshot.driver_id.is_(None)
            if driver_id is None
            else ComplianceSnapshot.driver_id == driver_id
        )
        query = select(ComplianceSnapshot).where(
            and_(ComplianceSnapshot.tenant_id == self.handle.tenant_id, driver_condition)
        ).order_by(ComplianceSnapshot.computed_at)
        return list(self.session.execute(query).scalars().all())

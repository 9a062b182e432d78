"""
SQLAlchemy ORM Models for the Driver Compliance Service

This module defines the database schema used by the compliance core:
- UUID primary keys (portable ``Uuid`` type, native on PostgreSQL)
- Tenant column on every business table
- Soft delete support for drivers and documents
- Timestamps for all mutable records (created_at, updated_at)
- Append-only alert and audit tables

Tables:
1. tenants - Tenants known to the service (enumerated by the scheduled job)
2. drivers - Entities subject to compliance rules
3. compliance_rules - Per-tenant, per-role document requirements
4. driver_compliance_documents - Documents uploaded for drivers
5. compliance_alerts - Alerts emitted, unique per (tenant, dedupe_key)
6. compliance_snapshots - Point-in-time compliance evaluations
7. audit_logs - Append-only audit trail
"""

import uuid
from datetime import datetime
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, ForeignKey, Index,
    CheckConstraint, UniqueConstraint, JSON, Uuid
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ============================================
# ENUMS
# ============================================

class DocumentStatus(str, PyEnum):
    """Manual status override stored on a document"""
    PENDING_REVIEW = "pending_review"
    MISSING = "missing"


class AlertChannel(str, PyEnum):
    """Channel an alert was recorded for"""
    IN_APP = "in_app"
    LOG = "log"
    EMAIL = "email"


class AuditAction(str, PyEnum):
    """Audit actions written by the compliance core"""
    ALERT_GENERATED = "alert_generated"
    ALERT_SENT = "alert_sent"
    SNAPSHOT_CREATED = "snapshot_created"
    RULES_SEEDED = "rules_seeded"
    RULE_SAVED = "rule_saved"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class SoftDeleteMixin:
    """Mixin for soft delete support (deleted_at IS NULL means active)"""
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True
    )


# ============================================
# TENANT AND DRIVER MODELS
# ============================================

class Tenant(Base, TimestampMixin):
    """Tenant (fleet operator). Provisioned by the surrounding application."""
    __tablename__ = "tenants"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    drivers: Mapped[List["Driver"]] = relationship(
        "Driver",
        back_populates="tenant",
        lazy="raise"
    )

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, name='{self.name}')>"


class Driver(Base, TimestampMixin, SoftDeleteMixin):
    """
    A driver subject to compliance rules.

    Owned by the CRUD application; the compliance core only reads it.
    """
    __tablename__ = "drivers"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    license_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="drivers")
    documents: Mapped[List["DriverComplianceDocument"]] = relationship(
        "DriverComplianceDocument",
        back_populates="driver",
        cascade="all, delete-orphan",
        lazy="raise"
    )

    __table_args__ = (
        Index('ix_driver_tenant_name', 'tenant_id', 'last_name', 'first_name'),
    )

    def __repr__(self) -> str:
        return f"<Driver(id={self.id}, name='{self.first_name} {self.last_name}')>"


# ============================================
# COMPLIANCE MODELS
# ============================================

class ComplianceRuleRecord(Base, TimestampMixin):
    """
    Stored compliance rule.

    ``alert_windows`` holds a JSON array of positive day counts, e.g. [30, 15, 7].
    Converted to ``compliance.types.ComplianceRule`` at the repository boundary.
    """
    __tablename__ = "compliance_rules"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role: Mapped[str] = mapped_column(String(50), nullable=False, default="driver")
    doc_type: Mapped[str] = mapped_column(String(100), nullable=False)
    required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    grace_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    alert_windows: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'role', 'doc_type', name='uq_rule_tenant_role_doc_type'),
        CheckConstraint('grace_days >= 0', name='ck_rule_grace_days'),
    )

    def __repr__(self) -> str:
        return f"<ComplianceRuleRecord(role='{self.role}', doc_type='{self.doc_type}')>"


class DriverComplianceDocument(Base, TimestampMixin, SoftDeleteMixin):
    """A compliance document held by a driver (license, background check, ...)."""
    __tablename__ = "driver_compliance_documents"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("drivers.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    doc_type: Mapped[str] = mapped_column(String(100), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Manual override (pending_review / missing); NULL means evaluate by date
    status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="documents")

    __table_args__ = (
        Index('ix_document_tenant_driver', 'tenant_id', 'driver_id'),
        Index('ix_document_expires', 'tenant_id', 'expires_at'),
    )

    def __repr__(self) -> str:
        return f"<DriverComplianceDocument(id={self.id}, doc_type='{self.doc_type}')>"


class ComplianceAlert(Base):
    """
    Alert emitted for a document.

    Immutable. At most one row per (tenant_id, dedupe_key); the constraint
    backs the insert-if-absent claim made by the alert generator.
    """
    __tablename__ = "compliance_alerts"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    driver_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    doc_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    alert_type: Mapped[str] = mapped_column(String(20), nullable=False)
    alert_window_days: Mapped[int] = mapped_column(Integer, nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'dedupe_key', name='uq_alert_tenant_dedupe_key'),
        CheckConstraint("alert_type IN ('expiring', 'expired')", name='ck_alert_type'),
        CheckConstraint('alert_window_days >= 0', name='ck_alert_window_days'),
        Index('ix_alert_driver_doc', 'tenant_id', 'driver_id', 'doc_id'),
    )

    def __repr__(self) -> str:
        return f"<ComplianceAlert(dedupe_key='{self.dedupe_key}')>"


class ComplianceSnapshot(Base):
    """
    Point-in-time compliance evaluation.

    ``driver_id`` is NULL for tenant-level snapshots.
    """
    __tablename__ = "compliance_snapshots"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    driver_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    compliance_score: Mapped[int] = mapped_column(Integer, nullable=False)
    compliant: Mapped[bool] = mapped_column(Boolean, nullable=False)
    expired_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expiring_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missing_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    details: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    __table_args__ = (
        Index('ix_snapshot_tenant_driver_date', 'tenant_id', 'driver_id', 'computed_at'),
        CheckConstraint(
            'compliance_score >= 0 AND compliance_score <= 100',
            name='ck_snapshot_score_range'
        ),
    )

    def __repr__(self) -> str:
        return f"<ComplianceSnapshot(driver_id={self.driver_id}, score={self.compliance_score})>"


# ============================================
# AUDIT MODEL
# ============================================

class AuditLog(Base):
    """
    Append-only audit trail.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Timestamp (no updated_at - audit logs are immutable)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True
    )

    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False)
    record_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Row state after the action
    after: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Actor information
    user_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_audit_tenant_table_action', 'tenant_id', 'table_name', 'action'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, table='{self.table_name}')>"

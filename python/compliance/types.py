"""
Core value types for compliance evaluation.

Rows loaded from storage are converted into these frozen dataclasses at the
repository boundary; evaluation code never touches ORM objects.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

SECONDS_PER_DAY = 86400


class ComplianceStatus(str, Enum):
    """Evaluated status of a single document"""
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    MISSING = "missing"
    PENDING_REVIEW = "pending_review"


class AlertType(str, Enum):
    """Kind of alert emitted for a document"""
    EXPIRING = "expiring"
    EXPIRED = "expired"


# Statuses a document may carry as a manual override
OVERRIDE_STATUSES = frozenset({ComplianceStatus.PENDING_REVIEW, ComplianceStatus.MISSING})


def normalize_doc_type(doc_type: Optional[str]) -> str:
    """
    Normalize a document type for comparison.

    Every doc-type lookup goes through here (rule matching, missing-document
    detection, alert matching).

    Args:
        doc_type: Raw document type, may be None

    Returns:
        Trimmed, lowercased document type ("" for None)
    """
    if not doc_type:
        return ""
    return doc_type.strip().lower()


def ensure_utc(value: datetime) -> datetime:
    """Treat naive timestamps as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def days_until(expires_at: datetime, now: datetime) -> int:
    """Whole days until expiry, floored (negative once expired)."""
    delta = ensure_utc(expires_at) - ensure_utc(now)
    return math.floor(delta.total_seconds() / SECONDS_PER_DAY)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Python's round() is banker's)."""
    return int(math.floor(value + 0.5))


# ============================================
# INPUT TYPES
# ============================================

@dataclass(frozen=True)
class ComplianceRule:
    """Document requirement for a role within a tenant."""
    tenant_id: Optional[UUID]
    role: str
    doc_type: str
    required: bool = True
    grace_days: int = 0
    alert_windows: Tuple[int, ...] = (30, 15, 7)
    id: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_doc_type(self.doc_type)

    @property
    def max_window(self) -> int:
        return max(self.alert_windows) if self.alert_windows else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": str(self.tenant_id) if self.tenant_id else None,
            "role": self.role,
            "doc_type": self.doc_type,
            "required": self.required,
            "grace_days": self.grace_days,
            "alert_windows": list(self.alert_windows),
        }


@dataclass(frozen=True)
class ComplianceDocument:
    """A non-deleted document as seen by the evaluator."""
    id: UUID
    entity_id: UUID
    doc_type: str
    expires_at: datetime
    status: Optional[str] = None

    @property
    def key(self) -> str:
        return normalize_doc_type(self.doc_type)


# ============================================
# DERIVED TYPES
# ============================================

@dataclass(frozen=True)
class DocumentEvaluation:
    doc_id: UUID
    doc_type: str
    status: ComplianceStatus
    expires_at: datetime
    days_until_expiry: int
    is_required: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_id": str(self.doc_id),
            "doc_type": self.doc_type,
            "status": self.status.value,
            "expires_at": self.expires_at.isoformat(),
            "days_until_expiry": self.days_until_expiry,
            "is_required": self.is_required,
        }


@dataclass
class EntityEvaluation:
    """Compliance evaluation of one driver"""
    entity_id: UUID
    compliant: bool
    compliance_score: int
    expired_count: int = 0
    expiring_count: int = 0
    missing_count: int = 0
    documents: List[DocumentEvaluation] = field(default_factory=list)
    missing_required_docs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": str(self.entity_id),
            "compliant": self.compliant,
            "compliance_score": self.compliance_score,
            "expired_count": self.expired_count,
            "expiring_count": self.expiring_count,
            "missing_count": self.missing_count,
            "documents": [d.to_dict() for d in self.documents],
            "missing_required_docs": list(self.missing_required_docs),
        }


@dataclass(frozen=True)
class IssueCount:
    doc_type: str
    count: int


@dataclass
class TenantEvaluation:
    """Tenant-wide aggregate over all active drivers"""
    tenant_id: UUID
    total_drivers: int = 0
    compliant_drivers: int = 0
    non_compliant_drivers: int = 0
    compliance_percentage: int = 100
    expired_count: int = 0
    expiring_count: int = 0
    missing_count: int = 0
    top_issues: List[IssueCount] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "total_drivers": self.total_drivers,
            "compliant_drivers": self.compliant_drivers,
            "non_compliant_drivers": self.non_compliant_drivers,
            "compliance_percentage": self.compliance_percentage,
            "expired_count": self.expired_count,
            "expiring_count": self.expiring_count,
            "missing_count": self.missing_count,
            "top_issues": [
                {"doc_type": issue.doc_type, "count": issue.count}
                for issue in self.top_issues
            ],
        }


@dataclass(frozen=True)
class AlertCandidate:
    """A document that qualifies for an alert in the current run"""
    doc_id: UUID
    entity_id: UUID
    doc_type: str
    expires_at: datetime
    alert_type: AlertType
    alert_window_days: int

    @property
    def dedupe_key(self) -> str:
        return make_dedupe_key(
            self.entity_id, self.doc_id, self.alert_type, self.alert_window_days
        )

    def audit_payload(self) -> Dict[str, Any]:
        return {
            "entityId": str(self.entity_id),
            "docId": str(self.doc_id),
            "alertType": self.alert_type.value,
            "alertWindowDays": self.alert_window_days,
        }


def make_dedupe_key(
    entity_id: UUID,
    doc_id: UUID,
    alert_type: AlertType,
    alert_window_days: int
) -> str:
    """Composite key: ``{entityId}:{docId}:{alertType}:{alertWindowDays}``."""
    alert_type_value = alert_type.value if isinstance(alert_type, AlertType) else str(alert_type)
    return f"{entity_id}:{doc_id}:{alert_type_value}:{alert_window_days}"


@dataclass
class AlertRunStats:
    """Outcome counts of one alert run"""
    sent: int = 0
    skipped: int = 0
    errors: int = 0

    def merge(self, other: "AlertRunStats") -> "AlertRunStats":
        return AlertRunStats(
            sent=self.sent + other.sent,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
        )

    def summary(self) -> str:
        return (
            f"Generated {self.sent} alerts, skipped {self.skipped} duplicates, "
            f"{self.errors} errors"
        )

    def to_dict(self) -> Dict[str, int]:
        return {"sent": self.sent, "skipped": self.skipped, "errors": self.errors}

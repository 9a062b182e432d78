"""
Tenant-wide compliance aggregation.

Builds on the batch evaluator: a tenant summary with ranked issues, the list
of expired/expiring required documents, and a per-driver overview.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from compliance.evaluator import EntityEvaluator
from compliance.types import (
    ComplianceStatus,
    DocumentEvaluation,
    EntityEvaluation,
    IssueCount,
    TenantEvaluation,
    round_half_up,
    utc_now,
)
from database.connection import ScopedSession
from database.models import Driver
from database.repositories import DriverRepository

logger = logging.getLogger(__name__)

DEFAULT_DRIVER_LIMIT = 1000
DEFAULT_TOP_ISSUES_LIMIT = 10

STATUS_FILTERS = ("all", "compliant", "non_compliant")
DOCUMENT_FILTERS = ("all", "expired", "expiring")


@dataclass(frozen=True)
class DriverInfo:
    id: UUID
    first_name: str
    last_name: str
    email: Optional[str] = None
    license_number: Optional[str] = None

    @classmethod
    def from_record(cls, driver: Driver) -> "DriverInfo":
        return cls(
            id=driver.id,
            first_name=driver.first_name,
            last_name=driver.last_name,
            email=driver.email,
            license_number=driver.license_number,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "license_number": self.license_number,
        }


@dataclass(frozen=True)
class ExpiringDocument:
    driver: DriverInfo
    evaluation: DocumentEvaluation

    def to_dict(self) -> Dict[str, Any]:
        data = self.evaluation.to_dict()
        data["driver_id"] = str(self.driver.id)
        data["driver"] = self.driver.to_dict()
        return data


@dataclass
class ExpiringDocumentsReport:
    """Expired/expiring required documents; counts ignore the filter"""
    documents: List[ExpiringDocument] = field(default_factory=list)
    expired_count: int = 0
    expiring_count: int = 0

    @property
    def total(self) -> int:
        return len(self.documents)


@dataclass(frozen=True)
class DriverOverview:
    driver: DriverInfo
    evaluation: EntityEvaluation

    def to_dict(self) -> Dict[str, Any]:
        data = self.evaluation.to_dict()
        data["driver"] = self.driver.to_dict()
        return data


def rank_issues(evaluations: List[EntityEvaluation], limit: int = DEFAULT_TOP_ISSUES_LIMIT) -> List[IssueCount]:
    """
    Tally missing required doc types and expired required documents.

    Sorted by count descending; ties keep first-encounter order.
    """
    tally = Counter()
    for evaluation in evaluations:
        for doc_type in evaluation.missing_required_docs:
            tally[doc_type] += 1
        for doc in evaluation.documents:
            if doc.is_required and doc.status == ComplianceStatus.EXPIRED:
                tally[doc.doc_type] += 1

    # Counter preserves insertion order and sorted() is stable
    ranked = sorted(tally.items(), key=lambda item: item[1], reverse=True)
    return [IssueCount(doc_type=doc_type, count=count) for doc_type, count in ranked[:limit]]


def summarize(
    tenant_id: UUID,
    evaluations: List[EntityEvaluation],
    top_issues_limit: int = DEFAULT_TOP_ISSUES_LIMIT
) -> TenantEvaluation:
    """Aggregate driver evaluations into a TenantEvaluation."""
    total = len(evaluations)
    compliant = sum(1 for e in evaluations if e.compliant)

    return TenantEvaluation(
        tenant_id=tenant_id,
        total_drivers=total,
        compliant_drivers=compliant,
        non_compliant_drivers=total - compliant,
        compliance_percentage=round_half_up(100 * compliant / total) if total else 100,
        expired_count=sum(e.expired_count for e in evaluations),
        expiring_count=sum(e.expiring_count for e in evaluations),
        missing_count=sum(e.missing_count for e in evaluations),
        top_issues=rank_issues(evaluations, top_issues_limit),
    )


class TenantAggregator:
    """
    Tenant-level views over the batch evaluator.

    Usage:
        aggregator = TenantAggregator(EntityEvaluator(rule_provider))
        with db_provider.tenant_session(scope) as handle:
            summary = aggregator.evaluate(handle)
    """

    def __init__(
        self,
        evaluator: Optional[EntityEvaluator] = None,
        driver_limit: int = DEFAULT_DRIVER_LIMIT,
        top_issues_limit: int = DEFAULT_TOP_ISSUES_LIMIT
    ):
        self.evaluator = evaluator or EntityEvaluator()
        self.driver_limit = driver_limit
        self.top_issues_limit = top_issues_limit

    def evaluate(self, handle: ScopedSession, now: Optional[datetime] = None) -> TenantEvaluation:
        """
        Evaluate every active driver of the tenant (up to the driver limit).

        Args:
            handle: Tenant-scoped session
            now: Evaluation time

        Returns:
            TenantEvaluation
        """
        driver_ids = DriverRepository(handle).list_active_ids(limit=self.driver_limit)
        evaluations = self.evaluator.evaluate_many(handle, driver_ids, now or utc_now())

        summary = summarize(handle.tenant_id, list(evaluations.values()), self.top_issues_limit)
        logger.info(
            f"Tenant {handle.tenant_id}: {summary.compliant_drivers}/{summary.total_drivers} "
            f"drivers compliant ({summary.compliance_percentage}%)"
        )
        return summary

    def _evaluate_drivers(
        self,
        handle: ScopedSession,
        search: Optional[str],
        now: Optional[datetime]
    ) -> List[DriverOverview]:
        drivers = DriverRepository(handle).list_active(search=search, limit=self.driver_limit)
        evaluations = self.evaluator.evaluate_many(
            handle, [driver.id for driver in drivers], now or utc_now()
        )
        return [
            DriverOverview(driver=DriverInfo.from_record(driver), evaluation=evaluations[driver.id])
            for driver in drivers
        ]

    def driver_overview(
        self,
        handle: ScopedSession,
        status_filter: str = "all",
        search: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[DriverOverview]:
        """
        Per-driver evaluations, ordered by driver name.

        Args:
            status_filter: "all", "compliant" or "non_compliant"
            search: Optional name/email search

        Raises:
            ValueError: If the filter is unknown
        """
        status_filter = (status_filter or "all").strip().lower()
        if status_filter not in STATUS_FILTERS:
            raise ValueError(f"Invalid status filter: {status_filter}")

        overview = self._evaluate_drivers(handle, search, now)
        if status_filter == "compliant":
            return [item for item in overview if item.evaluation.compliant]
        if status_filter == "non_compliant":
            return [item for item in overview if not item.evaluation.compliant]
        return overview

    def expiring_documents(
        self,
        handle: ScopedSession,
        status_filter: str = "all",
        search: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> ExpiringDocumentsReport:
        """
        Required documents that are expired or expiring.

        Expired documents come first, then by days until expiry ascending.

        Args:
            status_filter: "all", "expired" or "expiring"
            search: Optional name/email search

        Raises:
            ValueError: If the filter is unknown
        """
        status_filter = (status_filter or "all").strip().lower()
        if status_filter not in DOCUMENT_FILTERS:
            raise ValueError(f"Invalid document filter: {status_filter}")

        flagged = (ComplianceStatus.EXPIRED, ComplianceStatus.EXPIRING)
        documents = [
            ExpiringDocument(driver=item.driver, evaluation=doc)
            for item in self._evaluate_drivers(handle, search, now)
            for doc in item.evaluation.documents
            if doc.is_required and doc.status in flagged
        ]

        expired_count = sum(1 for d in documents if d.evaluation.status == ComplianceStatus.EXPIRED)
        expiring_count = len(documents) - expired_count

        if status_filter != "all":
            documents = [d for d in documents if d.evaluation.status.value == status_filter]

        documents.sort(key=lambda d: (
            d.evaluation.status != ComplianceStatus.EXPIRED,
            d.evaluation.days_until_expiry
        ))

        return ExpiringDocumentsReport(
            documents=documents,
            expired_count=expired_count,
            expiring_count=expiring_count,
        )

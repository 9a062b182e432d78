"""
Compliance snapshots: point-in-time copies of driver and tenant evaluations
kept for historical reporting.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from compliance.aggregator import TenantAggregator, summarize
from compliance.types import EntityEvaluation, utc_now
from database.connection import DatabaseSessionProvider, ScopedSession, TenantScope
from database.models import AuditAction
from database.repositories import (
    AuditRepository,
    DriverRepository,
    EntityNotFoundError,
    SnapshotRepository,
    TenantRepository,
)

logger = logging.getLogger(__name__)


@dataclass
class SnapshotResult:
    created: int = 0
    total: int = 0
    driver_id: Optional[UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"created": self.created, "total": self.total}
        if self.driver_id is not None:
            data["driver_id"] = str(self.driver_id)
        return data


def _driver_details(evaluation: EntityEvaluation) -> Dict[str, Any]:
    return {
        "documents": [doc.to_dict() for doc in evaluation.documents],
        "missing_required_docs": list(evaluation.missing_required_docs),
    }


class SnapshotService:
    """Writes compliance snapshots for the handle's tenant."""

    def __init__(self, aggregator: Optional[TenantAggregator] = None):
        self.aggregator = aggregator or TenantAggregator()

    def _add_driver_snapshot(self, repo: SnapshotRepository, evaluation: EntityEvaluation) -> None:
        repo.add(
            driver_id=evaluation.entity_id,
            compliance_score=evaluation.compliance_score,
            compliant=evaluation.compliant,
            expired_count=evaluation.expired_count,
            expiring_count=evaluation.expiring_count,
            missing_count=evaluation.missing_count,
            details=_driver_details(evaluation)
        )

    def snapshot_driver(
        self,
        handle: ScopedSession,
        driver_id: UUID,
        now: Optional[datetime] = None
    ) -> SnapshotResult:
        """
        Snapshot one driver.

        Raises:
            EntityNotFoundError: If the driver is not an active driver of the tenant
        """
        if DriverRepository(handle).get(driver_id) is None:
            raise EntityNotFoundError(f"Driver not found: {driver_id}")

        evaluation = self.aggregator.evaluator.evaluate(handle, driver_id, now)
        self._add_driver_snapshot(SnapshotRepository(handle), evaluation)

        AuditRepository(handle).log(
            table_name="compliance_snapshots",
            action=AuditAction.SNAPSHOT_CREATED.value,
            after={"driverId": str(driver_id), "created": 1}
        )
        return SnapshotResult(created=1, total=1, driver_id=driver_id)

    def snapshot_tenant(self, handle: ScopedSession, now: Optional[datetime] = None) -> SnapshotResult:
        """
        Snapshot every active driver plus one tenant-level row (driver_id NULL).

        The tenant-level row stores the compliance percentage as its score.
        """
        now = now or utc_now()
        driver_ids = DriverRepository(handle).list_active_ids(limit=self.aggregator.driver_limit)
        evaluations = self.aggregator.evaluator.evaluate_many(handle, driver_ids, now)

        repo = SnapshotRepository(handle)
        for evaluation in evaluations.values():
            self._add_driver_snapshot(repo, evaluation)

        summary = summarize(handle.tenant_id, list(evaluations.values()), self.aggregator.top_issues_limit)
        repo.add(
            driver_id=None,
            compliance_score=summary.compliance_percentage,
            compliant=summary.compliance_percentage == 100,
            expired_count=summary.expired_count,
            expiring_count=summary.expiring_count,
            missing_count=summary.missing_count,
            details={
                "total_drivers": summary.total_drivers,
                "compliant_drivers": summary.compliant_drivers,
                "non_compliant_drivers": summary.non_compliant_drivers,
                "top_issues": summary.to_dict()["top_issues"],
            }
        )

        created = len(evaluations) + 1
        AuditRepository(handle).log(
            table_name="compliance_snapshots",
            action=AuditAction.SNAPSHOT_CREATED.value,
            after={"driverId": None, "created": created}
        )
        logger.info(f"Created {created} compliance snapshot(s) for tenant {handle.tenant_id}")
        return SnapshotResult(created=created, total=created)


def snapshot_all_tenants(
    db_provider: DatabaseSessionProvider,
    service: Optional[SnapshotService] = None
) -> List[Dict[str, Any]]:
    """
    Snapshot every tenant, one transaction per tenant.

    A failing tenant is logged and reported with ``errors: 1``.
    """
    service = service or SnapshotService()
    with db_provider.session_scope() as session:
        tenants = TenantRepository(session).list_all()

    results = []
    for tenant_id, name in tenants:
        try:
            with db_provider.tenant_session(TenantScope.system(tenant_id)) as handle:
                result = service.snapshot_tenant(handle)
            results.append({"tenant_id": str(tenant_id), "tenant_name": name,
                            "created": result.created, "errors": 0})
        except Exception as e:
            logger.error(f"[Compliance Snapshots] Error processing tenant {name}: {e}")
            results.append({"tenant_id": str(tenant_id), "tenant_name": name,
                            "created": 0, "errors": 1})
    return results

"""
Alert Dispatcher

Runs the alert generator for the caller's tenant, or for every tenant on a
schedule. Scheduled runs process tenants concurrently, each in its own worker
thread with its own session and transaction, attributed to the system actor.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from compliance.alerts import AlertGenerator
from compliance.types import AlertRunStats
from database.connection import DatabaseSessionProvider, TenantScope
from database.repositories import TenantRepository

logger = logging.getLogger(__name__)


@dataclass
class TenantAlertResult:
    tenant_id: UUID
    tenant_name: str
    stats: AlertRunStats = field(default_factory=AlertRunStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": str(self.tenant_id),
            "tenant_name": self.tenant_name,
            **self.stats.to_dict(),
        }


@dataclass
class DispatchReport:
    """Per-tenant results of a scheduled run plus totals"""
    tenants: List[TenantAlertResult] = field(default_factory=list)

    @property
    def totals(self) -> AlertRunStats:
        totals = AlertRunStats()
        for result in self.tenants:
            totals = totals.merge(result.stats)
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenants": [result.to_dict() for result in self.tenants],
            "totals": self.totals.to_dict(),
        }


class AlertDispatcher:
    """
    Entry point for alert runs.

    Usage:
        dispatcher = AlertDispatcher(db_provider, generator, max_concurrent_tenants=4)
        stats = dispatcher.run_for_tenant(scope)
        report = asyncio.run(dispatcher.run_all_tenants())
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        generator: Optional[AlertGenerator] = None,
        max_concurrent_tenants: int = 4
    ):
        if max_concurrent_tenants < 1:
            raise ValueError("max_concurrent_tenants must be >= 1")
        self.db_provider = db_provider
        self.generator = generator or AlertGenerator()
        self.max_concurrent_tenants = max_concurrent_tenants

    def run_for_tenant(self, scope: TenantScope, now: Optional[datetime] = None) -> AlertRunStats:
        """
        Run the generator for one tenant in a single transaction.

        Args:
            scope: Tenant and actor the run is attributed to
            now: Evaluation time

        Returns:
            AlertRunStats (``stats.summary()`` gives the caller-facing message)
        """
        with self.db_provider.tenant_session(scope) as handle:
            return self.generator.run(handle, now)

    def list_tenants(self) -> List[Tuple[UUID, str]]:
        with self.db_provider.session_scope() as session:
            return TenantRepository(session).list_all()

    def _run_tenant_isolated(self, tenant_id: UUID, tenant_name: str) -> TenantAlertResult:
        try:
            stats = self.run_for_tenant(TenantScope.system(tenant_id))
            logger.info(
                f"[Compliance Alerts] Tenant {tenant_name}: sent={stats.sent}, "
                f"skipped={stats.skipped}, errors={stats.errors}"
            )
        except Exception as e:
            logger.error(f"[Compliance Alerts] Error processing tenant {tenant_name}: {e}")
            stats = AlertRunStats(sent=0, skipped=0, errors=1)
        return TenantAlertResult(tenant_id=tenant_id, tenant_name=tenant_name, stats=stats)

    async def run_all_tenants(self) -> DispatchReport:
        """
        Run alerts for every tenant concurrently.

        A failing tenant is logged and counted as one error; a failure to
        enumerate tenants propagates.

        Returns:
            DispatchReport with per-tenant results and totals
        """
        loop = asyncio.get_running_loop()

        with ThreadPoolExecutor(
            max_workers=self.max_concurrent_tenants,
            thread_name_prefix="compliance-alerts"
        ) as executor:
            tenants = await loop.run_in_executor(executor, self.list_tenants)
            logger.info(f"[Compliance Alerts] Processing {len(tenants)} tenants...")

            results = await asyncio.gather(*[
                loop.run_in_executor(executor, self._run_tenant_isolated, tenant_id, name)
                for tenant_id, name in tenants
            ])

        report = DispatchReport(tenants=list(results))
        totals = report.totals
        logger.info(
            f"[Compliance Alerts] Completed: sent={totals.sent}, "
            f"skipped={totals.skipped}, errors={totals.errors}"
        )
        return report

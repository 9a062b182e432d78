"""
Scheduled compliance alerts job.

Runs the alert generator for every tenant and logs per-tenant and aggregate
counts. Exits 0 on completion and 1 on a fatal failure (for example when
tenants cannot be listed). Run daily from cron or any scheduler:

    python compliance_alerts_job.py
    python compliance_alerts_job.py --snapshots
"""

import argparse
import asyncio
import logging
import sys

from compliance.alerts import AlertGenerator, create_notifier
from compliance.aggregator import TenantAggregator
from compliance.dispatcher import AlertDispatcher
from compliance.evaluator import EntityEvaluator
from compliance.rules import RuleProvider
from compliance.snapshots import SnapshotService, snapshot_all_tenants
from config_manager import ConfigManager, configure_logging, get_config
from database.connection import DatabaseSessionProvider, init_db, close_db
from database.monitoring import configure_monitoring

logger = logging.getLogger(__name__)


def build_dispatcher(config: ConfigManager, db_provider: DatabaseSessionProvider) -> AlertDispatcher:
    rule_provider = RuleProvider(config.compliance.rule_defaults())
    generator = AlertGenerator(
        rule_provider,
        create_notifier(config.alerts.channel),
        role=config.compliance.role
    )
    return AlertDispatcher(db_provider, generator, config.alerts.max_concurrent_tenants)


def build_snapshot_service(config: ConfigManager) -> SnapshotService:
    rule_provider = RuleProvider(config.compliance.rule_defaults())
    aggregator = TenantAggregator(
        EntityEvaluator(rule_provider, role=config.compliance.role),
        driver_limit=config.compliance.tenant_driver_limit,
        top_issues_limit=config.compliance.top_issues_limit
    )
    return SnapshotService(aggregator)


def run(config: ConfigManager, db_provider: DatabaseSessionProvider, with_snapshots: bool = False) -> int:
    """
    Run the job against an initialized provider.

    Returns:
        Process exit code
    """
    try:
        logger.info("[Compliance Alerts] Starting compliance alerts job...")
        report = asyncio.run(build_dispatcher(config, db_provider).run_all_tenants())

        if with_snapshots:
            logger.info("[Compliance Snapshots] Starting compliance snapshots...")
            results = snapshot_all_tenants(db_provider, build_snapshot_service(config))
            created = sum(r["created"] for r in results)
            errors = sum(r["errors"] for r in results)
            logger.info(f"[Compliance Snapshots] Completed: created={created}, errors={errors}")

        totals = report.totals
        logger.info(f"[Compliance Alerts] {totals.summary()}")
        return 0
    except Exception as e:
        logger.error(f"[Compliance Alerts] Fatal error: {e}")
        return 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Generate compliance alerts for all tenants")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--snapshots", action="store_true", help="Also write compliance snapshots")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    args = parser.parse_args(argv)

    try:
        config = get_config(args.config)
    except Exception as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Configuration error: {e}")
        return 1

    configure_logging(config.logging)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    configure_monitoring(
        slow_query_threshold_ms=config.database.slow_query_threshold_ms,
        warning_threshold_ms=config.database.warning_threshold_ms,
        enable_prometheus=config.database.enable_prometheus
    )

    try:
        db_provider = init_db()
    except Exception as e:
        logger.error(f"[Compliance Alerts] Database unavailable: {e}")
        return 1

    try:
        return run(config, db_provider, with_snapshots=args.snapshots)
    finally:
        close_db()


if __name__ == "__main__":
    sys.exit(main())

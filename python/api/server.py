"""
FastAPI Driver Compliance API Server

Provides REST API endpoints for compliance evaluation and alerting. Callers
are authenticated upstream; the tenant and user come from the X-Tenant-ID
and X-User-ID headers, and X-API-Key is checked when API_KEY is set.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import logging
import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, Depends, Security, Header, Query, Request
from fastapi.security import APIKeyHeader

from api.models import (
    AlertGenerateResponse,
    AlertCountResponse,
    CronResponse,
    DriverEvaluationResponse,
    DriverListResponse,
    ExpiringDocumentsResponse,
    HealthResponse,
    RuleSaveRequest,
    RuleSaveResponse,
    RulesResponse,
    RulesSeedResponse,
    SnapshotRequest,
    SnapshotResponse,
    TenantSummaryResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    create_error_response,
    RequestLoggingMiddleware,
)
from compliance.aggregator import DriverInfo, TenantAggregator
from compliance.alerts import AlertGenerator, create_notifier
from compliance.dispatcher import AlertDispatcher
from compliance.evaluator import EntityEvaluator
from compliance.rules import RuleDefaults, RuleProvider, save_rule, seed_default_rules
from compliance.snapshots import SnapshotService
from config_manager import get_config, ConfigManager, ConfigurationError
from database.connection import (
    DatabaseSessionProvider,
    TenantScope,
    get_db_provider,
    init_db,
    close_db,
)
from database.monitoring import configure_monitoring, get_activity
from database.repositories import DriverRepository, EntityNotFoundError

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH") or None
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints when set
CRON_SECRET = os.getenv("CRON_SECRET", "")

# Global state
_config: Optional[ConfigManager] = None
_services: Optional["ComplianceServices"] = None
_startup_time: Optional[datetime] = None
_executor = ThreadPoolExecutor(max_workers=4)  # For blocking database work

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid tenant context or input"},
    401: {"model": ErrorResponse, "description": "Missing tenant context or API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@dataclass
class ComplianceServices:
    """Compliance components wired from configuration."""
    defaults: RuleDefaults
    rule_provider: RuleProvider
    evaluator: EntityEvaluator
    aggregator: TenantAggregator
    generator: AlertGenerator
    snapshots: SnapshotService
    role: str
    max_concurrent_tenants: int

    @classmethod
    def from_config(cls, config: ConfigManager) -> "ComplianceServices":
        defaults = config.compliance.rule_defaults()
        role = config.compliance.role
        rule_provider = RuleProvider(defaults)
        evaluator = EntityEvaluator(rule_provider, role=role)
        aggregator = TenantAggregator(
            evaluator,
            driver_limit=config.compliance.tenant_driver_limit,
            top_issues_limit=config.compliance.top_issues_limit,
        )
        return cls(
            defaults=defaults,
            rule_provider=rule_provider,
            evaluator=evaluator,
            aggregator=aggregator,
            generator=AlertGenerator(rule_provider, create_notifier(config.alerts.channel), role=role),
            snapshots=SnapshotService(aggregator),
            role=role,
            max_concurrent_tenants=config.alerts.max_concurrent_tenants,
        )


# ============================================
# DEPENDENCIES
# ============================================

async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_services(config: ConfigManager = Depends(get_config_instance)) -> ComplianceServices:
    """Dependency to get the compliance components."""
    global _services
    if _services is None:
        _services = ComplianceServices.from_config(config)
    return _services


def get_provider() -> DatabaseSessionProvider:
    """Dependency to get the initialized database provider."""
    provider = get_db_provider()
    if not provider.initialized:
        provider.init()
    return provider


def get_client_ip(request: Request) -> str:
    """Client IP from X-Forwarded-For (first entry), X-Real-IP, or the socket peer."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host
    return "127.0.0.1"


async def get_tenant_scope(
    request: Request,
    x_tenant_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    api_key: str = Depends(verify_api_key),
) -> TenantScope:
    """Build the tenant scope for this request.

    Missing identity is a 401; malformed identity raises TenantScopeError (400).
    """
    if not x_tenant_id or not x_user_id:
        raise HTTPException(status_code=401, detail="Unauthorized: tenant context is required")
    return TenantScope.parse(x_tenant_id, x_user_id, get_client_ip(request))


async def run_blocking(func, *args, **kwargs):
    """Run blocking database work in the executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(_executor, partial(func, *args, **kwargs))


def _failure(message: str, exc: Exception):
    logger.error(f"{message}: {type(exc).__name__}: {exc}")
    return create_error_response(message, status_code=500, details=str(exc))


# ============================================
# APPLICATION
# ============================================

app = FastAPI(
    title="Driver Compliance API",
    description="Driver document compliance evaluation and expiry alerting",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and initialize the database provider."""
    global _config, _services, _startup_time

    logger.info("Starting Driver Compliance API...")

    try:
        _config = get_config(CONFIG_PATH)
        _services = ComplianceServices.from_config(_config)
        configure_monitoring(
            slow_query_threshold_ms=_config.database.slow_query_threshold_ms,
            warning_threshold_ms=_config.database.warning_threshold_ms,
            enable_prometheus=_config.database.enable_prometheus,
        )
        await run_blocking(init_db)
        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready")
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Driver Compliance API...")
    close_db()


# ============================================
# ALERTS
# ============================================

@app.post(
    "/api/v1/compliance/alerts/generate",
    response_model=AlertGenerateResponse,
    responses=ERROR_RESPONSES,
    summary="Generate compliance alerts",
    description="Record and deliver alerts for expiring and expired required documents of the caller's tenant",
)
async def generate_alerts(
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    """Run the alert generator for the caller's tenant.

    Re-running is safe: alerts already recorded are counted as skipped.
    """
    dispatcher = AlertDispatcher(provider, services.generator, services.max_concurrent_tenants)
    try:
        stats = await run_blocking(dispatcher.run_for_tenant, scope)
    except Exception as e:
        return _failure("Failed to generate compliance alerts", e)

    return AlertGenerateResponse(data=stats.to_dict(), message=stats.summary())


@app.get(
    "/api/v1/compliance/alerts/count",
    response_model=AlertCountResponse,
    responses=ERROR_RESPONSES,
    summary="Count pending alert candidates",
)
async def count_alerts(
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def count():
        with provider.tenant_session(scope) as handle:
            return services.generator.count(handle)

    try:
        counts = await run_blocking(count)
    except Exception as e:
        return _failure("Failed to fetch alert count", e)

    return AlertCountResponse(data=counts)


@app.get(
    "/api/v1/cron/compliance-alerts",
    response_model=CronResponse,
    responses=ERROR_RESPONSES,
    summary="Scheduled alert run",
    description="Run alerts for every tenant. Requires 'Authorization: Bearer <CRON_SECRET>' when CRON_SECRET is set.",
)
async def cron_compliance_alerts(
    authorization: Optional[str] = Header(default=None),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    if CRON_SECRET and authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=401, detail="Unauthorized")

    dispatcher = AlertDispatcher(provider, services.generator, services.max_concurrent_tenants)
    try:
        report = await dispatcher.run_all_tenants()
    except Exception as e:
        return _failure("Failed to process compliance alerts", e)

    return CronResponse(data=report.to_dict())


# ============================================
# EVALUATION
# ============================================

@app.get(
    "/api/v1/compliance/summary",
    response_model=TenantSummaryResponse,
    responses=ERROR_RESPONSES,
    summary="Tenant compliance summary",
)
async def compliance_summary(
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def evaluate():
        with provider.tenant_session(scope) as handle:
            return services.aggregator.evaluate(handle)

    try:
        summary = await run_blocking(evaluate)
    except Exception as e:
        return _failure("Unable to load compliance summary at this time.", e)

    return TenantSummaryResponse(data=summary.to_dict())


@app.get(
    "/api/v1/compliance/drivers",
    response_model=DriverListResponse,
    responses=ERROR_RESPONSES,
    summary="Per-driver compliance",
)
async def list_driver_compliance(
    status: str = Query(default="all", description="all, compliant or non_compliant"),
    search: Optional[str] = Query(default=None, max_length=100, description="Name or email search"),
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def overview():
        with provider.tenant_session(scope) as handle:
            return services.aggregator.driver_overview(handle, status, search=search)

    try:
        items = await run_blocking(overview)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        return _failure("Unable to load driver compliance at this time.", e)

    return DriverListResponse(data=[item.to_dict() for item in items], total=len(items))


@app.get(
    "/api/v1/compliance/drivers/{driver_id}",
    response_model=DriverEvaluationResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Driver not found"}},
    summary="Single driver compliance",
)
async def get_driver_compliance(
    driver_id: UUID,
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def evaluate():
        with provider.tenant_session(scope) as handle:
            driver = DriverRepository(handle).get(driver_id)
            if driver is None:
                raise EntityNotFoundError(f"Driver not found: {driver_id}")
            evaluation = services.evaluator.evaluate(handle, driver_id)
            data = evaluation.to_dict()
            data["driver"] = DriverInfo.from_record(driver).to_dict()
            return data

    return DriverEvaluationResponse(data=await run_blocking(evaluate))


@app.get(
    "/api/v1/compliance/documents/expiring",
    response_model=ExpiringDocumentsResponse,
    responses=ERROR_RESPONSES,
    summary="Expired and expiring required documents",
)
async def expiring_documents(
    doc_filter: str = Query(default="all", alias="filter", description="all, expired or expiring"),
    search: Optional[str] = Query(default=None, max_length=100, description="Name or email search"),
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def collect():
        with provider.tenant_session(scope) as handle:
            return services.aggregator.expiring_documents(handle, doc_filter, search=search)

    try:
        report = await run_blocking(collect)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        return _failure("Unable to load expiring documents at this time.", e)

    return ExpiringDocumentsResponse(
        data=[doc.to_dict() for doc in report.documents],
        total=report.total,
        expired=report.expired_count,
        expiring=report.expiring_count,
    )


# ============================================
# RULES
# ============================================

@app.get(
    "/api/v1/compliance/rules",
    response_model=RulesResponse,
    responses=ERROR_RESPONSES,
    summary="Effective compliance rules",
    description="Stored rules for the role, or the default rules when none are stored",
)
async def get_rules(
    role: Optional[str] = Query(default=None, max_length=50),
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def load():
        with provider.tenant_session(scope) as handle:
            return services.rule_provider.get_rules(handle, role or services.role)

    try:
        rules = await run_blocking(load)
    except Exception as e:
        return _failure("Failed to fetch compliance rules", e)

    return RulesResponse(data=[rule.to_dict() for rule in rules])


@app.post(
    "/api/v1/compliance/rules",
    response_model=RuleSaveResponse,
    responses=ERROR_RESPONSES,
    summary="Create or update a compliance rule",
)
async def post_rule(
    request: RuleSaveRequest,
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def save():
        with provider.tenant_session(scope) as handle:
            return save_rule(
                handle,
                doc_type=request.doc_type,
                role=request.role,
                required=request.required,
                grace_days=request.grace_days,
                alert_windows=request.alert_windows,
                defaults=services.defaults,
            )

    try:
        rule, created = await run_blocking(save)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        return _failure("Failed to save compliance rule", e)

    return RuleSaveResponse(
        data=rule.to_dict(),
        message="Compliance rule created" if created else "Compliance rule updated",
    )


@app.post(
    "/api/v1/compliance/rules/seed",
    response_model=RulesSeedResponse,
    responses=ERROR_RESPONSES,
    summary="Persist the default compliance rules",
)
async def seed_rules(
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    def seed():
        with provider.tenant_session(scope) as handle:
            return seed_default_rules(handle, services.defaults, services.role)

    try:
        rules = await run_blocking(seed)
    except Exception as e:
        return _failure("Failed to seed compliance rules", e)

    return RulesSeedResponse(data=[rule.to_dict() for rule in rules])


# ============================================
# SNAPSHOTS
# ============================================

@app.post(
    "/api/v1/compliance/snapshots",
    response_model=SnapshotResponse,
    responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Driver not found"}},
    summary="Create compliance snapshots",
    description="Snapshot one driver, or every driver plus a tenant-level row when driver_id is omitted",
)
async def create_snapshots(
    request: Optional[SnapshotRequest] = None,
    scope: TenantScope = Depends(get_tenant_scope),
    services: ComplianceServices = Depends(get_services),
    provider: DatabaseSessionProvider = Depends(get_provider),
):
    driver_id = request.driver_id if request else None

    def snapshot():
        with provider.tenant_session(scope) as handle:
            if driver_id is not None:
                return services.snapshots.snapshot_driver(handle, driver_id)
            return services.snapshots.snapshot_tenant(handle)

    try:
        result = await run_blocking(snapshot)
    except EntityNotFoundError:
        raise
    except Exception as e:
        return _failure("Failed to create compliance snapshots", e)

    return SnapshotResponse(
        data=result.to_dict(),
        message=f"Created {result.created} compliance snapshot(s)",
    )


# ============================================
# HEALTH
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
async def health_check(provider: DatabaseSessionProvider = Depends(get_provider)):
    """Return service health including database latency. Always returns HTTP 200."""
    status = await run_blocking(provider.health_check)

    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    return HealthResponse(
        status="healthy" if status.healthy else "degraded",
        database=status.to_dict(),
        activity=get_activity(),
        uptime_seconds=uptime_seconds,
        version=API_VERSION,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)

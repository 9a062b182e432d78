"""
Pydantic request/response schemas for the Driver Compliance API

Every successful response carries ``success: true`` with the payload under
``data``; errors use the ``{success: false, error, details?}`` envelope.
"""

from typing import List, Optional, Dict, Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


# ============================================
# REQUESTS
# ============================================

class RuleSaveRequest(BaseModel):
    """Request schema for creating or updating a compliance rule."""
    role: str = Field(default="driver", min_length=1, max_length=50, description="Role the rule applies to")
    doc_type: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Document type (matched case-insensitively)"
    )
    required: bool = Field(default=True, description="Whether the document is required")
    grace_days: int = Field(default=0, ge=0, description="Days after expiry before the document counts as expired")
    alert_windows: Optional[List[int]] = Field(
        default=None,
        description="Days before expiry at which to alert (defaults to [30, 15, 7])"
    )

    @field_validator('doc_type')
    @classmethod
    def validate_doc_type(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("docType is required")
        return v.strip()

    @field_validator('alert_windows')
    @classmethod
    def validate_alert_windows(cls, v: Optional[List[int]]) -> Optional[List[int]]:
        if v is None:
            return v
        if not v or any(w <= 0 for w in v):
            raise ValueError("alert_windows must be a non-empty list of positive integers")
        return v


class SnapshotRequest(BaseModel):
    """Snapshot one driver, or the whole tenant when driver_id is omitted."""
    driver_id: Optional[UUID] = Field(default=None, description="Driver to snapshot")


# ============================================
# ALERTS
# ============================================

class AlertStats(BaseModel):
    sent: int = Field(..., ge=0, description="Alerts recorded and delivered")
    skipped: int = Field(..., ge=0, description="Candidates already alerted")
    errors: int = Field(..., ge=0, description="Candidates that failed")


class AlertGenerateResponse(BaseModel):
    """Response schema for the on-demand alert trigger."""
    success: bool = True
    data: AlertStats
    message: str = Field(..., description="Generated X alerts, skipped Y duplicates, Z errors")


class AlertCount(BaseModel):
    total: int = Field(..., ge=0)
    expired: int = Field(..., ge=0)
    expiring: int = Field(..., ge=0)


class AlertCountResponse(BaseModel):
    success: bool = True
    data: AlertCount


class TenantAlertResultModel(BaseModel):
    tenant_id: str
    tenant_name: str
    sent: int
    skipped: int
    errors: int


class CronData(BaseModel):
    tenants: List[TenantAlertResultModel] = Field(default_factory=list)
    totals: AlertStats


class CronResponse(BaseModel):
    """Response schema for the scheduled alert trigger."""
    success: bool = True
    message: str = "Compliance alerts processed"
    data: CronData


# ============================================
# EVALUATIONS
# ============================================

class DocumentEvaluationModel(BaseModel):
    doc_id: str
    doc_type: str
    status: str = Field(..., description="valid, expiring, expired, missing or pending_review")
    expires_at: str = Field(..., description="Expiry timestamp (ISO 8601)")
    days_until_expiry: int = Field(..., description="Whole days until expiry (negative once expired)")
    is_required: bool


class DriverInfoModel(BaseModel):
    id: str
    first_name: str
    last_name: str
    email: Optional[str] = None
    license_number: Optional[str] = None


class DriverEvaluationModel(BaseModel):
    entity_id: str
    compliant: bool
    compliance_score: int = Field(..., ge=0, le=100)
    expired_count: int = Field(..., ge=0)
    expiring_count: int = Field(..., ge=0)
    missing_count: int = Field(..., ge=0)
    documents: List[DocumentEvaluationModel] = Field(default_factory=list)
    missing_required_docs: List[str] = Field(default_factory=list)
    driver: Optional[DriverInfoModel] = None


class DriverEvaluationResponse(BaseModel):
    success: bool = True
    data: DriverEvaluationModel


class DriverListResponse(BaseModel):
    success: bool = True
    data: List[DriverEvaluationModel] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class IssueCountModel(BaseModel):
    doc_type: str
    count: int = Field(..., ge=1)


class TenantSummaryModel(BaseModel):
    tenant_id: str
    total_drivers: int = Field(..., ge=0)
    compliant_drivers: int = Field(..., ge=0)
    non_compliant_drivers: int = Field(..., ge=0)
    compliance_percentage: int = Field(..., ge=0, le=100)
    expired_count: int = Field(..., ge=0)
    expiring_count: int = Field(..., ge=0)
    missing_count: int = Field(..., ge=0)
    top_issues: List[IssueCountModel] = Field(default_factory=list)


class TenantSummaryResponse(BaseModel):
    success: bool = True
    data: TenantSummaryModel


class ExpiringDocumentModel(DocumentEvaluationModel):
    driver_id: str
    driver: DriverInfoModel


class ExpiringDocumentsResponse(BaseModel):
    success: bool = True
    data: List[ExpiringDocumentModel] = Field(default_factory=list)
    total: int = Field(..., ge=0, description="Documents after filtering")
    expired: int = Field(..., ge=0, description="Expired documents before filtering")
    expiring: int = Field(..., ge=0, description="Expiring documents before filtering")


# ============================================
# RULES AND SNAPSHOTS
# ============================================

class RuleModel(BaseModel):
    id: Optional[str] = Field(default=None, description="None for synthesized default rules")
    role: str
    doc_type: str
    required: bool
    grace_days: int
    alert_windows: List[int]


class RulesResponse(BaseModel):
    success: bool = True
    data: List[RuleModel] = Field(default_factory=list)


class RuleSaveResponse(BaseModel):
    success: bool = True
    data: RuleModel
    message: str


class RulesSeedResponse(BaseModel):
    success: bool = True
    data: List[RuleModel] = Field(default_factory=list)
    message: str = "Default compliance rules have been initialized"


class SnapshotResponse(BaseModel):
    success: bool = True
    data: Dict[str, Any]
    message: str


# ============================================
# HEALTH AND ERRORS
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: Dict[str, Any] = Field(default_factory=dict, description="Database health")
    activity: Dict[str, Any] = Field(default_factory=dict, description="Repository query and alert-run activity")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    version: str = Field(..., description="Service version")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    success: bool = False
    error: str = Field(..., description="Human-readable error message")
    details: Optional[Any] = Field(default=None, description="Error details (development only)")

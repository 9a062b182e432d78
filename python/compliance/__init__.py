"""
Compliance core for the Driver Compliance Service.

Submodules:
- types: value types, doc-type normalization, date helpers
- rules: rule loading with default fallback, rule seeding
- evaluator: document, driver and batch evaluation
- aggregator: tenant-wide summary, expiring documents, driver overview
- alerts: alert candidates, deduplicated generation, notifiers
- dispatcher: per-tenant and all-tenant alert runs
- snapshots: persisted point-in-time evaluations
"""

from compliance.types import (
    AlertCandidate,
    AlertRunStats,
    AlertType,
    ComplianceDocument,
    ComplianceRule,
    ComplianceStatus,
    DocumentEvaluation,
    EntityEvaluation,
    TenantEvaluation,
    normalize_doc_type,
)

__all__ = [
    'AlertCandidate',
    'AlertRunStats',
    'AlertType',
    'ComplianceDocument',
    'ComplianceRule',
    'ComplianceStatus',
    'DocumentEvaluation',
    'EntityEvaluation',
    'TenantEvaluation',
    'normalize_doc_type',
]

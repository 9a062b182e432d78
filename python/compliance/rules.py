"""
Compliance Rule Provider

Loads a tenant's rules for a role. When no rules are stored, or the
query fails, a default set is synthesized in memory from ``RuleDefaults``.
Also seeds the default rules as persisted rows and saves individual rules.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from compliance.types import ComplianceRule, normalize_doc_type
from database.connection import ScopedSession
from database.models import AuditAction
from database.repositories import AuditRepository, RuleRepository, coerce_alert_windows

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "driver"


@dataclass(frozen=True)
class RuleDefaults:
    """Rules used when a tenant has none configured for a role"""
    required_doc_types: Tuple[str, ...] = ("Driver License", "Background Check")
    alert_windows: Tuple[int, ...] = (30, 15, 7)

    def build(self, tenant_id, role: str = DEFAULT_ROLE) -> List[ComplianceRule]:
        """Synthesize the default rules, ordered by doc type. Never persisted."""
        rules = [
            ComplianceRule(
                tenant_id=tenant_id,
                role=role,
                doc_type=doc_type,
                required=True,
                grace_days=0,
                alert_windows=tuple(self.alert_windows),
            )
            for doc_type in self.required_doc_types
        ]
        return sorted(rules, key=lambda rule: rule.doc_type)


def index_rules(rules: Sequence[ComplianceRule]) -> dict:
    """Map normalized doc type to rule. The first rule wins on duplicates."""
    index = {}
    for rule in rules:
        index.setdefault(rule.key, rule)
    return index


class RuleProvider:
    """
    Fetches the effective rules for a tenant and role.

    Usage:
        provider = RuleProvider(config.compliance.rule_defaults())
        with db_provider.tenant_session(scope) as handle:
            rules = provider.get_rules(handle)
    """

    def __init__(self, defaults: Optional[RuleDefaults] = None):
        self.defaults = defaults or RuleDefaults()

    def get_rules(self, handle: ScopedSession, role: str = DEFAULT_ROLE) -> List[ComplianceRule]:
        """
        Get rules for a role, falling back to the defaults.

        Args:
            handle: Tenant-scoped session
            role: Role the rules apply to

        Returns:
            List of ComplianceRule ordered by doc type (never empty)
        """
        try:
            # Savepoint keeps the caller's transaction usable if the query fails
            with handle.savepoint():
                rules = RuleRepository(handle).list_for_role(role, self.defaults.alert_windows)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to load compliance rules for tenant {handle.tenant_id}, using defaults: {e}")
            return self.defaults.build(handle.tenant_id, role)

        if not rules:
            logger.debug(f"No compliance rules configured for tenant {handle.tenant_id}, using defaults")
            return self.defaults.build(handle.tenant_id, role)

        return rules


def _validate_rule_input(doc_type: str, grace_days: int, alert_windows: Optional[Sequence[int]]) -> None:
    if not normalize_doc_type(doc_type):
        raise ValueError("docType is required")
    if grace_days < 0:
        raise ValueError("graceDays must be >= 0")
    if alert_windows is not None:
        if not alert_windows or any(int(w) <= 0 for w in alert_windows):
            raise ValueError("alertWindows must be a non-empty list of positive integers")


def save_rule(
    handle: ScopedSession,
    doc_type: str,
    role: str = DEFAULT_ROLE,
    required: bool = True,
    grace_days: int = 0,
    alert_windows: Optional[Sequence[int]] = None,
    defaults: Optional[RuleDefaults] = None
) -> Tuple[ComplianceRule, bool]:
    """
    Create or update one rule.

    Args:
        handle: Tenant-scoped session
        doc_type: Document type of the rule
        role: Role the rule applies to
        required: Whether the document is required
        grace_days: Days after expiry before the document counts as expired
        alert_windows: Days before expiry at which to alert (defaults when None)
        defaults: Source of the default windows

    Returns:
        Tuple of (saved rule, created)

    Raises:
        ValueError: If the input is invalid
    """
    defaults = defaults or RuleDefaults()
    _validate_rule_input(doc_type, grace_days, alert_windows)

    windows = coerce_alert_windows(
        list(alert_windows) if alert_windows is not None else None,
        defaults.alert_windows
    )

    record, created = RuleRepository(handle).upsert(
        role=role,
        doc_type=doc_type,
        required=required,
        grace_days=grace_days,
        alert_windows=list(windows)
    )

    AuditRepository(handle).log(
        table_name="compliance_rules",
        action=AuditAction.RULE_SAVED.value,
        record_id=record.id,
        after={
            "role": role,
            "docType": record.doc_type,
            "required": required,
            "graceDays": grace_days,
            "alertWindows": list(windows),
            "created": created,
        }
    )

    logger.info(f"{'Created' if created else 'Updated'} compliance rule '{record.doc_type}' for tenant {handle.tenant_id}")

    rule = ComplianceRule(
        id=str(record.id),
        tenant_id=handle.tenant_id,
        role=role,
        doc_type=record.doc_type,
        required=required,
        grace_days=grace_days,
        alert_windows=windows,
    )
    return rule, created


def seed_default_rules(
    handle: ScopedSession,
    defaults: Optional[RuleDefaults] = None,
    role: str = DEFAULT_ROLE
) -> List[ComplianceRule]:
    """
    Persist the default rules, inserting or updating on (tenant, role, doc type).

    Returns:
        The rules as stored, ordered by doc type
    """
    defaults = defaults or RuleDefaults()
    repo = RuleRepository(handle)

    saved = []
    for rule in defaults.build(handle.tenant_id, role):
        record, _ = repo.upsert(
            role=role,
            doc_type=rule.doc_type,
            required=True,
            grace_days=0,
            alert_windows=list(rule.alert_windows)
        )
        saved.append(ComplianceRule(
            id=str(record.id),
            tenant_id=handle.tenant_id,
            role=role,
            doc_type=record.doc_type,
            required=True,
            grace_days=0,
            alert_windows=tuple(rule.alert_windows),
        ))

    AuditRepository(handle).log(
        table_name="compliance_rules",
        action=AuditAction.RULES_SEEDED.value,
        after={"role": role, "docTypes": [rule.doc_type for rule in saved]}
    )

    logger.info(f"Seeded {len(saved)} default compliance rules for tenant {handle.tenant_id}")
    return saved

"""
Document and Driver Compliance Evaluation

``evaluate_document`` and ``evaluate_entity`` are pure functions over
already-loaded rules and documents. ``EntityEvaluator`` loads the data through
a tenant-scoped session and applies them, for one driver or for a batch.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from compliance.rules import DEFAULT_ROLE, RuleDefaults, RuleProvider, index_rules
from compliance.types import (
    ComplianceDocument,
    ComplianceRule,
    ComplianceStatus,
    DocumentEvaluation,
    EntityEvaluation,
    OVERRIDE_STATUSES,
    days_until,
    round_half_up,
    utc_now,
)
from database.connection import ScopedSession
from database.repositories import DocumentRepository

logger = logging.getLogger(__name__)

_DEFAULT_WINDOWS = RuleDefaults().alert_windows


def _resolve_status(
    days: int,
    rule: Optional[ComplianceRule],
    override: Optional[str],
    default_windows: Sequence[int]
) -> ComplianceStatus:
    grace_days = rule.grace_days if rule else 0
    if days < -grace_days:
        return ComplianceStatus.EXPIRED

    windows = rule.alert_windows if rule and rule.alert_windows else default_windows
    if 0 <= days <= max(windows):
        return ComplianceStatus.EXPIRING

    if override in {status.value for status in OVERRIDE_STATUSES}:
        return ComplianceStatus(override)

    return ComplianceStatus.VALID


def evaluate_document(
    document: ComplianceDocument,
    rules,
    now: Optional[datetime] = None,
    default_windows: Sequence[int] = _DEFAULT_WINDOWS
) -> DocumentEvaluation:
    """
    Evaluate one document against the rules.

    Expiry takes precedence over the expiring window, which takes precedence
    over a manual override (pending_review / missing).

    Args:
        document: Document to evaluate
        rules: Sequence of ComplianceRule, or a dict already built by index_rules
        now: Evaluation time (defaults to the current UTC time)
        default_windows: Windows for documents no rule matches

    Returns:
        DocumentEvaluation
    """
    index = rules if isinstance(rules, dict) else index_rules(rules)
    rule = index.get(document.key)
    days = days_until(document.expires_at, now or utc_now())

    return DocumentEvaluation(
        doc_id=document.id,
        doc_type=rule.doc_type if rule else document.doc_type,
        status=_resolve_status(days, rule, document.status, default_windows),
        expires_at=document.expires_at,
        days_until_expiry=days,
        is_required=rule.required if rule else False,
    )


def evaluate_entity(
    entity_id: UUID,
    documents: Iterable[ComplianceDocument],
    rules: Sequence[ComplianceRule],
    now: Optional[datetime] = None,
    default_windows: Sequence[int] = _DEFAULT_WINDOWS
) -> EntityEvaluation:
    """
    Evaluate one driver's documents and compute the compliance score.

    Only required documents count towards the expired/expiring counts and
    the score. A driver with no required rules is trivially compliant.
    """
    now = now or utc_now()
    index = index_rules(rules)
    documents = list(documents)

    evaluations = [evaluate_document(doc, index, now, default_windows) for doc in documents]

    required_rules = [rule for rule in rules if rule.required]
    if not required_rules:
        return EntityEvaluation(
            entity_id=entity_id,
            compliant=True,
            compliance_score=100,
            documents=evaluations,
        )

    existing_doc_types = {doc.key for doc in documents}
    missing_required_docs = [
        rule.doc_type for rule in required_rules if rule.key not in existing_doc_types
    ]

    required_evaluations = [e for e in evaluations if e.is_required]
    expired_count = sum(1 for e in required_evaluations if e.status == ComplianceStatus.EXPIRED)
    expiring_count = sum(1 for e in required_evaluations if e.status == ComplianceStatus.EXPIRING)
    valid_required = sum(1 for e in required_evaluations if e.status == ComplianceStatus.VALID)

    score = max(0, round_half_up(100 * valid_required / len(required_rules)))
    # Several valid documents of one type can push the raw ratio past 100
    score = min(score, 100)

    missing_count = len(missing_required_docs)
    return EntityEvaluation(
        entity_id=entity_id,
        compliant=missing_count == 0 and expired_count == 0 and score == 100,
        compliance_score=score,
        expired_count=expired_count,
        expiring_count=expiring_count,
        missing_count=missing_count,
        documents=evaluations,
        missing_required_docs=missing_required_docs,
    )


class EntityEvaluator:
    """
    Evaluates drivers of the handle's tenant.

    Usage:
        evaluator = EntityEvaluator(RuleProvider(defaults))
        with db_provider.tenant_session(scope) as handle:
            evaluation = evaluator.evaluate(handle, driver_id)
    """

    def __init__(self, rule_provider: Optional[RuleProvider] = None, role: str = DEFAULT_ROLE):
        self.rule_provider = rule_provider or RuleProvider()
        self.role = role

    @property
    def default_windows(self) -> Sequence[int]:
        return self.rule_provider.defaults.alert_windows

    def evaluate(
        self,
        handle: ScopedSession,
        entity_id: UUID,
        now: Optional[datetime] = None
    ) -> EntityEvaluation:
        """
        Evaluate a single driver.

        Args:
            handle: Tenant-scoped session
            entity_id: Driver ID
            now: Evaluation time

        Returns:
            EntityEvaluation
        """
        rules = self.rule_provider.get_rules(handle, self.role)
        documents = DocumentRepository(handle).for_driver(entity_id)
        return evaluate_entity(entity_id, documents, rules, now, self.default_windows)

    def evaluate_many(
        self,
        handle: ScopedSession,
        entity_ids: Iterable[UUID],
        now: Optional[datetime] = None,
        rules: Optional[List[ComplianceRule]] = None
    ) -> Dict[UUID, EntityEvaluation]:
        """
        Evaluate many drivers with one rule load and one document query.

        Args:
            handle: Tenant-scoped session
            entity_ids: Driver IDs (duplicates are evaluated once)
            now: Evaluation time shared by all drivers
            rules: Already-loaded rules, loaded from the handle when None

        Returns:
            Dict mapping driver ID to EntityEvaluation, in first-seen order
        """
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return {}

        now = now or utc_now()
        if rules is None:
            rules = self.rule_provider.get_rules(handle, self.role)

        documents_by_entity = defaultdict(list)
        for document in DocumentRepository(handle).for_drivers(ids):
            documents_by_entity[document.entity_id].append(document)

        logger.debug(f"Evaluating {len(ids)} drivers for tenant {handle.tenant_id}")

        return {
            entity_id: evaluate_entity(
                entity_id, documents_by_entity.get(entity_id, []), rules, now, self.default_windows
            )
            for entity_id in ids
        }

"""
Compliance Alert Generation

Finds documents that need an expiring/expired alert and records each alert
at most once per tenant. A record is claimed with an insert-if-absent on the
(tenant_id, dedupe_key) constraint inside a per-candidate savepoint, then the
notifier delivers it and an audit entry is written. A failure at any step
rolls the savepoint back, so no alert record survives a failed delivery.

Usage:
    generator = AlertGenerator(RuleProvider(defaults), InAppNotifier())
    with db_provider.tenant_session(scope) as handle:
        stats = generator.run(handle)
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from compliance.rules import DEFAULT_ROLE, RuleDefaults, RuleProvider, index_rules
from compliance.types import (
    AlertCandidate,
    AlertRunStats,
    AlertType,
    ComplianceDocument,
    ComplianceRule,
    days_until,
    utc_now,
)
from database.connection import ScopedSession
from database.models import AlertChannel, AuditAction
from database.monitoring import record_alert_run
from database.repositories import AlertRepository, AuditRepository, DocumentRepository

logger = logging.getLogger(__name__)

ALERTS_TABLE = "compliance_alerts"


class AlertDeliveryError(Exception):
    """Raised when a notifier reports an unsuccessful delivery."""
    pass


# ============================================
# CANDIDATE SELECTION
# ============================================

def find_alert_candidates(
    documents: Iterable[ComplianceDocument],
    rules: Sequence[ComplianceRule],
    now: Optional[datetime] = None,
    default_windows: Sequence[int] = RuleDefaults().alert_windows
) -> List[AlertCandidate]:
    """
    Select the documents that qualify for an alert.

    Only documents matching a required rule qualify. An expired document
    yields one ``expired`` candidate with window 0; otherwise the largest
    window containing the days until expiry yields one ``expiring``
    candidate.

    Args:
        documents: Non-deleted documents of the tenant
        rules: Effective rules
        now: Evaluation time
        default_windows: Windows for rules that carry none

    Returns:
        List of AlertCandidate in document order
    """
    now = now or utc_now()
    index = index_rules(rules)
    candidates = []

    for document in documents:
        rule = index.get(document.key)
        if rule is None or not rule.required:
            continue

        days = days_until(document.expires_at, now)

        if days < -rule.grace_days:
            alert_type, window = AlertType.EXPIRED, 0
        else:
            windows = sorted(rule.alert_windows or default_windows, reverse=True)
            window = next((w for w in windows if 0 <= days <= w), None)
            if window is None:
                continue
            alert_type = AlertType.EXPIRING

        candidates.append(AlertCandidate(
            doc_id=document.id,
            entity_id=document.entity_id,
            doc_type=rule.doc_type,
            expires_at=document.expires_at,
            alert_type=alert_type,
            alert_window_days=window,
        ))

    return candidates


# ============================================
# NOTIFIERS
# ============================================

@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    channel: str


class Notifier:
    """Delivery seam. Subclasses send the alert and report the outcome."""

    channel: str = AlertChannel.IN_APP.value
    audit_action: str = AuditAction.ALERT_GENERATED.value

    def deliver(self, candidate: AlertCandidate) -> DeliveryResult:
        raise NotImplementedError


class InAppNotifier(Notifier):
    """In-app alerts: the alert record itself is the notification."""

    channel = AlertChannel.IN_APP.value
    audit_action = AuditAction.ALERT_GENERATED.value

    def deliver(self, candidate: AlertCandidate) -> DeliveryResult:
        return DeliveryResult(success=True, channel=self.channel)


class LogNotifier(Notifier):
    """Writes one line per alert to the log."""

    channel = AlertChannel.LOG.value
    audit_action = AuditAction.ALERT_SENT.value

    def deliver(self, candidate: AlertCandidate) -> DeliveryResult:
        logger.info(
            f"[ALERT] {candidate.alert_type.value.upper()}: Driver {candidate.entity_id}, "
            f"Doc {candidate.doc_type}, Expires {candidate.expires_at.isoformat()}, "
            f"Window {candidate.alert_window_days} days"
        )
        return DeliveryResult(success=True, channel=self.channel)


NOTIFIERS = {
    AlertChannel.IN_APP.value: InAppNotifier,
    AlertChannel.LOG.value: LogNotifier,
}


def create_notifier(channel: str) -> Notifier:
    """
    Build the notifier for a configured channel.

    Raises:
        ValueError: If no notifier handles the channel
    """
    try:
        return NOTIFIERS[channel]()
    except KeyError:
        raise ValueError(f"Unsupported alert channel: {channel}")


# ============================================
# GENERATOR
# ============================================

class AlertGenerator:
    """Generates deduplicated alerts for the handle's tenant."""

    def __init__(
        self,
        rule_provider: Optional[RuleProvider] = None,
        notifier: Optional[Notifier] = None,
        role: str = DEFAULT_ROLE
    ):
        self.rule_provider = rule_provider or RuleProvider()
        self.notifier = notifier or InAppNotifier()
        self.role = role

    def collect(self, handle: ScopedSession, now: Optional[datetime] = None) -> List[AlertCandidate]:
        """Current alert candidates of the tenant. Read-only."""
        rules = self.rule_provider.get_rules(handle, self.role)
        documents = DocumentRepository(handle).all_active()
        return find_alert_candidates(
            documents, rules, now, self.rule_provider.defaults.alert_windows
        )

    def count(self, handle: ScopedSession, now: Optional[datetime] = None) -> Dict[str, int]:
        """Candidate counts by alert type, without recording anything."""
        candidates = self.collect(handle, now)
        expired = sum(1 for c in candidates if c.alert_type == AlertType.EXPIRED)
        return {
            "total": len(candidates),
            "expired": expired,
            "expiring": len(candidates) - expired,
        }

    def run(self, handle: ScopedSession, now: Optional[datetime] = None) -> AlertRunStats:
        """
        Record and deliver every candidate not alerted before.

        Candidates are processed sequentially in the handle's transaction.
        One failing candidate never stops the run.

        Args:
            handle: Tenant-scoped session
            now: Evaluation time

        Returns:
            AlertRunStats with sent, skipped and errors counts
        """
        started = time.perf_counter()
        candidates = self.collect(handle, now)
        alerts = AlertRepository(handle)
        audit = AuditRepository(handle)
        stats = AlertRunStats()

        for candidate in candidates:
            try:
                with handle.savepoint():
                    alert_id = alerts.claim(candidate, self.notifier.channel)
                    if alert_id is None:
                        stats.skipped += 1
                        continue

                    result = self.notifier.deliver(candidate)
                    if not result.success:
                        raise AlertDeliveryError(
                            f"{result.channel} delivery failed for {candidate.dedupe_key}"
                        )

                    audit.log(
                        table_name=ALERTS_TABLE,
                        action=self.notifier.audit_action,
                        record_id=alert_id,
                        after=candidate.audit_payload()
                    )
                stats.sent += 1
            except Exception as e:
                logger.error(
                    f"Error processing alert for driver {candidate.entity_id}, "
                    f"doc {candidate.doc_id}: {e}"
                )
                stats.errors += 1

        record_alert_run(
            handle.tenant_id, time.perf_counter() - started,
            stats.sent, stats.skipped, stats.errors
        )
        logger.info(f"Tenant {handle.tenant_id}: {stats.summary()}")
        return stats

"""
Tests for alert candidate selection and the alert generator
"""

import logging
import uuid
from datetime import timedelta

import pytest

from compliance.alerts import (
    AlertGenerator,
    DeliveryResult,
    InAppNotifier,
    LogNotifier,
    Notifier,
    create_notifier,
    find_alert_candidates,
)
from compliance.rules import RuleProvider
from compliance.types import AlertCandidate, AlertType, ComplianceDocument, ComplianceRule
from database.connection import TenantScope
from database.repositories import AlertRepository, AuditRepository
from conftest import NOW, days_from_now


def rule(doc_type="License", required=True, grace_days=0, alert_windows=(30, 15, 7)):
    return ComplianceRule(
        tenant_id=None,
        role="driver",
        doc_type=doc_type,
        required=required,
        grace_days=grace_days,
        alert_windows=alert_windows,
    )


def document(doc_type="License", days=10):
    return ComplianceDocument(
        id=uuid.uuid4(),
        entity_id=uuid.uuid4(),
        doc_type=doc_type,
        expires_at=NOW + timedelta(days=days),
    )


class FailingNotifier(Notifier):
    """Fails delivery for every candidate of one document."""

    def __init__(self, failing_doc_id):
        self.failing_doc_id = failing_doc_id
        self.delivered = []

    def deliver(self, candidate: AlertCandidate) -> DeliveryResult:
        if candidate.doc_id == self.failing_doc_id:
            return DeliveryResult(success=False, channel=self.channel)
        self.delivered.append(candidate.doc_id)
        return DeliveryResult(success=True, channel=self.channel)


class ExplodingNotifier(Notifier):

    def deliver(self, candidate: AlertCandidate) -> DeliveryResult:
        raise RuntimeError("smtp unavailable")


# ============================================
# CANDIDATE SELECTION
# ============================================

class TestFindAlertCandidates:

    def test_ten_days_uses_largest_matching_window(self):
        candidates = find_alert_candidates([document(days=10)], [rule()], NOW)

        assert len(candidates) == 1
        assert candidates[0].alert_type == AlertType.EXPIRING
        assert candidates[0].alert_window_days == 30

    def test_expired_candidate_has_window_zero(self):
        candidates = find_alert_candidates([document(days=-5)], [rule()], NOW)

        assert len(candidates) == 1
        assert candidates[0].alert_type == AlertType.EXPIRED
        assert candidates[0].alert_window_days == 0

    def test_windows_scanned_descending_regardless_of_storage_order(self):
        candidates = find_alert_candidates([document(days=3)], [rule(alert_windows=(7, 30, 15))], NOW)
        assert candidates[0].alert_window_days == 30

    def test_outside_windows_yields_nothing(self):
        assert find_alert_candidates([document(days=45)], [rule()], NOW) == []

    def test_within_grace_yields_nothing(self):
        assert find_alert_candidates([document(days=-2)], [rule(grace_days=5)], NOW) == []

    def test_not_required_rule_never_alerts(self):
        candidates = find_alert_candidates([document(days=-5)], [rule(required=False)], NOW)
        assert candidates == []

    def test_unmatched_document_never_alerts(self):
        assert find_alert_candidates([document("Insurance", days=5)], [rule()], NOW) == []

    def test_doc_type_uses_rule_spelling(self):
        candidates = find_alert_candidates([document(" LICENSE", days=5)], [rule()], NOW)
        assert candidates[0].doc_type == "License"


# ============================================
# NOTIFIERS
# ============================================

class TestNotifiers:

    def test_create_notifier(self):
        assert isinstance(create_notifier("in_app"), InAppNotifier)
        assert isinstance(create_notifier("log"), LogNotifier)

    def test_unknown_channel(self):
        with pytest.raises(ValueError):
            create_notifier("pager")

    def test_log_notifier_writes_alert_line(self, caplog):
        candidate = find_alert_candidates([document(days=10)], [rule()], NOW)[0]

        with caplog.at_level(logging.INFO, logger="compliance.alerts"):
            result = LogNotifier().deliver(candidate)

        assert result.success is True
        assert "[ALERT] EXPIRING" in caplog.text
        assert "Window 30 days" in caplog.text


# ============================================
# GENERATOR
# ============================================

@pytest.fixture
def license_rule(seed, tenant_id):
    return seed.rule(tenant_id, "License")


class TestAlertGenerator:

    def test_sends_then_skips_on_rerun(self, db_provider, seed, tenant_id, scope, license_rule):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(10))
        seed.document(tenant_id, driver_id, "license", days_from_now(-5))
        generator = AlertGenerator(RuleProvider())

        with db_provider.tenant_session(scope) as handle:
            first = generator.run(handle, NOW)
        with db_provider.tenant_session(scope) as handle:
            second = generator.run(handle, NOW)

        assert first.to_dict() == {"sent": 2, "skipped": 0, "errors": 0}
        assert second.to_dict() == {"sent": 0, "skipped": 2, "errors": 0}

        with db_provider.tenant_session(scope) as handle:
            alerts = AlertRepository(handle).list_for_driver(driver_id)
        assert sorted((a.alert_type, a.alert_window_days) for a in alerts) == [
            ("expired", 0),
            ("expiring", 30),
        ]
        assert all(a.channel == "in_app" for a in alerts)

    def test_expiry_after_expiring_alerts_again(self, db_provider, seed, tenant_id, scope, license_rule):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(20))
        generator = AlertGenerator(RuleProvider())

        with db_provider.tenant_session(scope) as handle:
            first = generator.run(handle, NOW)
        with db_provider.tenant_session(scope) as handle:
            later = generator.run(handle, NOW + timedelta(days=25))

        assert first.sent == 1
        assert later.sent == 1

    def test_audit_entries_written(self, db_provider, seed, tenant_id, scope, license_rule):
        driver_id = seed.driver(tenant_id)
        doc_id = seed.document(tenant_id, driver_id, "License", days_from_now(5))

        with db_provider.tenant_session(scope) as handle:
            AlertGenerator(RuleProvider(), LogNotifier()).run(handle, NOW)

        with db_provider.tenant_session(scope) as handle:
            entries = AuditRepository(handle).search(table_name="compliance_alerts")
            alert = AlertRepository(handle).list_for_driver(driver_id)[0]

        assert len(entries) == 1
        entry = entries[0]
        assert entry.action == "alert_sent"
        assert entry.record_id == alert.id
        assert entry.user_id == scope.actor_id
        assert entry.ip_address == "10.0.0.5"
        assert entry.after == {
            "entityId": str(driver_id),
            "docId": str(doc_id),
            "alertType": "expiring",
            "alertWindowDays": 30,
        }
        assert alert.channel == "log"

    def test_failed_delivery_counts_error_and_continues(self, db_provider, seed, tenant_id, scope, license_rule):
        driver_id = seed.driver(tenant_id)
        failing = seed.document(tenant_id, driver_id, "License", days_from_now(3))
        ok = seed.document(tenant_id, driver_id, "License", days_from_now(-1))
        notifier = FailingNotifier(failing)

        with db_provider.tenant_session(scope) as handle:
            stats = AlertGenerator(RuleProvider(), notifier).run(handle, NOW)

        assert stats.to_dict() == {"sent": 1, "skipped": 0, "errors": 1}
        assert notifier.delivered == [ok]

        with db_provider.tenant_session(scope) as handle:
            alerts = AlertRepository(handle).list_for_driver(driver_id)
            audit = AuditRepository(handle).search(table_name="compliance_alerts")
        assert [a.doc_id for a in alerts] == [ok]
        assert len(audit) == 1

    def test_failed_candidate_retried_on_next_run(self, db_provider, seed, tenant_id, scope, license_rule):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(3))

        with db_provider.tenant_session(scope) as handle:
            failed = AlertGenerator(RuleProvider(), ExplodingNotifier()).run(handle, NOW)
        with db_provider.tenant_session(scope) as handle:
            retried = AlertGenerator(RuleProvider()).run(handle, NOW)

        assert failed.errors == 1
        assert retried.sent == 1

    def test_deleted_and_unrequired_documents_ignored(self, db_provider, seed, tenant_id, scope):
        seed.rule(tenant_id, "License")
        seed.rule(tenant_id, "Insurance", required=False)
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(-5), deleted=True)
        seed.document(tenant_id, driver_id, "Insurance", days_from_now(-5))

        with db_provider.tenant_session(scope) as handle:
            stats = AlertGenerator(RuleProvider()).run(handle, NOW)

        assert stats.to_dict() == {"sent": 0, "skipped": 0, "errors": 0}

    def test_count_does_not_record(self, db_provider, seed, tenant_id, scope, license_rule):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(-5))
        seed.document(tenant_id, driver_id, "License", days_from_now(5))
        generator = AlertGenerator(RuleProvider())

        with db_provider.tenant_session(scope) as handle:
            counts = generator.count(handle, NOW)
            alerts = AlertRepository(handle).list_for_driver(driver_id)

        assert counts == {"total": 2, "expired": 1, "expiring": 1}
        assert alerts == []

    def test_alerts_are_per_tenant(self, db_provider, seed, tenant_id, scope, license_rule):
        other_tenant = seed.tenant("Other")
        seed.rule(other_tenant, "License")
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(5))
        generator = AlertGenerator(RuleProvider())

        with db_provider.tenant_session(TenantScope.system(other_tenant)) as handle:
            other = generator.run(handle, NOW)
        with db_provider.tenant_session(scope) as handle:
            mine = generator.run(handle, NOW)

        assert other.sent == 0
        assert mine.sent == 1

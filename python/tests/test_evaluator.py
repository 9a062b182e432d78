"""
Tests for document and driver evaluation
"""

import uuid
from datetime import timedelta

import pytest

from compliance.evaluator import EntityEvaluator, evaluate_document, evaluate_entity
from compliance.rules import RuleDefaults, RuleProvider
from compliance.types import ComplianceDocument, ComplianceRule, ComplianceStatus
from conftest import NOW, days_from_now

TENANT = uuid.uuid4()


def make_rule(doc_type="License", required=True, grace_days=0, alert_windows=(30, 15, 7)):
    return ComplianceRule(
        tenant_id=TENANT,
        role="driver",
        doc_type=doc_type,
        required=required,
        grace_days=grace_days,
        alert_windows=alert_windows,
    )


def make_doc(doc_type="License", days=100, status=None, entity_id=None):
    return ComplianceDocument(
        id=uuid.uuid4(),
        entity_id=entity_id or uuid.uuid4(),
        doc_type=doc_type,
        expires_at=NOW + timedelta(days=days),
        status=status,
    )


# ============================================
# DOCUMENT EVALUATION
# ============================================

class TestEvaluateDocument:

    def test_valid_beyond_windows(self):
        result = evaluate_document(make_doc(days=100), [make_rule()], NOW)
        assert result.status == ComplianceStatus.VALID
        assert result.days_until_expiry == 100
        assert result.is_required is True

    def test_expiring_within_max_window(self):
        result = evaluate_document(make_doc(days=10), [make_rule()], NOW)
        assert result.status == ComplianceStatus.EXPIRING

    def test_expiring_uses_largest_window(self):
        result = evaluate_document(make_doc(days=45), [make_rule(alert_windows=(7, 60))], NOW)
        assert result.status == ComplianceStatus.EXPIRING

    def test_expires_today_is_expiring(self):
        result = evaluate_document(make_doc(days=0), [make_rule()], NOW)
        assert result.days_until_expiry == 0
        assert result.status == ComplianceStatus.EXPIRING

    def test_expired(self):
        result = evaluate_document(make_doc(days=-5), [make_rule()], NOW)
        assert result.status == ComplianceStatus.EXPIRED
        assert result.days_until_expiry == -5

    def test_grace_period_delays_expiry(self):
        rules = [make_rule(grace_days=7)]
        assert evaluate_document(make_doc(days=-7), rules, NOW).status == ComplianceStatus.VALID
        assert evaluate_document(make_doc(days=-8), rules, NOW).status == ComplianceStatus.EXPIRED

    def test_override_applies_outside_windows(self):
        result = evaluate_document(make_doc(days=100, status="pending_review"), [make_rule()], NOW)
        assert result.status == ComplianceStatus.PENDING_REVIEW

        result = evaluate_document(make_doc(days=100, status="missing"), [make_rule()], NOW)
        assert result.status == ComplianceStatus.MISSING

    def test_expiry_wins_over_override(self):
        result = evaluate_document(make_doc(days=-3, status="pending_review"), [make_rule()], NOW)
        assert result.status == ComplianceStatus.EXPIRED

        result = evaluate_document(make_doc(days=3, status="pending_review"), [make_rule()], NOW)
        assert result.status == ComplianceStatus.EXPIRING

    def test_unknown_override_is_ignored(self):
        result = evaluate_document(make_doc(days=100, status="approved"), [make_rule()], NOW)
        assert result.status == ComplianceStatus.VALID

    def test_doc_type_matched_case_insensitively(self):
        result = evaluate_document(make_doc(doc_type="  license "), [make_rule("License")], NOW)
        assert result.is_required is True
        assert result.doc_type == "License"

    def test_unmatched_document_not_required(self):
        result = evaluate_document(make_doc(doc_type="Insurance", days=10), [make_rule()], NOW)
        assert result.is_required is False
        assert result.doc_type == "Insurance"
        assert result.status == ComplianceStatus.EXPIRING


# ============================================
# ENTITY EVALUATION
# ============================================

class TestEvaluateEntity:

    def test_one_valid_one_missing_scores_fifty(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("Background Check"), make_rule("Driver License")]
        docs = [make_doc("Driver License", days=200, entity_id=entity_id)]

        result = evaluate_entity(entity_id, docs, rules, NOW)

        assert result.compliance_score == 50
        assert result.compliant is False
        assert result.missing_required_docs == ["Background Check"]
        assert result.missing_count == 1

    def test_fully_compliant(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("A"), make_rule("B")]
        docs = [make_doc("A", 200, entity_id=entity_id), make_doc("b", 300, entity_id=entity_id)]

        result = evaluate_entity(entity_id, docs, rules, NOW)

        assert result.compliant is True
        assert result.compliance_score == 100
        assert result.missing_required_docs == []

    def test_expiring_document_lowers_score(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("A"), make_rule("B")]
        docs = [make_doc("A", 200, entity_id=entity_id), make_doc("B", 5, entity_id=entity_id)]

        result = evaluate_entity(entity_id, docs, rules, NOW)

        assert result.expiring_count == 1
        assert result.compliance_score == 50
        assert result.compliant is False

    def test_score_never_decreases_as_documents_become_valid(self):
        entity_id = uuid.uuid4()
        doc_types = ["A", "B", "C", "D"]
        rules = [make_rule(doc_type) for doc_type in doc_types]

        scores = []
        for valid_count in range(len(doc_types) + 1):
            docs = [
                make_doc(doc_type, 200 if i < valid_count else 5, entity_id=entity_id)
                for i, doc_type in enumerate(doc_types)
            ]
            scores.append(evaluate_entity(entity_id, docs, rules, NOW).compliance_score)

        assert scores == sorted(scores)
        assert scores[0] == 0
        assert scores[-1] == 100

    def test_non_required_documents_do_not_count(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("A"), make_rule("Insurance", required=False)]
        docs = [
            make_doc("A", 200, entity_id=entity_id),
            make_doc("Insurance", -30, entity_id=entity_id),
            make_doc("Unknown", -30, entity_id=entity_id),
        ]

        result = evaluate_entity(entity_id, docs, rules, NOW)

        assert result.expired_count == 0
        assert result.compliant is True
        assert len(result.documents) == 3

    def test_no_required_rules_is_compliant(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("Insurance", required=False)]
        result = evaluate_entity(entity_id, [], rules, NOW)

        assert result.compliant is True
        assert result.compliance_score == 100

    def test_score_capped_at_hundred(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("A")]
        docs = [make_doc("A", 200, entity_id=entity_id), make_doc("A", 300, entity_id=entity_id)]

        result = evaluate_entity(entity_id, docs, rules, NOW)

        assert result.compliance_score == 100

    def test_score_rounds_half_up(self):
        entity_id = uuid.uuid4()
        rules = [make_rule("A"), make_rule("B"), make_rule("C")]
        docs = [make_doc("A", 200, entity_id=entity_id), make_doc("B", 200, entity_id=entity_id)]

        assert evaluate_entity(entity_id, docs, rules, NOW).compliance_score == 67

    @pytest.mark.parametrize("days_a,days_b", [(200, 200), (200, -1), (5, 200), (-10, 3)])
    def test_compliant_iff_no_issues_and_full_score(self, days_a, days_b):
        entity_id = uuid.uuid4()
        rules = [make_rule("A"), make_rule("B")]
        docs = [make_doc("A", days_a, entity_id=entity_id), make_doc("B", days_b, entity_id=entity_id)]

        result = evaluate_entity(entity_id, docs, rules, NOW)

        expected = (
            result.missing_count == 0
            and result.expired_count == 0
            and result.compliance_score == 100
        )
        assert result.compliant is expected


# ============================================
# DATABASE-BACKED EVALUATOR
# ============================================

class TestEntityEvaluator:

    @pytest.fixture
    def evaluator(self):
        return EntityEvaluator(RuleProvider(RuleDefaults()))

    def test_uses_default_rules_when_none_stored(self, db_provider, seed, tenant_id, scope, evaluator):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "driver license", days_from_now(365))

        with db_provider.tenant_session(scope) as handle:
            result = evaluator.evaluate(handle, driver_id, NOW)

        assert result.missing_required_docs == ["Background Check"]
        assert result.compliance_score == 50

    def test_deleted_documents_ignored(self, db_provider, seed, tenant_id, scope, evaluator):
        driver_id = seed.driver(tenant_id)
        seed.rule(tenant_id, "License")
        seed.document(tenant_id, driver_id, "License", days_from_now(-10), deleted=True)

        with db_provider.tenant_session(scope) as handle:
            result = evaluator.evaluate(handle, driver_id, NOW)

        assert result.expired_count == 0
        assert result.missing_required_docs == ["License"]

    def test_other_tenant_documents_invisible(self, db_provider, seed, tenant_id, scope, evaluator):
        other_tenant = seed.tenant("Other")
        driver_id = seed.driver(tenant_id)
        seed.rule(tenant_id, "License")
        seed.document(other_tenant, driver_id, "License", days_from_now(200))

        with db_provider.tenant_session(scope) as handle:
            result = evaluator.evaluate(handle, driver_id, NOW)

        assert result.missing_count == 1

    def test_batch_matches_single(self, db_provider, seed, tenant_id, scope, evaluator):
        seed.rule(tenant_id, "License", grace_days=3)
        seed.rule(tenant_id, "Medical Card")
        seed.rule(tenant_id, "Insurance", required=False)

        driver_ids = []
        for index, offsets in enumerate([(200, 40), (-2, 10), (-20, None), (None, None)]):
            driver_id = seed.driver(tenant_id, first_name=f"D{index}")
            license_days, medical_days = offsets
            if license_days is not None:
                seed.document(tenant_id, driver_id, "License", days_from_now(license_days))
            if medical_days is not None:
                seed.document(tenant_id, driver_id, "medical card", days_from_now(medical_days))
            seed.document(tenant_id, driver_id, "Insurance", days_from_now(-1))
            driver_ids.append(driver_id)

        with db_provider.tenant_session(scope) as handle:
            batch = evaluator.evaluate_many(handle, driver_ids, NOW)
            singles = {driver_id: evaluator.evaluate(handle, driver_id, NOW) for driver_id in driver_ids}

        assert list(batch.keys()) == driver_ids
        for driver_id in driver_ids:
            assert batch[driver_id] == singles[driver_id]

    def test_batch_empty_and_duplicate_ids(self, db_provider, seed, tenant_id, scope, evaluator):
        driver_id = seed.driver(tenant_id)

        with db_provider.tenant_session(scope) as handle:
            assert evaluator.evaluate_many(handle, [], NOW) == {}
            result = evaluator.evaluate_many(handle, [driver_id, driver_id], NOW)

        assert list(result.keys()) == [driver_id]

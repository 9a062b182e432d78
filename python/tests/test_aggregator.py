"""
Tests for tenant-level aggregation
"""

import uuid

import pytest

from compliance.aggregator import TenantAggregator, rank_issues, summarize
from compliance.evaluator import EntityEvaluator
from compliance.rules import RuleDefaults, RuleProvider
from compliance.types import ComplianceStatus, EntityEvaluation
from conftest import NOW, days_from_now


def evaluation(missing=(), compliant=False):
    return EntityEvaluation(
        entity_id=uuid.uuid4(),
        compliant=compliant,
        compliance_score=100 if compliant else 0,
        missing_count=len(missing),
        missing_required_docs=list(missing),
    )


class TestRankIssues:

    def test_sorted_by_count_descending(self):
        ranked = rank_issues([evaluation(["A"]), evaluation(["B"]), evaluation(["B"])])
        assert [(i.doc_type, i.count) for i in ranked] == [("B", 2), ("A", 1)]

    def test_ties_keep_first_encountered_order(self):
        ranked = rank_issues([evaluation(["C", "A"]), evaluation(["B"])])
        assert [i.doc_type for i in ranked] == ["C", "A", "B"]

    def test_limit(self):
        evaluations = [evaluation([f"Doc {n}"]) for n in range(15)]
        assert len(rank_issues(evaluations)) == 10
        assert len(rank_issues(evaluations, limit=3)) == 3


class TestSummarize:

    def test_empty_tenant_is_fully_compliant(self):
        summary = summarize(uuid.uuid4(), [])
        assert summary.total_drivers == 0
        assert summary.compliance_percentage == 100
        assert summary.top_issues == []

    def test_percentage_rounds_half_up(self):
        evaluations = [evaluation(compliant=True), evaluation(["A"]), evaluation(compliant=True)]
        summary = summarize(uuid.uuid4(), evaluations)
        assert summary.compliant_drivers == 2
        assert summary.non_compliant_drivers == 1
        assert summary.compliance_percentage == 67

    def test_to_dict_shape(self):
        summary = summarize(uuid.uuid4(), [evaluation(["A"])])
        data = summary.to_dict()
        assert data["top_issues"] == [{"doc_type": "A", "count": 1}]
        assert data["missing_count"] == 1


@pytest.fixture
def aggregator():
    defaults = RuleDefaults(required_doc_types=("License", "Medical Card"))
    return TenantAggregator(EntityEvaluator(RuleProvider(defaults)))


@pytest.fixture
def fleet(seed, tenant_id):
    """Three drivers: one compliant, one with an expired license, one with nothing."""
    adams = seed.driver(tenant_id, "Amy", "Adams", email="amy@fleet.test")
    seed.document(tenant_id, adams, "License", days_from_now(200))
    seed.document(tenant_id, adams, "Medical Card", days_from_now(300))

    baker = seed.driver(tenant_id, "Bob", "Baker")
    seed.document(tenant_id, baker, "License", days_from_now(-3))
    seed.document(tenant_id, baker, "Medical Card", days_from_now(12))

    clark = seed.driver(tenant_id, "Cy", "Clark")

    seed.driver(tenant_id, "Dee", "Deleted", deleted=True)
    return {"adams": adams, "baker": baker, "clark": clark}


class TestTenantAggregator:

    def test_evaluate_tenant(self, db_provider, scope, aggregator, fleet):
        with db_provider.tenant_session(scope) as handle:
            summary = aggregator.evaluate(handle, NOW)

        assert summary.total_drivers == 3
        assert summary.compliant_drivers == 1
        assert summary.compliance_percentage == 33
        assert summary.expired_count == 1
        assert summary.expiring_count == 1
        assert summary.missing_count == 2
        assert [(i.doc_type, i.count) for i in summary.top_issues] == [
            ("License", 2),
            ("Medical Card", 1),
        ]

    def test_driver_limit(self, db_provider, scope, fleet):
        aggregator = TenantAggregator(driver_limit=2)
        with db_provider.tenant_session(scope) as handle:
            summary = aggregator.evaluate(handle, NOW)
        assert summary.total_drivers == 2

    def test_driver_overview_filters(self, db_provider, scope, aggregator, fleet):
        with db_provider.tenant_session(scope) as handle:
            everyone = aggregator.driver_overview(handle, "all", now=NOW)
            compliant = aggregator.driver_overview(handle, "compliant", now=NOW)
            non_compliant = aggregator.driver_overview(handle, "non_compliant", now=NOW)

        assert [item.driver.last_name for item in everyone] == ["Adams", "Baker", "Clark"]
        assert [item.driver.id for item in compliant] == [fleet["adams"]]
        assert [item.driver.id for item in non_compliant] == [fleet["baker"], fleet["clark"]]

    def test_driver_overview_search(self, db_provider, scope, aggregator, fleet):
        with db_provider.tenant_session(scope) as handle:
            by_email = aggregator.driver_overview(handle, search="AMY@", now=NOW)
            by_name = aggregator.driver_overview(handle, search="bak", now=NOW)

        assert [item.driver.id for item in by_email] == [fleet["adams"]]
        assert [item.driver.id for item in by_name] == [fleet["baker"]]

    def test_invalid_status_filter(self, db_provider, scope, aggregator):
        with db_provider.tenant_session(scope) as handle:
            with pytest.raises(ValueError):
                aggregator.driver_overview(handle, "sometimes")

    def test_expiring_documents_sorted_expired_first(self, db_provider, seed, tenant_id, scope, aggregator, fleet):
        seed.document(tenant_id, fleet["clark"], "License", days_from_now(2))
        seed.document(tenant_id, fleet["clark"], "Insurance", days_from_now(-1))

        with db_provider.tenant_session(scope) as handle:
            report = aggregator.expiring_documents(handle, now=NOW)

        statuses = [(d.evaluation.status, d.evaluation.days_until_expiry) for d in report.documents]
        assert statuses == [
            (ComplianceStatus.EXPIRED, -3),
            (ComplianceStatus.EXPIRING, 2),
            (ComplianceStatus.EXPIRING, 12),
        ]
        assert report.expired_count == 1
        assert report.expiring_count == 2
        assert report.total == 3

    def test_expiring_documents_filter_keeps_counts(self, db_provider, scope, aggregator, fleet):
        with db_provider.tenant_session(scope) as handle:
            report = aggregator.expiring_documents(handle, "expiring", now=NOW)

        assert report.total == 1
        assert report.documents[0].driver.id == fleet["baker"]
        assert report.expired_count == 1
        assert report.expiring_count == 1

        data = report.documents[0].to_dict()
        assert data["driver_id"] == str(fleet["baker"])
        assert data["driver"]["last_name"] == "Baker"

    def test_invalid_document_filter(self, db_provider, scope, aggregator):
        with db_provider.tenant_session(scope) as handle:
            with pytest.raises(ValueError):
                aggregator.expiring_documents(handle, "valid")

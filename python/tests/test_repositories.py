"""
Tests for the repository layer against SQLite
"""

import uuid

import pytest
from sqlalchemy.exc import InvalidRequestError

from compliance.types import AlertCandidate, AlertType
from database.connection import TenantScope, TenantScopeError
from database.repositories import (
    AlertRepository,
    DocumentRepository,
    DriverRepository,
    TenantRepository,
)
from conftest import NOW, days_from_now


def candidate(driver_id, doc_id, window=30):
    return AlertCandidate(
        doc_id=doc_id,
        entity_id=driver_id,
        doc_type="License",
        expires_at=NOW,
        alert_type=AlertType.EXPIRING,
        alert_window_days=window,
    )


class TestTenantScope:

    def test_parse(self):
        tenant_id, user_id = uuid.uuid4(), uuid.uuid4()
        scope = TenantScope.parse(f" {tenant_id} ", str(user_id), "192.168.1.10")
        assert scope.tenant_id == tenant_id
        assert scope.actor_id == str(user_id)

    @pytest.mark.parametrize("tenant,user,ip", [
        (None, str(uuid.uuid4()), None),
        (str(uuid.uuid4()), "", None),
        ("abc", str(uuid.uuid4()), None),
        (str(uuid.uuid4()), str(uuid.uuid4()), "10.0.0.1\nforged"),
    ])
    def test_rejects_bad_input(self, tenant, user, ip):
        with pytest.raises(TenantScopeError):
            TenantScope.parse(tenant, user, ip)

    def test_system_scope(self):
        scope = TenantScope.system(uuid.uuid4())
        assert scope.actor_id == "system"


class TestAlertRepository:

    def test_claim_is_insert_if_absent(self, db_provider, scope):
        driver_id, doc_id = uuid.uuid4(), uuid.uuid4()

        with db_provider.tenant_session(scope) as handle:
            repo = AlertRepository(handle)
            first = repo.claim(candidate(driver_id, doc_id), "in_app")
            second = repo.claim(candidate(driver_id, doc_id), "in_app")
            other_window = repo.claim(candidate(driver_id, doc_id, window=15), "in_app")

            assert first is not None
            assert second is None
            assert other_window is not None
            assert repo.exists(candidate(driver_id, doc_id).dedupe_key)

    def test_same_key_allowed_in_other_tenant(self, db_provider, seed, scope):
        driver_id, doc_id = uuid.uuid4(), uuid.uuid4()
        other = TenantScope.system(seed.tenant("Other"))

        with db_provider.tenant_session(scope) as handle:
            mine = AlertRepository(handle).claim(candidate(driver_id, doc_id), "in_app")
        with db_provider.tenant_session(other) as handle:
            theirs = AlertRepository(handle).claim(candidate(driver_id, doc_id), "in_app")

        assert mine is not None
        assert theirs is not None


class TestDriverAndDocumentRepositories:

    def test_active_drivers_only(self, db_provider, seed, tenant_id, scope):
        active = seed.driver(tenant_id, "Ana", "Lopez")
        deleted = seed.driver(tenant_id, "Old", "Driver", deleted=True)

        with db_provider.tenant_session(scope) as handle:
            repo = DriverRepository(handle)
            assert repo.list_active_ids() == [active]
            assert repo.get(deleted) is None
            assert repo.get(active).first_name == "Ana"

    def test_driver_collections_never_lazy_load(self, db_provider, seed, tenant_id, scope):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "License", days_from_now(10))

        with db_provider.tenant_session(scope) as handle:
            driver = DriverRepository(handle).get(driver_id)
            with pytest.raises(InvalidRequestError):
                driver.documents
            with pytest.raises(InvalidRequestError):
                driver.tenant.drivers

    def test_for_drivers_single_query_shape(self, db_provider, seed, tenant_id, scope):
        first = seed.driver(tenant_id)
        second = seed.driver(tenant_id)
        seed.document(tenant_id, first, "License", days_from_now(10))
        seed.document(tenant_id, second, "License", days_from_now(20))
        seed.document(tenant_id, second, "Medical", days_from_now(30), deleted=True)

        with db_provider.tenant_session(scope) as handle:
            repo = DocumentRepository(handle)
            assert repo.for_drivers([]) == []
            documents = repo.for_drivers([first, second, first])

        assert sorted(d.entity_id for d in documents) == sorted([first, second])
        assert all(d.expires_at.tzinfo is not None for d in documents)

    def test_tenants_ordered_by_name(self, db_provider, seed):
        seed.tenant("Zulu")
        seed.tenant("Alpha")

        with db_provider.session_scope() as session:
            names = [name for _, name in TenantRepository(session).list_all()]

        assert names == ["Alpha", "Zulu"]

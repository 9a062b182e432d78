"""
Tests for compliance snapshots
"""

import uuid

import pytest

from compliance.snapshots import SnapshotService, snapshot_all_tenants
from database.repositories import AuditRepository, EntityNotFoundError, SnapshotRepository
from conftest import NOW, days_from_now


class TestSnapshotService:

    def test_snapshot_driver(self, db_provider, seed, tenant_id, scope):
        driver_id = seed.driver(tenant_id)
        seed.document(tenant_id, driver_id, "Driver License", days_from_now(100))

        with db_provider.tenant_session(scope) as handle:
            result = SnapshotService().snapshot_driver(handle, driver_id, NOW)

        assert result.to_dict() == {"created": 1, "total": 1, "driver_id": str(driver_id)}

        with db_provider.tenant_session(scope) as handle:
            snapshots = SnapshotRepository(handle).list_for_driver(driver_id)
            audit = AuditRepository(handle).search(action="snapshot_created")

        assert len(snapshots) == 1
        assert snapshots[0].compliance_score == 50
        assert snapshots[0].compliant is False
        assert snapshots[0].missing_count == 1
        assert snapshots[0].details["missing_required_docs"] == ["Background Check"]
        assert len(audit) == 1

    def test_unknown_driver(self, db_provider, seed, tenant_id, scope):
        deleted = seed.driver(tenant_id, deleted=True)

        with db_provider.tenant_session(scope) as handle:
            with pytest.raises(EntityNotFoundError):
                SnapshotService().snapshot_driver(handle, uuid.uuid4(), NOW)
            with pytest.raises(EntityNotFoundError):
                SnapshotService().snapshot_driver(handle, deleted, NOW)

    def test_snapshot_tenant(self, db_provider, seed, tenant_id, scope):
        compliant = seed.driver(tenant_id, last_name="Able")
        seed.document(tenant_id, compliant, "Driver License", days_from_now(100))
        seed.document(tenant_id, compliant, "Background Check", days_from_now(100))
        seed.driver(tenant_id, last_name="Bare")

        with db_provider.tenant_session(scope) as handle:
            result = SnapshotService().snapshot_tenant(handle, NOW)

        assert result.created == 3

        with db_provider.tenant_session(scope) as handle:
            tenant_rows = SnapshotRepository(handle).list_for_driver(None)
            driver_rows = SnapshotRepository(handle).list_for_driver(compliant)

        assert len(tenant_rows) == 1
        assert tenant_rows[0].compliance_score == 50
        assert tenant_rows[0].compliant is False
        assert tenant_rows[0].missing_count == 2
        assert tenant_rows[0].details["total_drivers"] == 2
        assert driver_rows[0].compliant is True

    def test_empty_tenant_snapshot(self, db_provider, scope):
        with db_provider.tenant_session(scope) as handle:
            result = SnapshotService().snapshot_tenant(handle, NOW)
            rows = SnapshotRepository(handle).list_for_driver(None)

        assert result.created == 1
        assert rows[0].compliance_score == 100
        assert rows[0].compliant is True


class TestSnapshotAllTenants:

    def test_every_tenant_snapshotted(self, db_provider, seed):
        first = seed.tenant("First")
        second = seed.tenant("Second")
        seed.driver(first)

        results = snapshot_all_tenants(db_provider)

        assert [r["tenant_name"] for r in results] == ["First", "Second"]
        assert {r["tenant_id"]: r["created"] for r in results} == {str(first): 2, str(second): 1}
        assert all(r["errors"] == 0 for r in results)

    def test_failing_tenant_isolated(self, db_provider, seed):
        broken_id = seed.tenant("Broken")
        seed.tenant("Healthy")

        class BrokenService(SnapshotService):
            def snapshot_tenant(self, handle, now=None):
                if handle.tenant_id == broken_id:
                    raise RuntimeError("boom")
                return super().snapshot_tenant(handle, now)

        results = snapshot_all_tenants(db_provider, BrokenService())

        assert [(r["tenant_name"], r["errors"]) for r in results] == [("Broken", 1), ("Healthy", 0)]
        assert results[1]["created"] == 1

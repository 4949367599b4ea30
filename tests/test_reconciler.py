"""
Tests del reconciliador: huérfanos, fantasmas y estado del equipo
"""
import logging

import pytest

from ispcore.models.mikrotik import DeviceStatus
from ispcore.models.profile import ProfileType
from ispcore.services.reconciler import Reconciler


@pytest.fixture
def reconciler(db, factory) -> Reconciler:
    return Reconciler(db, factory, delete_orphans=True)


async def test_ghost_is_reported_not_deleted(reconciler, db, router, tenant, device, caplog):
    profile = await db.profiles.insert(tenant.id, device.id, {"name": "P1", "profile_type": ProfileType.PPPOE})
    await db.profiles.set_remote_handle(profile.id, "*77")

    with caplog.at_level(logging.WARNING, logger="reconciler"):
        [report] = await reconciler.sweep()

    assert report.ghosts == [("*77", profile.id)]
    assert [r.local_id for r in caplog.records if getattr(r, "reconcile", None) == "ghost"] == [profile.id]

    row = (await db.profiles.get(tenant.id, profile.id)).value
    assert row.remote_handle == "*77"
    assert "*77" in row.sync_error


async def test_unmanaged_objects_are_never_orphans(reconciler, router, tenant, device):
    router.seed("/ppp/secret", name="soporte", comment="cuenta manual")
    router.seed("/ppp/secret", name="viejo")

    for _ in range(2):
        [report] = await reconciler.sweep()
        assert report.orphans == []
    assert len(router.objects["/ppp/secret"]) == 2


async def test_orphan_survives_one_sweep(reconciler, router, tenant, device):
    handle = router.seed("/ppp/secret", name="juan", comment="ISP-AUTO: service#40 Juan")

    [first] = await reconciler.sweep()
    assert first.orphans == [handle]
    assert router.get("/ppp/secret", handle) is not None

    [second] = await reconciler.sweep()
    assert second.deleted == [handle]
    assert router.get("/ppp/secret", handle) is None


async def test_orphan_adopted_between_sweeps_is_kept(reconciler, db, router, tenant, device):
    handle = router.seed("/ppp/profile", name="P5", comment="ISP-AUTO: profile#5")
    [first] = await reconciler.sweep()
    assert first.orphans == [handle]

    # El create en curso hizo commit
    profile = await db.profiles.insert(tenant.id, device.id, {"name": "P5", "profile_type": ProfileType.PPPOE})
    await db.profiles.set_remote_handle(profile.id, handle)

    [second] = await reconciler.sweep()
    assert second.orphans == []
    assert second.deleted == []
    assert router.get("/ppp/profile", handle) is not None


async def test_report_only_mode(db, factory, router, tenant, device):
    reconciler = Reconciler(db, factory, delete_orphans=False)
    handle = router.seed("/queue/simple", name="empresa", comment="ISP-AUTO: service#9")

    for _ in range(3):
        [report] = await reconciler.sweep()
        assert report.orphans == [handle]
        assert report.deleted == []
    assert router.get("/queue/simple", handle) is not None


async def test_comment_of_other_entity_is_ignored(reconciler, router, tenant, device):
    router.seed("/ppp/secret", name="raro", comment="ISP-AUTO: profile#3")
    [report] = await reconciler.sweep()
    assert report.orphans == []


async def test_device_status(reconciler, db, router, tenant, device):
    [ok] = await reconciler.sweep()
    assert ok.error is None
    row = (await db.mikrotiks.get(tenant.id, device.id)).value
    assert row.status == DeviceStatus.ONLINE
    assert row.last_sync is not None

    router.unreachable.add(device.host)
    [failed] = await reconciler.sweep()
    assert "10.0.0.1" in failed.error
    row = (await db.mikrotiks.get(tenant.id, device.id)).value
    assert row.status == DeviceStatus.ERROR


async def test_inactive_devices_are_skipped(reconciler, db, router, tenant, device):
    other = await db.mikrotiks.create(tenant.id, name="Nodo Sur", host="10.0.0.2", username="admin", password="x")
    reports = await reconciler.sweep()
    assert [r.device_id for r in reports] == [device.id]
    assert other.id != device.id
    assert all(t.credentials.host == "10.0.0.1" for t in router.transports)

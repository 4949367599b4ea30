"""
Tests del coordinador de aprovisionamiento (BD + MikroTik simulado)
"""
import json
import logging

import pytest

from ispcore.cancellation import CancelToken
from ispcore.errors import (
    ConflictError, ConnectError, DeviceError, DeviceProtocolError, ErrorKind, InvalidInputError,
    NoActiveDeviceError, NotProvisionedError, OperationCancelled,
)
from ispcore.models.customer import ServiceStatus
from ispcore.models.profile import ProfileType
from ispcore.repositories.profile import ProfileRepository
from ispcore.schemas.customer import ServiceCreate, ServiceUpdate
from ispcore.schemas.profile import ProfileCreate, ProfileUpdate, StaticIPFields
from ispcore.services.reconciler import Reconciler


def p1() -> ProfileCreate:
    return ProfileCreate(name="P1", rate_limit_up_kbps=2000, rate_limit_down_kbps=10000, only_one=True)


async def make_customer(db, tenant, username="juan"):
    return await db.customers.create(tenant.id, {"name": "Juan Pérez", "username": username, "password": "pw123"})


def published(fake_redis):
    return [json.loads(message) for _, message in fake_redis.published]


# ================================================================
# PERFILES
# ================================================================

async def test_happy_create(coordinator, db, router, tenant, device, fake_redis):
    router.next_ids = ["*A1"]

    profile = await coordinator.create_profile(tenant.id, p1())

    assert profile.remote_handle == "*A1"
    rows = await db.profiles.list(tenant.id)
    assert [(r.id, r.remote_handle) for r in rows] == [(profile.id, "*A1")]

    args = router.args_of("/ppp/profile/add")[0]
    assert args["name"] == "P1"
    assert args["rate-limit"] == "2000k/10000k"
    assert args["only-one"] == "yes"
    assert args["comment"] == f"ISP-AUTO: profile#{profile.id}"
    assert router.get("/ppp/profile", "*A1") is not None

    # La sesión se libera al terminar
    assert router.open_transports == []
    assert published(fake_redis)[-1]["type"] == "profile_created"


async def test_device_trap_on_create_leaves_no_row(coordinator, db, router, tenant, device):
    router.traps["/ppp/profile/add"] = "name already in use"

    with pytest.raises(DeviceError) as exc:
        await coordinator.create_profile(tenant.id, p1())

    assert exc.value.kind == ErrorKind.DEVICE_ERROR
    assert "name already in use" in str(exc.value)
    assert await db.profiles.list(tenant.id) == []
    assert router.open_transports == []


async def test_missing_ret_and_after_is_protocol_error(coordinator, db, router, tenant, device):
    router.done_key = None
    with pytest.raises(DeviceProtocolError) as exc:
        await coordinator.create_profile(tenant.id, p1())
    assert exc.value.kind == ErrorKind.DEVICE_PROTOCOL
    assert await db.profiles.list(tenant.id) == []


async def test_crash_after_device_add_leaves_orphan_for_reconciler(
    coordinator, db, router, factory, tenant, device, monkeypatch, caplog
):
    router.next_ids = ["*B2"]

    async def failing_set_remote_handle(self, profile_id, handle, cancel=None):
        raise ConflictError("duplicate key value violates unique constraint")

    monkeypatch.setattr(ProfileRepository, "set_remote_handle", failing_set_remote_handle)

    with caplog.at_level(logging.WARNING, logger="provisioning"):
        with pytest.raises(ConflictError):
            await coordinator.create_profile(tenant.id, p1())

    assert await db.profiles.list(tenant.id) == []
    assert router.get("/ppp/profile", "*B2") is not None
    orphan_logs = [r for r in caplog.records if getattr(r, "reconcile", None) == "orphan"]
    assert orphan_logs and orphan_logs[0].remote_handle == "*B2"

    reconciler = Reconciler(db, factory, delete_orphans=True)
    first = await reconciler.sweep()
    assert first[0].orphans == ["*B2"]
    assert first[0].deleted == []

    second = await reconciler.sweep()
    assert second[0].deleted == ["*B2"]
    assert router.get("/ppp/profile", "*B2") is None


async def test_update_without_handle_is_not_provisioned(coordinator, db, router, tenant, device):
    profile = await db.profiles.insert(tenant.id, device.id, {"name": "P0", "profile_type": ProfileType.PPPOE})

    with pytest.raises(NotProvisionedError) as exc:
        await coordinator.update_profile(tenant.id, profile.id, ProfileUpdate(idle_timeout=300))

    assert exc.value.kind == ErrorKind.NOT_PROVISIONED
    assert router.calls == []
    assert router.transports == []


async def test_delete_with_missing_remote_succeeds(coordinator, db, router, tenant, device):
    profile = await db.profiles.insert(tenant.id, device.id, {"name": "P9", "profile_type": ProfileType.PPPOE})
    await db.profiles.set_remote_handle(profile.id, "*Z9")

    await coordinator.delete_profile(tenant.id, profile.id)

    assert router.args_of("/ppp/profile/remove") == [{".id": "*Z9"}]
    assert not await db.profiles.get(tenant.id, profile.id)


async def test_delete_removes_device_object(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    await coordinator.delete_profile(tenant.id, profile.id)

    assert router.get("/ppp/profile", profile.remote_handle) is None
    assert not await db.profiles.get(tenant.id, profile.id)


async def test_update_is_idempotent_and_sends_only_changes(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    change = ProfileUpdate(name="P1", rate_limit_up_kbps=3000, rate_limit_down_kbps=12000)

    first = await coordinator.update_profile(tenant.id, profile.id, change)
    state_after_first = dict(router.get("/ppp/profile", profile.remote_handle))
    second = await coordinator.update_profile(tenant.id, profile.id, change)

    assert router.get("/ppp/profile", profile.remote_handle) == state_after_first
    assert first.rate_limit_up_kbps == second.rate_limit_up_kbps == 3000
    sets = router.args_of("/ppp/profile/set")
    assert sets[0] == sets[1] == {".id": profile.remote_handle, "rate-limit": "3000k/12000k"}


async def test_update_rename_sends_name(coordinator, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    await coordinator.update_profile(tenant.id, profile.id, ProfileUpdate(name="P1-plus"))
    assert router.args_of("/ppp/profile/set") == [{".id": profile.remote_handle, "name": "P1-plus"}]


async def test_static_ip_profile_is_local_only(coordinator, router, tenant, device):
    data = ProfileCreate(
        name="Fija 20M", profile_type=ProfileType.STATIC_IP,
        rate_limit_up_kbps=5000, rate_limit_down_kbps=20000,
        static_ip=StaticIPFields(gateway="10.20.0.1"),
    )
    profile = await coordinator.create_profile(tenant.id, data)
    assert profile.remote_handle == ""
    assert profile.static_ip.gateway == "10.20.0.1"
    assert router.calls == []


async def test_static_ip_profile_requires_side_fields(coordinator, tenant, device):
    with pytest.raises(InvalidInputError):
        await coordinator.create_profile(tenant.id, ProfileCreate(name="Fija", profile_type=ProfileType.STATIC_IP))


async def test_no_active_device(coordinator, db, tenant):
    with pytest.raises(NoActiveDeviceError) as exc:
        await coordinator.create_profile(tenant.id, p1())
    assert exc.value.kind == ErrorKind.NO_ACTIVE_DEVICE
    assert await db.profiles.list(tenant.id) == []


async def test_unreachable_device_rolls_back(coordinator, db, router, tenant, device):
    router.unreachable.add(device.host)
    with pytest.raises(ConnectError) as exc:
        await coordinator.create_profile(tenant.id, p1())

    assert exc.value.kind == ErrorKind.TRANSPORT
    components = [a["component"] for a in exc.value.annotations]
    assert "resolver" in components and components[-1] == "coordinator"
    assert await db.profiles.list(tenant.id) == []


async def test_cancelled_before_start(coordinator, db, tenant, device):
    cancel = CancelToken()
    cancel.cancel()
    with pytest.raises(OperationCancelled) as exc:
        await coordinator.create_profile(tenant.id, p1(), cancel)
    assert exc.value.kind == ErrorKind.CANCELLED


# ================================================================
# SERVICIOS
# ================================================================

async def test_create_pppoe_service(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    customer = await make_customer(db, tenant)

    service = await coordinator.create_service(
        tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id, ip_address="10.50.0.9")
    )

    assert service.remote_handle
    assert service.mikrotik_id == device.id
    args = router.args_of("/ppp/secret/add")[0]
    assert args == {
        "name": "juan",
        "password": "pw123",
        "service": "pppoe",
        "profile": "P1",
        "remote-address": "10.50.0.9",
        "comment": f"ISP-AUTO: service#{service.id} Juan Pérez",
        "disabled": "no",
    }


async def test_service_needs_provisioned_profile(coordinator, db, router, tenant, device):
    profile = await db.profiles.insert(tenant.id, device.id, {"name": "P0", "profile_type": ProfileType.PPPOE})
    customer = await make_customer(db, tenant)

    with pytest.raises(NotProvisionedError):
        await coordinator.create_service(tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id))
    assert await db.services.list(tenant.id) == []
    assert router.calls == []


async def test_suspend_and_activate(coordinator, db, router, tenant, device, fake_redis):
    profile = await coordinator.create_profile(tenant.id, p1())
    customer = await make_customer(db, tenant)
    service = await coordinator.create_service(
        tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id)
    )

    suspended = await coordinator.suspend_service(tenant.id, service.id)
    assert suspended.status == ServiceStatus.SUSPENDED
    assert router.get("/ppp/secret", service.remote_handle)["disabled"] == "yes"

    active = await coordinator.activate_service(tenant.id, service.id)
    assert active.status == ServiceStatus.ACTIVE
    assert router.get("/ppp/secret", service.remote_handle)["disabled"] == "no"
    assert published(fake_redis)[-1] == {
        "type": "service_updated", "tenant_id": tenant.id, "service_id": service.id,
        "status": "active", "remote_handle": service.remote_handle,
    }


async def test_change_profile_keeps_handle(coordinator, db, router, tenant, device):
    p_basic = await coordinator.create_profile(tenant.id, p1())
    p_plus = await coordinator.create_profile(tenant.id, ProfileCreate(name="P2"))
    customer = await make_customer(db, tenant)
    service = await coordinator.create_service(
        tenant.id, ServiceCreate(customer_id=customer.id, profile_id=p_basic.id)
    )

    updated = await coordinator.update_service(tenant.id, service.id, ServiceUpdate(profile_id=p_plus.id))

    assert updated.profile_id == p_plus.id
    assert updated.remote_handle == service.remote_handle
    assert router.args_of("/ppp/secret/set") == [{".id": service.remote_handle, "profile": "P2"}]


async def test_update_failure_keeps_handle(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    customer = await make_customer(db, tenant)
    service = await coordinator.create_service(
        tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id)
    )
    router.traps["/ppp/secret/set"] = "input does not match any value of profile"

    with pytest.raises(DeviceError):
        await coordinator.suspend_service(tenant.id, service.id)

    current = (await db.services.get(tenant.id, service.id)).value
    assert current.remote_handle == service.remote_handle
    assert current.status == ServiceStatus.ACTIVE
    assert "input does not match" in current.sync_error


async def test_delete_suspended_service_removes_secret(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    customer = await make_customer(db, tenant)
    service = await coordinator.create_service(
        tenant.id,
        ServiceCreate(customer_id=customer.id, profile_id=profile.id, status=ServiceStatus.SUSPENDED),
    )
    assert router.get("/ppp/secret", service.remote_handle)["disabled"] == "yes"

    await coordinator.delete_service(tenant.id, service.id)

    assert router.get("/ppp/secret", service.remote_handle) is None
    assert not await db.services.get(tenant.id, service.id)


async def test_delete_profile_in_use_is_refused_before_touching_device(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, p1())
    customer = await make_customer(db, tenant)
    service = await coordinator.create_service(
        tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id)
    )

    with pytest.raises(ConflictError) as exc:
        await coordinator.delete_profile(tenant.id, profile.id)
    assert exc.value.kind == ErrorKind.CONFLICT
    assert "/ppp/profile/remove" not in router.commands()
    assert router.get("/ppp/profile", profile.remote_handle) is not None
    current = (await db.profiles.get(tenant.id, profile.id)).value
    assert current.remote_handle == profile.remote_handle
    assert current.sync_error is None

    # Al liberar el perfil, se puede borrar y el secret sigue su propio camino
    await coordinator.delete_service(tenant.id, service.id)
    assert router.get("/ppp/secret", service.remote_handle) is None
    await coordinator.delete_profile(tenant.id, profile.id)
    assert router.get("/ppp/profile", profile.remote_handle) is None
    assert not await db.profiles.get(tenant.id, profile.id)


async def test_static_ip_service_uses_simple_queue(coordinator, db, router, tenant, device):
    profile = await coordinator.create_profile(tenant.id, ProfileCreate(
        name="Fija 20M", profile_type=ProfileType.STATIC_IP,
        rate_limit_up_kbps=5000, rate_limit_down_kbps=20000,
        static_ip=StaticIPFields(gateway="10.20.0.1"),
    ))
    customer = await make_customer(db, tenant, username="empresa")

    with pytest.raises(InvalidInputError):
        await coordinator.create_service(tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id))

    service = await coordinator.create_service(
        tenant.id, ServiceCreate(customer_id=customer.id, profile_id=profile.id, ip_address="10.20.0.50")
    )
    queue = router.get("/queue/simple", service.remote_handle)
    assert queue["target"] == "10.20.0.50/32"
    assert queue["max-limit"] == "5000k/20000k"

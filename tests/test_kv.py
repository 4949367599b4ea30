"""
Tests del almacén clave/valor y del publicador de eventos
"""
import json

import redis.asyncio as redis

from ispcore.services.kv import AuthSessionCache, EventPublisher


async def test_keys_carry_prefix(kv, fake_redis):
    await kv.set("estado", {"ok": True}, ttl=60)
    assert fake_redis.data == {"test:estado": '{"ok": true}'}
    assert fake_redis.ttls["test:estado"] == 60
    assert await kv.get("estado") == {"ok": True}
    assert await kv.get("otra") is None


async def test_auth_sessions(kv, fake_redis):
    cache = AuthSessionCache(kv, ttl=3600)
    await cache.save("tok-1", user_id=5, tenant_id=1, extra={"role": "admin"})
    await cache.save("tok-2", user_id=5, tenant_id=1)

    session = await cache.get("tok-1")
    assert session["user_id"] == 5
    assert session["role"] == "admin"
    assert fake_redis.ttls["test:auth:session:tok-1"] == 3600

    await cache.revoke("tok-1")
    assert await cache.get("tok-1") is None
    assert await kv.members("auth:user:5") == {"tok-2"}

    assert await cache.revoke_user(5) == 1
    assert await cache.get("tok-2") is None
    assert await kv.members("auth:user:5") == set()


async def test_publisher_sends_json(publisher, fake_redis):
    assert await publisher.notify("profile_created", tenant_id=1, profile_id=3) is True
    channel, message = fake_redis.published[-1]
    assert channel == "mikrotik:events"
    assert json.loads(message) == {"type": "profile_created", "tenant_id": 1, "profile_id": 3}


async def test_publisher_failure_is_not_raised(kv, fake_redis, monkeypatch, caplog):
    async def broken(channel, message):
        raise redis.ConnectionError("sin conexión")

    monkeypatch.setattr(fake_redis, "publish", broken)
    assert await EventPublisher(kv).notify("service_suspended", service_id=9) is False
    assert "service_suspended" in caplog.text

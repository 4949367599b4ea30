import asyncio
from types import SimpleNamespace


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Espera a que predicate() sea verdadero (lo hacen threads lectores)."""
    async def poll():
        while not predicate():
            await asyncio.sleep(interval)
    await asyncio.wait_for(poll(), timeout)


def device_stub(**overrides):
    values = dict(
        id=1, tenant_id=1, name="Router Principal", host="10.0.0.1", port=8728,
        username="admin", password="secret", timeout=5, keepalive=False, use_tls=False,
    )
    values.update(overrides)
    return SimpleNamespace(**values)

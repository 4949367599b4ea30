"""
ISPCore - Almacén clave/valor sobre Redis
No está en el camino de aprovisionamiento: guarda metadatos de sesión y
tokens, y publica eventos en el canal "mikrotik:events".

El cliente se crea al iniciar la app y se pasa a los constructores
(no hay singleton de módulo).
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis

from ispcore.cancellation import CancelToken, guarded

logger = logging.getLogger("kv_store")


class KeyValueStore:
    """
    get/set con TTL (valores JSON), conjuntos de strings, delete y publish.
    Todas las keys llevan el prefijo del proyecto: "<prefix>:<key>".
    """

    def __init__(self, client: redis.Redis, prefix: str = "ispcore"):
        self._client = client
        self._prefix = f"{prefix}:" if prefix else ""

    @classmethod
    def from_url(cls, url: str, prefix: str = "ispcore") -> "KeyValueStore":
        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info(f"Redis configurado: {url.split('@')[-1]}")
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def ping(self, cancel: Optional[CancelToken] = None) -> bool:
        return bool(await guarded(self._client.ping(), cancel))

    async def get(self, key: str, cancel: Optional[CancelToken] = None) -> Optional[Any]:
        data = await guarded(self._client.get(self._key(key)), cancel)
        if data is None:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return data

    async def set(self, key: str, value: Any, ttl: Optional[int] = None,
                  cancel: Optional[CancelToken] = None) -> None:
        serialized = json.dumps(value, default=str)
        await guarded(self._client.set(self._key(key), serialized, ex=ttl), cancel)

    async def delete(self, *keys: str, cancel: Optional[CancelToken] = None) -> int:
        if not keys:
            return 0
        return await guarded(self._client.delete(*(self._key(k) for k in keys)), cancel)

    async def add_to_set(self, key: str, *members: str, cancel: Optional[CancelToken] = None) -> int:
        return await guarded(self._client.sadd(self._key(key), *members), cancel)

    async def remove_from_set(self, key: str, *members: str, cancel: Optional[CancelToken] = None) -> int:
        return await guarded(self._client.srem(self._key(key), *members), cancel)

    async def members(self, key: str, cancel: Optional[CancelToken] = None) -> Set[str]:
        return set(await guarded(self._client.smembers(self._key(key)), cancel))

    async def publish(self, channel: str, message: Any, cancel: Optional[CancelToken] = None) -> int:
        """El canal no lleva prefijo: lo comparten otros servicios."""
        serialized = message if isinstance(message, str) else json.dumps(message, default=str)
        return await guarded(self._client.publish(channel, serialized), cancel)

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Redis desconectado")


# ================================================================
# SESIONES DE AUTENTICACIÓN
# ================================================================

class AuthSessionCache:
    """
    Metadatos de sesión por token, con TTL, y el conjunto de tokens de
    cada usuario para poder revocarlos todos juntos.

    Keys:
        auth:session:<token>      → {"user_id", "tenant_id", ...}
        auth:user:<user_id>       → {token, ...}
    """

    def __init__(self, store: KeyValueStore, ttl: int = 86400):
        self.store = store
        self.ttl = ttl

    async def save(self, token: str, user_id: int, tenant_id: int, extra: Optional[Dict[str, Any]] = None,
                   cancel: Optional[CancelToken] = None) -> None:
        payload = {
            "user_id": user_id,
            "tenant_id": tenant_id,
            "created_at": datetime.now(timezone.utc).isoformat(),
            **(extra or {}),
        }
        await self.store.set(f"auth:session:{token}", payload, ttl=self.ttl, cancel=cancel)
        await self.store.add_to_set(f"auth:user:{user_id}", token, cancel=cancel)

    async def get(self, token: str, cancel: Optional[CancelToken] = None) -> Optional[Dict[str, Any]]:
        return await self.store.get(f"auth:session:{token}", cancel=cancel)

    async def revoke(self, token: str, cancel: Optional[CancelToken] = None) -> None:
        payload = await self.get(token, cancel)
        await self.store.delete(f"auth:session:{token}", cancel=cancel)
        if payload and "user_id" in payload:
            await self.store.remove_from_set(f"auth:user:{payload['user_id']}", token, cancel=cancel)

    async def revoke_user(self, user_id: int, cancel: Optional[CancelToken] = None) -> int:
        """Revoca todas las sesiones del usuario. Regresa cuántas había."""
        tokens = await self.store.members(f"auth:user:{user_id}", cancel=cancel)
        if tokens:
            await self.store.delete(*(f"auth:session:{t}" for t in tokens), cancel=cancel)
        await self.store.delete(f"auth:user:{user_id}", cancel=cancel)
        return len(tokens)


# ================================================================
# PUBLICACIÓN DE EVENTOS
# ================================================================

class EventPublisher:
    """Publica eventos JSON en el canal compartido (por defecto "mikrotik:events")."""

    def __init__(self, store: KeyValueStore, channel: str = "mikrotik:events"):
        self.store = store
        self.channel = channel

    async def notify(self, event_type: str, cancel: Optional[CancelToken] = None, **data: Any) -> bool:
        """
        Publica un evento. Un fallo de Redis no deshace la operación que ya
        se confirmó: se registra y se regresa False.
        """
        message = {"type": event_type, **data}
        try:
            await self.store.publish(self.channel, message, cancel=cancel)
            return True
        except redis.RedisError as e:
            logger.warning(f"No se pudo publicar {event_type} en {self.channel}: {e}")
            return False

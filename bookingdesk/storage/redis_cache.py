from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

_POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _ttl_seconds(expires_at: datetime) -> int:
    """Seconds until ``expires_at``, clamped to at least 1 for Redis."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _encode_challenge(factor_id: str, expires_at: datetime) -> str:
    return json.dumps({"factor_id": factor_id, "expires_at": expires_at.isoformat()})


def _decode_challenge(raw: Optional[str]) -> Optional[Tuple[str, datetime]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
        expires_at = datetime.fromisoformat(data["expires_at"])
    except (json.JSONDecodeError, TypeError, KeyError, ValueError):
        return None
    return data.get("factor_id"), expires_at


class RedisCache:
    """Thin Redis wrapper for console sessions and MFA challenges."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = _ttl_seconds(expires_at)
        pipe = self.client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        await pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return await self.client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(f"auth:session:{session_id}")

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = await self.client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        await pipe.execute()
        return len(session_ids)

    async def set_mfa_challenge(
        self, challenge_id: str, factor_id: str, expires_at: datetime
    ) -> None:
        await self.client.set(
            f"mfa:challenge:{challenge_id}",
            _encode_challenge(factor_id, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_mfa_challenge(
        self, challenge_id: str
    ) -> Optional[Tuple[str, datetime]]:
        """Atomically consume a challenge so a verify call can never replay it.

        Returns:
            Tuple of (factor_id, expires_at) or None if unknown/consumed
        """
        key = f"mfa:challenge:{challenge_id}"
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            cached = await self.client.eval(_POP_SCRIPT, 1, key)
        return _decode_challenge(cached)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same awaitable methods as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def cache_session(
        self, session_id: str, user_id: str, expires_at: datetime
    ) -> None:
        ttl = _ttl_seconds(expires_at)
        pipe = self._sync_client.pipeline()
        pipe.set(f"auth:session:{session_id}", user_id, ex=ttl)
        pipe.sadd(f"auth:user_sessions:{user_id}", session_id)
        pipe.expire(f"auth:user_sessions:{user_id}", ttl)
        pipe.execute()

    async def get_session_user(self, session_id: str) -> Optional[str]:
        return self._sync_client.get(f"auth:session:{session_id}")

    async def revoke_session(self, session_id: str) -> None:
        self._sync_client.delete(f"auth:session:{session_id}")

    async def revoke_user_sessions(self, user_id: str) -> int:
        user_sessions_key = f"auth:user_sessions:{user_id}"
        session_ids = self._sync_client.smembers(user_sessions_key)
        if not session_ids:
            return 0
        pipe = self._sync_client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:session:{session_id}")
        pipe.delete(user_sessions_key)
        pipe.execute()
        return len(session_ids)

    async def set_mfa_challenge(
        self, challenge_id: str, factor_id: str, expires_at: datetime
    ) -> None:
        self._sync_client.set(
            f"mfa:challenge:{challenge_id}",
            _encode_challenge(factor_id, expires_at),
            ex=_ttl_seconds(expires_at),
        )

    async def pop_mfa_challenge(
        self, challenge_id: str
    ) -> Optional[Tuple[str, datetime]]:
        key = f"mfa:challenge:{challenge_id}"
        try:
            cached = self._sync_client.getdel(key)
        except AttributeError:
            cached = self._sync_client.eval(_POP_SCRIPT, 1, key)
        return _decode_challenge(cached)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from gatehouse.logging import get_logger
from gatehouse.storage.errors import SessionBackendError
from gatehouse.storage.models import Session

logger = get_logger(__name__)


class RedisSessionStore:
    """Server-side sessions in Redis, one key per session with a matching TTL."""

    KEY_PREFIX = "gatehouse:session:"

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least one."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        # a short-lived sync client keeps the async one off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, session_id: str) -> str:
        return f"{self.KEY_PREFIX}{session_id}"

    async def save_session(self, session: Session) -> None:
        payload = json.dumps(
            {
                "user_id": session.user_id,
                "created_at": session.created_at.isoformat(),
                "expires_at": session.expires_at.isoformat(),
            }
        )
        try:
            await self.client.set(
                self._key(session.id),
                payload,
                ex=self._ttl_seconds(session.expires_at),
            )
        except RedisError as exc:
            logger.error("redis_session_save_failed", error=str(exc))
            raise SessionBackendError("failed to save session") from exc

    async def get_session(self, session_id: str) -> Optional[Session]:
        try:
            raw = await self.client.get(self._key(session_id))
        except RedisError as exc:
            logger.error("redis_session_read_failed", error=str(exc))
            raise SessionBackendError("failed to read session") from exc
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return Session(
                id=session_id,
                user_id=data["user_id"],
                created_at=datetime.fromisoformat(data["created_at"]),
                expires_at=datetime.fromisoformat(data["expires_at"]),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("redis_session_corrupt", error=str(exc))
            return None

    async def delete_session(self, session_id: str) -> None:
        try:
            await self.client.delete(self._key(session_id))
        except RedisError as exc:
            logger.error("redis_session_delete_failed", error=str(exc))
            raise SessionBackendError("failed to delete session") from exc

    async def close(self) -> None:
        await self.client.aclose()

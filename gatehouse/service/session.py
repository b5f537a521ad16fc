from __future__ import annotations

import secrets
from typing import Optional, Protocol

from gatehouse.logging import get_logger
from gatehouse.storage.errors import SessionBackendError
from gatehouse.storage.models import Session

logger = get_logger(__name__)


class SessionBackend(Protocol):
    async def save_session(self, session: Session) -> None: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def delete_session(self, session_id: str) -> None: ...


class SessionHandle:
    """The caller's session slot for one request.

    The HTTP layer builds a handle from the incoming cookie, passes it into
    :class:`~gatehouse.service.auth.AuthService`, and reads ``session_id``
    back afterwards to set or clear the cookie.
    """

    def __init__(
        self,
        backend: SessionBackend,
        session_id: Optional[str] = None,
        *,
        ttl_minutes: int = 60 * 24 * 30,
    ) -> None:
        self.backend = backend
        self.session_id = session_id
        self.ttl_minutes = ttl_minutes
        self.session: Optional[Session] = None

    @property
    def is_established(self) -> bool:
        return self.session is not None

    async def load(self) -> Optional[Session]:
        if not self.session_id:
            return None
        self.session = await self.backend.get_session(self.session_id)
        return self.session

    async def establish(self, subject_id: str) -> Session:
        """Bind a fresh session to ``subject_id``.

        Any session already carried by the handle is replaced, so a login
        never reuses an id the client supplied. Raises
        :class:`SessionBackendError` when the backend cannot store it.
        """
        previous = self.session_id
        session = Session.new(
            subject_id, self.ttl_minutes, session_id=secrets.token_urlsafe(32)
        )
        await self.backend.save_session(session)
        if previous and previous != session.id:
            try:
                await self.backend.delete_session(previous)
            except SessionBackendError as exc:
                logger.warning("session_rotation_cleanup_failed", error=str(exc))
        self.session_id = session.id
        self.session = session
        logger.info("session_established", user_id=subject_id)
        return session

    async def destroy(self) -> None:
        if not self.session_id:
            return
        await self.backend.delete_session(self.session_id)
        logger.info("session_destroyed")
        self.session_id = None
        self.session = None

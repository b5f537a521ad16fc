from __future__ import annotations

from typing import Any, Optional

from gatehouse.logging import get_logger
from gatehouse.service.identity import CredentialStore
from gatehouse.service.outcome import ErrorKind, Outcome
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.models import User

logger = get_logger(__name__)


class UserService:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def get_profile(self, user_id: str) -> Outcome[User]:
        user = self.store.find_user_by_id(user_id)
        if not user:
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                "User not found. Check the data you entered.",
            )
        return Outcome.success(user)

    def update_profile(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        is_two_factor_enabled: Optional[bool] = None,
    ) -> Outcome[User]:
        """Apply the provided fields; ``None`` leaves a field unchanged."""
        fields: dict[str, Any] = {}
        if name is not None:
            fields["display_name"] = name
        if email is not None:
            fields["email"] = email
        if is_two_factor_enabled is not None:
            fields["is_two_factor_enabled"] = is_two_factor_enabled
        try:
            user = self.store.update_user(user_id, **fields)
        except ConstraintViolation:
            return Outcome.fail(
                ErrorKind.CONFLICT,
                "This email is already used by another account.",
                {"field": "email"},
            )
        if not user:
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                "User not found. Check the data you entered.",
            )
        logger.info("user_profile_updated", user_id=user_id, fields=sorted(fields))
        return Outcome.success(user)

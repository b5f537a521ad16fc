from __future__ import annotations

from typing import Any, List, Optional, Protocol

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.oauth import ExternalProfile
from gatehouse.service.outcome import ErrorKind, Outcome
from gatehouse.storage.errors import ConstraintViolation, PersistenceError
from gatehouse.storage.models import AuthMethod, LinkedAccount, User, UserRole

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def find_user_by_email(self, email: str) -> Optional[User]: ...

    def find_user_by_id(self, user_id: str) -> Optional[User]: ...

    def create_user(
        self,
        *,
        email: str,
        display_name: str,
        password_hash: Optional[str] = None,
        picture: Optional[str] = None,
        auth_method: AuthMethod = AuthMethod.CREDENTIALS,
        role: UserRole = UserRole.REGULAR,
        is_verified: bool = False,
        is_two_factor_enabled: bool = False,
    ) -> User: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_linked_account(
        self,
        *,
        user_id: str,
        provider: str,
        external_id: str,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        expires_at: Optional[int] = None,
    ) -> LinkedAccount: ...

    def find_linked_account(
        self, provider: str, external_id: str
    ) -> Optional[LinkedAccount]: ...

    def list_linked_accounts(self, user_id: str) -> List[LinkedAccount]: ...


class IdentityReconciler:
    """Map an external profile onto exactly one local user.

    With ``link_by_email`` off, a first-time OAuth login whose email already
    belongs to a local account fails with ``CONFLICT`` instead of silently
    merging. Turning it on links the provider identity to that account.
    """

    def __init__(self, store: CredentialStore, *, link_by_email: bool = False) -> None:
        self.store = store
        self.link_by_email = link_by_email

    def _owner_of_link(self, profile: ExternalProfile) -> Optional[User]:
        link = self.store.find_linked_account(profile.provider.value, profile.id)
        if not link:
            return None
        return self.store.find_user_by_id(link.user_id)

    def _link(self, user: User, profile: ExternalProfile) -> None:
        self.store.create_linked_account(
            user_id=user.id,
            provider=profile.provider.value,
            external_id=profile.id,
            access_token=profile.access_token,
            refresh_token=profile.refresh_token,
            expires_at=profile.expires_at,
        )

    def resolve_or_create(self, profile: ExternalProfile) -> Outcome[User]:
        provider = profile.provider.value
        owner = self._owner_of_link(profile)
        if owner:
            logger.info("oauth_identity_resolved", provider=provider, user_id=owner.id)
            return Outcome.success(owner)

        try:
            existing = self.store.find_user_by_email(profile.email)
            if existing:
                if not self.link_by_email:
                    logger.warning(
                        "oauth_email_conflict",
                        provider=provider,
                        email=redact_email(profile.email),
                    )
                    return Outcome.fail(
                        ErrorKind.CONFLICT,
                        "An account with this email already exists. "
                        "Sign in with your password to continue.",
                        {"provider": provider},
                    )
                if any(
                    a.provider == provider
                    for a in self.store.list_linked_accounts(existing.id)
                ):
                    # one identity per provider per user
                    logger.warning(
                        "oauth_provider_already_linked",
                        provider=provider,
                        user_id=existing.id,
                    )
                    return Outcome.fail(
                        ErrorKind.CONFLICT,
                        "This account is already linked to another "
                        f"{provider} identity.",
                        {"provider": provider},
                    )
                self._link(existing, profile)
                logger.info(
                    "oauth_identity_linked_by_email",
                    provider=provider,
                    user_id=existing.id,
                )
                return Outcome.success(existing)

            user = self.store.create_user(
                email=profile.email,
                display_name=profile.name or profile.email.split("@", 1)[0],
                password_hash=None,
                picture=profile.picture,
                auth_method=AuthMethod(provider.upper()),
                is_verified=True,
                is_two_factor_enabled=False,
            )
            try:
                self._link(user, profile)
            except (ConstraintViolation, PersistenceError):
                # never leave a user behind without its identity
                self.store.delete_user(user.id)
                logger.warning(
                    "oauth_identity_link_failed", provider=provider, user_id=user.id
                )
                raise
        except ConstraintViolation as exc:
            # a concurrent callback for the same identity won the insert
            owner = self._owner_of_link(profile)
            if owner:
                logger.info(
                    "oauth_identity_race_resolved", provider=provider, user_id=owner.id
                )
                return Outcome.success(owner)
            logger.warning(
                "oauth_identity_conflict",
                provider=provider,
                error=exc.message,
            )
            return Outcome.fail(
                ErrorKind.CONFLICT,
                "An account with this email already exists.",
                {"provider": provider},
            )

        logger.info("oauth_identity_created", provider=provider, user_id=user.id)
        return Outcome.success(user)

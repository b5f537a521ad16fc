from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.email import NotificationDispatcher
from gatehouse.service.identity import CredentialStore, IdentityReconciler
from gatehouse.service.oauth import ProviderRegistry
from gatehouse.service.outcome import ErrorKind, Outcome
from gatehouse.service.session import SessionHandle
from gatehouse.service.tokens import TokenService
from gatehouse.storage.errors import SessionBackendError
from gatehouse.storage.models import AuthMethod, TokenPurpose, User

logger = get_logger(__name__)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    PENDING_VERIFICATION = "pending_verification"
    PENDING_TWO_FACTOR = "pending_two_factor"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class AuthResult:
    state: AuthState
    user: Optional[User] = None
    message: Optional[str] = None


class AuthService:
    """Register, login, OAuth, verification and recovery flows.

    Every public method returns an :class:`Outcome`. A session is written
    only when the state machine reaches ``AUTHENTICATED``; pending states
    leave the handle untouched.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        notifications: NotificationDispatcher,
        providers: ProviderRegistry,
        identities: IdentityReconciler,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.notifications = notifications
        self.providers = providers
        self.identities = identities
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _verify_password(self, user: User, password: str) -> bool:
        if not user.password_hash:
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            return False

    async def _establish(
        self, session: SessionHandle, user: User
    ) -> Outcome[AuthResult]:
        try:
            await session.establish(user.id)
        except SessionBackendError as exc:
            logger.error("session_establish_failed", user_id=user.id, error=str(exc))
            return Outcome.fail(
                ErrorKind.INTERNAL,
                "Could not save the session. Check the session configuration.",
            )
        return Outcome.success(AuthResult(state=AuthState.AUTHENTICATED, user=user))

    async def _send_verification(self, email: str) -> None:
        token = self.tokens.issue(email, TokenPurpose.VERIFICATION)
        await self.notifications.send_verification(token.email, token.token)

    async def register(
        self, email: str, password: str, name: str
    ) -> Outcome[AuthResult]:
        if self.store.find_user_by_email(email):
            logger.warning("register_conflict", email=redact_email(email))
            return Outcome.fail(
                ErrorKind.CONFLICT,
                "Registration failed. A user with this email already exists. "
                "Use a different email or sign in.",
            )
        user = self.store.create_user(
            email=email,
            display_name=name,
            password_hash=self.hash_password(password),
            auth_method=AuthMethod.CREDENTIALS,
            is_verified=False,
        )
        logger.info("user_registered", user_id=user.id)
        await self._send_verification(user.email)
        return Outcome.success(
            AuthResult(
                state=AuthState.PENDING_VERIFICATION,
                message=(
                    "You have registered successfully. "
                    "Please confirm your email; a message was sent to your address."
                ),
            )
        )

    async def login(
        self,
        email: str,
        password: str,
        code: Optional[str] = None,
        *,
        session: SessionHandle,
    ) -> Outcome[AuthResult]:
        user = self.store.find_user_by_email(email)
        if not user or not user.password_hash:
            logger.warning("login_unknown_user", email=redact_email(email))
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                "User not found. Please check the data you entered.",
            )
        if not self._verify_password(user, password):
            return Outcome.fail(
                ErrorKind.UNAUTHORIZED,
                "Wrong password. Try again or reset your password if you forgot it.",
            )
        if not user.is_verified:
            await self._send_verification(user.email)
            logger.info("login_pending_verification", user_id=user.id)
            return Outcome.fail(
                ErrorKind.UNAUTHORIZED,
                "Your email is not confirmed. Please check your mail and confirm your address.",
            )
        if user.is_two_factor_enabled:
            if not code:
                token = self.tokens.issue(user.email, TokenPurpose.TWO_FACTOR)
                await self.notifications.send_two_factor_code(token.email, token.token)
                logger.info("login_pending_two_factor", user_id=user.id)
                return Outcome.success(
                    AuthResult(
                        state=AuthState.PENDING_TWO_FACTOR,
                        message=(
                            "Check your mail. A two-factor authentication code is required."
                        ),
                    )
                )
            checked = self.tokens.consume_by_email_and_code(user.email, code)
            if not checked.ok:
                return Outcome.from_failure(checked.failure)
        outcome = await self._establish(session, user)
        if outcome.ok:
            logger.info("login_succeeded", user_id=user.id)
        return outcome

    def oauth_authorization_url(self, provider: str) -> Outcome[str]:
        resolved = self.providers.resolve(provider)
        if not resolved.ok:
            return Outcome.from_failure(resolved.failure)
        return Outcome.success(resolved.value.build_authorization_url())

    async def oauth_callback(
        self, provider: str, code: str, *, session: SessionHandle
    ) -> Outcome[AuthResult]:
        resolved = self.providers.resolve(provider)
        if not resolved.ok:
            return Outcome.from_failure(resolved.failure)
        exchanged = await resolved.value.exchange_code_for_profile(code)
        if not exchanged.ok:
            return Outcome.from_failure(exchanged.failure)
        reconciled = self.identities.resolve_or_create(exchanged.value)
        if not reconciled.ok:
            return Outcome.from_failure(reconciled.failure)
        return await self._establish(session, reconciled.value)

    async def confirm_email(
        self, token: str, *, session: SessionHandle
    ) -> Outcome[AuthResult]:
        consumed = self.tokens.consume(token, TokenPurpose.VERIFICATION)
        if not consumed.ok:
            return Outcome.from_failure(consumed.failure)
        user = self.store.find_user_by_email(consumed.value)
        if not user:
            logger.warning("email_verification_missing_user")
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                "User with this email was not found. Make sure you entered the correct email.",
            )
        verified = self.store.update_user(user.id, is_verified=True)
        if not verified:
            return Outcome.fail(ErrorKind.NOT_FOUND, "User no longer exists.")
        logger.info("email_verified", user_id=verified.id)
        return await self._establish(session, verified)

    async def request_password_reset(self, email: str) -> Outcome[bool]:
        user = self.store.find_user_by_email(email)
        if not user:
            logger.warning("password_reset_unknown_user", email=redact_email(email))
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                "User not found. Check the email you entered and try again.",
            )
        token = self.tokens.issue(user.email, TokenPurpose.PASSWORD_RESET)
        await self.notifications.send_password_reset(token.email, token.token)
        logger.info("password_reset_requested", user_id=user.id)
        return Outcome.success(True)

    async def complete_password_reset(
        self, token: str, new_password: str
    ) -> Outcome[bool]:
        consumed = self.tokens.consume(token, TokenPurpose.PASSWORD_RESET)
        if not consumed.ok:
            return Outcome.from_failure(consumed.failure)
        user = self.store.find_user_by_email(consumed.value)
        if not user:
            logger.warning("password_reset_user_missing")
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                "User not found. Check the email you entered and try again.",
            )
        updated = self.store.update_user(
            user.id, password_hash=self.hash_password(new_password)
        )
        if not updated:
            return Outcome.fail(ErrorKind.NOT_FOUND, "User no longer exists.")
        logger.info("password_reset_completed", user_id=user.id)
        return Outcome.success(True)

    async def logout(self, session: SessionHandle) -> Outcome[None]:
        try:
            await session.destroy()
        except SessionBackendError as exc:
            logger.error("session_destroy_failed", error=str(exc))
            return Outcome.fail(
                ErrorKind.INTERNAL,
                "Could not end the session. Check the session configuration.",
            )
        return Outcome.success(None)

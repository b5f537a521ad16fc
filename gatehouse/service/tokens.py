from __future__ import annotations

import hmac
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from gatehouse.logging import get_logger, redact_email
from gatehouse.service.outcome import ErrorKind, Outcome
from gatehouse.storage.models import EphemeralToken, TokenPurpose, utcnow

logger = get_logger(__name__)

TOKEN_TTLS: dict[TokenPurpose, timedelta] = {
    TokenPurpose.VERIFICATION: timedelta(hours=1),
    TokenPurpose.PASSWORD_RESET: timedelta(hours=1),
    TokenPurpose.TWO_FACTOR: timedelta(minutes=5),
}

# Two-factor codes are drawn uniformly from [100000, 999999]
_CODE_MIN = 100_000
_CODE_MAX = 999_999

_NOT_FOUND_MESSAGES = {
    TokenPurpose.VERIFICATION: "Verification token not found. Make sure the link is correct.",
    TokenPurpose.PASSWORD_RESET: "Reset token not found. Check the link or request a new one.",
    TokenPurpose.TWO_FACTOR: "No two-factor code was requested for this email.",
}

_EXPIRED_MESSAGES = {
    TokenPurpose.VERIFICATION: "Verification token has expired. Request a new confirmation email.",
    TokenPurpose.PASSWORD_RESET: "Reset token has expired. Request a new password reset.",
    TokenPurpose.TWO_FACTOR: "Two-factor code has expired. Sign in again to get a new code.",
}


class TokenRepository(Protocol):
    def replace_token(self, token: EphemeralToken) -> EphemeralToken: ...

    def find_token(
        self, token: str, purpose: TokenPurpose
    ) -> Optional[EphemeralToken]: ...

    def find_token_by_email(
        self, email: str, purpose: TokenPurpose
    ) -> Optional[EphemeralToken]: ...

    def delete_token(self, token_id: str) -> bool: ...


class TokenService:
    """Single-use, time-boxed tokens for verification, reset and 2FA flows.

    At most one live token exists per ``(email, purpose)``: ``issue`` goes
    through the repository's atomic ``replace_token``. Expiry is evaluated
    lazily when a token is consumed; expired rows are left in place.
    """

    def __init__(
        self,
        repository: TokenRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self._clock = clock

    def _generate_secret(self, purpose: TokenPurpose) -> str:
        if purpose is TokenPurpose.TWO_FACTOR:
            return str(_CODE_MIN + secrets.randbelow(_CODE_MAX - _CODE_MIN + 1))
        return str(uuid.uuid4())

    def issue(self, email: str, purpose: TokenPurpose) -> EphemeralToken:
        normalized = email.strip().lower()
        token = EphemeralToken(
            id=str(uuid.uuid4()),
            email=normalized,
            token=self._generate_secret(purpose),
            purpose=purpose,
            expires_at=self._clock() + TOKEN_TTLS[purpose],
        )
        stored = self.repository.replace_token(token)
        logger.info(
            "ephemeral_token_issued",
            token_purpose=purpose.value,
            email=redact_email(normalized),
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    def consume(self, token: str, purpose: TokenPurpose) -> Outcome[str]:
        """Consume ``token`` and return the email it was issued for."""
        existing = self.repository.find_token(token, purpose)
        if not existing:
            logger.warning("ephemeral_token_missing", token_purpose=purpose.value)
            return Outcome.fail(ErrorKind.NOT_FOUND, _NOT_FOUND_MESSAGES[purpose])
        if existing.is_expired(self._clock()):
            logger.warning(
                "ephemeral_token_expired",
                token_purpose=purpose.value,
                email=redact_email(existing.email),
            )
            return Outcome.fail(ErrorKind.EXPIRED, _EXPIRED_MESSAGES[purpose])
        if not self.repository.delete_token(existing.id):
            # a concurrent consumer got there first
            return Outcome.fail(ErrorKind.NOT_FOUND, _NOT_FOUND_MESSAGES[purpose])
        logger.info(
            "ephemeral_token_consumed",
            token_purpose=purpose.value,
            email=redact_email(existing.email),
        )
        return Outcome.success(existing.email)

    def consume_by_email_and_code(
        self,
        email: str,
        code: str,
        purpose: TokenPurpose = TokenPurpose.TWO_FACTOR,
    ) -> Outcome[None]:
        """Check a code against the live token for ``email``.

        Checks run existence, then value match, then expiry, so the reported
        error is deterministic for a given stored token.
        """
        normalized = email.strip().lower()
        existing = self.repository.find_token_by_email(normalized, purpose)
        if not existing:
            logger.warning(
                "ephemeral_token_missing",
                token_purpose=purpose.value,
                email=redact_email(normalized),
            )
            return Outcome.fail(ErrorKind.NOT_FOUND, _NOT_FOUND_MESSAGES[purpose])
        if not hmac.compare_digest(existing.token.encode(), code.strip().encode()):
            logger.warning(
                "ephemeral_token_code_mismatch",
                token_purpose=purpose.value,
                email=redact_email(normalized),
            )
            return Outcome.fail(
                ErrorKind.INVALID_CODE,
                "Invalid two-factor code. Check the code and try again.",
            )
        if existing.is_expired(self._clock()):
            logger.warning(
                "ephemeral_token_expired",
                token_purpose=purpose.value,
                email=redact_email(normalized),
            )
            return Outcome.fail(ErrorKind.EXPIRED, _EXPIRED_MESSAGES[purpose])
        if not self.repository.delete_token(existing.id):
            return Outcome.fail(ErrorKind.NOT_FOUND, _NOT_FOUND_MESSAGES[purpose])
        logger.info(
            "ephemeral_token_consumed",
            token_purpose=purpose.value,
            email=redact_email(normalized),
        )
        return Outcome.success(None)

"""State machine tests for AuthService against the in-memory store."""

from datetime import timedelta

import pytest

from gatehouse.service.auth import AuthState
from gatehouse.service.outcome import ErrorKind
from gatehouse.service.session import SessionHandle
from gatehouse.service.tokens import TOKEN_TTLS
from gatehouse.storage.models import AuthMethod, TokenPurpose

EMAIL = "alice@example.com"
PASSWORD = "correct-horse"


async def _register_verified(auth, store, *, two_factor=False):
    await auth.register(EMAIL, PASSWORD, "Alice")
    user = store.find_user_by_email(EMAIL)
    return store.update_user(
        user.id, is_verified=True, is_two_factor_enabled=two_factor
    )


class TestRegister:
    async def test_register_creates_unverified_user_and_sends_token(
        self, auth, store, notifications, session
    ):
        outcome = await auth.register(EMAIL, PASSWORD, "Alice")

        assert outcome.ok
        assert outcome.value.state is AuthState.PENDING_VERIFICATION
        assert outcome.value.user is None
        user = store.find_user_by_email(EMAIL)
        assert user.is_verified is False
        assert user.auth_method is AuthMethod.CREDENTIALS
        assert user.password_hash and user.password_hash != PASSWORD
        kind, email, token = notifications.last("verification")
        assert email == EMAIL
        assert store.find_token(token, TokenPurpose.VERIFICATION) is not None
        assert session.session_id is None

    async def test_duplicate_email_is_conflict(self, auth, notifications):
        await auth.register(EMAIL, PASSWORD, "Alice")
        outcome = await auth.register(EMAIL.upper(), PASSWORD, "Alice again")

        assert outcome.kind is ErrorKind.CONFLICT
        assert len(notifications.sent) == 1


class TestLogin:
    async def test_verified_user_without_two_factor_gets_session(
        self, auth, store, session, session_backend
    ):
        user = await _register_verified(auth, store)

        outcome = await auth.login(EMAIL, PASSWORD, session=session)

        assert outcome.ok
        assert outcome.value.state is AuthState.AUTHENTICATED
        assert outcome.value.user.id == user.id
        stored = await session_backend.get_session(session.session_id)
        assert stored.user_id == user.id

    async def test_unknown_user_is_not_found(self, auth, session):
        outcome = await auth.login("nobody@example.com", PASSWORD, session=session)
        assert outcome.kind is ErrorKind.NOT_FOUND
        assert session.session_id is None

    async def test_oauth_only_user_cannot_use_password(self, auth, store, session):
        store.create_user(
            email=EMAIL, display_name="Alice", auth_method=AuthMethod.GOOGLE, is_verified=True
        )
        outcome = await auth.login(EMAIL, PASSWORD, session=session)
        assert outcome.kind is ErrorKind.NOT_FOUND

    async def test_wrong_password_is_unauthorized(self, auth, store, session):
        await _register_verified(auth, store)
        outcome = await auth.login(EMAIL, "wrong-password", session=session)
        assert outcome.kind is ErrorKind.UNAUTHORIZED
        assert session.session_id is None

    async def test_unverified_user_gets_fresh_verification_token(
        self, auth, store, notifications, session
    ):
        await auth.register(EMAIL, PASSWORD, "Alice")
        first_token = notifications.last("verification")[2]

        outcome = await auth.login(EMAIL, PASSWORD, session=session)

        assert outcome.kind is ErrorKind.UNAUTHORIZED
        assert session.session_id is None
        live = store.list_tokens(email=EMAIL, purpose=TokenPurpose.VERIFICATION)
        assert len(live) == 1
        assert live[0].token != first_token
        assert notifications.last("verification")[2] == live[0].token

    async def test_two_factor_without_code_is_pending(
        self, auth, store, notifications, session, clock
    ):
        await _register_verified(auth, store, two_factor=True)

        outcome = await auth.login(EMAIL, PASSWORD, session=session)

        assert outcome.ok
        assert outcome.value.state is AuthState.PENDING_TWO_FACTOR
        assert outcome.value.message
        assert session.session_id is None
        token = store.find_token_by_email(EMAIL, TokenPurpose.TWO_FACTOR)
        assert len(token.token) == 6 and token.token.isdigit()
        assert token.expires_at - clock() == timedelta(minutes=5)
        assert notifications.last("two_factor")[2] == token.token

    async def test_two_factor_wrong_code_is_invalid(self, auth, store, session):
        await _register_verified(auth, store, two_factor=True)
        await auth.login(EMAIL, PASSWORD, session=session)
        token = store.find_token_by_email(EMAIL, TokenPurpose.TWO_FACTOR)
        wrong = "100000" if token.token != "100000" else "100001"

        outcome = await auth.login(EMAIL, PASSWORD, wrong, session=session)

        assert outcome.kind is ErrorKind.INVALID_CODE
        assert session.session_id is None

    async def test_two_factor_correct_code_establishes_session(
        self, auth, store, session
    ):
        await _register_verified(auth, store, two_factor=True)
        await auth.login(EMAIL, PASSWORD, session=session)
        code = store.find_token_by_email(EMAIL, TokenPurpose.TWO_FACTOR).token

        outcome = await auth.login(EMAIL, PASSWORD, code, session=session)

        assert outcome.value.state is AuthState.AUTHENTICATED
        assert session.session_id is not None
        assert store.find_token_by_email(EMAIL, TokenPurpose.TWO_FACTOR) is None

    async def test_two_factor_expired_code(self, auth, store, session, clock):
        await _register_verified(auth, store, two_factor=True)
        await auth.login(EMAIL, PASSWORD, session=session)
        code = store.find_token_by_email(EMAIL, TokenPurpose.TWO_FACTOR).token
        clock.advance(minutes=6)

        outcome = await auth.login(EMAIL, PASSWORD, code, session=session)
        assert outcome.kind is ErrorKind.EXPIRED

    async def test_two_factor_code_without_request_is_not_found(
        self, auth, store, session
    ):
        await _register_verified(auth, store, two_factor=True)
        outcome = await auth.login(EMAIL, PASSWORD, "123456", session=session)
        assert outcome.kind is ErrorKind.NOT_FOUND

    async def test_session_backend_failure_is_internal(
        self, auth, store, failing_session
    ):
        await _register_verified(auth, store)
        outcome = await auth.login(EMAIL, PASSWORD, session=failing_session)
        assert outcome.kind is ErrorKind.INTERNAL

    async def test_login_rotates_existing_session(
        self, auth, store, session, session_backend
    ):
        await _register_verified(auth, store)
        await auth.login(EMAIL, PASSWORD, session=session)
        first_id = session.session_id

        await auth.login(EMAIL, PASSWORD, session=session)

        assert session.session_id != first_id
        assert await session_backend.get_session(first_id) is None


class TestOAuth:
    def test_authorization_url_for_configured_provider(self, auth):
        outcome = auth.oauth_authorization_url("google")
        assert outcome.ok
        assert outcome.value.startswith("https://accounts.google.com/o/oauth2/v2/auth?")

    def test_authorization_url_for_unknown_provider(self, auth):
        assert auth.oauth_authorization_url("github").kind is ErrorKind.NOT_FOUND

    async def test_callback_creates_user_and_session(self, auth, store, session):
        outcome = await auth.oauth_callback("google", "code-1", session=session)

        assert outcome.value.state is AuthState.AUTHENTICATED
        user = outcome.value.user
        assert user.email == "jane.doe@example.com"
        assert user.is_verified is True
        assert session.session.user_id == user.id
        assert len(store.linked_accounts) == 1

    async def test_repeat_callback_reuses_user(self, auth, store, session_backend):
        first = await auth.oauth_callback(
            "yandex", "code-1", session=SessionHandle(session_backend)
        )
        second = await auth.oauth_callback(
            "yandex", "code-2", session=SessionHandle(session_backend)
        )

        assert first.value.user.id == second.value.user.id
        assert len(store.users) == 1
        assert len(store.linked_accounts) == 1

    async def test_callback_bypasses_two_factor(self, auth, store, session):
        first = await auth.oauth_callback("google", "code-1", session=session)
        store.update_user(first.value.user.id, is_two_factor_enabled=True)

        again = await auth.oauth_callback("google", "code-2", session=session)

        assert again.value.state is AuthState.AUTHENTICATED
        assert store.list_tokens(purpose=TokenPurpose.TWO_FACTOR) == []

    async def test_callback_exchange_failure(self, auth, oauth_upstream, session):
        oauth_upstream.token_status = 401
        outcome = await auth.oauth_callback("google", "bad", session=session)
        assert outcome.kind is ErrorKind.EXCHANGE_FAILED
        assert session.session_id is None

    async def test_callback_unknown_provider(self, auth, session):
        outcome = await auth.oauth_callback("facebook", "code", session=session)
        assert outcome.kind is ErrorKind.NOT_FOUND

    async def test_callback_email_collision_is_conflict(self, auth, store, session):
        store.create_user(
            email="jane.doe@example.com", display_name="Jane", password_hash="x"
        )
        outcome = await auth.oauth_callback("google", "code", session=session)
        assert outcome.kind is ErrorKind.CONFLICT
        assert session.session_id is None


class TestEmailConfirmation:
    async def test_confirm_verifies_and_logs_in(
        self, auth, store, notifications, session
    ):
        await auth.register(EMAIL, PASSWORD, "Alice")
        token = notifications.last("verification")[2]

        outcome = await auth.confirm_email(token, session=session)

        assert outcome.value.state is AuthState.AUTHENTICATED
        assert outcome.value.user.is_verified is True
        assert store.find_user_by_email(EMAIL).is_verified is True
        assert session.session_id is not None

    async def test_confirm_twice_is_not_found(self, auth, notifications, session):
        await auth.register(EMAIL, PASSWORD, "Alice")
        token = notifications.last("verification")[2]
        await auth.confirm_email(token, session=session)

        outcome = await auth.confirm_email(token, session=session)
        assert outcome.kind is ErrorKind.NOT_FOUND

    async def test_confirm_expired_token(self, auth, notifications, session, clock):
        await auth.register(EMAIL, PASSWORD, "Alice")
        token = notifications.last("verification")[2]
        clock.advance(hours=2)

        outcome = await auth.confirm_email(token, session=session)
        assert outcome.kind is ErrorKind.EXPIRED
        assert session.session_id is None

    async def test_confirm_token_for_missing_user(self, auth, tokens, session):
        token = tokens.issue("ghost@example.com", TokenPurpose.VERIFICATION)
        outcome = await auth.confirm_email(token.token, session=session)
        assert outcome.kind is ErrorKind.NOT_FOUND


class TestPasswordReset:
    async def test_request_issues_token(self, auth, store, notifications):
        await _register_verified(auth, store)

        outcome = await auth.request_password_reset(EMAIL)

        assert outcome.value is True
        token = store.find_token_by_email(EMAIL, TokenPurpose.PASSWORD_RESET)
        assert notifications.last("password_reset") == ("password_reset", EMAIL, token.token)

    async def test_request_for_unknown_email(self, auth):
        outcome = await auth.request_password_reset("nobody@example.com")
        assert outcome.kind is ErrorKind.NOT_FOUND

    async def test_complete_changes_hash_and_deletes_token(
        self, auth, store, notifications, session
    ):
        user = await _register_verified(auth, store)
        await auth.request_password_reset(EMAIL)
        token = notifications.last("password_reset")[2]

        outcome = await auth.complete_password_reset(token, "new-secret-pw")

        assert outcome.value is True
        updated = store.find_user_by_id(user.id)
        assert updated.password_hash != user.password_hash
        assert store.list_tokens(purpose=TokenPurpose.PASSWORD_RESET) == []
        assert session.session_id is None
        assert (await auth.login(EMAIL, "new-secret-pw", session=session)).ok
        assert (
            await auth.login(EMAIL, PASSWORD, session=session)
        ).kind is ErrorKind.UNAUTHORIZED

    async def test_complete_with_expired_token_keeps_password(
        self, auth, store, notifications, clock
    ):
        user = await _register_verified(auth, store)
        await auth.request_password_reset(EMAIL)
        token = notifications.last("password_reset")[2]
        clock.advance(hours=1, minutes=1)

        outcome = await auth.complete_password_reset(token, "new-secret-pw")

        assert outcome.kind is ErrorKind.EXPIRED
        assert store.find_user_by_id(user.id).password_hash == user.password_hash

    async def test_complete_when_user_vanishes_before_update(
        self, auth, store, notifications
    ):
        await _register_verified(auth, store)
        await auth.request_password_reset(EMAIL)
        token = notifications.last("password_reset")[2]
        # the row is deleted between the lookup and the write
        store.update_user = lambda user_id, **fields: None

        outcome = await auth.complete_password_reset(token, "new-secret-pw")

        assert outcome.kind is ErrorKind.NOT_FOUND


class TestLogout:
    async def test_logout_destroys_session(self, auth, store, session, session_backend):
        await _register_verified(auth, store)
        await auth.login(EMAIL, PASSWORD, session=session)
        session_id = session.session_id

        outcome = await auth.logout(session)

        assert outcome.ok
        assert session.session_id is None
        assert await session_backend.get_session(session_id) is None

    async def test_logout_backend_failure_is_internal(self, auth, failing_session):
        failing_session.session_id = "existing"
        outcome = await auth.logout(failing_session)
        assert outcome.kind is ErrorKind.INTERNAL


@pytest.mark.parametrize("purpose", list(TokenPurpose))
def test_every_purpose_has_a_ttl(purpose):
    assert TOKEN_TTLS[purpose] > timedelta(0)

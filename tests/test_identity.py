import pytest

from gatehouse.service.identity import IdentityReconciler
from gatehouse.service.oauth import ExternalProfile, ProviderName
from gatehouse.service.outcome import ErrorKind
from gatehouse.storage.errors import ConstraintViolation, PersistenceError
from gatehouse.storage.models import AuthMethod


@pytest.fixture
def profile() -> ExternalProfile:
    return ExternalProfile(
        id="google-uid-1",
        email="jane@example.com",
        name="Jane",
        picture="https://img.example.com/jane.png",
        provider=ProviderName.GOOGLE,
        access_token="access",
        refresh_token="refresh",
        expires_at=1_700_003_600,
    )


def test_first_login_creates_user_and_link(store, profile):
    outcome = IdentityReconciler(store).resolve_or_create(profile)

    assert outcome.ok
    user = outcome.value
    assert user.email == "jane@example.com"
    assert user.display_name == "Jane"
    assert user.picture == "https://img.example.com/jane.png"
    assert user.password_hash is None
    assert user.auth_method is AuthMethod.GOOGLE
    assert user.is_verified is True
    assert user.is_two_factor_enabled is False

    links = store.list_linked_accounts(user.id)
    assert len(links) == 1
    assert links[0].provider == "google"
    assert links[0].external_id == "google-uid-1"
    assert links[0].access_token == "access"
    assert links[0].refresh_token == "refresh"
    assert links[0].expires_at == 1_700_003_600


def test_repeat_login_returns_same_user_without_new_rows(store, profile):
    reconciler = IdentityReconciler(store)
    first = reconciler.resolve_or_create(profile).value
    second = reconciler.resolve_or_create(profile).value

    assert second.id == first.id
    assert len(store.users) == 1
    assert len(store.linked_accounts) == 1


def test_existing_email_without_link_is_conflict_by_default(store, profile):
    store.create_user(email="jane@example.com", display_name="Jane", password_hash="x")

    outcome = IdentityReconciler(store).resolve_or_create(profile)

    assert outcome.kind is ErrorKind.CONFLICT
    assert len(store.users) == 1
    assert store.linked_accounts == {}


def test_link_by_email_attaches_provider_to_existing_user(store, profile):
    existing = store.create_user(
        email="jane@example.com", display_name="Jane", password_hash="x"
    )

    outcome = IdentityReconciler(store, link_by_email=True).resolve_or_create(profile)

    assert outcome.value.id == existing.id
    assert outcome.value.auth_method is AuthMethod.CREDENTIALS
    assert [a.external_id for a in store.list_linked_accounts(existing.id)] == [
        "google-uid-1"
    ]


def test_link_by_email_refuses_second_identity_for_same_provider(store, profile):
    reconciler = IdentityReconciler(store, link_by_email=True)
    first = reconciler.resolve_or_create(profile).value
    other_google = ExternalProfile(
        id="google-uid-2",
        email="jane@example.com",
        name="Jane",
        picture=None,
        provider=ProviderName.GOOGLE,
    )

    outcome = reconciler.resolve_or_create(other_google)

    assert outcome.kind is ErrorKind.CONFLICT
    assert outcome.failure.detail == {"provider": "google"}
    links = store.list_linked_accounts(first.id)
    assert [a.external_id for a in links] == ["google-uid-1"]


def test_same_email_from_second_provider_respects_policy(store, profile):
    IdentityReconciler(store).resolve_or_create(profile)
    yandex_profile = ExternalProfile(
        id="yandex-uid-1",
        email="jane@example.com",
        name="Jane",
        picture=None,
        provider=ProviderName.YANDEX,
    )

    assert (
        IdentityReconciler(store).resolve_or_create(yandex_profile).kind
        is ErrorKind.CONFLICT
    )
    linked = IdentityReconciler(store, link_by_email=True).resolve_or_create(
        yandex_profile
    )
    assert linked.ok
    assert {a.provider for a in store.list_linked_accounts(linked.value.id)} == {
        "google",
        "yandex",
    }


def test_lost_creation_race_resolves_to_winner(store, profile):
    reconciler = IdentityReconciler(store)
    original_find_by_email = store.find_user_by_email
    calls = {"count": 0}

    def racing_find_by_email(email):
        # the competing callback commits its user and link after our link lookup
        if calls["count"] == 0:
            calls["count"] += 1
            winner = store.create_user(
                email=profile.email,
                display_name="Jane",
                auth_method=AuthMethod.GOOGLE,
                is_verified=True,
            )
            store.create_linked_account(
                user_id=winner.id, provider="google", external_id=profile.id
            )
            return None
        return original_find_by_email(email)

    store.find_user_by_email = racing_find_by_email

    outcome = reconciler.resolve_or_create(profile)

    assert outcome.ok
    assert len(store.users) == 1
    assert len(store.linked_accounts) == 1
    assert outcome.value.id == next(iter(store.users))


def test_store_rejects_duplicate_link(store, profile):
    user = IdentityReconciler(store).resolve_or_create(profile).value
    with pytest.raises(ConstraintViolation):
        store.create_linked_account(
            user_id=user.id, provider="google", external_id=profile.id
        )


def test_failed_link_removes_the_new_user(store, profile):
    original_create_link = store.create_linked_account
    calls = {"count": 0}

    def flaky_create_link(**kwargs):
        if calls["count"] == 0:
            calls["count"] += 1
            raise PersistenceError("database unavailable")
        return original_create_link(**kwargs)

    store.create_linked_account = flaky_create_link
    reconciler = IdentityReconciler(store)

    with pytest.raises(PersistenceError):
        reconciler.resolve_or_create(profile)
    assert store.users == {}
    assert store.find_user_by_email(profile.email) is None

    retry = reconciler.resolve_or_create(profile)

    assert retry.ok
    assert len(store.users) == 1
    assert [a.external_id for a in store.list_linked_accounts(retry.value.id)] == [
        "google-uid-1"
    ]

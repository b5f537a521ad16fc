import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Empty REDIS_URL keeps sessions in the in-process fallback
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("APPLICATION_URL", "http://api.test")
os.environ.setdefault("ALLOWED_ORIGIN", "http://app.test")
os.environ.setdefault("GOOGLE_CLIENT_ID", "google-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "google-client-secret")
os.environ.setdefault("YANDEX_CLIENT_ID", "yandex-client-id")
os.environ.setdefault("YANDEX_CLIENT_SECRET", "yandex-client-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from gatehouse.config import Settings  # noqa: E402
from gatehouse.service.auth import AuthService  # noqa: E402
from gatehouse.service.identity import IdentityReconciler  # noqa: E402
from gatehouse.service.oauth import ProviderRegistry  # noqa: E402
from gatehouse.service.runtime import reset_runtime_for_tests  # noqa: E402
from gatehouse.service.session import SessionHandle  # noqa: E402
from gatehouse.service.tokens import TokenService  # noqa: E402
from gatehouse.storage.errors import SessionBackendError  # noqa: E402
from gatehouse.storage.memory import MemorySessionStore, MemoryStore  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class RecordingDispatcher:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send_verification(self, email: str, token: str) -> None:
        self.sent.append(("verification", email, token))

    async def send_password_reset(self, email: str, token: str) -> None:
        self.sent.append(("password_reset", email, token))

    async def send_two_factor_code(self, email: str, token: str) -> None:
        self.sent.append(("two_factor", email, token))

    def last(self, kind: str) -> tuple[str, str, str]:
        return [entry for entry in self.sent if entry[0] == kind][-1]


class FailingSessionBackend(MemorySessionStore):
    async def save_session(self, session) -> None:
        raise SessionBackendError("session store offline")

    async def delete_session(self, session_id: str) -> None:
        raise SessionBackendError("session store offline")


GOOGLE_PROFILE = {
    "sub": "google-uid-1",
    "email": "Jane.Doe@example.com",
    "name": "Jane Doe",
    "picture": "https://lh3.googleusercontent.com/jane",
}

YANDEX_PROFILE = {
    "id": "yandex-uid-1",
    "login": "ivan",
    "default_email": "ivan@yandex.ru",
    "emails": ["ivan@yandex.ru", "ivan@ya.ru"],
    "display_name": "Ivan",
    "default_avatar_id": "12345/abcdef",
    "is_avatar_empty": False,
}


class FakeOAuthUpstream:
    """Token and profile endpoints for both providers behind one MockTransport."""

    def __init__(self) -> None:
        self.token_status = 200
        self.token_payload: dict = {
            "access_token": "access-token-1",
            "refresh_token": "refresh-token-1",
            "expires_in": 3600,
        }
        self.profile_status = 200
        self.profiles = {"google": dict(GOOGLE_PROFILE), "yandex": dict(YANDEX_PROFILE)}
        self.fail_step: str | None = None
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        provider = "google" if "google" in request.url.host else "yandex"
        if request.method == "POST":
            if self.fail_step == "token":
                raise httpx.ConnectError("token endpoint unreachable", request=request)
            return httpx.Response(self.token_status, json=self.token_payload)
        if self.fail_step == "profile":
            raise httpx.ConnectError("profile endpoint unreachable", request=request)
        return httpx.Response(self.profile_status, json=self.profiles[provider])


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def notifications() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def tokens(store, clock) -> TokenService:
    return TokenService(store, clock=clock)


@pytest.fixture
def oauth_upstream() -> FakeOAuthUpstream:
    return FakeOAuthUpstream()


@pytest.fixture
def oauth_settings() -> Settings:
    return Settings(
        app_base_url="http://api.test",
        google_client_id="google-client-id",
        google_client_secret="google-client-secret",
        yandex_client_id="yandex-client-id",
        yandex_client_secret="yandex-client-secret",
    )


@pytest.fixture
def registry(oauth_settings, oauth_upstream) -> ProviderRegistry:
    return ProviderRegistry.from_settings(
        oauth_settings, transport=oauth_upstream.transport
    )


@pytest.fixture
def session_backend() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def session(session_backend) -> SessionHandle:
    return SessionHandle(session_backend)


@pytest.fixture
def failing_session() -> SessionHandle:
    return SessionHandle(FailingSessionBackend())


@pytest.fixture
def auth(store, tokens, notifications, registry) -> AuthService:
    return AuthService(
        store,
        tokens,
        notifications,
        registry,
        IdentityReconciler(store),
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence
from urllib.parse import urlencode

import httpx

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.outcome import ErrorKind, Outcome

logger = get_logger(__name__)


class ProviderName(str, Enum):
    GOOGLE = "google"
    YANDEX = "yandex"


@dataclass(frozen=True)
class ProviderConfig:
    name: ProviderName
    authorize_url: str
    token_url: str
    profile_url: str
    scopes: tuple[str, ...]
    client_id: str
    client_secret: str
    base_url: str

    @property
    def redirect_uri(self) -> str:
        return f"{self.base_url.rstrip('/')}/auth/oauth/callback/{self.name.value}"


@dataclass(frozen=True)
class ExternalProfile:
    """Identity returned by a provider, normalized to one shape."""

    id: str
    email: str
    name: Optional[str]
    picture: Optional[str]
    provider: ProviderName
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None


class OAuthProvider:
    """Authorization-code flow against one provider.

    Subclasses supply endpoints through :class:`ProviderConfig` and override
    :meth:`extract_profile`; the network steps are shared.
    """

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.timeout = timeout
        self._transport = transport
        self._clock = clock

    @property
    def name(self) -> ProviderName:
        return self.config.name

    @property
    def redirect_uri(self) -> str:
        return self.config.redirect_uri

    def build_authorization_url(self) -> str:
        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.config.scopes),
            "access_type": "offline",
            "prompt": "select_account",
        }
        return f"{self.config.authorize_url}?{urlencode(params)}"

    def extract_profile(self, data: Dict[str, Any]) -> ExternalProfile:
        raise NotImplementedError

    def _token_expiry(self, token_result: Dict[str, Any]) -> Optional[int]:
        if token_result.get("expires_at") is not None:
            try:
                return int(token_result["expires_at"])
            except (TypeError, ValueError):
                return None
        if token_result.get("expires_in") is not None:
            try:
                return int(self._clock()) + int(token_result["expires_in"])
            except (TypeError, ValueError):
                return None
        return None

    async def exchange_code_for_profile(self, code: str) -> Outcome[ExternalProfile]:
        provider = self.name.value
        token_data = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        async with httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        ) as client:
            try:
                token_response = await client.post(
                    self.config.token_url,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                logger.error("oauth_exchange_failed", provider=provider, error=str(exc))
                return Outcome.fail(
                    ErrorKind.EXCHANGE_FAILED,
                    f"Could not exchange the authorization code with {provider}.",
                )
            if not token_response.is_success:
                logger.error(
                    "oauth_exchange_failed",
                    provider=provider,
                    status_code=token_response.status_code,
                )
                return Outcome.fail(
                    ErrorKind.EXCHANGE_FAILED,
                    f"Could not exchange the authorization code with {provider}. "
                    "Make sure the code is valid.",
                    {"status_code": token_response.status_code},
                )
            try:
                token_result = token_response.json()
            except ValueError as exc:
                logger.error("oauth_token_parse_error", provider=provider, error=str(exc))
                return Outcome.fail(
                    ErrorKind.EXCHANGE_FAILED,
                    f"{provider} returned an unreadable token response.",
                )
            access_token = (
                token_result.get("access_token") if isinstance(token_result, dict) else None
            )
            if not access_token:
                logger.error("oauth_no_access_token", provider=provider)
                return Outcome.fail(
                    ErrorKind.EXCHANGE_FAILED,
                    f"{provider} did not return an access token.",
                )

            try:
                profile_response = await client.get(
                    self.config.profile_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.HTTPError as exc:
                logger.error("oauth_profile_fetch_failed", provider=provider, error=str(exc))
                return Outcome.fail(
                    ErrorKind.UPSTREAM_FAILURE,
                    f"Could not fetch the user profile from {provider}.",
                )
            if not profile_response.is_success:
                logger.error(
                    "oauth_profile_fetch_failed",
                    provider=provider,
                    status_code=profile_response.status_code,
                )
                return Outcome.fail(
                    ErrorKind.UPSTREAM_FAILURE,
                    f"Could not fetch the user profile from {provider}.",
                    {"status_code": profile_response.status_code},
                )
            try:
                userinfo = profile_response.json()
            except ValueError as exc:
                logger.error("oauth_userinfo_parse_error", provider=provider, error=str(exc))
                userinfo = None
            if not isinstance(userinfo, dict):
                return Outcome.fail(
                    ErrorKind.UPSTREAM_FAILURE,
                    f"{provider} returned an unreadable user profile.",
                )

        profile = self.extract_profile(userinfo)
        if not profile.id or not profile.email:
            logger.error(
                "oauth_identity_incomplete",
                provider=provider,
                has_id=bool(profile.id),
                has_email=bool(profile.email),
            )
            return Outcome.fail(
                ErrorKind.UPSTREAM_FAILURE,
                f"{provider} did not share an account id and email.",
            )
        profile = replace(
            profile,
            access_token=access_token,
            refresh_token=token_result.get("refresh_token"),
            expires_at=self._token_expiry(token_result),
        )
        logger.info("oauth_exchange_success", provider=provider, provider_uid=profile.id)
        return Outcome.success(profile)


class GoogleProvider(OAuthProvider):
    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    PROFILE_URL = "https://www.googleapis.com/oauth2/v3/userinfo"

    def extract_profile(self, data: Dict[str, Any]) -> ExternalProfile:
        return ExternalProfile(
            id=str(data.get("sub") or ""),
            email=data.get("email") or "",
            name=data.get("name"),
            picture=data.get("picture"),
            provider=self.name,
        )


class YandexProvider(OAuthProvider):
    AUTHORIZE_URL = "https://oauth.yandex.ru/authorize"
    TOKEN_URL = "https://oauth.yandex.ru/token"
    PROFILE_URL = "https://login.yandex.ru/info?format=json"
    AVATAR_URL = "https://avatars.yandex.net/get-yapic/{avatar_id}/islands-200"

    def extract_profile(self, data: Dict[str, Any]) -> ExternalProfile:
        emails = data.get("emails") or []
        avatar_id = data.get("default_avatar_id")
        picture = None
        if avatar_id and not data.get("is_avatar_empty"):
            picture = self.AVATAR_URL.format(avatar_id=avatar_id)
        return ExternalProfile(
            id=str(data.get("id") or ""),
            email=data.get("default_email") or (emails[0] if emails else ""),
            name=data.get("display_name") or data.get("real_name") or data.get("login"),
            picture=picture,
            provider=self.name,
        )


_PROVIDER_CLASSES: dict[ProviderName, type[OAuthProvider]] = {
    ProviderName.GOOGLE: GoogleProvider,
    ProviderName.YANDEX: YandexProvider,
}


class ProviderRegistry:
    """Configured OAuth providers, keyed by :class:`ProviderName`."""

    def __init__(self, providers: Sequence[OAuthProvider] = ()) -> None:
        self._providers: dict[ProviderName, OAuthProvider] = {
            provider.name: provider for provider in providers
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderRegistry":
        credentials = {
            ProviderName.GOOGLE: (
                settings.google_client_id,
                settings.google_client_secret,
                settings.google_scopes,
            ),
            ProviderName.YANDEX: (
                settings.yandex_client_id,
                settings.yandex_client_secret,
                settings.yandex_scopes,
            ),
        }
        providers: list[OAuthProvider] = []
        for name, (client_id, client_secret, scopes) in credentials.items():
            if not client_id or not client_secret:
                logger.info("oauth_provider_not_configured", provider=name.value)
                continue
            provider_cls = _PROVIDER_CLASSES[name]
            config = ProviderConfig(
                name=name,
                authorize_url=provider_cls.AUTHORIZE_URL,
                token_url=provider_cls.TOKEN_URL,
                profile_url=provider_cls.PROFILE_URL,
                scopes=tuple(scopes),
                client_id=client_id,
                client_secret=client_secret,
                base_url=settings.app_base_url,
            )
            providers.append(
                provider_cls(
                    config,
                    timeout=settings.oauth_timeout_seconds,
                    transport=transport,
                )
            )
        return cls(providers)

    @property
    def names(self) -> list[str]:
        return [name.value for name in self._providers]

    def resolve(self, name: str) -> Outcome[OAuthProvider]:
        try:
            key = ProviderName(name.lower())
        except ValueError:
            key = None
        provider = self._providers.get(key) if key else None
        if provider is None:
            logger.warning("oauth_unknown_provider", provider=name)
            return Outcome.fail(
                ErrorKind.NOT_FOUND,
                f"Provider '{name}' not found. Check that the provider name is correct.",
            )
        return Outcome.success(provider)

"""Identity-provider configuration.

Each supported provider is a :class:`ProviderConfig` value; the OAuth state
machine in :mod:`atlasweb_auth.central_auth.service` is written once and
parameterised by it.  Endpoints and default scopes are fixed per provider,
while client credentials, redirect URI and scope overrides come from the
environment (``GOOGLE_OAUTH_*`` / ``MICROSOFT_OAUTH_*``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Final, Mapping
from urllib.parse import urlsplit

from atlasweb_auth.central_auth.errors import (
    ProviderNotConfiguredError,
    SecretNotFoundError,
    UnknownProviderError,
)
from atlasweb_auth.central_auth.models import UserProfile
from atlasweb_auth.utils.environment import SUPPORTED_PROVIDERS, provider_env

_LOG = logging.getLogger("atlasweb-auth.central_auth.providers")

DEFAULT_POST_LOGIN_URL: Final[str] = "https://atlasweb.info/email-assistant.html"

GOOGLE_SCOPES: Final[tuple[str, ...]] = (
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
)

MICROSOFT_SCOPES: Final[tuple[str, ...]] = (
    "https://graph.microsoft.com/Mail.Read",
    "https://graph.microsoft.com/User.Read",
    "https://graph.microsoft.com/Mail.ReadBasic",
    "offline_access",
)


@dataclass(frozen=True)
class ProviderConfig:
    """Everything the auth core needs to talk to one identity provider."""

    name: str
    client_id: str
    client_secret: str = field(repr=False)
    redirect_uri: str
    scopes: tuple[str, ...]
    authorize_url: str
    token_url: str
    profile_url: str
    revoke_url: str | None = None
    # Parameters that force consent and request a refresh token
    authorize_params: Mapping[str, str] = field(default_factory=dict)
    # Microsoft v2 endpoints want the scope repeated on token requests
    scope_on_token_request: bool = False
    post_login_url: str = DEFAULT_POST_LOGIN_URL

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def validate(self) -> None:
        """Fail loudly on configuration the provider would reject later."""
        env = self.name.upper()
        if not self.client_id:
            raise ProviderNotConfiguredError(
                f"{env}_OAUTH_CLIENT_ID is not set", provider=self.name
            )
        if not self.client_secret:
            raise ProviderNotConfiguredError(
                f"{env}_OAUTH_CLIENT_SECRET (or _CLIENT_SECRET_NAME) is not set",
                provider=self.name,
            )
        check_redirect_uri(self.redirect_uri, provider=self.name)
        if not self.scopes:
            raise ProviderNotConfiguredError(f"{env}_OAUTH_SCOPE is empty", provider=self.name)

    def profile_from_payload(self, data: Mapping[str, Any]) -> UserProfile:
        """Build a :class:`UserProfile` from the provider's identity response."""
        if self.name == "microsoft":
            email = data.get("mail") or data.get("userPrincipalName")
            name = data.get("displayName")
            picture = None
        else:
            email = data.get("email")
            name = data.get("name")
            picture = data.get("picture")
        if not email:
            raise ValueError(f"{self.name} profile response has no email address")
        subject = data.get("id") or data.get("sub")
        return UserProfile(
            email=str(email).strip().lower(),
            name=name,
            picture=picture,
            subject=str(subject) if subject else None,
        )


def check_redirect_uri(redirect_uri: str, *, provider: str) -> None:
    """Reject redirect URIs that cannot match a registered value byte-for-byte."""
    env_key = f"{provider.upper()}_OAUTH_REDIRECT_URI"
    if not redirect_uri:
        raise ProviderNotConfiguredError(f"{env_key} is not set", provider=provider)
    parts = urlsplit(redirect_uri)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ProviderNotConfiguredError(
            f"{env_key}={redirect_uri!r} must be an absolute http(s) URL", provider=provider
        )
    if parts.fragment:
        raise ProviderNotConfiguredError(
            f"{env_key}={redirect_uri!r} must not contain a fragment", provider=provider
        )
    if redirect_uri != redirect_uri.strip():
        raise ProviderNotConfiguredError(
            f"{env_key} has leading/trailing whitespace", provider=provider
        )


def _google(
    *, client_id: str, client_secret: str, redirect_uri: str, scopes: tuple[str, ...], post_login_url: str
) -> ProviderConfig:
    return ProviderConfig(
        name="google",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=scopes or GOOGLE_SCOPES,
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        profile_url="https://www.googleapis.com/oauth2/v2/userinfo",
        revoke_url="https://oauth2.googleapis.com/revoke",
        authorize_params={
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        },
        post_login_url=post_login_url,
    )


def _microsoft(
    *, client_id: str, client_secret: str, redirect_uri: str, scopes: tuple[str, ...], post_login_url: str
) -> ProviderConfig:
    tenant = provider_env("microsoft", "TENANT") or "organizations"
    base = f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0"
    scopes = scopes or MICROSOFT_SCOPES
    if "offline_access" not in scopes:
        scopes = scopes + ("offline_access",)
    return ProviderConfig(
        name="microsoft",
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        scopes=scopes,
        authorize_url=f"{base}/authorize",
        token_url=f"{base}/token",
        profile_url="https://graph.microsoft.com/v1.0/me",
        authorize_params={"prompt": "consent", "response_mode": "query"},
        scope_on_token_request=True,
        post_login_url=post_login_url,
    )


_BUILDERS: dict[str, Callable[..., ProviderConfig]] = {
    "google": _google,
    "microsoft": _microsoft,
}


def load_provider_config(
    name: str,
    *,
    secret_resolver: Callable[[str], str] | None = None,
) -> ProviderConfig:
    """Build and validate the configuration for provider *name* from env vars.

    Parameters
    ----------
    name:
        ``google`` or ``microsoft``.
    secret_resolver:
        Looks up ``{PROVIDER}_OAUTH_CLIENT_SECRET_NAME`` in a secret store when
        no inline client secret is configured.

    Raises
    ------
    UnknownProviderError
        *name* is not a supported provider.
    ProviderNotConfiguredError
        Required settings are missing or malformed.
    """
    name = (name or "").strip().lower()
    if name not in SUPPORTED_PROVIDERS:
        raise UnknownProviderError(f"unsupported provider {name!r}")

    client_secret = provider_env(name, "CLIENT_SECRET") or ""
    secret_name = provider_env(name, "CLIENT_SECRET_NAME")
    if not client_secret and secret_name:
        if secret_resolver is None:
            raise ProviderNotConfiguredError(
                f"{name.upper()}_OAUTH_CLIENT_SECRET_NAME set but no secret store available",
                provider=name,
            )
        try:
            client_secret = secret_resolver(secret_name)
        except SecretNotFoundError:
            raise ProviderNotConfiguredError(
                f"client secret {secret_name!r} not found in secret store", provider=name
            ) from None
        _LOG.debug("Resolved %s client secret from secret store", name)

    scope_raw = provider_env(name, "SCOPE") or ""
    scopes = tuple(s for s in scope_raw.replace(",", " ").split() if s)

    cfg = _BUILDERS[name](
        client_id=provider_env(name, "CLIENT_ID") or "",
        client_secret=client_secret,
        redirect_uri=provider_env(name, "REDIRECT_URI") or "",
        scopes=scopes,
        post_login_url=(
            provider_env(name, "POST_LOGIN_URL")
            or os.getenv("ATLASWEB_POST_LOGIN_URL")
            or DEFAULT_POST_LOGIN_URL
        ),
    )
    cfg.validate()
    return cfg

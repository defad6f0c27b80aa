"""HTTP client for provider token, identity and revocation endpoints.

One code path: form-encoded POSTs straight to the documented endpoints with
``requests``.  Authorization codes are single-use, so code exchange is never
retried; refresh retries transient failures (network errors, 5xx) a bounded
number of times with exponential backoff and never retries ``invalid_grant``.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from atlasweb_auth.central_auth.errors import (
    ReauthenticationRequired,
    TokenExchangeFailedError,
)
from atlasweb_auth.central_auth.models import TokenGrant, UserProfile
from atlasweb_auth.central_auth.providers import ProviderConfig

_LOG = logging.getLogger("atlasweb-auth.central_auth.token_client")

# Token-endpoint error codes meaning the refresh token itself is dead
_DEAD_GRANT_ERRORS = frozenset({"invalid_grant", "interaction_required"})


def _error_fields(resp: requests.Response) -> tuple[str | None, str | None]:
    """Return ``(error, error_description)`` from an OAuth error body."""
    try:
        body = resp.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    err = body.get("error")
    if isinstance(err, dict):  # Graph-style {"error": {"code", "message"}}
        return err.get("code"), err.get("message")
    return err, body.get("error_description")


def _parse_grant(resp: requests.Response, *, provider: str) -> TokenGrant:
    try:
        data: dict[str, Any] = resp.json()
    except ValueError:
        raise TokenExchangeFailedError(
            "Token endpoint returned a non-JSON body", provider=provider
        ) from None
    access_token = data.get("access_token")
    if not access_token:
        raise TokenExchangeFailedError(
            "Token response missing access_token", provider=provider
        )
    try:
        expires_in = int(data.get("expires_in") or 3600)
    except (TypeError, ValueError):
        expires_in = 3600
    return TokenGrant(
        access_token=access_token,
        expires_in=expires_in,
        token_type=data.get("token_type") or "Bearer",
        refresh_token=data.get("refresh_token") or None,
        scope=data.get("scope"),
    )


class ProviderTokenClient:
    """Talks to a provider's OAuth endpoints on behalf of the auth service."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        timeout: tuple[float, float] = (5, 20),
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    # authorization_code                                                 #
    # ------------------------------------------------------------------ #
    def exchange_code(
        self, cfg: ProviderConfig, code: str, *, redirect_uri: str | None = None
    ) -> TokenGrant:
        """Redeem *code* at the token endpoint. Single attempt.

        *redirect_uri* must be the exact value sent on the authorize request.
        """
        redirect_uri = redirect_uri or cfg.redirect_uri
        payload: dict[str, str] = {
            "grant_type": "authorization_code",
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,  # noqa: S105
            "code": code,
            "redirect_uri": redirect_uri,
        }
        if cfg.scope_on_token_request:
            payload["scope"] = cfg.scope

        try:
            resp = self.session.post(cfg.token_url, data=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TokenExchangeFailedError(
                f"Token request failed: {type(exc).__name__}", provider=cfg.name
            ) from exc

        if not resp.ok:
            error, description = _error_fields(resp)
            if error == "redirect_uri_mismatch":
                msg = (
                    f"redirect_uri_mismatch: provider rejected redirect URI "
                    f"{redirect_uri!r}; it must match the registered value exactly"
                )
            else:
                msg = f"Token endpoint returned {resp.status_code}: {error or 'unknown_error'}"
                if description:
                    msg = f"{msg} ({description[:200]})"
            _LOG.warning("Code exchange failed provider=%s status=%s error=%s",
                         cfg.name, resp.status_code, error)
            raise TokenExchangeFailedError(
                msg, provider_error=error, http_status=resp.status_code, provider=cfg.name
            )

        grant = _parse_grant(resp, provider=cfg.name)
        _LOG.info(
            "Exchanged authorization code provider=%s refresh_token=%s expires_in=%s",
            cfg.name,
            "yes" if grant.refresh_token else "no",
            grant.expires_in,
        )
        return grant

    # ------------------------------------------------------------------ #
    # refresh_token                                                      #
    # ------------------------------------------------------------------ #
    def refresh(self, cfg: ProviderConfig, refresh_token: str) -> TokenGrant:
        """Mint a new access token from *refresh_token*.

        Raises
        ------
        ReauthenticationRequired
            The provider reports the refresh token as dead. Not retried.
        TokenExchangeFailedError
            Any other failure, after at most ``max_attempts`` tries for
            transient errors.
        """
        payload: dict[str, str] = {
            "grant_type": "refresh_token",
            "client_id": cfg.client_id,
            "client_secret": cfg.client_secret,  # noqa: S105
            "refresh_token": refresh_token,
        }
        if cfg.scope_on_token_request:
            payload["scope"] = cfg.scope

        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.post(cfg.token_url, data=payload, timeout=self.timeout)
            except requests.RequestException as exc:
                failure = TokenExchangeFailedError(
                    f"Refresh request failed: {type(exc).__name__}", provider=cfg.name
                )
                failure.__cause__ = exc
            else:
                if resp.ok:
                    grant = _parse_grant(resp, provider=cfg.name)
                    _LOG.info("Refreshed %s access token (attempt %s, expires in %ss)",
                              cfg.name, attempt, grant.expires_in)
                    return grant

                error, description = _error_fields(resp)
                if error in _DEAD_GRANT_ERRORS:
                    _LOG.info("Refresh token rejected provider=%s error=%s", cfg.name, error)
                    raise ReauthenticationRequired(
                        description or "Refresh token expired or revoked.", provider=cfg.name
                    )
                failure = TokenExchangeFailedError(
                    f"Token endpoint returned {resp.status_code}: {error or 'unknown_error'}",
                    provider_error=error,
                    http_status=resp.status_code,
                    provider=cfg.name,
                )
                if resp.status_code < 500:
                    raise failure

            if attempt >= self.max_attempts:
                raise failure
            delay = self.backoff_seconds * (2 ** (attempt - 1))
            _LOG.warning("Transient refresh failure provider=%s attempt=%s; retrying in %.1fs",
                         cfg.name, attempt, delay)
            self._sleep(delay)

    # ------------------------------------------------------------------ #
    # identity & revocation                                              #
    # ------------------------------------------------------------------ #
    def fetch_profile(self, cfg: ProviderConfig, access_token: str) -> UserProfile:
        """Return the verified identity behind *access_token*."""
        try:
            resp = self.session.get(
                cfg.profile_url,
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TokenExchangeFailedError(
                f"Profile request failed: {type(exc).__name__}", provider=cfg.name
            ) from exc
        if not resp.ok:
            error, _ = _error_fields(resp)
            raise TokenExchangeFailedError(
                f"Profile endpoint returned {resp.status_code}",
                provider_error=error,
                http_status=resp.status_code,
                provider=cfg.name,
            )
        try:
            return cfg.profile_from_payload(resp.json())
        except ValueError as exc:
            raise TokenExchangeFailedError(str(exc), provider=cfg.name) from exc

    def revoke(self, cfg: ProviderConfig, token: str) -> bool:
        """Revoke *token* where the provider supports it. Returns success."""
        if not cfg.revoke_url:
            return False
        try:
            resp = self.session.post(cfg.revoke_url, data={"token": token}, timeout=self.timeout)
        except requests.RequestException as exc:
            _LOG.warning("Revocation request failed provider=%s: %s", cfg.name, type(exc).__name__)
            return False
        if not resp.ok:
            _LOG.warning("Revocation rejected provider=%s status=%s", cfg.name, resp.status_code)
        return bool(resp.ok)

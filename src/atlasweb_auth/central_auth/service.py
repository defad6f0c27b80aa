"""CentralAuthService – OAuth authorization-code and refresh-token lifecycle.

This service encapsulates the *business logic* for browser-based OAuth
flows.  Handlers in ``atlasweb_auth.servers.auth`` call the thin façade
methods below; nothing here knows about HTTP.

Lifecycle::

    Idle ─start─▶ AwaitingCallback ─callback─▶ Exchanging ─▶ Authenticated
                                   │                 │
                                   ▼                 ▼
                   Denied / StateMismatch   ExchangeConflict / ExchangeFailed

    Authenticated ─stale token─▶ Refreshing ─▶ Authenticated
                                            └▶ ReauthenticationRequired

Every provider goes through the same code; :class:`ProviderConfig` carries
the differences.  Secrets (client secret, codes, tokens, full state) are
never logged.
"""

from __future__ import annotations

import logging
import os
import uuid
from typing import Final, Mapping
from urllib.parse import urlencode

from atlasweb_auth.central_auth.clock import Clock, default_clock
from atlasweb_auth.central_auth.credentials import CredentialStore
from atlasweb_auth.central_auth.errors import (
    CredentialNotFoundError,
    ExchangeInProgressError,
    MissingCodeError,
    MissingRefreshTokenWarning,
    ProviderDeniedError,
    ReauthenticationRequired,
    StateMismatchError,
    UnknownProviderError,
)
from atlasweb_auth.central_auth.log_utils import get_auth_logger
from atlasweb_auth.central_auth.models import (
    AccessToken,
    AuthorizationState,
    ExchangeResult,
)
from atlasweb_auth.central_auth.providers import ProviderConfig, load_provider_config
from atlasweb_auth.central_auth.state import (
    InvalidStateError,
    build_state,
    new_state_id,
    parse_state,
)
from atlasweb_auth.central_auth.store import (
    DEFAULT_LOCK_TTL,
    DEFAULT_STATE_TTL,
    FlowStore,
    code_key,
    default_flow_store,
)
from atlasweb_auth.central_auth.token_client import ProviderTokenClient
from atlasweb_auth.utils.environment import env_int

_LOG = logging.getLogger("atlasweb-auth.central_auth.service")


class CentralAuthService:
    """Application service orchestrating OAuth web flows for all providers."""

    _STATE_SECRET_ENV: Final[str] = "ATLASWEB_STATE_HMAC_SECRET"

    def __init__(
        self,
        *,
        flow_store: FlowStore | None = None,
        credentials: CredentialStore | None = None,
        token_client: ProviderTokenClient | None = None,
        providers: Mapping[str, ProviderConfig] | None = None,
        state_secret: str | None = None,
        state_ttl: int | None = None,
        clock: Clock = default_clock,
    ) -> None:
        self.flow_store = flow_store or default_flow_store()
        self.credentials = credentials or CredentialStore()
        self.token_client = token_client or ProviderTokenClient()
        self.clock = clock
        self.state_ttl = state_ttl or env_int("ATLASWEB_STATE_TTL_SECONDS", DEFAULT_STATE_TTL)
        self.lock_ttl = env_int("ATLASWEB_EXCHANGE_LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL)
        self._providers: dict[str, ProviderConfig] = dict(providers or {})
        self._static_providers = providers is not None

        state_secret = state_secret or os.getenv(self._STATE_SECRET_ENV)
        if not state_secret:
            # Ephemeral secret – fine for single-instance dev setups only
            state_secret = uuid.uuid4().hex
            _LOG.warning(
                "Environment variable %s not set – generated transient secret. "
                "Pending logins will fail after a restart or on other instances.",
                self._STATE_SECRET_ENV,
            )
        self._state_secret: str = state_secret

    # ------------------------------------------------------------------ #
    # Provider configuration                                             #
    # ------------------------------------------------------------------ #
    def provider(self, name: str) -> ProviderConfig:
        """Return the validated configuration for provider *name*."""
        key = (name or "").strip().lower()
        cfg = self._providers.get(key)
        if cfg is not None:
            return cfg
        if self._static_providers:
            # explicit mapping given: anything else is unknown
            raise UnknownProviderError(f"unsupported provider {name!r}")
        cfg = load_provider_config(key, secret_resolver=self.credentials.backend.access_latest)
        self._providers[key] = cfg
        return cfg

    # ------------------------------------------------------------------ #
    # Idle → AwaitingCallback                                            #
    # ------------------------------------------------------------------ #
    def build_authorize_url(self, provider: str, *, login_hint: str | None = None) -> str:
        """Return the provider consent URL and record the pending login."""
        cfg = self.provider(provider)

        state_id = new_state_id()
        self.flow_store.save_state(
            AuthorizationState(
                state_id=state_id,
                provider=cfg.name,
                redirect_uri=cfg.redirect_uri,
                created_at=int(self.clock()),
                ttl_seconds=self.state_ttl,
            )
        )
        state = build_state(state_id, self._state_secret, clock=self.clock)

        query_params: dict[str, str] = {
            "client_id": cfg.client_id,
            "redirect_uri": cfg.redirect_uri,
            "response_type": "code",
            "scope": cfg.scope,
            "state": state,
        }
        query_params.update(cfg.authorize_params)
        if login_hint:
            query_params["login_hint"] = login_hint

        url = f"{cfg.authorize_url}?{urlencode(query_params)}"
        get_auth_logger(flow_id=state_id, provider=cfg.name).info("Built authorize URL")
        return url

    # ------------------------------------------------------------------ #
    # AwaitingCallback → Exchanging → Authenticated                      #
    # ------------------------------------------------------------------ #
    def handle_callback(
        self,
        provider: str,
        *,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
        correlation_id: str | None = None,
    ) -> ExchangeResult:
        """Validate the redirect, redeem *code* once and store the refresh token.

        Ordering: state validation → code lock → state claim → token exchange.
        The lock is released and the state discarded on every exit path once
        the lock is held.

        Raises
        ------
        ProviderDeniedError, MissingCodeError, StateMismatchError,
        ExchangeInProgressError, TokenExchangeFailedError, SecretStoreError
        """
        cfg = self.provider(provider)
        log = get_auth_logger(provider=cfg.name, correlation_id=correlation_id)

        if error or not code:
            state_id = self._state_id_or_none(state)
            if state_id:
                self.flow_store.discard_state(state_id)
            if error:
                log.info("Provider denied authorization: %s", error)
                raise ProviderDeniedError(error, description=error_description, provider=cfg.name)
            raise MissingCodeError(provider=cfg.name)

        key = code_key(code)
        record = self._validate_state(cfg, state, key, log)
        log = get_auth_logger(flow_id=record.state_id, provider=cfg.name,
                              correlation_id=correlation_id)

        if not self.flow_store.acquire_exchange_lock(key):
            log.warning("Authorization code already being processed code_key=%s****", key[:6])
            raise ExchangeInProgressError(
                retry_after=self.lock_ttl,
                provider=cfg.name,
            )
        log.debug("Locked authorization code for processing")

        claimed = False
        try:
            if self.flow_store.claim_state(record.state_id, key) is None:
                log.warning("State was claimed by a different authorization code")
                raise StateMismatchError(provider=cfg.name)
            claimed = True

            grant = self.token_client.exchange_code(cfg, code, redirect_uri=record.redirect_uri)
            profile = self.token_client.fetch_profile(cfg, grant.access_token)

            warnings: tuple[str, ...] = ()
            if grant.refresh_token:
                self.credentials.put(profile.email, cfg.name, grant.refresh_token)
                log.info("Refresh token stored for %s", profile.email)
            else:
                warnings = (MissingRefreshTokenWarning.code,)
                log.warning(
                    "Provider issued no refresh token for %s; re-consent needed for offline access",
                    profile.email,
                )

            return ExchangeResult(
                provider=cfg.name,
                profile=profile,
                access_token=grant.access_token,
                expires_in=grant.expires_in,
                token_type=grant.token_type,
                has_refresh_token=bool(grant.refresh_token),
                warnings=warnings,
            )
        finally:
            if claimed:
                self.flow_store.discard_state(record.state_id)
            self.flow_store.release_exchange_lock(key)
            log.debug("Released authorization code lock")

    def _state_id_or_none(self, state: str | None) -> str | None:
        if not state:
            return None
        try:
            state_id, _ = parse_state(state, self._state_secret)
        except InvalidStateError:
            return None
        return state_id

    def _validate_state(
        self,
        cfg: ProviderConfig,
        state: str | None,
        key: str,
        log: logging.LoggerAdapter,
    ) -> AuthorizationState:
        try:
            state_id, _ = parse_state(state or "", self._state_secret)
        except InvalidStateError as exc:
            log.warning("Rejected callback state (possible CSRF): %s", exc)
            raise StateMismatchError(provider=cfg.name) from None

        record = self.flow_store.get_state(state_id)
        if record is None:
            log.warning("Rejected callback: unknown, consumed or expired state %s****", state_id[:6])
            raise StateMismatchError(provider=cfg.name)
        if record.provider != cfg.name:
            log.warning("Rejected callback: state issued for provider %s", record.provider)
            raise StateMismatchError(provider=cfg.name)
        if record.claimed_by not in (None, key):
            log.warning("Rejected callback: state already bound to another code")
            raise StateMismatchError(provider=cfg.name)
        return record

    # ------------------------------------------------------------------ #
    # Authenticated → Refreshing                                         #
    # ------------------------------------------------------------------ #
    def refresh(self, provider: str, refresh_token: str) -> AccessToken:
        """Mint an access token from a caller-held refresh token."""
        cfg = self.provider(provider)
        if not refresh_token:
            raise ValueError("refreshToken is required")
        grant = self.token_client.refresh(cfg, refresh_token)
        return AccessToken(grant.access_token, grant.expires_in, grant.token_type)

    def tokens_for_user(self, provider: str, user_email: str) -> AccessToken:
        """Refresh using the stored credential of *user_email*.

        A dead refresh token is deleted (the provider reported it invalid)
        before :class:`ReauthenticationRequired` propagates.
        """
        cfg = self.provider(provider)
        log = get_auth_logger(provider=cfg.name)
        try:
            refresh_token = self.credentials.get(user_email, cfg.name)
        except CredentialNotFoundError:
            log.info("No stored credential for %s", user_email)
            raise ReauthenticationRequired("No stored credentials", provider=cfg.name) from None

        try:
            grant = self.token_client.refresh(cfg, refresh_token)
        except ReauthenticationRequired:
            self.credentials.delete(user_email, cfg.name)
            log.info("Removed dead credential for %s", user_email)
            raise

        if grant.refresh_token and grant.refresh_token != refresh_token:
            # Rotating providers (Microsoft) invalidate the old token
            self.credentials.put(user_email, cfg.name, grant.refresh_token)
            log.info("Stored rotated refresh token for %s", user_email)

        return AccessToken(grant.access_token, grant.expires_in, grant.token_type)

    # ------------------------------------------------------------------ #
    # Explicit revocation                                                #
    # ------------------------------------------------------------------ #
    def disconnect(self, provider: str, user_email: str) -> bool:
        """Revoke (where supported) and delete the stored credential."""
        cfg = self.provider(provider)
        try:
            refresh_token = self.credentials.get(user_email, cfg.name)
        except CredentialNotFoundError:
            return False
        if cfg.revoke_url and not self.token_client.revoke(cfg, refresh_token):
            _LOG.warning("Provider %s did not confirm revocation for %s", cfg.name, user_email)
        self.credentials.delete(user_email, cfg.name)
        _LOG.info("Disconnected %s account %s", cfg.name, user_email)
        return True

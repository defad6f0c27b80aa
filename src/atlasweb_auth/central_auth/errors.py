"""Exception types raised by the central OAuth core.

Only lightweight, **data-carrying** exceptions live here so that the HTTP
layer can turn them into JSON responses with a stable ``error`` code.  No
exception ever stores a client secret or a token value.
"""

from __future__ import annotations

from typing import Any, ClassVar

REAUTH_ACTION = "reauthentication_required"


class AuthFlowError(Exception):
    """Base class for every failure the auth core reports to callers."""

    error_code: ClassVar[str] = "auth_error"
    status_code: ClassVar[int] = 400
    default_message: ClassVar[str] = "Authentication failed."
    action: ClassVar[str | None] = None

    def __init__(self, message: str | None = None, *, provider: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.provider = provider

    def to_payload(self) -> dict[str, Any]:
        """Return a JSON-serialisable payload **without secrets**."""
        payload: dict[str, Any] = {"error": self.error_code, "message": str(self)}
        if self.provider:
            payload["provider"] = self.provider
        if self.action:
            payload["action"] = self.action
        return payload


class ProviderDeniedError(AuthFlowError):
    """The user (or the provider) declined consent. Not a server fault."""

    error_code = "provider_denied"
    default_message = "Authorization was denied by the identity provider."

    def __init__(
        self,
        reason: str,
        *,
        description: str | None = None,
        provider: str | None = None,
    ) -> None:
        msg = f"{reason}: {description}" if description else reason
        super().__init__(msg, provider=provider)
        self.reason = reason
        self.description = description

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        payload["reason"] = self.reason
        return payload


class MissingCodeError(AuthFlowError):
    error_code = "missing_code"
    default_message = "No authorization code received."


class StateMismatchError(AuthFlowError):
    """State did not match an issued, unconsumed nonce (possible CSRF)."""

    error_code = "state_mismatch"
    default_message = "Invalid or expired OAuth state."


class ExchangeInProgressError(AuthFlowError):
    """Another request is already redeeming the same authorization code."""

    error_code = "exchange_in_progress"
    status_code = 429
    default_message = "This authorization code is currently being processed. Please wait."

    def __init__(self, *, retry_after: int = 5, provider: str | None = None) -> None:
        super().__init__(provider=provider)
        self.retry_after = retry_after


class TokenExchangeFailedError(AuthFlowError):
    """The token endpoint rejected the request or could not be reached."""

    error_code = "token_exchange_failed"
    status_code = 502
    default_message = "Token exchange with the identity provider failed."

    def __init__(
        self,
        message: str | None = None,
        *,
        provider_error: str | None = None,
        http_status: int | None = None,
        provider: str | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.provider_error = provider_error
        self.http_status = http_status

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.provider_error:
            payload["providerError"] = self.provider_error
        return payload


class ReauthenticationRequired(AuthFlowError):
    """The refresh token is dead (or missing); the user must consent again."""

    error_code = REAUTH_ACTION
    status_code = 401
    default_message = "Refresh token expired or revoked."
    action = REAUTH_ACTION


class SecretStoreError(AuthFlowError):
    """The backing secret store failed. Details stay server-side."""

    error_code = "secret_store_unavailable"
    status_code = 503
    default_message = "Credential storage is temporarily unavailable."

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": self.default_message}


class SecretNotFoundError(LookupError):
    """Raised by secret backends when the named secret (or version) is absent."""


class CredentialNotFoundError(LookupError):
    """No refresh token is stored for the requested (user, provider) pair."""

    def __init__(self, user_id: str, provider: str) -> None:
        super().__init__(f"no stored credential for {provider} user {user_id}")
        self.user_id = user_id
        self.provider = provider


class InvalidRequestError(AuthFlowError):
    error_code = "invalid_request"
    default_message = "The request is missing a parameter or has an invalid one."


class FlowStoreFullError(AuthFlowError):
    """Too many sign-ins are pending; new ones are refused until some expire."""

    error_code = "too_many_pending_logins"
    status_code = 503
    default_message = "Too many sign-ins are in progress. Please try again shortly."


class UnknownProviderError(AuthFlowError):
    error_code = "unknown_provider"
    status_code = 404
    default_message = "Unsupported identity provider."


class ProviderNotConfiguredError(AuthFlowError):
    error_code = "provider_not_configured"
    status_code = 503
    default_message = "Identity provider is not configured."


class MissingRefreshTokenWarning(UserWarning):
    """Consent succeeded but the provider did not issue a refresh token."""

    code: ClassVar[str] = "missing_refresh_token"

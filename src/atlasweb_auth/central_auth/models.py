"""Typed, immutable records used by central OAuth logic."""

from __future__ import annotations

from dataclasses import dataclass, field

from atlasweb_auth.central_auth.clock import Clock, default_clock


@dataclass(frozen=True, slots=True)
class AuthorizationState:
    """A pending login attempt, keyed by its single-use state nonce."""

    state_id: str
    provider: str
    redirect_uri: str
    created_at: int = field(default_factory=lambda: int(default_clock()))
    ttl_seconds: int = 600
    # Hash of the authorization code currently redeeming this state, if any
    claimed_by: str | None = None

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        """Return *True* if the login attempt exceeded its TTL."""
        return (clock() - self.created_at) > self.ttl_seconds


@dataclass(frozen=True, slots=True)
class PendingExchange:
    """Lock held while one request redeems an authorization code."""

    code_key: str
    locked_at: int
    ttl_seconds: int = 30

    def is_expired(self, *, clock: Clock = default_clock) -> bool:
        return (clock() - self.locked_at) > self.ttl_seconds


@dataclass(frozen=True, slots=True)
class UserCredential:
    """Durable refresh token for one (user, provider) pair."""

    user_id: str
    provider: str
    refresh_token: str
    updated_at: int


@dataclass(frozen=True, slots=True)
class TokenGrant:
    """Parsed token-endpoint response."""

    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    refresh_token: str | None = None
    scope: str | None = None


@dataclass(frozen=True, slots=True)
class AccessToken:
    """Short-lived bearer credential. Never persisted."""

    access_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_payload(self) -> dict[str, object]:
        return {
            "accessToken": self.access_token,
            "expiresIn": self.expires_in,
            "tokenType": self.token_type,
        }


@dataclass(frozen=True, slots=True)
class UserProfile:
    email: str
    name: str | None = None
    picture: str | None = None
    subject: str | None = None


@dataclass(frozen=True, slots=True)
class ExchangeResult:
    """Outcome of a successful callback. Carries no server-only credential."""

    provider: str
    profile: UserProfile
    access_token: str
    expires_in: int
    token_type: str
    has_refresh_token: bool
    warnings: tuple[str, ...] = ()

    @property
    def email(self) -> str:
        return self.profile.email

    @property
    def missing_refresh_token(self) -> bool:
        return not self.has_refresh_token

    def to_payload(self) -> dict[str, object]:
        return {
            "provider": self.provider,
            "email": self.profile.email,
            "name": self.profile.name,
            "picture": self.profile.picture,
            "accessToken": self.access_token,
            "expiresIn": self.expires_in,
            "tokenType": self.token_type,
            "hasRefreshToken": self.has_refresh_token,
            "missingRefreshToken": self.missing_refresh_token,
            "warnings": list(self.warnings),
        }

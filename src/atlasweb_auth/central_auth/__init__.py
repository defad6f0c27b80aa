"""Central authentication core package.

This namespace hosts reusable, **HTTP-agnostic** building blocks for the
OAuth 2.0 authorization-code flow and the refresh-token lifecycle shared by
the Google and Microsoft sign-in paths of AtlasWeb.

Sub-modules
-----------
clock
    Test-friendly time abstraction.
state
    State nonce issuance and HMAC-signed encoding / validation.
store
    Pending logins and in-flight authorization-code locks.
secret_backends
    Versioned secret stores (Google Secret Manager, local disk).
credentials
    Credential Store Adapter for per-user refresh tokens.
providers
    Provider configuration (endpoints, scopes, consent parameters).
token_client
    HTTP client for token, identity and revocation endpoints.
service
    :class:`CentralAuthService`, the state machine tying it all together.
models
    Immutable dataclasses for flow and token records.
errors
    Exception types used by the central auth logic.
log_utils
    Structured logging helpers (thin wrapper around :pymod:`logging`).

All public objects are re-exported here for convenience.
"""

from __future__ import annotations

from .clock import Clock, ManualClock, default_clock  # noqa: F401
from .credentials import CredentialStore, sanitize_user_id, secret_id_for  # noqa: F401
from .errors import (  # noqa: F401
    AuthFlowError,
    CredentialNotFoundError,
    ExchangeInProgressError,
    FlowStoreFullError,
    InvalidRequestError,
    MissingCodeError,
    MissingRefreshTokenWarning,
    ProviderDeniedError,
    ProviderNotConfiguredError,
    ReauthenticationRequired,
    SecretNotFoundError,
    SecretStoreError,
    StateMismatchError,
    TokenExchangeFailedError,
    UnknownProviderError,
)
from .log_utils import get_auth_logger  # noqa: F401
from .models import (  # noqa: F401
    AccessToken,
    AuthorizationState,
    ExchangeResult,
    PendingExchange,
    TokenGrant,
    UserCredential,
    UserProfile,
)
from .providers import ProviderConfig, load_provider_config  # noqa: F401
from .secret_backends import (  # noqa: F401
    DiskSecretBackend,
    GoogleSecretManagerBackend,
    SecretBackend,
)
from .service import CentralAuthService  # noqa: F401
from .state import InvalidStateError, build_state, new_state_id, parse_state  # noqa: F401
from .store import DiskFlowStore, FlowStore, MemoryFlowStore, code_key  # noqa: F401
from .token_client import ProviderTokenClient  # noqa: F401

__all__ = [
    # clock
    "Clock",
    "ManualClock",
    "default_clock",
    # state
    "build_state",
    "parse_state",
    "new_state_id",
    "InvalidStateError",
    # stores
    "FlowStore",
    "MemoryFlowStore",
    "DiskFlowStore",
    "code_key",
    "SecretBackend",
    "GoogleSecretManagerBackend",
    "DiskSecretBackend",
    "CredentialStore",
    "sanitize_user_id",
    "secret_id_for",
    # providers & HTTP
    "ProviderConfig",
    "load_provider_config",
    "ProviderTokenClient",
    # service
    "CentralAuthService",
    # models
    "AccessToken",
    "AuthorizationState",
    "ExchangeResult",
    "PendingExchange",
    "TokenGrant",
    "UserCredential",
    "UserProfile",
    # errors
    "AuthFlowError",
    "CredentialNotFoundError",
    "ExchangeInProgressError",
    "FlowStoreFullError",
    "InvalidRequestError",
    "MissingCodeError",
    "MissingRefreshTokenWarning",
    "ProviderDeniedError",
    "ProviderNotConfiguredError",
    "ReauthenticationRequired",
    "SecretNotFoundError",
    "SecretStoreError",
    "StateMismatchError",
    "TokenExchangeFailedError",
    "UnknownProviderError",
    # logging helpers
    "get_auth_logger",
]

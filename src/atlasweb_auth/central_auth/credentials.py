"""Credential Store Adapter: durable refresh tokens in a versioned secret store.

The adapter is the only component that reads or writes
:class:`~atlasweb_auth.central_auth.models.UserCredential` material.  There is
no cache: every call reaches the backend, so a rotated-out token
is never served.

Naming
------
Google credentials live in ``user-refresh-token-{sanitized}`` where
``sanitized`` is the lower-cased email with ``@`` and ``.`` replaced by ``_``.
This matches credentials written by the earlier Node.js backends.  Other
providers get ``user-refresh-token-{provider}-{sanitized}``.

Sanitisation is lossy: ``john.doe@example.com`` and ``john_doe@example_com``
map to the same slot.
"""

from __future__ import annotations

import logging
import re

from atlasweb_auth.central_auth.clock import Clock, default_clock
from atlasweb_auth.central_auth.errors import (
    CredentialNotFoundError,
    InvalidRequestError,
    SecretNotFoundError,
    SecretStoreError,
)
from atlasweb_auth.central_auth.models import UserCredential
from atlasweb_auth.central_auth.secret_backends import (
    SecretBackend,
    check_secret_id,
    default_secret_backend,
)

_LOG = logging.getLogger("atlasweb-auth.central_auth.credentials")

SECRET_PREFIX = "user-refresh-token-"
LEGACY_PROVIDER = "google"

_UNSAFE = re.compile(r"[^a-z0-9_-]")


def sanitize_user_id(email: str) -> str:
    """Map an email to its credential slot id (``a.b@x.com`` → ``a_b_x_com``).

    ``@`` and ``.`` become ``_``; any other character a secret id cannot hold
    is replaced the same way.
    """
    cleaned = (email or "").strip().lower()
    if not cleaned:
        raise ValueError("user id must not be empty")
    return _UNSAFE.sub("_", cleaned.replace("@", "_").replace(".", "_"))


def secret_id_for(user_id: str, provider: str) -> str:
    """Return the secret id holding *user_id*'s refresh token for *provider*.

    Raises :class:`InvalidRequestError` when the id would exceed the secret
    store's 255-character limit.
    """
    sanitized = sanitize_user_id(user_id)
    if provider == LEGACY_PROVIDER:
        secret_id = f"{SECRET_PREFIX}{sanitized}"
    else:
        secret_id = f"{SECRET_PREFIX}{provider}-{sanitized}"
    try:
        return check_secret_id(secret_id)
    except ValueError:
        raise InvalidRequestError(
            "User id is too long to hold a stored credential.", provider=provider
        ) from None


class CredentialStore:
    """``put`` / ``get`` / ``delete`` refresh tokens keyed by (user, provider)."""

    def __init__(self, backend: SecretBackend | None = None, *, clock: Clock = default_clock) -> None:
        self.backend = backend or default_secret_backend()
        self.clock = clock

    def put(self, user_id: str, provider: str, refresh_token: str) -> UserCredential:
        """Store *refresh_token*, superseding any previous one."""
        if not refresh_token:
            raise ValueError("refresh_token must not be empty")
        secret_id = secret_id_for(user_id, provider)
        try:
            version = self.backend.add_version(secret_id, refresh_token)
            _LOG.info("Added new version to existing secret %s", secret_id)
        except SecretNotFoundError:
            _LOG.info("Creating secret %s", secret_id)
            self.backend.create_secret(secret_id)
            version = self.backend.add_version(secret_id, refresh_token)

        try:
            pruned = self.backend.destroy_versions_before(secret_id, version)
        except (SecretStoreError, SecretNotFoundError, TimeoutError):
            # latest version is already readable
            _LOG.warning("Could not destroy superseded versions of %s", secret_id, exc_info=True)
        else:
            if pruned:
                _LOG.debug("Destroyed %s superseded version(s) of %s", pruned, secret_id)

        return UserCredential(
            user_id=user_id,
            provider=provider,
            refresh_token=refresh_token,
            updated_at=int(self.clock()),
        )

    def get(self, user_id: str, provider: str) -> str:
        """Return the live refresh token or raise :class:`CredentialNotFoundError`."""
        secret_id = secret_id_for(user_id, provider)
        try:
            return self.backend.access_latest(secret_id)
        except SecretNotFoundError:
            raise CredentialNotFoundError(user_id, provider) from None

    def delete(self, user_id: str, provider: str) -> bool:
        """Remove the credential. Returns *False* if nothing was stored."""
        secret_id = secret_id_for(user_id, provider)
        try:
            self.backend.delete_secret(secret_id)
        except SecretNotFoundError:
            return False
        _LOG.info("Deleted stored credential %s", secret_id)
        return True

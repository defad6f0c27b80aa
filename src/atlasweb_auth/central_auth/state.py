"""State parameter helpers for the OAuth 2.0 authorization-code flow.

The *state* parameter proves that a callback belongs to a login this server
started.  AtlasWeb encodes three values in a compact, URL-safe string:

1. ``state_id`` – 128-bit random nonce, also the key of the pending
   :class:`~atlasweb_auth.central_auth.models.AuthorizationState`
2. ``ts`` – UNIX timestamp from an injected
   :class:`~atlasweb_auth.central_auth.clock.Clock`
3. ``sig`` – truncated HMAC-SHA256 of the first two fields

Format (plain text before base64-url encoding)::

    <state_id>:<ts>:<sig>

The signature only filters forged or corrupted values cheaply.  Single-use
and TTL guarantees come from the flow store, which must still hold the nonce.

Logging
-------
Only the first characters of ``state_id`` are ever logged; the full state and
the HMAC secret are never written to logs.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import secrets
from hashlib import sha256
from typing import Final

from atlasweb_auth.central_auth.clock import Clock, default_clock

_LOG = logging.getLogger("atlasweb-auth.central_auth.state")

_SIG_LEN: Final[int] = 16  # characters kept from hex digest
_NONCE_BYTES: Final[int] = 16  # 128 bits


class InvalidStateError(Exception):
    """Raised when an incoming state is malformed or its signature fails."""


def new_state_id() -> str:
    """Return a fresh nonce with 128 bits of entropy (32 hex chars)."""
    return secrets.token_hex(_NONCE_BYTES)


def _b64e(data: str) -> str:
    return base64.urlsafe_b64encode(data.encode("utf-8")).rstrip(b"=").decode("ascii")


def _b64d(data: str) -> str:
    pad_len = (-len(data)) % 4
    return base64.urlsafe_b64decode(data + "=" * pad_len).decode("utf-8")


def _sign(message: str, secret: str) -> str:
    digest = hmac.new(secret.encode(), msg=message.encode(), digestmod=sha256).hexdigest()
    return digest[:_SIG_LEN]


def build_state(state_id: str, secret: str, *, clock: Clock = default_clock) -> str:
    """Build the ``state`` query value for an authorization request.

    Parameters
    ----------
    state_id:
        Nonce returned by :func:`new_state_id`.
    secret:
        Application secret used to sign the state.
    clock:
        Time source.

    Returns
    -------
    str
        URL-safe state value.
    """
    if ":" in state_id:
        raise ValueError("state_id must not contain ':'")
    payload = f"{state_id}:{int(clock())}"
    encoded = _b64e(f"{payload}:{_sign(payload, secret)}")
    _LOG.debug("Built state for state_id=%s****", state_id[:6])
    return encoded


def parse_state(state: str, secret: str) -> tuple[str, int]:
    """Validate and decode a state received on the callback.

    Returns
    -------
    tuple[str, int]
        ``(state_id, ts)`` on success.

    Raises
    ------
    InvalidStateError
        If the state is malformed or the signature does not validate.
    """
    if not state:
        raise InvalidStateError("state missing")
    try:
        decoded = _b64d(state)
    except (ValueError, binascii.Error):
        raise InvalidStateError("state cannot be decoded") from None

    parts = decoded.split(":")
    if len(parts) != 3:
        raise InvalidStateError("state has an unexpected format")

    state_id, ts_str, sig = parts
    if not state_id or not ts_str.isdigit():
        raise InvalidStateError("state missing fields")

    if not hmac.compare_digest(sig, _sign(f"{state_id}:{ts_str}", secret)):
        raise InvalidStateError("state signature mismatch")

    _LOG.debug("Parsed state for state_id=%s****", state_id[:6])
    return state_id, int(ts_str)

"""Utility functions related to environment checking."""

import logging
import os
from typing import Final, Tuple

logger = logging.getLogger("atlasweb-auth.utils.environment")

_TRUTHY: Final[Tuple[str, ...]] = ("true", "1", "yes", "y", "on")

SUPPORTED_PROVIDERS: Final[Tuple[str, ...]] = ("google", "microsoft")


def truthy(value: str | None) -> bool:
    return (value or "").strip().lower() in _TRUTHY


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return truthy(raw)


def env_int(name: str, default: int) -> int:
    """Integer env var; malformed values fall back to *default* with a warning."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


def env_list(name: str, sep: str = ",") -> list[str]:
    raw = os.getenv(name) or ""
    return [part.strip() for part in raw.split(sep) if part.strip()]


def first_env(*names: str) -> str | None:
    """Return the first non-empty value among *names*."""
    for name in names:
        val = os.getenv(name)
        if val:
            return val
    return None


def provider_env(provider: str, key: str) -> str | None:
    """Read ``{PROVIDER}_OAUTH_{KEY}`` (e.g. ``GOOGLE_OAUTH_CLIENT_ID``)."""
    return os.getenv(f"{provider.upper()}_OAUTH_{key}") or None


def get_configured_providers() -> dict[str, bool]:
    """
    Report which providers have at least a client id and redirect URI set.

    Used at startup for an operator-facing summary; the auth service still
    validates the full configuration lazily per request.
    """
    configured = {
        p: bool(provider_env(p, "CLIENT_ID") and provider_env(p, "REDIRECT_URI"))
        for p in SUPPORTED_PROVIDERS
    }
    for provider, ok in configured.items():
        if ok:
            logger.info("Using %s OAuth provider (client id + redirect URI set)", provider)
        else:
            logger.info("%s OAuth provider is not configured", provider.capitalize())
    return configured

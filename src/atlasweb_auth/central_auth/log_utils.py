"""Context-carrying loggers for central OAuth components.

The adapter only ever attaches these *non-sensitive* fields:

- ``flow_id``        – state nonce of the login attempt (first 6 chars kept)
- ``provider``       – ``google`` / ``microsoft``
- ``correlation_id`` – request correlation id from the HTTP layer

Codes, tokens and client secrets must never be passed in.

Usage
-----
>>> from atlasweb_auth.central_auth.log_utils import get_auth_logger
>>> log = get_auth_logger(provider="google", flow_id="4f1c2a9e0b7d...")
>>> log.info("Exchanging authorization code")
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping


class _AuthLoggerAdapter(logging.LoggerAdapter):
    """Inject whitelisted auth context into log records."""

    extra_keys = ("flow_id", "provider", "correlation_id")

    def __init__(self, logger: logging.Logger, extra: Mapping[str, Any] | None = None):
        extra_clean: MutableMapping[str, Any] = {}
        for k in self.extra_keys:
            if not extra or extra.get(k) is None:
                continue
            extra_clean[k] = str(extra[k])[:6] if k == "flow_id" else extra[k]
        super().__init__(logger, extra_clean)

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        if kwargs.get("extra") is None:
            kwargs["extra"] = {}
        # call-site extras win
        for k, v in self.extra.items():
            kwargs["extra"].setdefault(k, v)
        return msg, kwargs


def get_auth_logger(
    *,
    base_logger_name: str = "atlasweb-auth.central_auth",
    flow_id: str | None = None,
    provider: str | None = None,
    correlation_id: str | None = None,
) -> logging.LoggerAdapter:
    """Return a LoggerAdapter pre-filled with auth context."""
    return _AuthLoggerAdapter(
        logging.getLogger(base_logger_name),
        {"flow_id": flow_id, "provider": provider, "correlation_id": correlation_id},
    )

"""Browser-facing OAuth endpoints for AtlasWeb sign-in.

Handlers are intentionally thin:

1. Parse and validate HTTP-layer parameters.
2. Delegate business logic to ``CentralAuthService`` (in a worker thread, the
   service does blocking I/O).
3. Return an appropriate Starlette ``Response`` type.

Failures raised by the service are :class:`AuthFlowError` subclasses and are
turned into JSON by :func:`auth_error_handler`, registered once on the app.

The base path is configurable (default: ``/auth``) so that reverse-proxies can
mount the application under arbitrary prefixes.

SECURITY NOTE
-------------
• No raw secrets (state, codes, access / refresh tokens, client secrets) are
  ever logged.
• Access and refresh tokens never appear in a redirect URL.
• Correlation IDs, if present in ``request.state.correlation_id``, are included
  in INFO logs to aid troubleshooting.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from atlasweb_auth.central_auth.errors import (
    AuthFlowError,
    ExchangeInProgressError,
    SecretStoreError,
)
from atlasweb_auth.central_auth.models import ExchangeResult
from atlasweb_auth.central_auth.service import CentralAuthService
from atlasweb_auth.utils.logging import mask_sensitive

_LOG = logging.getLogger("atlasweb-auth.auth.routes")


def _correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", "-")


def _invalid_request(message: str) -> JSONResponse:
    return JSONResponse({"error": "invalid_request", "message": message}, status_code=400)


def _wants_json(request: Request) -> bool:
    """``format=json`` wins; otherwise an Accept header asking for JSON over HTML."""
    fmt_param = request.query_params.get("format")
    if fmt_param == "json":
        return True
    if fmt_param == "redirect":
        return False
    accept_header = (request.headers.get("accept") or "").lower()
    return "application/json" in accept_header and "text/html" not in accept_header


def _post_login_redirect(post_login_url: str, result: ExchangeResult) -> str:
    """Append the public profile summary to *post_login_url* (never tokens)."""
    parts = urlsplit(post_login_url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(
        [
            ("oauth", "success"),
            ("provider", result.provider),
            ("email", result.email),
            ("name", result.profile.name or ""),
            ("status", "ready"),
            ("hasRefreshToken", "true" if result.has_refresh_token else "false"),
        ]
    )
    return urlunsplit(parts._replace(query=urlencode(query)))


async def _json_body(request: Request) -> dict[str, Any] | None:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return payload if isinstance(payload, dict) else None


# --------------------------------------------------------------------------- #
# Error mapping                                                               #
# --------------------------------------------------------------------------- #
async def auth_error_handler(request: Request, exc: AuthFlowError) -> Response:
    """Render an :class:`AuthFlowError` as ``{error, message, action?}``.

    Registered on the app for :class:`AuthFlowError` only.
    """
    if isinstance(exc, SecretStoreError):
        _LOG.error(
            "Secret store failure path=%s correlation_id=%s",
            request.url.path,
            _correlation_id(request),
            exc_info=exc,
        )
    else:
        _LOG.info(
            "Auth request failed error=%s status=%s path=%s correlation_id=%s",
            exc.error_code,
            exc.status_code,
            request.url.path,
            _correlation_id(request),
        )
    headers: dict[str, str] = {}
    if isinstance(exc, ExchangeInProgressError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)


async def unhandled_error_handler(request: Request, exc: Exception) -> Response:
    """Last resort: log everything, tell the client nothing."""
    _LOG.error(
        "Unhandled error path=%s correlation_id=%s",
        request.url.path,
        _correlation_id(request),
        exc_info=exc,
    )
    return JSONResponse(
        {"error": "internal_error", "message": "An unexpected error occurred."},
        status_code=500,
    )


# --------------------------------------------------------------------------- #
# Public API                                                                  #
# --------------------------------------------------------------------------- #
def auth_routes(svc: CentralAuthService, *, base_path: str = "/auth") -> list[Route]:
    """Return the OAuth endpoints bound to *svc* under *base_path*."""
    base_path = base_path.rstrip("/")

    # ----- GET /auth/{provider}/start ------------------------------------- #
    async def _start_oauth(request: Request) -> Response:
        provider = request.path_params["provider"]
        login_hint = request.query_params.get("login_hint") or None

        authorize_url = await run_in_threadpool(
            svc.build_authorize_url, provider, login_hint=login_hint
        )
        _LOG.info(
            "OAuth start provider=%s login_hint=%s correlation_id=%s",
            provider,
            mask_sensitive(login_hint, 3) or "-",
            _correlation_id(request),
        )
        if _wants_json(request):
            return JSONResponse({"authorizeUrl": authorize_url})
        return RedirectResponse(authorize_url, status_code=302)

    # ----- GET /auth/{provider}/callback ---------------------------------- #
    async def _oauth_callback(request: Request) -> Response:
        provider = request.path_params["provider"]
        params = request.query_params

        result: ExchangeResult = await run_in_threadpool(
            lambda: svc.handle_callback(
                provider,
                code=params.get("code"),
                state=params.get("state"),
                error=params.get("error"),
                error_description=params.get("error_description"),
                correlation_id=_correlation_id(request),
            )
        )
        _LOG.info(
            "OAuth success provider=%s refresh_token=%s correlation_id=%s",
            result.provider,
            "yes" if result.has_refresh_token else "no",
            _correlation_id(request),
        )
        if params.get("format") == "json":
            return JSONResponse(result.to_payload())
        cfg = svc.provider(provider)
        return RedirectResponse(_post_login_redirect(cfg.post_login_url, result), status_code=302)

    # ----- POST /auth/{provider}/refresh ---------------------------------- #
    async def _refresh(request: Request) -> Response:
        provider = request.path_params["provider"]
        payload = await _json_body(request)
        refresh_token = (payload or {}).get("refreshToken")
        if not isinstance(refresh_token, str) or not refresh_token:
            return _invalid_request("refreshToken is required")

        token = await run_in_threadpool(svc.refresh, provider, refresh_token)
        return JSONResponse(token.to_payload())

    # ----- POST /auth/{provider}/tokens ----------------------------------- #
    async def _tokens(request: Request) -> Response:
        provider = request.path_params["provider"]
        payload = await _json_body(request)
        user_email = (payload or {}).get("userEmail")
        if not isinstance(user_email, str) or not user_email.strip():
            return _invalid_request("userEmail is required")

        token = await run_in_threadpool(svc.tokens_for_user, provider, user_email.strip())
        _LOG.info(
            "Issued access token provider=%s correlation_id=%s",
            provider,
            _correlation_id(request),
        )
        return JSONResponse(token.to_payload())

    # ----- POST /auth/{provider}/disconnect ------------------------------- #
    async def _disconnect(request: Request) -> Response:
        provider = request.path_params["provider"]
        payload = await _json_body(request)
        user_email = (payload or {}).get("userEmail")
        if not isinstance(user_email, str) or not user_email.strip():
            return _invalid_request("userEmail is required")

        removed = await run_in_threadpool(svc.disconnect, provider, user_email.strip())
        _LOG.info(
            "Disconnect provider=%s removed=%s correlation_id=%s",
            provider,
            removed,
            _correlation_id(request),
        )
        return Response(status_code=204)

    return [
        Route(f"{base_path}/{{provider}}/start", _start_oauth, methods=["GET"]),
        Route(f"{base_path}/{{provider}}/callback", _oauth_callback, methods=["GET"]),
        Route(f"{base_path}/{{provider}}/refresh", _refresh, methods=["POST"]),
        Route(f"{base_path}/{{provider}}/tokens", _tokens, methods=["POST"]),
        Route(f"{base_path}/{{provider}}/disconnect", _disconnect, methods=["POST"]),
    ]

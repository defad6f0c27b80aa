"""Starlette application setup and CLI entrypoint for the AtlasWeb auth service."""

import argparse
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route

from atlasweb_auth.central_auth.errors import AuthFlowError
from atlasweb_auth.central_auth.service import CentralAuthService
from atlasweb_auth.utils.environment import env_int, env_list, get_configured_providers
from atlasweb_auth.utils.logging import setup_logging

from .auth import auth_error_handler, auth_routes, unhandled_error_handler
from .correlation import CorrelationIdMiddleware

logger = logging.getLogger("atlasweb-auth.server.main")


async def health_check(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


async def root(request: Request) -> PlainTextResponse:
    return PlainTextResponse("AtlasWeb auth service is running")


def create_app(service: CentralAuthService | None = None, *, base_path: str = "/auth") -> Starlette:
    """Build the ASGI app: OAuth routes, health check, CORS and correlation IDs."""
    svc = service or CentralAuthService()

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        logger.info("AtlasWeb auth service starting...")
        providers = get_configured_providers()
        if not any(providers.values()):
            logger.warning("No OAuth provider is configured; every /auth request will fail")
        yield
        removed = svc.flow_store.cleanup_expired()
        logger.info("AtlasWeb auth service shutting down (expired flow records removed: %s)", removed)

    middleware = [Middleware(CorrelationIdMiddleware)]
    origins = env_list("ATLASWEB_CORS_ORIGINS")
    if origins:
        middleware.append(
            Middleware(
                CORSMiddleware,
                allow_origins=origins,
                allow_methods=["GET", "POST"],
                allow_headers=["Content-Type", "X-Correlation-ID"],
                expose_headers=["X-Correlation-ID", "Retry-After"],
            )
        )
        logger.info("CORS enabled for %d origin(s)", len(origins))

    routes = [
        Route("/", root, methods=["GET"]),
        Route("/healthz", health_check, methods=["GET"], include_in_schema=False),
        *auth_routes(svc, base_path=base_path),
    ]
    app = Starlette(
        routes=routes,
        middleware=middleware,
        exception_handlers={
            AuthFlowError: auth_error_handler,
            Exception: unhandled_error_handler,
        },
        lifespan=lifespan,
    )
    app.state.auth_service = svc
    return app


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run the AtlasWeb OAuth service.")
    parser.add_argument("--host", default=os.getenv("ATLASWEB_HOST", "0.0.0.0"))  # noqa: S104
    parser.add_argument("--port", type=int, default=env_int("PORT", 8080))
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ...")
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    app = create_app()
    logger.info("Listening on %s:%s", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()

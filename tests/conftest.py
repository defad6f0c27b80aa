"""Shared fixtures: fake provider HTTP session, provider configs, wired service."""

from __future__ import annotations

import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable

import pytest

from atlasweb_auth.central_auth.clock import ManualClock
from atlasweb_auth.central_auth.credentials import CredentialStore
from atlasweb_auth.central_auth.providers import ProviderConfig, load_provider_config
from atlasweb_auth.central_auth.secret_backends import DiskSecretBackend
from atlasweb_auth.central_auth.service import CentralAuthService
from atlasweb_auth.central_auth.store import MemoryFlowStore
from atlasweb_auth.central_auth.token_client import ProviderTokenClient

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_PROFILE_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_REDIRECT_URI = "https://auth.example.com/auth/google/callback"
MICROSOFT_REDIRECT_URI = "https://auth.example.com/auth/microsoft/callback"
POST_LOGIN_URL = "https://app.example.com/email-assistant.html"


def pytest_addoption(parser):
    """Add integration option to pytest."""
    parser.addoption(
        "--integration",
        action="store_true",
        default=False,
        help="run integration tests",
    )


# --------------------------------------------------------------------------- #
# Fake requests.Session                                                       #
# --------------------------------------------------------------------------- #
def fake_response(status: int = 200, body: Any = None) -> SimpleNamespace:
    """Minimal stand-in for ``requests.Response``."""

    def _json() -> Any:
        if body is None or isinstance(body, str):
            raise ValueError("No JSON object could be decoded")
        return body

    return SimpleNamespace(
        ok=200 <= status < 400,
        status_code=status,
        json=_json,
        text=body if isinstance(body, str) else "",
    )


class FakeSession:
    """Records calls and answers them from per-URL queues.

    A queued item is a response, an exception to raise, or a callable
    receiving the call kwargs.  The last item of a queue is sticky.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self._routes: dict[str, list[Any]] = {}
        self._lock = threading.Lock()

    def queue(self, url: str, *items: Any) -> None:
        self._routes.setdefault(url, []).extend(items)

    def calls_to(self, url: str) -> list[dict[str, Any]]:
        return [kw for _, u, kw in self.calls if u == url]

    def _answer(self, method: str, url: str, kwargs: dict[str, Any]) -> Any:
        with self._lock:
            self.calls.append((method, url, kwargs))
            items = self._routes.get(url)
            if not items:
                raise AssertionError(f"unexpected {method} {url}")
            item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(**kwargs)
        return item

    def post(self, url: str, **kwargs: Any) -> Any:
        return self._answer("POST", url, kwargs)

    def get(self, url: str, **kwargs: Any) -> Any:
        return self._answer("GET", url, kwargs)


def token_body(
    access_token: str = "at-1",
    refresh_token: str | None = "rt-1",
    expires_in: int = 3599,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "access_token": access_token,
        "expires_in": expires_in,
        "token_type": "Bearer",
        "scope": "openid email",
    }
    if refresh_token is not None:
        body["refresh_token"] = refresh_token
    return body


# --------------------------------------------------------------------------- #
# Fixtures                                                                    #
# --------------------------------------------------------------------------- #
@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(1_700_000_000)


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def response_factory() -> Callable[..., SimpleNamespace]:
    return fake_response


@pytest.fixture()
def oauth_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Configure both providers through environment variables."""
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "google-client")
    monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", "google-secret-value")
    monkeypatch.setenv("GOOGLE_OAUTH_REDIRECT_URI", GOOGLE_REDIRECT_URI)
    monkeypatch.setenv("MICROSOFT_OAUTH_CLIENT_ID", "ms-client")
    monkeypatch.setenv("MICROSOFT_OAUTH_CLIENT_SECRET", "ms-secret-value")
    monkeypatch.setenv("MICROSOFT_OAUTH_REDIRECT_URI", MICROSOFT_REDIRECT_URI)
    monkeypatch.setenv("ATLASWEB_POST_LOGIN_URL", POST_LOGIN_URL)
    for name in (
        "GOOGLE_OAUTH_SCOPE",
        "GOOGLE_OAUTH_CLIENT_SECRET_NAME",
        "GOOGLE_OAUTH_POST_LOGIN_URL",
        "MICROSOFT_OAUTH_SCOPE",
        "MICROSOFT_OAUTH_TENANT",
        "MICROSOFT_OAUTH_POST_LOGIN_URL",
        "ATLASWEB_STATE_TTL_SECONDS",
        "ATLASWEB_EXCHANGE_LOCK_TTL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def google_config(oauth_env) -> ProviderConfig:
    return load_provider_config("google")


@pytest.fixture()
def microsoft_config(oauth_env) -> ProviderConfig:
    return load_provider_config("microsoft")


@pytest.fixture()
def secret_backend(tmp_path: Path, clock: ManualClock) -> DiskSecretBackend:
    return DiskSecretBackend(tmp_path, clock=clock)


@pytest.fixture()
def auth_service(
    google_config: ProviderConfig,
    microsoft_config: ProviderConfig,
    fake_session: FakeSession,
    secret_backend: DiskSecretBackend,
    clock: ManualClock,
) -> CentralAuthService:
    """Service wired to in-memory flows, on-disk secrets and a fake provider."""
    return CentralAuthService(
        flow_store=MemoryFlowStore(clock=clock),
        credentials=CredentialStore(secret_backend, clock=clock),
        token_client=ProviderTokenClient(fake_session, sleep=lambda _s: None),
        providers={"google": google_config, "microsoft": microsoft_config},
        state_secret="test-state-secret",
        clock=clock,
    )


@pytest.fixture()
def token_payload() -> Callable[..., dict[str, Any]]:
    return token_body

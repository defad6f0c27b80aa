"""Unit tests for the /auth/{provider}/... HTTP endpoints."""

from __future__ import annotations

import threading
from urllib.parse import parse_qs, urlsplit

import anyio
import httpx
import pytest

from atlasweb_auth.central_auth.store import MemoryFlowStore
from atlasweb_auth.servers.main import create_app

PROFILE = {"email": "u@x.com", "name": "U X", "picture": "https://x/p.png", "id": "42"}


# --------------------------------------------------------------------------- #
# Fixtures                                                                    #
# --------------------------------------------------------------------------- #
@pytest.fixture()
def asgi_app(auth_service):
    """Return the Starlette application wired to the test service."""
    return create_app(auth_service)


@pytest.fixture()
async def client(asgi_app):
    """Async HTTP client bound to the Starlette app."""
    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture()
def google_ok(fake_session, google_config, response_factory, token_payload):
    fake_session.queue(google_config.token_url, response_factory(200, token_payload()))
    fake_session.queue(google_config.profile_url, response_factory(200, PROFILE))
    return google_config


async def _state(client: httpx.AsyncClient, provider: str = "google") -> str:
    resp = await client.get(f"/auth/{provider}/start", params={"format": "json"})
    assert resp.status_code == 200
    return parse_qs(urlsplit(resp.json()["authorizeUrl"]).query)["state"][0]


# --------------------------------------------------------------------------- #
# start                                                                       #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_start_redirects_browser(client: httpx.AsyncClient):
    resp = await client.get("/auth/google/start", headers={"Accept": "text/html"})
    assert resp.status_code == 302
    assert resp.headers["location"].startswith("https://accounts.google.com/o/oauth2/v2/auth?")


@pytest.mark.anyio
async def test_start_json_by_accept_header(client: httpx.AsyncClient):
    resp = await client.get(
        "/auth/microsoft/start",
        params={"login_hint": "m@corp.com"},
        headers={"Accept": "application/json"},
    )
    assert resp.status_code == 200
    url = resp.json()["authorizeUrl"]
    assert "login.microsoftonline.com" in url
    assert parse_qs(urlsplit(url).query)["login_hint"] == ["m@corp.com"]


@pytest.mark.anyio
async def test_start_unknown_provider(client: httpx.AsyncClient):
    resp = await client.get("/auth/github/start")
    assert resp.status_code == 404
    assert resp.json()["error"] == "unknown_provider"


@pytest.mark.anyio
async def test_start_refused_when_flow_store_full(client, auth_service, clock):
    auth_service.flow_store = MemoryFlowStore(maxsize=1, clock=clock)
    assert (await client.get("/auth/google/start?format=json")).status_code == 200

    resp = await client.get("/auth/google/start?format=json")

    assert resp.status_code == 503
    assert resp.json()["error"] == "too_many_pending_logins"


@pytest.mark.anyio
async def test_correlation_id_echoed(client: httpx.AsyncClient):
    resp = await client.get("/auth/google/start?format=json", headers={"X-Correlation-ID": "req-123"})
    assert resp.headers["X-Correlation-ID"] == "req-123"

    generated = await client.get("/auth/google/start?format=json")
    assert len(generated.headers["X-Correlation-ID"]) == 32


# --------------------------------------------------------------------------- #
# callback                                                                    #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_callback_redirects_to_post_login_url(client, google_ok):
    state = await _state(client)

    resp = await client.get("/auth/google/callback", params={"code": "4/0-code", "state": state})

    assert resp.status_code == 302
    location = urlsplit(resp.headers["location"])
    assert f"{location.scheme}://{location.netloc}{location.path}" == (
        "https://app.example.com/email-assistant.html"
    )
    q = parse_qs(location.query)
    assert q["oauth"] == ["success"]
    assert q["provider"] == ["google"]
    assert q["email"] == ["u@x.com"]
    assert q["name"] == ["U X"]
    assert q["status"] == ["ready"]
    assert q["hasRefreshToken"] == ["true"]
    assert "at-1" not in resp.headers["location"]
    assert "rt-1" not in resp.headers["location"]


@pytest.mark.anyio
async def test_callback_json_format(client, google_ok):
    state = await _state(client)

    resp = await client.get(
        "/auth/google/callback", params={"code": "c", "state": state, "format": "json"}
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["accessToken"] == "at-1"
    assert body["email"] == "u@x.com"
    assert body["hasRefreshToken"] is True
    assert "refreshToken" not in body


@pytest.mark.anyio
async def test_callback_state_mismatch(client, google_ok, fake_session):
    resp = await client.get("/auth/google/callback", params={"code": "c", "state": "forged"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "state_mismatch"
    assert fake_session.calls == []


@pytest.mark.anyio
async def test_callback_provider_denied(client, google_ok):
    state = await _state(client)

    resp = await client.get(
        "/auth/google/callback",
        params={"error": "access_denied", "error_description": "nope", "state": state},
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "provider_denied"
    assert body["reason"] == "access_denied"


@pytest.mark.anyio
async def test_callback_token_failure_is_502(client, fake_session, google_config, response_factory):
    fake_session.queue(google_config.token_url, response_factory(400, {"error": "invalid_grant"}))
    state = await _state(client)

    resp = await client.get("/auth/google/callback", params={"code": "c", "state": state})

    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "token_exchange_failed"
    assert body["providerError"] == "invalid_grant"
    assert "google-secret-value" not in resp.text


@pytest.mark.anyio
async def test_concurrent_duplicate_callback_gets_429(
    client, fake_session, google_config, response_factory, token_payload
):
    entered = threading.Event()
    release = threading.Event()

    def slow_token_endpoint(**_kwargs):
        entered.set()
        assert release.wait(5)
        return response_factory(200, token_payload())

    fake_session.queue(google_config.token_url, slow_token_endpoint)
    fake_session.queue(google_config.profile_url, response_factory(200, PROFILE))
    state = await _state(client)
    params = {"code": "dup", "state": state}
    responses: dict[str, httpx.Response] = {}

    async def first() -> None:
        responses["first"] = await client.get("/auth/google/callback", params=params)

    async with anyio.create_task_group() as tg:
        tg.start_soon(first)
        assert await anyio.to_thread.run_sync(entered.wait, 5)
        responses["second"] = await client.get("/auth/google/callback", params=params)
        release.set()

    assert responses["first"].status_code == 302
    assert responses["second"].status_code == 429
    assert responses["second"].headers["Retry-After"] == "30"
    assert responses["second"].json()["error"] == "exchange_in_progress"
    assert len(fake_session.calls_to(google_config.token_url)) == 1


# --------------------------------------------------------------------------- #
# refresh / tokens / disconnect                                               #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_refresh_endpoint(client, fake_session, google_config, response_factory, token_payload):
    fake_session.queue(
        google_config.token_url, response_factory(200, token_payload("at-r", refresh_token=None))
    )

    resp = await client.post("/auth/google/refresh", json={"refreshToken": "rt-client"})

    assert resp.status_code == 200
    assert resp.json() == {"accessToken": "at-r", "expiresIn": 3599, "tokenType": "Bearer"}


@pytest.mark.anyio
async def test_refresh_endpoint_dead_token(client, fake_session, google_config, response_factory):
    fake_session.queue(google_config.token_url, response_factory(400, {"error": "invalid_grant"}))

    resp = await client.post("/auth/google/refresh", json={"refreshToken": "rt-dead"})

    assert resp.status_code == 401
    body = resp.json()
    assert body["error"] == "reauthentication_required"
    assert body["action"] == "reauthentication_required"


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("path", "body"),
    [
        ("/auth/google/refresh", {}),
        ("/auth/google/refresh", {"refreshToken": 42}),
        ("/auth/google/tokens", {"userEmail": ""}),
        ("/auth/google/disconnect", {"email": "u@x.com"}),
    ],
)
async def test_invalid_request_bodies(client, fake_session, path, body):
    resp = await client.post(path, json=body)
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"
    assert fake_session.calls == []


@pytest.mark.anyio
async def test_malformed_json_body(client):
    resp = await client.post(
        "/auth/google/tokens", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"


@pytest.mark.anyio
async def test_tokens_without_credential(client):
    resp = await client.post("/auth/google/tokens", json={"userEmail": "nobody@x.com"})
    assert resp.status_code == 401
    assert resp.json()["action"] == "reauthentication_required"


@pytest.mark.anyio
@pytest.mark.parametrize("path", ["/auth/google/tokens", "/auth/microsoft/disconnect"])
async def test_overlong_email_is_invalid_request(client, fake_session, path):
    resp = await client.post(path, json={"userEmail": "a" * 300 + "@x.com"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "invalid_request"
    assert fake_session.calls == []


@pytest.mark.anyio
async def test_disconnect(client, auth_service, fake_session, google_config, response_factory):
    auth_service.credentials.put("u@x.com", "google", "rt-1")
    fake_session.queue(google_config.revoke_url, response_factory(200, {}))

    resp = await client.post("/auth/google/disconnect", json={"userEmail": "u@x.com"})

    assert resp.status_code == 204
    assert auth_service.credentials.delete("u@x.com", "google") is False


# --------------------------------------------------------------------------- #
# health                                                                      #
# --------------------------------------------------------------------------- #
@pytest.mark.anyio
async def test_healthz_and_root(client):
    assert (await client.get("/healthz")).json() == {"status": "ok"}
    root = await client.get("/")
    assert root.status_code == 200
    assert "running" in root.text

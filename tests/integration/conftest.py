"""Fixtures for the end-to-end sign-in tests.

The ``ci_safe`` tests here drive the Starlette app through start, callback,
``/tokens`` and disconnect with the fake provider session and on-disk stores,
so they always run.  Anything else marked ``integration`` talks to real
Google / Microsoft endpoints and needs ``--integration`` plus live
``GOOGLE_OAUTH_*`` / ``MICROSOFT_OAUTH_*`` credentials.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from atlasweb_auth.central_auth.credentials import CredentialStore
from atlasweb_auth.central_auth.providers import ProviderConfig
from atlasweb_auth.central_auth.secret_backends import DiskSecretBackend
from atlasweb_auth.central_auth.service import CentralAuthService
from atlasweb_auth.central_auth.store import DiskFlowStore
from atlasweb_auth.central_auth.token_client import ProviderTokenClient


def pytest_collection_modifyitems(config, items):
    """Skip live-provider tests unless ``--integration`` was given."""
    if config.getoption("--integration", default=False):
        return
    skip_live = pytest.mark.skip(reason="talks to real identity providers; pass --integration")
    for item in items:
        if "integration" in item.keywords and "ci_safe" not in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture()
def shared_secret_backend(tmp_path: Path) -> DiskSecretBackend:
    """Credential store every replica in a test writes to."""
    return DiskSecretBackend(tmp_path / "secrets-root")


@pytest.fixture()
def replica_factory(
    tmp_path: Path,
    fake_session,
    google_config: ProviderConfig,
    shared_secret_backend: DiskSecretBackend,
) -> Callable[[], CentralAuthService]:
    """Build service instances that share one flow directory, like replicas on a volume."""

    def build() -> CentralAuthService:
        return CentralAuthService(
            flow_store=DiskFlowStore(tmp_path / "shared"),
            credentials=CredentialStore(shared_secret_backend),
            token_client=ProviderTokenClient(fake_session, sleep=lambda _s: None),
            providers={"google": google_config},
            state_secret="shared-state-secret",
        )

    return build

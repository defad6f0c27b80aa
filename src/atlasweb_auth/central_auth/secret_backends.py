"""Versioned secret stores holding durable credentials.

Secret stores are append-only: a secret is a named container and every write
adds a new *version*.  The narrow :class:`SecretBackend` interface mirrors
that model so the credential adapter can run the canonical
"add version → not found → create secret → add version" sequence against any
backend:

* :class:`GoogleSecretManagerBackend` – Google Cloud Secret Manager
  (``google-cloud-secret-manager``).
* :class:`DiskSecretBackend` – JSON files under a local directory, one file
  per version, atomic writes.  Meant for development and tests.

Backends raise :class:`~atlasweb_auth.central_auth.errors.SecretNotFoundError`
for missing secrets and :class:`~atlasweb_auth.central_auth.errors.SecretStoreError`
for everything else.  Secret payloads are never logged.

Environment variables
---------------------
ATLASWEB_SECRET_BACKEND
    ``gcp`` or ``disk``.  Defaults to ``gcp`` when a project is configured.
ATLASWEB_GCP_PROJECT / GOOGLE_CLOUD_PROJECT
    Project that owns the secrets.
ATLASWEB_AUTH_STORAGE_DIR
    Base directory for :class:`DiskSecretBackend` (``secrets/`` sub-directory).
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Protocol, runtime_checkable

from google.api_core import exceptions as google_exceptions

from atlasweb_auth.central_auth.clock import Clock, default_clock
from atlasweb_auth.central_auth.errors import SecretNotFoundError, SecretStoreError
from atlasweb_auth.central_auth.store import _atomic_write, _file_lock, _read_json
from atlasweb_auth.utils.environment import first_env

_LOG = logging.getLogger("atlasweb-auth.central_auth.secret_backends")

_SECRET_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,255}$")


def check_secret_id(secret_id: str) -> str:
    """Return *secret_id* if it is a valid Secret Manager id, else raise."""
    if not _SECRET_ID_RE.match(secret_id or ""):
        raise ValueError(f"invalid secret id {secret_id!r}")
    return secret_id


def version_number(version_name: str) -> int:
    """Return the trailing number of a ``.../versions/<n>`` name."""
    return int(version_name.rsplit("/", 1)[-1])


@runtime_checkable
class SecretBackend(Protocol):
    """Minimal contract of a versioned secret store."""

    def create_secret(self, secret_id: str) -> None: ...
    def add_version(self, secret_id: str, payload: str) -> str: ...
    def access_latest(self, secret_id: str) -> str: ...
    def destroy_versions_before(self, secret_id: str, version: str) -> int: ...
    def delete_secret(self, secret_id: str) -> None: ...


# --------------------------------------------------------------------------- #
# Google Cloud Secret Manager                                                 #
# --------------------------------------------------------------------------- #


@contextmanager
def _translate_google_errors(op: str, secret_id: str) -> Iterator[None]:
    try:
        yield
    except google_exceptions.NotFound:
        raise SecretNotFoundError(secret_id) from None
    except google_exceptions.GoogleAPIError as exc:
        _LOG.error("Secret Manager %s failed for %s: %s", op, secret_id, exc, exc_info=True)
        raise SecretStoreError() from exc


class GoogleSecretManagerBackend(SecretBackend):
    """:class:`SecretBackend` on Google Cloud Secret Manager."""

    def __init__(self, project_id: str, client: Any | None = None) -> None:
        if not project_id:
            raise ValueError("project_id is required")
        self.project_id = project_id
        if client is None:
            from google.cloud import secretmanager

            client = secretmanager.SecretManagerServiceClient()
        self.client = client

    def _secret_path(self, secret_id: str) -> str:
        return f"projects/{self.project_id}/secrets/{check_secret_id(secret_id)}"

    def create_secret(self, secret_id: str) -> None:
        try:
            self.client.create_secret(
                request={
                    "parent": f"projects/{self.project_id}",
                    "secret_id": check_secret_id(secret_id),
                    "secret": {"replication": {"automatic": {}}},
                }
            )
        except google_exceptions.AlreadyExists:
            # Lost a creation race; the secret is there, which is all we need
            _LOG.debug("Secret %s already exists", secret_id)
            return
        except google_exceptions.GoogleAPIError as exc:
            _LOG.error("Secret Manager create failed for %s: %s", secret_id, exc, exc_info=True)
            raise SecretStoreError() from exc
        _LOG.info("Created secret %s", secret_id)

    def add_version(self, secret_id: str, payload: str) -> str:
        with _translate_google_errors("add_version", secret_id):
            version = self.client.add_secret_version(
                request={
                    "parent": self._secret_path(secret_id),
                    "payload": {"data": payload.encode("utf-8")},
                }
            )
        return version.name

    def access_latest(self, secret_id: str) -> str:
        with _translate_google_errors("access", secret_id):
            response = self.client.access_secret_version(
                request={"name": f"{self._secret_path(secret_id)}/versions/latest"}
            )
        return response.payload.data.decode("utf-8")

    def destroy_versions_before(self, secret_id: str, version: str) -> int:
        kept = version_number(version)
        destroyed = 0
        with _translate_google_errors("destroy_versions", secret_id):
            versions = self.client.list_secret_versions(
                request={"parent": self._secret_path(secret_id), "filter": "state:ENABLED"}
            )
            for candidate in versions:
                # a newer version may belong to a concurrent writer
                if version_number(candidate.name) >= kept:
                    continue
                self.client.destroy_secret_version(request={"name": candidate.name})
                destroyed += 1
        return destroyed

    def delete_secret(self, secret_id: str) -> None:
        with _translate_google_errors("delete", secret_id):
            self.client.delete_secret(request={"name": self._secret_path(secret_id)})
        _LOG.info("Deleted secret %s", secret_id)


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskSecretBackend(SecretBackend):
    """Versioned secrets as JSON files: ``secrets/<id>/versions/<n>.json``."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        clock: Clock = default_clock,
    ) -> None:
        root = Path(
            base_dir
            or os.getenv("ATLASWEB_AUTH_STORAGE_DIR")
            or Path.home() / ".atlasweb" / "auth"
        ).expanduser()
        self.base_dir = root / "secrets"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.clock = clock

    def _dir(self, secret_id: str) -> Path:
        return self.base_dir / check_secret_id(secret_id)

    def _versions(self, secret_id: str) -> list[tuple[int, Path]]:
        vdir = self._dir(secret_id) / "versions"
        return sorted((int(p.stem), p) for p in vdir.glob("*.json") if p.stem.isdigit())

    def _require(self, secret_id: str) -> Path:
        sdir = self._dir(secret_id)
        if not (sdir / "secret.json").exists():
            raise SecretNotFoundError(secret_id)
        return sdir

    def create_secret(self, secret_id: str) -> None:
        meta = self._dir(secret_id) / "secret.json"
        if meta.exists():
            return
        try:
            _atomic_write(meta, {"secret_id": secret_id, "created_at": int(self.clock())})
        except OSError as exc:
            raise SecretStoreError() from exc

    def add_version(self, secret_id: str, payload: str) -> str:
        sdir = self._require(secret_id)
        try:
            with _file_lock(sdir / "versions.lock"):
                existing = self._versions(secret_id)
                number = existing[-1][0] + 1 if existing else 1
                _atomic_write(
                    sdir / "versions" / f"{number}.json",
                    {"data": payload, "state": "ENABLED", "created_at": int(self.clock())},
                )
        except (OSError, TimeoutError) as exc:
            raise SecretStoreError() from exc
        return f"{secret_id}/versions/{number}"

    def access_latest(self, secret_id: str) -> str:
        self._require(secret_id)
        for _, path in reversed(self._versions(secret_id)):
            data = _read_json(path)
            if data and data.get("state") == "ENABLED":
                return data["data"]
        raise SecretNotFoundError(secret_id)

    def destroy_versions_before(self, secret_id: str, version: str) -> int:
        kept = version_number(version)
        sdir = self._require(secret_id)
        destroyed = 0
        with _file_lock(sdir / "versions.lock"):
            for number, path in self._versions(secret_id):
                if number >= kept:
                    break
                data = _read_json(path)
                if not data or data.get("state") != "ENABLED":
                    continue
                _atomic_write(path, {"data": None, "state": "DESTROYED",
                                     "created_at": data.get("created_at")})
                destroyed += 1
        return destroyed

    def delete_secret(self, secret_id: str) -> None:
        sdir = self._require(secret_id)
        try:
            shutil.rmtree(sdir)
        except OSError as exc:
            raise SecretStoreError() from exc


# --------------------------------------------------------------------------- #
# Convenience – default singleton                                            #
# --------------------------------------------------------------------------- #

_default_backend: SecretBackend | None = None


def default_secret_backend() -> SecretBackend:
    """Return the process-wide backend chosen by ``ATLASWEB_SECRET_BACKEND``."""
    global _default_backend  # noqa: PLW0603
    if _default_backend is None:
        project = first_env("ATLASWEB_GCP_PROJECT", "GOOGLE_CLOUD_PROJECT")
        kind = (os.getenv("ATLASWEB_SECRET_BACKEND") or ("gcp" if project else "disk")).lower()
        if kind == "gcp":
            if not project:
                raise ValueError("ATLASWEB_SECRET_BACKEND=gcp requires ATLASWEB_GCP_PROJECT")
            _default_backend = GoogleSecretManagerBackend(project)
        elif kind == "disk":
            _LOG.warning("Using on-disk secret backend; not suitable for production")
            _default_backend = DiskSecretBackend()
        else:
            raise ValueError(f"unsupported ATLASWEB_SECRET_BACKEND={kind!r}")
    return _default_backend

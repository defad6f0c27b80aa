"""Short-lived flow state: state nonces and in-flight code locks.

This module defines a *narrow* persistence interface (:class:`FlowStore`)
and two implementations:

* :class:`MemoryFlowStore` – bounded ``cachetools.TTLCache`` behind a thread
  lock.  Correct for a single process only.
* :class:`DiskFlowStore` – JSON files with *temp-file + os.replace* writes
  and ``O_EXCL`` lock files.  Point every instance at the same directory
  (shared volume) to keep nonces and code locks consistent across replicas.

Both honour the same contract:

* a state is claimed by at most one authorization code;
* at most one holder per code lock, released explicitly or after its TTL.

Raw authorization codes are never stored; callers pass :func:`code_key`.

Environment variables
---------------------
ATLASWEB_AUTH_STORAGE_DIR
    Base directory for :class:`DiskFlowStore` (``flows/`` sub-directory).
    Defaults to ``~/.atlasweb/auth``.
ATLASWEB_FLOW_STORE
    ``memory`` (default) or ``disk`` – used by :func:`default_flow_store`.
ATLASWEB_FLOW_STORE_MAXSIZE
    Most pending logins :class:`MemoryFlowStore` holds (default 10000).
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, replace
from hashlib import sha256
from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

from cachetools import TTLCache

from atlasweb_auth.central_auth.clock import Clock, default_clock
from atlasweb_auth.central_auth.errors import FlowStoreFullError
from atlasweb_auth.central_auth.models import AuthorizationState, PendingExchange
from atlasweb_auth.utils.environment import env_int

_LOG = logging.getLogger("atlasweb-auth.central_auth.store")

DEFAULT_STATE_TTL = 600
DEFAULT_LOCK_TTL = 30
DEFAULT_MAX_PENDING = 10_000

# --------------------------------------------------------------------------- #
# helpers                                                                     #
# --------------------------------------------------------------------------- #


def code_key(code: str) -> str:
    """Return the storage key for an authorization code (never the code itself)."""
    return sha256(code.encode("utf-8")).hexdigest()[:32]


def _atomic_write(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + f".{os.getpid()}.{threading.get_ident()}.tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(data, fh, separators=(",", ":"), sort_keys=True)
    os.replace(tmp, path)  # atomic on POSIX


def _read_json(path: Path) -> dict | None:
    try:
        with path.open(encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError:
        return None


@contextmanager
def _file_lock(lock_path: Path, retries: int = 25, delay: float = 0.02) -> Iterator[None]:
    """Advisory file lock using ``os.O_EXCL`` file creation."""
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for attempt in range(retries + 1):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
            os.close(fd)
            break
        except FileExistsError:
            if attempt == retries:
                raise TimeoutError(f"Could not acquire lock {lock_path}") from None
            time.sleep(delay)
    try:
        yield
    finally:
        lock_path.unlink(missing_ok=True)


# --------------------------------------------------------------------------- #
# public interface                                                            #
# --------------------------------------------------------------------------- #


@runtime_checkable
class FlowStore(Protocol):
    """Persistence contract for pending logins and code locks."""

    # ----- authorization states ------------------------------------------- #
    def save_state(self, record: AuthorizationState) -> None: ...
    def get_state(self, state_id: str) -> AuthorizationState | None: ...
    def claim_state(self, state_id: str, code_key: str) -> AuthorizationState | None: ...
    def discard_state(self, state_id: str) -> None: ...

    # ----- pending exchanges ---------------------------------------------- #
    def acquire_exchange_lock(self, code_key: str) -> bool: ...
    def release_exchange_lock(self, code_key: str) -> None: ...

    # ----- maintenance ----------------------------------------------------- #
    def cleanup_expired(self) -> int: ...


# --------------------------------------------------------------------------- #
# In-memory implementation                                                    #
# --------------------------------------------------------------------------- #


class MemoryFlowStore(FlowStore):
    """Process-local store.

    States sit in a ``TTLCache`` holding at most *maxsize* pending logins.
    When it is full a new state is refused with :class:`FlowStoreFullError`
    rather than evicting a live one.  Code locks live in a plain dict and
    only leave it when released or expired.
    """

    def __init__(
        self,
        *,
        state_ttl: int = DEFAULT_STATE_TTL,
        lock_ttl: int = DEFAULT_LOCK_TTL,
        maxsize: int = DEFAULT_MAX_PENDING,
        clock: Clock = default_clock,
    ) -> None:
        self.clock = clock
        self.lock_ttl = lock_ttl
        self.maxsize = maxsize
        self._states: TTLCache[str, AuthorizationState] = TTLCache(
            maxsize=maxsize, ttl=state_ttl, timer=clock
        )
        self._locks: dict[str, PendingExchange] = {}
        self._mutex = threading.Lock()

    def save_state(self, record: AuthorizationState) -> None:
        with self._mutex:
            if record.state_id not in self._states:
                self._states.expire()
                if len(self._states) >= self.maxsize:
                    _LOG.warning(
                        "Refusing new sign-in: %s pending states (maxsize=%s)",
                        len(self._states),
                        self.maxsize,
                    )
                    raise FlowStoreFullError(provider=record.provider)
            self._states[record.state_id] = record

    def get_state(self, state_id: str) -> AuthorizationState | None:
        with self._mutex:
            rec = self._states.get(state_id)
        if rec is None or rec.is_expired(clock=self.clock):
            return None
        return rec

    def claim_state(self, state_id: str, code_key: str) -> AuthorizationState | None:
        with self._mutex:
            rec = self._states.get(state_id)
            if rec is None or rec.is_expired(clock=self.clock):
                return None
            if rec.claimed_by not in (None, code_key):
                return None
            claimed = replace(rec, claimed_by=code_key)
            self._states[state_id] = claimed
            return claimed

    def discard_state(self, state_id: str) -> None:
        with self._mutex:
            self._states.pop(state_id, None)

    def acquire_exchange_lock(self, code_key: str) -> bool:
        with self._mutex:
            held = self._locks.get(code_key)
            if held is not None and not held.is_expired(clock=self.clock):
                return False
            self._locks[code_key] = PendingExchange(
                code_key=code_key,
                locked_at=int(self.clock()),
                ttl_seconds=self.lock_ttl,
            )
            return True

    def release_exchange_lock(self, code_key: str) -> None:
        with self._mutex:
            self._locks.pop(code_key, None)

    def cleanup_expired(self) -> int:
        with self._mutex:
            stale = [k for k, p in self._locks.items() if p.is_expired(clock=self.clock)]
            for key in stale:
                del self._locks[key]
            # len() on a TTLCache expires first, so count what expire() hands back
            return len(self._states.expire()) + len(stale)


# --------------------------------------------------------------------------- #
# Disk implementation                                                         #
# --------------------------------------------------------------------------- #


class DiskFlowStore(FlowStore):
    """JSON-file implementation of :class:`FlowStore`."""

    def __init__(
        self,
        base_dir: str | os.PathLike | None = None,
        *,
        lock_ttl: int = DEFAULT_LOCK_TTL,
        clock: Clock = default_clock,
    ) -> None:
        root = Path(
            base_dir
            or os.getenv("ATLASWEB_AUTH_STORAGE_DIR")
            or Path.home() / ".atlasweb" / "auth"
        ).expanduser()
        self.base_dir = root / "flows"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.lock_ttl = lock_ttl
        self.clock = clock

    # ---------------- authorization states -------------------------------- #
    def _state_path(self, state_id: str) -> Path:
        return self.base_dir / "states" / f"{state_id}.json"

    def _state_mutex(self, state_id: str) -> Path:
        return self.base_dir / "states" / f"{state_id}.mutex"

    def _load_state(self, state_id: str) -> AuthorizationState | None:
        if not state_id.isalnum():
            return None
        data = _read_json(self._state_path(state_id))
        if data is None:
            return None
        rec = AuthorizationState(**data)
        if rec.is_expired(clock=self.clock):
            return None
        return rec

    def save_state(self, record: AuthorizationState) -> None:
        _atomic_write(self._state_path(record.state_id), asdict(record))

    def get_state(self, state_id: str) -> AuthorizationState | None:
        return self._load_state(state_id)

    def claim_state(self, state_id: str, code_key: str) -> AuthorizationState | None:
        if not state_id.isalnum():
            return None
        with _file_lock(self._state_mutex(state_id)):
            rec = self._load_state(state_id)
            if rec is None or rec.claimed_by not in (None, code_key):
                return None
            claimed = replace(rec, claimed_by=code_key)
            _atomic_write(self._state_path(state_id), asdict(claimed))
            return claimed

    def discard_state(self, state_id: str) -> None:
        if state_id.isalnum():
            self._state_path(state_id).unlink(missing_ok=True)

    # ---------------- pending exchanges ----------------------------------- #
    def _lock_path(self, code_key: str) -> Path:
        return self.base_dir / "exchanges" / f"{code_key}.lock"

    def _try_create_lock(self, path: Path) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"locked_at": int(self.clock()), "ttl_seconds": self.lock_ttl}, fh)
        return True

    def _lock_is_stale(self, path: Path) -> bool:
        try:
            data = _read_json(path)
        except json.JSONDecodeError:
            # Holder is mid-write; treat as live
            return False
        if data is None:
            return True
        pending = PendingExchange(
            code_key=path.stem,
            locked_at=int(data.get("locked_at", 0)),
            ttl_seconds=int(data.get("ttl_seconds", self.lock_ttl)),
        )
        return pending.is_expired(clock=self.clock)

    def acquire_exchange_lock(self, code_key: str) -> bool:
        path = self._lock_path(code_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        if self._try_create_lock(path):
            return True
        if not self._lock_is_stale(path):
            return False
        _LOG.info("Breaking expired exchange lock code_key=%s****", code_key[:6])
        path.unlink(missing_ok=True)
        return self._try_create_lock(path)

    def release_exchange_lock(self, code_key: str) -> None:
        self._lock_path(code_key).unlink(missing_ok=True)

    # ---------------- maintenance ----------------------------------------- #
    def cleanup_expired(self) -> int:
        removed = 0
        for p in (self.base_dir / "states").glob("*.json"):
            data = _read_json(p)
            if data is None:
                continue
            if AuthorizationState(**data).is_expired(clock=self.clock):
                p.unlink(missing_ok=True)
                removed += 1
        for p in (self.base_dir / "exchanges").glob("*.lock"):
            if self._lock_is_stale(p):
                p.unlink(missing_ok=True)
                removed += 1
        return removed


# --------------------------------------------------------------------------- #
# Convenience – default singleton                                            #
# --------------------------------------------------------------------------- #

_default_store: FlowStore | None = None


def default_flow_store() -> FlowStore:
    """Return the process-wide flow store selected by ``ATLASWEB_FLOW_STORE``."""
    global _default_store  # noqa: PLW0603
    if _default_store is None:
        state_ttl = env_int("ATLASWEB_STATE_TTL_SECONDS", DEFAULT_STATE_TTL)
        lock_ttl = env_int("ATLASWEB_EXCHANGE_LOCK_TTL_SECONDS", DEFAULT_LOCK_TTL)
        kind = (os.getenv("ATLASWEB_FLOW_STORE") or "memory").strip().lower()
        if kind == "disk":
            _default_store = DiskFlowStore(lock_ttl=lock_ttl)
        elif kind == "memory":
            _default_store = MemoryFlowStore(
                state_ttl=state_ttl,
                lock_ttl=lock_ttl,
                maxsize=env_int("ATLASWEB_FLOW_STORE_MAXSIZE", DEFAULT_MAX_PENDING),
            )
        else:
            raise ValueError(f"unsupported ATLASWEB_FLOW_STORE={kind!r}")
        _LOG.info("Using %s flow store", kind)
    return _default_store

"""Injectable time source for nonce, lock and token-expiry decisions.

Every TTL check in :mod:`atlasweb_auth.central_auth` goes through a ``Clock``
so tests can freeze or advance time without sleeping.

Example
-------
>>> from atlasweb_auth.central_auth.clock import default_clock
>>> isinstance(default_clock(), float)
True
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Callable returning seconds since the UNIX epoch."""

    def __call__(self) -> float: ...


def default_clock() -> float:
    """Wall-clock time via ``time.time()``."""
    return time.time()


class ManualClock:
    """Clock whose value only moves when told to. Handy in tests and scripts."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

"""Injectable time source.

Every expiry decision in the server goes through a ``Clock`` so tests can
move time without sleeping.
"""
from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def __call__(self) -> float: ...


def default_clock() -> float:
    return time.time()


def now_int(clock: Clock) -> int:
    return int(clock())

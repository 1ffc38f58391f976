"""
Scoped execution-time limit.

Exports, imports and search-replace runs can take far longer than the budget a
host process normally allows. :class:`MaxRuntimeGuard` lifts (or sets) the
limit for the duration of one operation and restores the previous value on
every exit path.

Notes
-----
On POSIX the limit is the process CPU-time limit (``RLIMIT_CPU``). Setting a
limit measures it from the CPU time already used, so each guarded operation
gets a fresh budget. Platforms without the ``resource`` module use
:class:`NullLimiter`.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from types import TracebackType
from typing import Protocol

if sys.platform == "win32":
    resource = None
else:
    import resource

logger = logging.getLogger(__name__)


class RuntimeLimiter(Protocol):
    """Reads and writes the host's execution-time limit. 0 means unlimited."""

    def get_limit(self) -> int:
        ...

    def set_limit(self, seconds: int) -> None:
        ...


@dataclass(slots=True)
class NullLimiter:
    """Limiter that only remembers the last value it was given."""

    current: int = 0

    def get_limit(self) -> int:
        return self.current

    def set_limit(self, seconds: int) -> None:
        self.current = max(0, int(seconds))


class CpuTimeLimiter:
    """Limiter backed by ``resource.RLIMIT_CPU``."""

    def _used_seconds(self) -> int:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        return int(usage.ru_utime + usage.ru_stime)

    def get_limit(self) -> int:
        soft, _hard = resource.getrlimit(resource.RLIMIT_CPU)
        if soft == resource.RLIM_INFINITY:
            return 0
        return max(1, soft - self._used_seconds())

    def set_limit(self, seconds: int) -> None:
        _soft, hard = resource.getrlimit(resource.RLIMIT_CPU)
        if seconds <= 0:
            soft = hard
        else:
            soft = self._used_seconds() + int(seconds)
            if hard != resource.RLIM_INFINITY:
                soft = min(soft, hard)
        resource.setrlimit(resource.RLIMIT_CPU, (soft, hard))


def default_limiter() -> RuntimeLimiter:
    """Return the limiter for the current platform."""
    if resource is None:
        return NullLimiter()
    return CpuTimeLimiter()


@dataclass(slots=True)
class MaxRuntimeGuard:
    """
    Scoped execution-time limit.

    Parameters
    ----------
    limit_seconds:
        Limit applied while the guard is held. 0 means unlimited.
    limiter:
        Host limit accessor. Defaults to the platform limiter.

    Examples
    --------
    >>> with MaxRuntimeGuard(limit_seconds=0, limiter=NullLimiter()):
    ...     pass
    """

    limit_seconds: int = 0
    limiter: RuntimeLimiter = field(default_factory=default_limiter)
    _previous: int | None = field(default=None, init=False, repr=False)

    @property
    def held(self) -> bool:
        return self._previous is not None

    def acquire(self) -> None:
        """Store the current limit and apply `limit_seconds`."""
        if self._previous is not None:
            return
        previous = self.limiter.get_limit()
        self.limiter.set_limit(self.limit_seconds)
        self._previous = previous
        logger.debug("runtime limit %s -> %s", previous, self.limit_seconds)

    def release(self) -> None:
        """Restore the limit stored by `acquire`. Releasing twice is a no-op."""
        if self._previous is None:
            return
        previous, self._previous = self._previous, None
        self.limiter.set_limit(previous)
        logger.debug("runtime limit restored to %s", previous)

    def __enter__(self) -> "MaxRuntimeGuard":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

"""
Best-effort virtual memory ceiling for an already-started child process.

The limit lands right after spawn, so there is a short window in which the
child runs without it and may allocate freely. That window is accepted:
closing it would mean starting the child stopped, limiting it, then resuming
it. The limit is advisory hardening, callers must not rely on it.
"""
from __future__ import annotations
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class LimitOutcome(str, Enum):
    OK = "ok"
    UNSUPPORTED = "unsupported"
    ERROR = "error"


@dataclass(frozen=True)
class LimitResult:
    outcome: LimitOutcome
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is LimitOutcome.OK


class MemoryLimiter:
    def apply(self, pid: int, max_bytes: int) -> LimitResult:
        raise NotImplementedError


class PrlimitMemoryLimiter(MemoryLimiter):
    """Linux: prlimit(2) can set RLIMIT_AS on another process."""

    def apply(self, pid: int, max_bytes: int) -> LimitResult:
        import resource

        if max_bytes <= 0:
            return LimitResult(LimitOutcome.OK)
        try:
            resource.prlimit(pid, resource.RLIMIT_AS, (max_bytes, max_bytes))
        except (OSError, ValueError) as e:
            # ProcessLookupError when the child already exited, EPERM, ...
            return LimitResult(LimitOutcome.ERROR, f"prlimit(pid={pid}): {e}")
        return LimitResult(LimitOutcome.OK)


class UnsupportedMemoryLimiter(MemoryLimiter):
    """macOS / Windows: no way to limit a separate, running process here."""

    def __init__(self, platform: str):
        self.platform = platform

    def apply(self, pid: int, max_bytes: int) -> LimitResult:
        if max_bytes <= 0:
            return LimitResult(LimitOutcome.OK)
        return LimitResult(
            LimitOutcome.UNSUPPORTED,
            f"memory limit on a running process is not supported on {self.platform}",
        )


def get_memory_limiter(platform: str | None = None) -> MemoryLimiter:
    platform = platform or sys.platform
    if platform.startswith("linux"):
        return PrlimitMemoryLimiter()
    return UnsupportedMemoryLimiter(platform)


def apply_memory_limit(pid: int, max_bytes: int) -> LimitResult:
    """0 means no limit requested and is always a no-op."""
    return get_memory_limiter().apply(pid, max_bytes)

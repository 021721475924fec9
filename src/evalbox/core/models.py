from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RuntimeId(str, Enum):
    PYTHON3 = "python3"

    @classmethod
    def parse(cls, token: str) -> "RuntimeId":
        """Decode a wire token; unknown tokens are rejected, never defaulted."""
        try:
            return cls(token)
        except ValueError:
            raise ValueError(f"unsupported runtime {token!r}") from None


class Status(str, Enum):
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not Status.RUNNING


@dataclass(frozen=True)
class Program:
    runtime: RuntimeId
    code: str           # source text, passed inline to the runtime
    timeout_secs: float

    def __post_init__(self) -> None:
        if not self.timeout_secs > 0:
            raise ValueError(f"timeout_secs must be positive, got {self.timeout_secs}")


@dataclass
class RunOutcome:
    status: Status
    compiler_exit_code: Optional[int]  # None when killed or timed out
    exit_code: Optional[int]           # None unless the process exited normally
    stdout: str
    stderr: str
    error: Optional[str] = None
    timed_out: bool = False
    canceled: bool = False
    duration_s: float = 0.0


CANCELED_MESSAGE = "execution canceled"

from __future__ import annotations
from typing import Dict


class EvalboxError(Exception):
    """Base class for errors raised by evalbox."""


class AdmissionError(EvalboxError):
    """A submitted program failed validation; `problems` maps field -> message."""

    def __init__(self, problems: Dict[str, str]):
        self.problems = dict(problems)
        detail = "; ".join(f"{k}: {v}" for k, v in self.problems.items())
        super().__init__(detail or "invalid program")


class UnknownRuntimeError(EvalboxError):
    pass


class StartError(EvalboxError):
    """The process host could not create the child process."""

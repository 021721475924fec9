from __future__ import annotations
from typing import Optional

from ..core.models import CANCELED_MESSAGE, RunOutcome, Status
from ..core.schemas import ProgramResult


def _non_empty(s: str) -> Optional[str]:
    # empty output is omitted from the response, not sent as ""
    return s if s else None


def map_outcome(outcome: RunOutcome) -> ProgramResult:
    success = (
        outcome.status is Status.DONE
        and outcome.exit_code == 0
        and outcome.error is None
    )

    compiled: Optional[bool] = None
    if outcome.compiler_exit_code is not None:
        compiled = outcome.compiler_exit_code == 0

    return ProgramResult(
        success=success,
        compiled=compiled,
        timeout=outcome.timed_out,
        exit_code=outcome.exit_code,
        error=outcome.error,
        stdout=_non_empty(outcome.stdout),
        stderr=_non_empty(outcome.stderr),
    )


def start_failed(message: str) -> ProgramResult:
    """The runtime could not be started: nothing ran, nothing timed out."""
    return ProgramResult(success=False, timeout=False, error=message)


def rejected(message: str) -> ProgramResult:
    """Admission failure (unknown runtime, malformed program)."""
    return ProgramResult(success=False, error=message)


def canceled_placeholder() -> ProgramResult:
    """Slot of a canceled batch whose program never started."""
    return ProgramResult(success=False, timeout=False, error=CANCELED_MESSAGE)

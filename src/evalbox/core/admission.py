from __future__ import annotations
import math
from typing import Dict

from .errors import AdmissionError
from .models import Program, RuntimeId
from .schemas import ProgramProto


def clamp_timeout(timeout_secs: float | None, max_timeout_secs: float) -> float:
    """Out-of-range timeouts fall back to the ceiling instead of being rejected."""
    if timeout_secs is None or not math.isfinite(timeout_secs):
        return max_timeout_secs
    if timeout_secs <= 0 or timeout_secs > max_timeout_secs:
        return max_timeout_secs
    return timeout_secs


def admit(raw: ProgramProto, max_timeout_secs: float) -> Program:
    problems: Dict[str, str] = {}

    try:
        runtime = RuntimeId.parse(raw.runtime)
    except ValueError as e:
        problems["runtime"] = str(e)

    # empty code is a no-op program, not an error
    if not isinstance(raw.code, str):
        problems["code"] = "code must be a string"

    if problems:
        raise AdmissionError(problems)

    return Program(
        runtime=runtime,
        code=raw.code,
        timeout_secs=clamp_timeout(raw.timeout_secs, max_timeout_secs),
    )

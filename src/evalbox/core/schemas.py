from __future__ import annotations
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# --------- Request ---------

class ProgramProto(BaseModel):
    """One program as submitted; `runtime` is checked at admission, per slot."""
    model_config = ConfigDict(populate_by_name=True)

    runtime: str
    code: str
    timeout_secs: Optional[float] = Field(None, alias="timeoutSecs")


class ExecuteRequest(BaseModel):
    programs: List[ProgramProto]


# --------- Response ---------

class ProgramResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # True iff the program started, exited cleanly with code 0 and no wait error
    success: bool
    compiled: Optional[bool] = None
    timeout: Optional[bool] = None
    exit_code: Optional[int] = Field(None, alias="exitCode")
    error: Optional[str] = None
    stdout: Optional[str] = None
    stderr: Optional[str] = None


class ExecuteResponse(BaseModel):
    results: List[ProgramResult]


class ErrorResponse(BaseModel):
    error: str
    problems: Optional[Dict[str, str]] = None

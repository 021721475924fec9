from typing import Dict

from .base import Runner, RunnerRegistry
from ..core.models import RuntimeId


class PythonRunner(Runner):
    runtime = RuntimeId.PYTHON3

    def __init__(self, python_bin: str = "python3"):
        self.python_bin = python_bin

    def command(self, code: str):
        # code goes inline, no temp file
        return [self.python_bin, "-c", code]


def build_registry(runtimes: Dict[str, str]) -> RunnerRegistry:
    """`runtimes` maps runtime token -> interpreter binary (from settings)."""
    return RunnerRegistry([
        PythonRunner(python_bin=runtimes.get(RuntimeId.PYTHON3.value, "python3")),
    ])

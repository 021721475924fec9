from typing import Dict, List

from ..core.errors import UnknownRuntimeError
from ..core.models import RuntimeId


class Runner:
    runtime: RuntimeId

    def command(self, code: str) -> List[str]:
        raise NotImplementedError


class RunnerRegistry:
    """Maps each supported RuntimeId to the runner that builds its command."""

    def __init__(self, runners: List[Runner] = ()):
        self._runners: Dict[RuntimeId, Runner] = {}
        for r in runners:
            self.register(r)

    def register(self, runner: Runner) -> None:
        self._runners[runner.runtime] = runner

    def get(self, runtime: RuntimeId) -> Runner:
        try:
            return self._runners[runtime]
        except KeyError:
            raise UnknownRuntimeError(f"no runner registered for {runtime.value!r}") from None

    def __contains__(self, runtime: RuntimeId) -> bool:
        return runtime in self._runners

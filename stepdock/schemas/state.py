"""
State schema - the result of waiting on a step container.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class State:
    """
    Execution state of a step, produced once by DockerEngine.wait.

    Attributes:
        exited: Whether the container has exited
        exit_code: Exit code reported by the runtime
        oom_killed: Whether the container was killed by the OOM killer
    """
    exited: bool
    exit_code: int
    oom_killed: bool = False

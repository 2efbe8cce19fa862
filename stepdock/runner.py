"""
Runner - drives a DockerEngine through one pipeline run.

Steps run one at a time in declaration order. For each attached step the
container output is tailed on a background thread while the runner waits
for the container to exit. Detached steps (services) are started and left
running until destroy.

The environment is always destroyed, including when a step fails or the
run is cancelled.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Optional

from stepdock.engine import DockerEngine
from stepdock.errors import Cancelled, StepdockError
from stepdock.schemas import State, Step

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    """Outcome of a run: final state per step uid."""
    states: dict[str, State] = field(default_factory=dict)
    failed: bool = False
    error: Optional[Exception] = None


class Runner:
    """
    Runs every step of a spec sequentially.

    Usage:
        runner = Runner(engine, output=sys.stdout.buffer)
        result = runner.run()
    """

    def __init__(
        self,
        engine: DockerEngine,
        output: Optional[BinaryIO] = None,
        drain_timeout: float = 5.0,
    ):
        """
        Initialize the runner.

        Args:
            engine: Engine bound to the run's spec
            output: Writer receiving step output; None discards it
            drain_timeout: Seconds to let a step's remaining output arrive
                after its container exits before the tail is stopped
        """
        self.engine = engine
        self._output = output
        self._drain_timeout = drain_timeout

    def _copy_logs(self, step: Step, stop: threading.Event) -> None:
        try:
            with self.engine.tail(step, cancel=stop) as logs:
                while True:
                    chunk = logs.read(32 * 1024)
                    if not chunk:
                        break
                    if self._output is not None:
                        self._output.write(chunk)
                        self._output.flush()
        except Cancelled:
            logger.debug(f"Tail of {step.metadata.uid} stopped before it opened")
        except StepdockError as e:
            logger.warning(f"Tailing {step.metadata.uid} failed: {e}", extra={"step": step.metadata.uid})

    def _run_step(self, step: Step, cancel: Optional[threading.Event]) -> Optional[State]:
        uid = step.metadata.uid
        logger.info(f"Running step {step.metadata.name or uid}", extra={"step": uid})
        self.engine.create(step, cancel=cancel)
        self.engine.start(step, cancel=cancel)
        if step.detach:
            return None

        stop = threading.Event()
        tailer = threading.Thread(
            target=self._copy_logs, args=(step, stop), name=f"tail-{uid}", daemon=True
        )
        tailer.start()
        try:
            return self.engine.wait(step, cancel=cancel)
        finally:
            if cancel is None or not cancel.is_set():
                # The log stream normally ends once the container has exited
                tailer.join(timeout=self._drain_timeout)
            stop.set()
            # Output of this step is complete before the next step starts
            tailer.join()

    def run(self, cancel: Optional[threading.Event] = None) -> RunResult:
        """
        Execute the run.

        Returns:
            RunResult with the state of every attached step that ran. failed
            is set when a step exits non-zero (and does not ignore errors),
            or when any engine operation raises; the error is kept in
            RunResult.error.
        """
        spec = self.engine.spec
        result = RunResult()
        run_id = spec.metadata.uid

        try:
            self.engine.setup(cancel=cancel)
            for step in spec.steps:
                state = self._run_step(step, cancel)
                if state is None:
                    continue
                result.states[step.metadata.uid] = state
                if state.oom_killed:
                    logger.warning(f"Step {step.metadata.uid} was OOM killed", extra={"step": step.metadata.uid})
                if state.exit_code != 0 and not step.ignore_err:
                    logger.error(
                        f"Step {step.metadata.uid} failed with exit code {state.exit_code}",
                        extra={"step": step.metadata.uid},
                    )
                    result.failed = True
                    break
        except StepdockError as e:
            logger.error(f"Run {run_id} failed: {e}", extra={"run": run_id})
            result.failed = True
            result.error = e
        finally:
            self._destroy(run_id, result)

        return result

    def _destroy(self, run_id: str, result: RunResult) -> None:
        # Cleanup is never cancelled
        try:
            report = self.engine.destroy()
        except StepdockError as e:
            logger.error(f"Cleanup of run {run_id} failed: {e}", extra={"run": run_id})
            result.failed = True
            if result.error is None:
                result.error = e
            return
        for cleanup in report.errors:
            logger.warning(
                f"Cleanup of {cleanup.resource} failed: {cleanup.error}",
                extra={"run": run_id},
            )

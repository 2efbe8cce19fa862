"""
DockerEngine - step lifecycle orchestration against a container runtime.

The engine maps each step of a PipelineSpec onto one container:

    setup()          create ephemeral volumes, then the run network
    create(step)     resolve image, pull per policy, create container, inject files
    start(step)      start the container
    wait(step)       block until exit, then inspect for exit code / OOM flag
    tail(step)       stream demultiplexed container output
    destroy()        kill + remove containers, remove volumes, remove network

One engine instance serves one run. tail() and wait() may run concurrently
for the same step; setup() and destroy() must not overlap step operations.

Every operation accepts an optional cancel event (threading.Event). Setting it
makes create/setup raise Cancelled at the next runtime call boundary, makes
wait() raise Cancelled between wait slices, and ends a tail() stream. destroy()
only checks it before teardown begins; once started, teardown runs to the end.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from stepdock.archive import create_tarfile
from stepdock.client import RuntimeClient
from stepdock.convert import to_config, to_host_config, to_net_config
from stepdock.errors import Cancelled, ImageNotFound, MissingConfiguration, StepdockError
from stepdock.image import parse_image
from stepdock.logstream import LogStream
from stepdock.schemas import (
    DockerAuth,
    PipelineSpec,
    PullPolicy,
    State,
    Step,
    lookup_auth,
    lookup_file,
)

logger = logging.getLogger(__name__)

# Re-pull attempts after container create reports a missing image
MAX_PULL_RETRIES = 1

# Signal sent to step containers during destroy
KILL_SIGNAL = "9"

# Root directory file mounts are extracted into
COPY_ROOT = "/"


@dataclass(frozen=True)
class CleanupError:
    """A cleanup failure that destroy() recorded instead of raising."""
    resource: str
    error: Exception


@dataclass
class DestroyReport:
    """Per-container cleanup errors collected by destroy()."""
    errors: list[CleanupError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def _check_cancel(cancel: Optional[threading.Event], operation: str) -> None:
    if cancel is not None and cancel.is_set():
        raise Cancelled(f"{operation} cancelled")


class DockerEngine:
    """
    Runs the steps of one PipelineSpec as docker containers.

    Usage:
        engine = DockerEngine(spec, DockerRuntimeClient.from_config(config))
        engine.setup()
        try:
            for step in spec.steps:
                engine.create(step)
                engine.start(step)
                state = engine.wait(step)
        finally:
            engine.destroy()
    """

    def __init__(
        self,
        spec: PipelineSpec,
        client: RuntimeClient,
        wait_poll_interval: float = 0.5,
    ):
        """
        Initialize the engine.

        Args:
            spec: The pipeline spec for this run (held read-only)
            client: RuntimeClient implementation
            wait_poll_interval: Length of each runtime wait slice in wait(),
                and so the longest delay before a cancel is noticed
        """
        self.spec = spec
        self._client = client
        self._wait_poll_interval = wait_poll_interval

    # -------------------------------------------------------------------------
    # Environment
    # -------------------------------------------------------------------------

    def setup(self, cancel: Optional[threading.Event] = None) -> None:
        """
        Create the run's ephemeral volumes and bridge network.

        The first failure is raised immediately. Resources created before the
        failure are not rolled back; call destroy().
        """
        labels = dict(self.spec.metadata.labels)

        # Temporary volumes mounted into step containers
        for vol in self.spec.ephemeral_volumes:
            _check_cancel(cancel, "setup")
            logger.debug(f"Creating volume {vol.metadata.uid}")
            self._client.volume_create(vol.metadata.uid, labels)

        # Every step container is attached to this network
        _check_cancel(cancel, "setup")
        logger.debug(f"Creating network {self.spec.metadata.uid}")
        self._client.network_create(self.spec.metadata.uid, labels)
        logger.info(f"Run {self.spec.metadata.uid} environment ready")

    def destroy(self, cancel: Optional[threading.Event] = None) -> DestroyReport:
        """
        Tear down every resource of the run.

        Containers: killed and force-removed; failures are collected in the
        returned report, never raised. Volumes: the first removal failure is
        raised and the remaining volumes are left in place. Network: removal
        is attempted last and its failure is raised.

        Resources that no longer exist count as removed, so destroy() is safe
        after a partial setup() and may be called repeatedly.

        cancel is checked once, before anything is removed. A teardown that
        has started is not abandoned halfway.

        Returns:
            DestroyReport with the per-container errors
        """
        _check_cancel(cancel, "destroy")
        report = DestroyReport()

        for step in self.spec.steps:
            uid = step.metadata.uid
            try:
                self._client.container_kill(uid, KILL_SIGNAL)
            except StepdockError as e:
                logger.debug(f"Kill {uid} failed: {e}")
                report.errors.append(CleanupError(resource=uid, error=e))
            try:
                self._client.container_remove(uid)
            except StepdockError as e:
                logger.debug(f"Remove {uid} failed: {e}")
                report.errors.append(CleanupError(resource=uid, error=e))

        for vol in self.spec.ephemeral_volumes:
            self._client.volume_remove(vol.metadata.uid)

        self._client.network_remove(self.spec.metadata.uid)
        logger.info(f"Run {self.spec.metadata.uid} environment destroyed")
        return report

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _pull(self, image: str, auth: Optional[DockerAuth]) -> None:
        logger.info(f"Pulling {image}")
        self._client.image_pull(image, auth)

    def _create_container(self, step: Step) -> None:
        self._client.container_create(
            step.metadata.uid,
            to_config(self.spec, step),
            to_host_config(self.spec, step),
            to_net_config(self.spec, step),
        )

    def create(self, step: Step, cancel: Optional[threading.Event] = None) -> None:
        """
        Provision the container for a step.

        Pulls the image per the step's pull policy, creates the container
        (re-pulling at most MAX_PULL_RETRIES times if the image is missing
        locally and the policy allows pulls), then copies each file mount
        into the container.

        Raises:
            MissingConfiguration: If the step has no docker configuration
            InvalidReference: If the image reference is malformed
            PullFailure: If a pull fails
            RuntimeOperationFailure: If create or copy fails
            Cancelled: If cancel is set between runtime calls
        """
        if step.docker is None:
            raise MissingConfiguration(step.metadata.uid)

        docker = step.docker
        ref = parse_image(docker.image)

        # Registry credentials are matched on the image domain
        auth = lookup_auth(self.spec, ref.domain)
        if auth is None:
            logger.debug(f"No credentials for {ref.domain}, pulling anonymously")

        if docker.pull_policy == PullPolicy.ALWAYS or (
            docker.pull_policy == PullPolicy.DEFAULT and ref.latest
        ):
            _check_cancel(cancel, "create")
            self._pull(docker.image, auth)

        retries = MAX_PULL_RETRIES if docker.pull_policy != PullPolicy.NEVER else 0
        while True:
            _check_cancel(cancel, "create")
            try:
                self._create_container(step)
                break
            except ImageNotFound:
                if retries == 0:
                    raise
                retries -= 1
                logger.info(f"Image {docker.image} not found locally for {step.metadata.uid}")
                _check_cancel(cancel, "create")
                self._pull(docker.image, auth)

        for mount in step.files:
            file = lookup_file(self.spec, mount.name)
            if file is None:
                logger.debug(f"No file payload named {mount.name}, skipping")
                continue
            _check_cancel(cancel, "create")
            self._client.copy_to_container(
                step.metadata.uid,
                COPY_ROOT,
                create_tarfile(file, mount),
                allow_overwrite_dir_with_file=False,
            )

        logger.info(f"Created container {step.metadata.uid} ({ref.canonical})")

    def start(self, step: Step, cancel: Optional[threading.Event] = None) -> None:
        """Start the step's container. Returns once the runtime accepts it."""
        _check_cancel(cancel, "start")
        self._client.container_start(step.metadata.uid)
        logger.debug(f"Started container {step.metadata.uid}")

    def wait(self, step: Step, cancel: Optional[threading.Event] = None) -> State:
        """
        Block until the step's container exits and return its state.

        The runtime wait is issued in bounded slices of wait_poll_interval
        on the calling thread, checking cancel between slices. The wait ends
        on the first of two outcomes: the runtime returns an exit status, or
        the wait call raises. A failed wait is logged, not raised. The
        container is then inspected for the exit code and OOM flag. If
        inspection still reports the container running, a warning is logged
        and the inspected exit code is returned without waiting again.

        Raises:
            RuntimeOperationFailure: If inspect fails
            Cancelled: If cancel is set while waiting
        """
        uid = step.metadata.uid
        while True:
            _check_cancel(cancel, "wait")
            try:
                status = self._client.container_wait(uid, timeout=self._wait_poll_interval)
            except StepdockError as e:
                logger.warning(f"Wait on {uid} failed: {e}")
                break
            if status is not None:
                break

        info = self._client.container_inspect(uid)
        container_state = info.get("State") or {}
        if container_state.get("Running"):
            logger.warning(f"Container {uid} still running after wait returned")

        state = State(
            exited=True,
            exit_code=int(container_state.get("ExitCode", 0)),
            oom_killed=bool(container_state.get("OOMKilled", False)),
        )
        logger.info(f"Container {uid} exited with code {state.exit_code}")
        return state

    def tail(self, step: Step, cancel: Optional[threading.Event] = None) -> LogStream:
        """
        Stream the step's combined stdout/stderr.

        Returns:
            LogStream yielding output bytes in arrival order until the
            container's log stream closes. Close it to stop tailing early.
        """
        _check_cancel(cancel, "tail")
        source = self._client.container_logs(step.metadata.uid, follow=True)
        return LogStream(source, name=step.metadata.uid, cancel=cancel)

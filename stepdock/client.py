"""
Container runtime client interface.

This module defines the fixed operation set the engine consumes from the
container runtime, allowing DockerEngine to be decoupled from the actual
runtime connection.

Implementations:
- NoOpRuntimeClient: For testing and dry-run mode
- DockerRuntimeClient: Real implementation over the docker SDK's APIClient

Error contract for every implementation:
- Raise stepdock.errors types, never SDK exceptions
- ImageNotFound is raised by container_create when the image is absent
- Removing or killing a resource that does not exist returns normally
"""

import io
import logging
from contextlib import contextmanager
from typing import Any, BinaryIO, Iterator, Optional, Protocol, runtime_checkable

import docker
import docker.errors
import docker.utils
import requests

from stepdock.errors import (
    ImageNotFound,
    PullFailure,
    RuntimeOperationFailure,
)
from stepdock.schemas import DockerAuth

logger = logging.getLogger(__name__)


@runtime_checkable
class RuntimeClient(Protocol):
    """
    Protocol for container runtime operations.

    Every resource is addressed by name: the engine names networks, volumes
    and containers after spec uids.
    """

    # -------------------------------------------------------------------------
    # Networks and volumes
    # -------------------------------------------------------------------------

    def network_create(self, name: str, labels: dict[str, str]) -> None:
        """Create a bridge network."""
        ...

    def network_remove(self, name: str) -> None:
        """Remove a network. Missing networks are not an error."""
        ...

    def volume_create(self, name: str, labels: dict[str, str]) -> None:
        """Create a local-driver volume."""
        ...

    def volume_remove(self, name: str) -> None:
        """Force-remove a volume. Missing volumes are not an error."""
        ...

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def image_pull(self, image: str, auth: Optional[DockerAuth] = None) -> None:
        """
        Pull an image and block until the pull completes.

        Raises:
            PullFailure: If the registry or pull fails
        """
        ...

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def container_create(
        self,
        name: str,
        config: dict[str, Any],
        host_config: dict[str, Any],
        net_config: dict[str, Any],
    ) -> None:
        """
        Create a container.

        Raises:
            ImageNotFound: If the image is not present locally
            RuntimeOperationFailure: For any other failure
        """
        ...

    def container_start(self, name: str) -> None:
        """Start a created container."""
        ...

    def container_wait(self, name: str, timeout: Optional[float] = None) -> Optional[int]:
        """
        Block until the container exits and return its status code.

        With a timeout, returns None if the container is still running when
        the timeout expires. No background work outlives the call.
        """
        ...

    def container_inspect(self, name: str) -> dict[str, Any]:
        """Return the runtime's inspect document (includes "State")."""
        ...

    def container_kill(self, name: str, signal: str = "9") -> None:
        """Signal a container. Missing or stopped containers are not an error."""
        ...

    def container_remove(self, name: str) -> None:
        """Force-remove a container and its anonymous volumes."""
        ...

    def copy_to_container(
        self,
        name: str,
        path: str,
        data: bytes,
        allow_overwrite_dir_with_file: bool = False,
    ) -> None:
        """Extract a tar archive into the container at path."""
        ...

    def container_logs(self, name: str, follow: bool = True) -> BinaryIO:
        """
        Open the combined stdout/stderr log stream.

        Returns:
            A readable, closeable binary stream in multiplexed frame format
        """
        ...


class NoOpRuntimeClient:
    """
    No-op implementation of RuntimeClient for testing and dry-run mode.

    Logs each call and reports every container as exited with code 0.
    """

    def network_create(self, name: str, labels: dict[str, str]) -> None:
        logger.info(f"[dry-run] network create: {name}")

    def network_remove(self, name: str) -> None:
        logger.info(f"[dry-run] network remove: {name}")

    def volume_create(self, name: str, labels: dict[str, str]) -> None:
        logger.info(f"[dry-run] volume create: {name}")

    def volume_remove(self, name: str) -> None:
        logger.info(f"[dry-run] volume remove: {name}")

    def image_pull(self, image: str, auth: Optional[DockerAuth] = None) -> None:
        logger.info(f"[dry-run] image pull: {image}")

    def container_create(
        self,
        name: str,
        config: dict[str, Any],
        host_config: dict[str, Any],
        net_config: dict[str, Any],
    ) -> None:
        logger.info(f"[dry-run] container create: {name} ({config.get('Image')})")

    def container_start(self, name: str) -> None:
        logger.info(f"[dry-run] container start: {name}")

    def container_wait(self, name: str, timeout: Optional[float] = None) -> Optional[int]:
        return 0

    def container_inspect(self, name: str) -> dict[str, Any]:
        return {"State": {"Running": False, "ExitCode": 0, "OOMKilled": False}}

    def container_kill(self, name: str, signal: str = "9") -> None:
        pass

    def container_remove(self, name: str) -> None:
        logger.info(f"[dry-run] container remove: {name}")

    def copy_to_container(
        self,
        name: str,
        path: str,
        data: bytes,
        allow_overwrite_dir_with_file: bool = False,
    ) -> None:
        logger.info(f"[dry-run] copy {len(data)} bytes to {name}:{path}")

    def container_logs(self, name: str, follow: bool = True) -> BinaryIO:
        return io.BytesIO(b"")


@contextmanager
def _translate_errors(operation: str, resource: str, ignore_missing: bool = False) -> Iterator[None]:
    """Translate docker SDK and transport errors into stepdock errors."""
    try:
        yield
    except docker.errors.ImageNotFound as e:
        raise ImageNotFound(
            f"{operation} {resource}: {e.explanation or e}",
            operation=operation, resource=resource, cause=e,
        ) from e
    except docker.errors.NotFound as e:
        if ignore_missing:
            logger.debug(f"{operation} {resource}: not found, nothing to do")
            return
        raise RuntimeOperationFailure(
            f"{operation} {resource}: {e.explanation or e}",
            operation=operation, resource=resource, cause=e,
        ) from e
    except docker.errors.APIError as e:
        raise RuntimeOperationFailure(
            f"{operation} {resource}: {e.explanation or e}",
            operation=operation, resource=resource, cause=e,
        ) from e
    except (docker.errors.DockerException, requests.exceptions.RequestException) as e:
        raise RuntimeOperationFailure(
            f"{operation} {resource}: {e}",
            operation=operation, resource=resource, cause=e,
        ) from e


def _is_read_timeout(error: Optional[BaseException]) -> bool:
    """True if error is a client-side read timeout rather than a daemon failure."""
    if isinstance(error, requests.exceptions.ReadTimeout):
        return True
    # Unix-socket transports surface read timeouts as ConnectionError
    return isinstance(error, requests.exceptions.ConnectionError) and "timed out" in str(error)


class _ResponseStream(io.RawIOBase):
    """
    Readable view of a streaming HTTP response body.

    Unbuffered: a buffered reader would block a follow-mode stream until a
    full buffer of log output arrived.
    """

    def __init__(self, response: requests.Response):
        self._response = response

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        data = self._response.raw.read(len(b))
        n = len(data)
        b[:n] = data
        return n

    def close(self) -> None:
        if not self.closed:
            self._response.close()
        super().close()


class DockerRuntimeClient:
    """
    RuntimeClient over the docker SDK's low-level APIClient.

    Container create, archive copy and log streaming post raw engine API
    bodies so the engine controls the exact JSON (HostConfig,
    NetworkingConfig, noOverwriteDirNonDir) and receives the log stream
    still in multiplexed frame format.
    """

    def __init__(self, api: docker.APIClient):
        """
        Initialize the client.

        Args:
            api: Low-level docker API client
        """
        self._api = api

    @classmethod
    def from_config(cls, config) -> "DockerRuntimeClient":
        """
        Build a client from StepdockConfig.

        Uses DOCKER_HOST / DOCKER_TLS_VERIFY / DOCKER_CERT_PATH when
        config.docker_host is unset.
        """
        kwargs: dict[str, Any] = {}
        if config.docker_host:
            kwargs["base_url"] = config.docker_host
        else:
            kwargs.update(docker.utils.kwargs_from_env())
        api = docker.APIClient(version=config.api_version, timeout=config.timeout, **kwargs)
        return cls(api)

    def network_create(self, name: str, labels: dict[str, str]) -> None:
        with _translate_errors("network_create", name):
            self._api.create_network(name, driver="bridge", labels=labels)

    def network_remove(self, name: str) -> None:
        with _translate_errors("network_remove", name, ignore_missing=True):
            self._api.remove_network(name)

    def volume_create(self, name: str, labels: dict[str, str]) -> None:
        with _translate_errors("volume_create", name):
            self._api.create_volume(name=name, driver="local", labels=labels)

    def volume_remove(self, name: str) -> None:
        with _translate_errors("volume_remove", name, ignore_missing=True):
            self._api.remove_volume(name, force=True)

    def image_pull(self, image: str, auth: Optional[DockerAuth] = None) -> None:
        auth_config = None
        if auth is not None:
            auth_config = {"username": auth.username, "password": auth.password}

        try:
            with _translate_errors("image_pull", image):
                # Drain the progress stream; errors arrive in-band
                for event in self._api.pull(image, stream=True, decode=True, auth_config=auth_config):
                    if isinstance(event, dict) and event.get("error"):
                        raise PullFailure(
                            f"image_pull {image}: {event['error']}",
                            operation="image_pull", resource=image,
                        )
        except PullFailure:
            raise
        except RuntimeOperationFailure as e:
            raise PullFailure(str(e), operation="image_pull", resource=image, cause=e.cause) from e

    def container_create(
        self,
        name: str,
        config: dict[str, Any],
        host_config: dict[str, Any],
        net_config: dict[str, Any],
    ) -> None:
        body = dict(config)
        body["HostConfig"] = host_config
        body["NetworkingConfig"] = net_config
        with _translate_errors("container_create", name):
            self._api.create_container_from_config(body, name=name)

    def container_start(self, name: str) -> None:
        with _translate_errors("container_start", name):
            self._api.start(name)

    def container_wait(self, name: str, timeout: Optional[float] = None) -> Optional[int]:
        try:
            with _translate_errors("container_wait", name):
                result = self._api.wait(name, timeout=timeout)
        except RuntimeOperationFailure as e:
            if timeout is not None and _is_read_timeout(e.cause):
                return None
            raise
        return int(result.get("StatusCode", 0))

    def container_inspect(self, name: str) -> dict[str, Any]:
        with _translate_errors("container_inspect", name):
            return self._api.inspect_container(name)

    def container_kill(self, name: str, signal: str = "9") -> None:
        try:
            with _translate_errors("container_kill", name, ignore_missing=True):
                self._api.kill(name, signal=signal)
        except RuntimeOperationFailure as e:
            # 409: container is not running, nothing to kill
            cause = e.cause
            if isinstance(cause, docker.errors.APIError) and cause.status_code == 409:
                return
            raise

    def container_remove(self, name: str) -> None:
        with _translate_errors("container_remove", name, ignore_missing=True):
            self._api.remove_container(name, v=True, link=False, force=True)

    def copy_to_container(
        self,
        name: str,
        path: str,
        data: bytes,
        allow_overwrite_dir_with_file: bool = False,
    ) -> None:
        params = {"path": path}
        if not allow_overwrite_dir_with_file:
            params["noOverwriteDirNonDir"] = "true"
        url = self._api._url("/containers/{0}/archive", name)
        with _translate_errors("copy_to_container", name):
            response = self._api._put(url, params=params, data=data)
            self._api._raise_for_status(response)

    def container_logs(self, name: str, follow: bool = True) -> BinaryIO:
        params = {
            "follow": 1 if follow else 0,
            "stdout": 1,
            "stderr": 1,
            "timestamps": 0,
            "details": 0,
        }
        url = self._api._url("/containers/{0}/logs", name)
        with _translate_errors("container_logs", name):
            response = self._api._get(url, params=params, stream=True, timeout=None)
            self._api._raise_for_status(response)
        return _ResponseStream(response)

"""Tests for stepdock.client runtime clients.

Tests cover:
- RuntimeClient protocol conformance
- NoOpRuntimeClient dry-run behavior
- DockerRuntimeClient calls and error translation (docker SDK mocked)
"""

import io
from unittest.mock import MagicMock, patch

import docker.errors
import pytest
import requests

from stepdock.client import DockerRuntimeClient, NoOpRuntimeClient, RuntimeClient
from stepdock.config import StepdockConfig
from stepdock.errors import ImageNotFound, PullFailure, RuntimeOperationFailure
from stepdock.schemas import DockerAuth
from stepdock.stdcopy import STDOUT, std_copy

from conftest import FakeRuntimeClient, frame


def _api_error(cls=docker.errors.APIError, status_code=500, explanation="boom"):
    response = MagicMock(status_code=status_code, reason="Error", url="http://docker/x")
    return cls("server error", response=response, explanation=explanation)


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def docker_client(api):
    return DockerRuntimeClient(api)


class TestProtocol:
    """Tests for RuntimeClient protocol conformance."""

    def test_implementations_satisfy_protocol(self, api):
        assert isinstance(NoOpRuntimeClient(), RuntimeClient)
        assert isinstance(DockerRuntimeClient(api), RuntimeClient)
        assert isinstance(FakeRuntimeClient(), RuntimeClient)


class TestNoOpRuntimeClient:
    """Tests for NoOpRuntimeClient."""

    def test_reports_clean_exit(self):
        client = NoOpRuntimeClient()

        assert client.container_wait("c") == 0
        assert client.container_inspect("c")["State"]["ExitCode"] == 0

    def test_logs_are_empty(self):
        assert NoOpRuntimeClient().container_logs("c").read() == b""


class TestDockerRuntimeClient:
    """Tests for DockerRuntimeClient."""

    def test_network_create(self, docker_client, api):
        docker_client.network_create("run_1", {"a": "b"})

        api.create_network.assert_called_once_with("run_1", driver="bridge", labels={"a": "b"})

    def test_network_remove_missing_is_success(self, docker_client, api):
        api.remove_network.side_effect = _api_error(docker.errors.NotFound, 404)

        docker_client.network_remove("run_1")

    def test_volume_create(self, docker_client, api):
        docker_client.volume_create("vol_1", {"a": "b"})

        api.create_volume.assert_called_once_with(name="vol_1", driver="local", labels={"a": "b"})

    def test_volume_remove_forces(self, docker_client, api):
        docker_client.volume_remove("vol_1")

        api.remove_volume.assert_called_once_with("vol_1", force=True)

    def test_volume_remove_error(self, docker_client, api):
        api.remove_volume.side_effect = _api_error(explanation="volume is in use")

        with pytest.raises(RuntimeOperationFailure, match="volume is in use") as exc_info:
            docker_client.volume_remove("vol_1")

        assert exc_info.value.operation == "volume_remove"
        assert exc_info.value.resource == "vol_1"
        assert isinstance(exc_info.value.cause, docker.errors.APIError)

    def test_image_pull_drains_stream_with_auth(self, docker_client, api):
        api.pull.return_value = iter([{"status": "Pulling"}, {"status": "Done"}])

        docker_client.image_pull("alpine:3.9", DockerAuth("docker.io", "octocat", "pw"))

        api.pull.assert_called_once_with(
            "alpine:3.9",
            stream=True,
            decode=True,
            auth_config={"username": "octocat", "password": "pw"},
        )

    def test_image_pull_anonymous(self, docker_client, api):
        api.pull.return_value = iter([])

        docker_client.image_pull("alpine")

        assert api.pull.call_args.kwargs["auth_config"] is None

    def test_image_pull_in_band_error(self, docker_client, api):
        api.pull.return_value = iter([{"status": "Pulling"}, {"error": "unauthorized"}])

        with pytest.raises(PullFailure, match="unauthorized"):
            docker_client.image_pull("private/app")

    def test_image_pull_api_error(self, docker_client, api):
        api.pull.side_effect = _api_error(explanation="manifest unknown")

        with pytest.raises(PullFailure, match="manifest unknown"):
            docker_client.image_pull("alpine:nope")

    def test_container_create_body(self, docker_client, api):
        docker_client.container_create(
            "step_1", {"Image": "alpine"}, {"Privileged": False}, {"EndpointsConfig": {}}
        )

        api.create_container_from_config.assert_called_once_with(
            {
                "Image": "alpine",
                "HostConfig": {"Privileged": False},
                "NetworkingConfig": {"EndpointsConfig": {}},
            },
            name="step_1",
        )

    def test_container_create_image_not_found(self, docker_client, api):
        api.create_container_from_config.side_effect = _api_error(
            docker.errors.ImageNotFound, 404, "No such image: alpine:latest"
        )

        with pytest.raises(ImageNotFound):
            docker_client.container_create("step_1", {"Image": "alpine"}, {}, {})

    def test_container_create_other_not_found(self, docker_client, api):
        api.create_container_from_config.side_effect = _api_error(
            docker.errors.NotFound, 404, "network run_1 not found"
        )

        with pytest.raises(RuntimeOperationFailure) as exc_info:
            docker_client.container_create("step_1", {"Image": "alpine"}, {}, {})

        assert not isinstance(exc_info.value, ImageNotFound)

    def test_container_wait_status_code(self, docker_client, api):
        api.wait.return_value = {"StatusCode": 3, "Error": None}

        assert docker_client.container_wait("step_1") == 3
        api.wait.assert_called_once_with("step_1", timeout=None)

    def test_container_wait_timeout_means_still_running(self, docker_client, api):
        api.wait.side_effect = requests.exceptions.ReadTimeout("read timed out")

        assert docker_client.container_wait("step_1", timeout=0.5) is None
        api.wait.assert_called_once_with("step_1", timeout=0.5)

    def test_container_wait_unix_socket_timeout(self, docker_client, api):
        api.wait.side_effect = requests.exceptions.ConnectionError(
            "UnixHTTPConnectionPool(host='localhost', port=None): Read timed out."
        )

        assert docker_client.container_wait("step_1", timeout=0.5) is None

    def test_container_wait_unreachable_daemon(self, docker_client, api):
        api.wait.side_effect = requests.exceptions.ConnectionError("connection refused")

        with pytest.raises(RuntimeOperationFailure, match="connection refused"):
            docker_client.container_wait("step_1", timeout=0.5)

    def test_container_wait_timeout_without_limit_is_error(self, docker_client, api):
        api.wait.side_effect = requests.exceptions.ReadTimeout("read timed out")

        with pytest.raises(RuntimeOperationFailure):
            docker_client.container_wait("step_1")

    def test_container_inspect(self, docker_client, api):
        api.inspect_container.return_value = {"State": {"ExitCode": 0}}

        assert docker_client.container_inspect("step_1") == {"State": {"ExitCode": 0}}

    def test_container_kill_not_running_is_success(self, docker_client, api):
        api.kill.side_effect = _api_error(status_code=409, explanation="is not running")

        docker_client.container_kill("step_1")

        api.kill.assert_called_once_with("step_1", signal="9")

    def test_container_kill_missing_is_success(self, docker_client, api):
        api.kill.side_effect = _api_error(docker.errors.NotFound, 404)

        docker_client.container_kill("step_1")

    def test_container_kill_server_error(self, docker_client, api):
        api.kill.side_effect = _api_error(status_code=500)

        with pytest.raises(RuntimeOperationFailure):
            docker_client.container_kill("step_1")

    def test_container_remove_forces_with_volumes(self, docker_client, api):
        docker_client.container_remove("step_1")

        api.remove_container.assert_called_once_with("step_1", v=True, link=False, force=True)

    def test_container_remove_missing_is_success(self, docker_client, api):
        api.remove_container.side_effect = _api_error(docker.errors.NotFound, 404)

        docker_client.container_remove("step_1")

    def test_copy_to_container_disallows_overwrite(self, docker_client, api):
        api._url.return_value = "http://docker/containers/step_1/archive"

        docker_client.copy_to_container("step_1", "/", b"tar-bytes")

        api._url.assert_called_once_with("/containers/{0}/archive", "step_1")
        api._put.assert_called_once_with(
            "http://docker/containers/step_1/archive",
            params={"path": "/", "noOverwriteDirNonDir": "true"},
            data=b"tar-bytes",
        )
        api._raise_for_status.assert_called_once_with(api._put.return_value)

    def test_copy_to_container_error(self, docker_client, api):
        api._raise_for_status.side_effect = _api_error(explanation="not a directory")

        with pytest.raises(RuntimeOperationFailure, match="not a directory"):
            docker_client.copy_to_container("step_1", "/", b"tar-bytes")

    def test_container_logs_raw_stream(self, docker_client, api):
        response = MagicMock()
        response.raw = io.BytesIO(frame(STDOUT, b"hello\n"))
        api._get.return_value = response

        stream = docker_client.container_logs("step_1")
        out = MagicMock()
        std_copy(out, out, stream)
        stream.close()

        params = api._get.call_args.kwargs["params"]
        assert params["follow"] == 1
        assert params["stdout"] == 1
        assert params["stderr"] == 1
        assert api._get.call_args.kwargs["stream"] is True
        out.write.assert_called_once_with(b"hello\n")
        response.close.assert_called_once()

    def test_transport_error(self, docker_client, api):
        api.start.side_effect = requests.exceptions.ConnectionError("daemon unreachable")

        with pytest.raises(RuntimeOperationFailure, match="daemon unreachable"):
            docker_client.container_start("step_1")


class TestFromConfig:
    """Tests for DockerRuntimeClient.from_config."""

    def test_explicit_host(self):
        config = StepdockConfig(docker_host="tcp://docker:2375", timeout=30)

        with patch("stepdock.client.docker.APIClient") as api_cls:
            DockerRuntimeClient.from_config(config)

        api_cls.assert_called_once_with(version="auto", timeout=30, base_url="tcp://docker:2375")

    def test_environment_host(self):
        config = StepdockConfig()

        with patch("stepdock.client.docker.utils.kwargs_from_env", return_value={"base_url": "unix://x"}):
            with patch("stepdock.client.docker.APIClient") as api_cls:
                DockerRuntimeClient.from_config(config)

        api_cls.assert_called_once_with(version="auto", timeout=60, base_url="unix://x")

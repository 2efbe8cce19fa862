import io
import struct
import threading
from typing import Any, Optional

import pytest

from stepdock.errors import ImageNotFound, RuntimeOperationFailure
from stepdock.schemas import DockerAuth, PipelineSpec


def frame(stream: int, payload: bytes) -> bytes:
    """Encode one multiplexed log frame."""
    return struct.pack(">BxxxL", stream, len(payload)) + payload


class BlockingSource(io.RawIOBase):
    """A follow-mode log source: serves data, then blocks until closed."""

    def __init__(self, data: bytes = b""):
        self._data = data
        self._released = threading.Event()

    def readable(self):
        return True

    def readinto(self, b):
        if self._data:
            n = min(len(b), len(self._data))
            b[:n] = self._data[:n]
            self._data = self._data[n:]
            return n
        self._released.wait(timeout=10)
        raise ValueError("read from closed source")

    def close(self):
        self._released.set()
        super().close()


class FakeRuntimeClient:
    """
    In-memory RuntimeClient recording every call.

    Failures are injected per operation through `fail`: a single exception
    is raised on every call, a list is consumed one exception per call.
    """

    def __init__(self, local_images: Optional[set[str]] = None):
        self.calls: list[tuple[str, str]] = []
        self.networks: dict[str, dict[str, str]] = {}
        self.volumes: dict[str, dict[str, str]] = {}
        self.containers: dict[str, dict[str, Any]] = {}
        self.local_images: set[str] = set(local_images or ())
        self.pull_auths: list[Optional[DockerAuth]] = []
        self.copies: list[tuple[str, str, bytes, bool]] = []
        self.logs: dict[str, bytes] = {}
        self.exit_states: dict[str, dict[str, Any]] = {}
        self.fail: dict[str, Any] = {}
        self.wait_gate: Optional[threading.Event] = None
        self.follow_logs = False

    def _record(self, op: str, name: str) -> None:
        self.calls.append((op, name))
        err = self.fail.get(op)
        if isinstance(err, list):
            if err:
                raise err.pop(0)
        elif err is not None:
            raise err

    def ops(self, op: str) -> list[str]:
        return [name for o, name in self.calls if o == op]

    def network_create(self, name, labels):
        self._record("network_create", name)
        self.networks[name] = labels

    def network_remove(self, name):
        self._record("network_remove", name)
        self.networks.pop(name, None)

    def volume_create(self, name, labels):
        self._record("volume_create", name)
        self.volumes[name] = labels

    def volume_remove(self, name):
        self._record("volume_remove", name)
        self.volumes.pop(name, None)

    def image_pull(self, image, auth=None):
        self._record("image_pull", image)
        self.pull_auths.append(auth)
        self.local_images.add(image)

    def container_create(self, name, config, host_config, net_config):
        self._record("container_create", name)
        if config["Image"] not in self.local_images:
            raise ImageNotFound(
                f"No such image: {config['Image']}",
                operation="container_create", resource=name,
            )
        self.containers[name] = {
            "config": config,
            "host_config": host_config,
            "net_config": net_config,
            "running": False,
        }

    def container_start(self, name):
        self._record("container_start", name)
        self.containers[name]["running"] = True

    def container_wait(self, name, timeout=None):
        self._record("container_wait", name)
        if self.wait_gate is not None:
            if not self.wait_gate.wait(timeout=10 if timeout is None else timeout):
                return None
        state = self.exit_states.get(name, {})
        if name in self.containers and not state.get("Running", False):
            self.containers[name]["running"] = False
        return state.get("ExitCode", 0)

    def container_inspect(self, name):
        self._record("container_inspect", name)
        if name not in self.containers:
            raise RuntimeOperationFailure(
                f"No such container: {name}", operation="container_inspect", resource=name
            )
        state = {"Running": False, "ExitCode": 0, "OOMKilled": False}
        state.update(self.exit_states.get(name, {}))
        return {"Id": name, "State": state}

    def container_kill(self, name, signal="9"):
        self._record("container_kill", name)
        if name in self.containers:
            self.containers[name]["running"] = False

    def container_remove(self, name):
        self._record("container_remove", name)
        self.containers.pop(name, None)

    def copy_to_container(self, name, path, data, allow_overwrite_dir_with_file=False):
        self._record("copy_to_container", name)
        self.copies.append((name, path, data, allow_overwrite_dir_with_file))

    def container_logs(self, name, follow=True):
        self._record("container_logs", name)
        if self.follow_logs:
            return BlockingSource(self.logs.get(name, b""))
        return io.BytesIO(self.logs.get(name, b""))


def make_spec_dict(**overrides) -> dict[str, Any]:
    """A pipeline spec dict with two steps, one ephemeral and one host volume."""
    data = {
        "metadata": {
            "uid": "run_1",
            "name": "test-run",
            "labels": {"io.stepdock.run": "run_1"},
        },
        "steps": [
            {
                "metadata": {"uid": "step_clone", "name": "clone"},
                "docker": {"image": "alpine/git:2.40", "pull_policy": "default"},
                "files": [{"name": "netrc", "path": "/root/.netrc", "mode": 0o600}],
                "volumes": [{"name": "workspace", "path": "/drone/src"}],
                "working_dir": "/drone/src",
            },
            {
                "metadata": {"uid": "step_build", "name": "build"},
                "docker": {
                    "image": "golang",
                    "command": ["/bin/sh", "-c"],
                    "args": ["go build"],
                },
                "envs": {"CGO_ENABLED": "0"},
                "secrets": [{"name": "token", "env": "GITHUB_TOKEN"}],
                "volumes": [
                    {"name": "workspace", "path": "/drone/src"},
                    {"name": "docker_sock", "path": "/var/run/docker.sock"},
                ],
                "resources": {"limits": {"cpu": 500, "memory": 1073741824}},
            },
        ],
        "docker": {
            "auths": [
                {"address": "https://index.docker.io/v1/", "username": "octocat", "password": "correct-horse"},
                {"address": "registry.example.com", "username": "robot", "password": "s3cret"},
            ],
            "volumes": [
                {"metadata": {"uid": "vol_workspace", "name": "workspace"}, "temp": {}},
                {"metadata": {"uid": "vol_sock", "name": "docker_sock"}, "host": {"path": "/var/run/docker.sock"}},
            ],
        },
        "files": [
            {"metadata": {"uid": "file_netrc", "name": "netrc"}, "data": "machine github.com login octocat"},
        ],
        "secrets": [
            {"metadata": {"uid": "secret_token", "name": "token"}, "data": "ghp_abc123", "mask": True},
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def spec_dict() -> dict[str, Any]:
    return make_spec_dict()


@pytest.fixture
def spec(spec_dict) -> PipelineSpec:
    return PipelineSpec.from_dict(spec_dict)


@pytest.fixture
def client() -> FakeRuntimeClient:
    return FakeRuntimeClient()


@pytest.fixture(autouse=True)
def isolated_home(monkeypatch, tmp_path):
    """Keep tests away from the user's real stepdock config."""
    home = tmp_path / "stepdock_home"
    monkeypatch.setenv("STEPDOCK_HOME", str(home))
    yield home

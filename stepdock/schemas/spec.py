"""
PipelineSpec schema - the declarative description of one pipeline run.

A PipelineSpec is produced by the caller (usually from a JSON or YAML file)
and held read-only by the engine for the duration of the run. Every runtime
resource is named after a uid taken from the pipeline spec:

- network   -> spec.metadata.uid
- volume    -> volume.metadata.uid
- container -> step.metadata.uid

The lookup helpers at the bottom of this module are the authorization,
file payload and secret boundaries consumed by the engine.
"""

import base64
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlparse

import yaml

from stepdock.errors import SpecError


class PullPolicy(str, Enum):
    """Rule governing whether an image is pulled before container creation."""
    DEFAULT = "default"
    ALWAYS = "always"
    NEVER = "never"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "PullPolicy":
        """Parse a PullPolicy, accepting 'if-not-exists' as DEFAULT."""
        if not value or value == "if-not-exists":
            return cls.DEFAULT
        for policy in cls:
            if policy.value == value:
                return policy
        raise SpecError(f"Unknown pull policy: {value}")


@dataclass(frozen=True)
class Metadata:
    """
    Identity of a spec entity.

    Attributes:
        uid: Unique identifier, used verbatim as the runtime resource name
        namespace: Optional namespace
        name: Human-readable name (used as the network alias for steps)
        labels: Labels applied to every runtime resource of the run
    """
    uid: str
    namespace: str = ""
    name: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Metadata":
        if not data or not data.get("uid"):
            raise SpecError(f"metadata.uid is required: {data!r}")
        return cls(
            uid=data["uid"],
            namespace=data.get("namespace", ""),
            name=data.get("name", ""),
            labels=dict(data.get("labels") or {}),
        )


@dataclass(frozen=True)
class DockerAuth:
    """Registry credentials keyed by registry address."""
    address: str
    username: str
    password: str = field(repr=False)

    @property
    def domain(self) -> str:
        """Registry hostname with any scheme and path stripped."""
        address = self.address
        if "://" not in address:
            address = "//" + address
        host = urlparse(address).netloc or self.address
        if host == "index.docker.io":
            return "docker.io"
        return host


@dataclass(frozen=True)
class VolumeEmptyDir:
    """Ephemeral volume created and destroyed with the run."""
    medium: str = ""
    size_limit: int = 0


@dataclass(frozen=True)
class VolumeHostPath:
    """Externally-mounted host directory, never lifecycle-managed."""
    path: str


@dataclass(frozen=True)
class Volume:
    """A volume declared by the pipeline."""
    metadata: Metadata
    empty_dir: Optional[VolumeEmptyDir] = None
    host_path: Optional[VolumeHostPath] = None

    @property
    def is_ephemeral(self) -> bool:
        return self.empty_dir is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Volume":
        empty_dir = None
        if data.get("temp") is not None:
            temp = data["temp"]
            empty_dir = VolumeEmptyDir(
                medium=temp.get("medium", ""),
                size_limit=int(temp.get("size_limit", 0)),
            )
        host_path = None
        if data.get("host") is not None:
            host_path = VolumeHostPath(path=data["host"]["path"])
        return cls(
            metadata=Metadata.from_dict(data.get("metadata", {})),
            empty_dir=empty_dir,
            host_path=host_path,
        )


@dataclass(frozen=True)
class DockerConfig:
    """Docker-specific run configuration."""
    auths: tuple[DockerAuth, ...] = field(default_factory=tuple)
    volumes: tuple[Volume, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DockerConfig":
        auths = tuple(
            DockerAuth(
                address=a["address"],
                username=a.get("username", ""),
                password=a.get("password", ""),
            )
            for a in data.get("auths") or []
        )
        volumes = tuple(Volume.from_dict(v) for v in data.get("volumes") or [])
        return cls(auths=auths, volumes=volumes)


@dataclass(frozen=True)
class DockerStep:
    """Container configuration of a step."""
    image: str
    pull_policy: PullPolicy = PullPolicy.DEFAULT
    command: tuple[str, ...] = field(default_factory=tuple)
    args: tuple[str, ...] = field(default_factory=tuple)
    dns: tuple[str, ...] = field(default_factory=tuple)
    dns_search: tuple[str, ...] = field(default_factory=tuple)
    extra_hosts: tuple[str, ...] = field(default_factory=tuple)
    networks: tuple[str, ...] = field(default_factory=tuple)
    privileged: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DockerStep":
        if not data.get("image"):
            raise SpecError("docker.image is required")
        return cls(
            image=data["image"],
            pull_policy=PullPolicy.from_string(data.get("pull_policy")),
            command=tuple(data.get("command") or ()),
            args=tuple(data.get("args") or ()),
            dns=tuple(data.get("dns") or ()),
            dns_search=tuple(data.get("dns_search") or ()),
            extra_hosts=tuple(data.get("extra_hosts") or ()),
            networks=tuple(data.get("networks") or ()),
            privileged=bool(data.get("privileged", False)),
        )


@dataclass(frozen=True)
class ResourceObject:
    """CPU (millicores) and memory (bytes) quantities."""
    cpu: int = 0
    memory: int = 0


@dataclass(frozen=True)
class Resources:
    limits: Optional[ResourceObject] = None
    requests: Optional[ResourceObject] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Resources":
        def _obj(value: Optional[dict[str, Any]]) -> Optional[ResourceObject]:
            if value is None:
                return None
            return ResourceObject(
                cpu=int(value.get("cpu", 0)),
                memory=int(value.get("memory", 0)),
            )

        return cls(limits=_obj(data.get("limits")), requests=_obj(data.get("requests")))


@dataclass(frozen=True)
class FileMount:
    """Request to inject a named file payload at a path in the container."""
    name: str
    path: str
    mode: int = 0o644

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileMount":
        mode = data.get("mode", 0o644)
        if isinstance(mode, str):
            mode = int(mode, 8)
        return cls(name=data["name"], path=data["path"], mode=mode)


@dataclass(frozen=True)
class SecretVar:
    """Exposes a named secret as an environment variable."""
    name: str
    env: str


@dataclass(frozen=True)
class VolumeMount:
    """Mounts a declared volume at a path in the container."""
    name: str
    path: str


@dataclass(frozen=True)
class Step:
    """
    One container-backed unit of pipeline work.

    Attributes:
        metadata: Step identity; metadata.uid names the container
        docker: Container configuration (required by the docker engine)
        envs: Environment variables
        files: File mount requests, in injection order
        secrets: Secret-to-env bindings
        volumes: Volume mounts
        resources: Resource limits and requests
        working_dir: Container working directory
        detach: Run in the background (service containers)
        ignore_err: A non-zero exit does not fail the run
        depends_on: Names of steps this step depends on (informational)
    """
    metadata: Metadata
    docker: Optional[DockerStep] = None
    envs: dict[str, str] = field(default_factory=dict)
    files: tuple[FileMount, ...] = field(default_factory=tuple)
    secrets: tuple[SecretVar, ...] = field(default_factory=tuple)
    volumes: tuple[VolumeMount, ...] = field(default_factory=tuple)
    resources: Optional[Resources] = None
    working_dir: str = ""
    detach: bool = False
    ignore_err: bool = False
    depends_on: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Step":
        """Deserialize from dictionary."""
        docker = None
        if data.get("docker") is not None:
            docker = DockerStep.from_dict(data["docker"])
        resources = None
        if data.get("resources") is not None:
            resources = Resources.from_dict(data["resources"])
        return cls(
            metadata=Metadata.from_dict(data.get("metadata", {})),
            docker=docker,
            envs={k: str(v) for k, v in (data.get("envs") or {}).items()},
            files=tuple(FileMount.from_dict(f) for f in data.get("files") or []),
            secrets=tuple(
                SecretVar(name=s["name"], env=s["env"]) for s in data.get("secrets") or []
            ),
            volumes=tuple(
                VolumeMount(name=v["name"], path=v["path"]) for v in data.get("volumes") or []
            ),
            resources=resources,
            working_dir=data.get("working_dir", ""),
            detach=bool(data.get("detach", False)),
            ignore_err=bool(data.get("ignore_err", False)),
            depends_on=tuple(data.get("depends_on") or ()),
        )


@dataclass(frozen=True)
class File:
    """A named file payload available for injection."""
    metadata: Metadata
    data: bytes = b""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "File":
        if "data_base64" in data:
            try:
                payload = base64.b64decode(data["data_base64"], validate=True)
            except ValueError as e:
                raise SpecError(f"Invalid base64 file data: {e}")
        else:
            payload = str(data.get("data", "")).encode("utf-8")
        return cls(metadata=Metadata.from_dict(data.get("metadata", {})), data=payload)


@dataclass(frozen=True)
class Secret:
    """A named secret value."""
    metadata: Metadata
    data: str = field(default="", repr=False)
    mask: bool = False


@dataclass(frozen=True)
class PipelineSpec:
    """
    Immutable description of one pipeline run.

    Attributes:
        metadata: Run identity; metadata.uid names the network and
            metadata.labels are applied to every runtime resource
        steps: Steps in declaration order
        docker: Docker configuration (auths, volumes)
        files: Named file payloads
        secrets: Named secrets
    """
    metadata: Metadata
    steps: tuple[Step, ...] = field(default_factory=tuple)
    docker: Optional[DockerConfig] = None
    files: tuple[File, ...] = field(default_factory=tuple)
    secrets: tuple[Secret, ...] = field(default_factory=tuple)

    def __post_init__(self):
        # Runtime resource names must be unique within a run
        uids = [self.metadata.uid] + [s.metadata.uid for s in self.steps]
        if self.docker is not None:
            uids += [v.metadata.uid for v in self.docker.volumes]
        if len(uids) != len(set(uids)):
            duplicates = sorted({uid for uid in uids if uids.count(uid) > 1})
            raise SpecError(f"Duplicate resource uids: {duplicates}")

    @property
    def ephemeral_volumes(self) -> list[Volume]:
        """Volumes created in setup and removed in destroy."""
        if self.docker is None:
            return []
        return [v for v in self.docker.volumes if v.is_ephemeral]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineSpec":
        """Deserialize from dictionary."""
        if not isinstance(data, dict):
            raise SpecError("Pipeline spec must be a mapping")
        try:
            docker = None
            if data.get("docker") is not None:
                docker = DockerConfig.from_dict(data["docker"])
            return cls(
                metadata=Metadata.from_dict(data.get("metadata", {})),
                steps=tuple(Step.from_dict(s) for s in data.get("steps") or []),
                docker=docker,
                files=tuple(File.from_dict(f) for f in data.get("files") or []),
                secrets=tuple(
                    Secret(
                        metadata=Metadata.from_dict(s.get("metadata", {})),
                        data=str(s.get("data", "")),
                        mask=bool(s.get("mask", False)),
                    )
                    for s in data.get("secrets") or []
                ),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SpecError(f"Invalid pipeline spec: {e}")


def load_spec(path: Union[str, Path]) -> PipelineSpec:
    """
    Load a pipeline spec from a JSON or YAML file.

    Args:
        path: Path to a .json, .yaml or .yml file

    Returns:
        PipelineSpec instance

    Raises:
        SpecError: If the file is missing or malformed
    """
    path = Path(path)
    if not path.exists():
        raise SpecError(f"Spec file not found: {path}")

    text = path.read_text()
    try:
        if path.suffix == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise SpecError(f"Invalid spec syntax in {path}: {e}")

    return PipelineSpec.from_dict(data)


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------


def lookup_auth(spec: PipelineSpec, domain: str) -> Optional[DockerAuth]:
    """Return the registry credentials matching domain, if any."""
    if spec.docker is None:
        return None
    for auth in spec.docker.auths:
        if auth.domain == domain:
            return auth
    return None


def lookup_file(spec: PipelineSpec, name: str) -> Optional[File]:
    """Return the named file payload, if any."""
    for file in spec.files:
        if file.metadata.name == name:
            return file
    return None


def lookup_secret(spec: PipelineSpec, name: str) -> Optional[Secret]:
    """Return the named secret, if any."""
    for secret in spec.secrets:
        if secret.metadata.name == name:
            return secret
    return None

"""
stepdock.schemas - Schema definitions for the docker step runtime.

PipelineSpec -> Step -> (container) -> State

Lifecycle:
1. PipelineSpec: Immutable description of one run (steps, volumes, auths, files)
2. Step: One container-backed unit of work, named by its metadata.uid
3. State: Exit status of a step, produced once by DockerEngine.wait
"""

from .spec import (
    PullPolicy,
    Metadata,
    DockerAuth,
    DockerConfig,
    DockerStep,
    Volume,
    VolumeEmptyDir,
    VolumeHostPath,
    VolumeMount,
    Resources,
    ResourceObject,
    FileMount,
    File,
    Secret,
    SecretVar,
    Step,
    PipelineSpec,
    load_spec,
    lookup_auth,
    lookup_file,
    lookup_secret,
)
from .state import State

__all__ = [
    # Spec
    "PullPolicy",
    "Metadata",
    "DockerAuth",
    "DockerConfig",
    "DockerStep",
    "Volume",
    "VolumeEmptyDir",
    "VolumeHostPath",
    "VolumeMount",
    "Resources",
    "ResourceObject",
    "FileMount",
    "File",
    "Secret",
    "SecretVar",
    "Step",
    "PipelineSpec",
    "load_spec",
    # Lookups
    "lookup_auth",
    "lookup_file",
    "lookup_secret",
    # State
    "State",
]

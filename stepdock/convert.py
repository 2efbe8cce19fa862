"""
Conversion of spec steps into Docker Engine API container configuration.

The three helpers return the JSON bodies the engine API expects:
- to_config: container config (image, env, command, labels, volumes)
- to_host_config: host config (mounts, resources, privileges, dns)
- to_net_config: networking config attaching the step to the run network
"""

from typing import Any

from stepdock.schemas import PipelineSpec, Step, Volume, lookup_secret


# docker NanoCpus per millicore
_NANO_CPUS_PER_MILLI = 1_000_000


def _lookup_volume(spec: PipelineSpec, name: str) -> Volume | None:
    if spec.docker is None:
        return None
    for vol in spec.docker.volumes:
        if vol.metadata.name == name:
            return vol
    return None


def _to_env(spec: PipelineSpec, step: Step) -> list[str]:
    """Merge step envs with secret vars into sorted KEY=VALUE pairs."""
    envs = dict(step.envs)
    for var in step.secrets:
        secret = lookup_secret(spec, var.name)
        if secret is not None:
            envs[var.env] = secret.data
    return [f"{k}={v}" for k, v in sorted(envs.items())]


def to_config(spec: PipelineSpec, step: Step) -> dict[str, Any]:
    """Build the container config for a step."""
    docker = step.docker
    config: dict[str, Any] = {
        "Image": docker.image,
        "Labels": dict(spec.metadata.labels),
        "WorkingDir": step.working_dir,
        "AttachStdin": False,
        "AttachStdout": True,
        "AttachStderr": True,
        "Tty": False,
        "OpenStdin": False,
        "StdinOnce": False,
    }

    env = _to_env(spec, step)
    if env:
        config["Env"] = env
    if docker.command:
        config["Entrypoint"] = list(docker.command)
    if docker.args:
        config["Cmd"] = list(docker.args)
    if step.volumes:
        config["Volumes"] = {mount.path: {} for mount in step.volumes}
    return config


def to_host_config(spec: PipelineSpec, step: Step) -> dict[str, Any]:
    """Build the host config for a step."""
    docker = step.docker
    config: dict[str, Any] = {
        "Privileged": docker.privileged,
        "LogConfig": {"Type": "json-file", "Config": {}},
    }
    if docker.extra_hosts:
        config["ExtraHosts"] = list(docker.extra_hosts)
    if docker.dns:
        config["Dns"] = list(docker.dns)
    if docker.dns_search:
        config["DnsSearch"] = list(docker.dns_search)

    limits = step.resources.limits if step.resources else None
    if limits is not None:
        if limits.memory:
            config["Memory"] = limits.memory
            config["MemorySwap"] = limits.memory
        if limits.cpu:
            config["NanoCpus"] = limits.cpu * _NANO_CPUS_PER_MILLI

    binds = []
    tmpfs = {}
    for mount in step.volumes:
        vol = _lookup_volume(spec, mount.name)
        if vol is None:
            continue
        if vol.host_path is not None:
            binds.append(f"{vol.host_path.path}:{mount.path}")
        elif vol.empty_dir is not None and vol.empty_dir.medium == "memory":
            options = ""
            if vol.empty_dir.size_limit:
                options = f"size={vol.empty_dir.size_limit}"
            tmpfs[mount.path] = options
        elif vol.empty_dir is not None:
            binds.append(f"{vol.metadata.uid}:{mount.path}")
    if binds:
        config["Binds"] = binds
    if tmpfs:
        config["Tmpfs"] = tmpfs
    return config


def to_net_config(spec: PipelineSpec, step: Step) -> dict[str, Any]:
    """Attach the step to the run network under its name."""
    aliases = [step.metadata.name] if step.metadata.name else []
    return {
        "EndpointsConfig": {
            spec.metadata.uid: {
                "NetworkID": spec.metadata.uid,
                "Aliases": aliases,
            }
        }
    }

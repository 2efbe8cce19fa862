"""
CLI interface for stepdock.

Provides commands to run a pipeline spec against the local docker daemon,
clean up after an interrupted run, and inspect image references.
"""


import signal
import sys
import threading
from pathlib import Path

import click

from stepdock import __version__


@click.group()
@click.version_option(version=__version__, prog_name="stepdock")
@click.option(
    "--config", "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to config.yaml (default: $STEPDOCK_HOME/config.yaml)",
)
@click.pass_context
def main(ctx, config_path):
    """
    stepdock - Run pipeline steps as docker containers.
    """
    from stepdock.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config_path)
    except FileNotFoundError as e:
        # Defaults apply when no config file exists
        ctx.obj["config_missing"] = str(e)
    except Exception as e:
        ctx.obj["config_error"] = str(e)


def _get_config(ctx):
    from stepdock.config import StepdockConfig

    if "config_error" in ctx.obj:
        click.echo(f"✗ Invalid config: {ctx.obj['config_error']}", err=True)
        raise SystemExit(1)
    return ctx.obj.get("config") or StepdockConfig()


def _load_engine(ctx, spec_file: Path, dry_run: bool):
    """Load config, logging, spec and build an engine."""
    from stepdock.client import DockerRuntimeClient, NoOpRuntimeClient
    from stepdock.engine import DockerEngine
    from stepdock.errors import StepdockError
    from stepdock.schemas import load_spec
    from stepdock.utils import setup_logging

    config = _get_config(ctx)
    setup_logging(config.log_level, config.log_format, config.get_log_file_path())

    try:
        spec = load_spec(spec_file)
        client = NoOpRuntimeClient() if dry_run else DockerRuntimeClient.from_config(config)
    except StepdockError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    return DockerEngine(spec, client, wait_poll_interval=config.wait_poll_interval)


@main.command("run")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Log runtime calls without contacting docker")
@click.pass_context
def run(ctx, spec_file: Path, dry_run: bool):
    """
    Run every step of a pipeline spec.

    SPEC_FILE is a JSON or YAML pipeline spec.

    Examples:

        stepdock run pipeline.json

        stepdock run pipeline.yaml --dry-run
    """
    from stepdock.runner import Runner

    engine = _load_engine(ctx, spec_file, dry_run)
    run_id = engine.spec.metadata.uid

    cancel = threading.Event()

    def _interrupt(signum, frame):
        click.echo("\nCancelling run...", err=True)
        cancel.set()

    previous = signal.signal(signal.SIGINT, _interrupt)
    try:
        result = Runner(engine, output=sys.stdout.buffer).run(cancel=cancel)
    finally:
        signal.signal(signal.SIGINT, previous)

    if result.failed:
        click.echo(f"✗ {run_id} failed", err=True)
        raise SystemExit(1)
    click.echo(f"✓ {run_id} completed", err=True)


@main.command("destroy")
@click.argument("spec_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def destroy(ctx, spec_file: Path):
    """Remove the containers, volumes and network of a previous run."""
    from stepdock.errors import StepdockError

    engine = _load_engine(ctx, spec_file, dry_run=False)
    try:
        report = engine.destroy()
    except StepdockError as e:
        click.echo(f"✗ Cleanup failed: {e}", err=True)
        raise SystemExit(1)

    for cleanup in report.errors:
        click.echo(f"  ! {cleanup.resource}: {cleanup.error}", err=True)
    click.echo(f"✓ {engine.spec.metadata.uid} destroyed")


@main.command("image")
@click.argument("reference")
def image(reference: str):
    """Show the canonical form of an image REFERENCE."""
    from stepdock.errors import InvalidReference
    from stepdock.image import parse_image

    try:
        ref = parse_image(reference)
    except InvalidReference as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    click.echo(f"canonical: {ref.canonical}")
    click.echo(f"domain:    {ref.domain}")
    click.echo(f"latest:    {str(ref.latest).lower()}")


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize stepdock configuration."""
    from stepdock.config import StepdockConfig, get_stepdock_home
    import yaml

    home = get_stepdock_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = StepdockConfig(env_file=str(home / ".env")).to_dict()
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# DOCKER_HOST=unix:///var/run/docker.sock\n")

    click.echo(f"Initialized stepdock config at {cfg_path}")


if __name__ == "__main__":
    main()

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable

import httpx
import typer
import yaml
from fastapi.encoders import jsonable_encoder

from wpsandbox import db
from wpsandbox.config import Settings, load_settings
from wpsandbox.logging_config import configure_logging
from wpsandbox.proc import run_downstream
from wpsandbox.provider import DockerProvider, SandboxProvider
from wpsandbox.services.artifact import DEFAULT_ARTIFACT, read_artifact, remove_artifact, write_artifact
from wpsandbox.services.consumer import ProgressConsumer, watch_endpoint
from wpsandbox.services.errors import SandboxException
from wpsandbox.services.leases import LeaseManager
from wpsandbox.services.pipeline import ProvisioningRun
from wpsandbox.services.progress import ProgressEvent
from wpsandbox.services.teardown import teardown

configure_logging()
logger = logging.getLogger(__name__)
app = typer.Typer(help="WordPress sandbox CLI", pretty_exceptions_show_locals=False)

provider_factory: Callable[[Settings], SandboxProvider] = DockerProvider.from_settings


def _leases() -> LeaseManager:
    db.init_db(db.engine)
    return LeaseManager(db.engine)


def _exit_for_domain_error(exc: SandboxException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _echo_yaml_entity(entity: object) -> None:
    encoded = jsonable_encoder(entity)
    typer.echo(yaml.safe_dump(encoded, sort_keys=False), nl=False)


def _echo_event(event: ProgressEvent) -> None:
    typer.echo(f"[{event.step}/{event.total_steps}] {event.text}", err=True)


def _provision(*, environment_id: str | None, teardown_on_failure: bool) -> tuple[Settings, ProvisioningRun]:
    try:
        settings = load_settings()
    except SandboxException as e:
        _exit_for_domain_error(e)
    run = ProvisioningRun(
        provider=provider_factory(settings),
        settings=settings,
        sink=_echo_event,
        leases=_leases(),
        environment_id=environment_id,
        teardown_on_failure=teardown_on_failure or None,
    )
    try:
        run.run()
    except SandboxException as e:
        _exit_for_domain_error(e)
    return settings, run


@app.command("provision")
def provision(
    environment_id: str | None = typer.Option(
        None, "--environment-id", help="Re-provision an existing environment instead of creating one."
    ),
    artifact: Path = typer.Option(DEFAULT_ARTIFACT, "--artifact", help="Where to persist the sandbox URL and id."),
    teardown_on_failure: bool = typer.Option(
        False,
        "--teardown-on-failure",
        help="Stop the environment when provisioning fails (default: SANDBOX_TEARDOWN_ON_FAILURE).",
    ),
) -> None:
    _, run = _provision(environment_id=environment_id, teardown_on_failure=teardown_on_failure)
    assert run.environment is not None and run.sandbox_url is not None
    write_artifact(artifact, sandbox_url=run.sandbox_url, environment_id=run.environment.environment_id)
    _echo_yaml_entity(
        {
            "environment_id": run.environment.environment_id,
            "sandbox_url": run.sandbox_url,
            "artifact": str(artifact),
        }
    )


@app.command(
    "build",
    context_settings={"allow_extra_args": True, "ignore_unknown_options": True},
)
def build(
    ctx: typer.Context,
    artifact: Path = typer.Option(DEFAULT_ARTIFACT, "--artifact", help="Where to persist the sandbox URL and id."),
) -> None:
    """Provision a sandbox, run the given build command against it, then tear it down."""
    command = list(ctx.args)
    if not command:
        typer.echo("Error: no build command given (usage: build -- CMD...)", err=True)
        raise typer.Exit(code=1)

    settings, run = _provision(environment_id=None, teardown_on_failure=False)
    assert run.environment is not None and run.sandbox_url is not None
    environment_id = run.environment.environment_id
    write_artifact(artifact, sandbox_url=run.sandbox_url, environment_id=environment_id)
    typer.echo(f"WordPress is live at: {run.sandbox_url}", err=True)

    env = {**os.environ, "WORDPRESS_URL": run.sandbox_url, "SANDBOX_ID": environment_id}
    try:
        exit_code = run_downstream(command, env=env)
        logger.info("Build command exited with %s", exit_code)
    finally:
        try:
            teardown(provider_factory(settings), environment_id, leases=_leases())
        except SandboxException as e:
            typer.echo(f"Could not stop sandbox: {e}", err=True)
        remove_artifact(artifact)
    raise typer.Exit(code=exit_code)


@app.command("teardown")
def teardown_command(
    environment_id: str | None = typer.Argument(None, help="Environment to stop; read from the artifact if omitted."),
    artifact: Path = typer.Option(DEFAULT_ARTIFACT, "--artifact", help="Artifact written by provision/build."),
) -> None:
    if environment_id is None:
        try:
            persisted = read_artifact(artifact)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(code=1)
        if persisted is None:
            typer.echo(f"No sandbox recorded in {artifact}, nothing to clean up.", err=True)
            return
        environment_id = persisted.environment_id

    try:
        settings = load_settings()
        result = teardown(provider_factory(settings), environment_id, leases=_leases())
    except SandboxException as e:
        _exit_for_domain_error(e)
    remove_artifact(artifact)
    _echo_yaml_entity(result)


@app.command("watch")
def watch(url: str) -> None:
    """Follow a remote progress endpoint until it reports ready or error."""
    consumer = ProgressConsumer(listener=_echo_event)
    try:
        watch_endpoint(url, consumer=consumer)
    except SandboxException as e:
        _exit_for_domain_error(e)
    except httpx.HTTPError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if consumer.status != "ready":
        typer.echo(f"Error: {consumer.error}", err=True)
        raise typer.Exit(code=1)
    typer.echo(consumer.sandbox_url)


if __name__ == "__main__":
    app()

"""YugabyteDB Aeon controller CLI (ybmctl).

Usage:
    ybmctl validate plan.yaml            # Offline validation
    ybmctl plan plan.yaml                # Show what apply would do
    ybmctl apply plan.yaml               # Converge to the plan
    ybmctl refresh plan.yaml             # Re-read tracked resources
    ybmctl destroy plan.yaml             # Delete declared resources
    ybmctl watch plan.yaml --interval 300
"""

from __future__ import annotations

import asyncio
import dataclasses
import sys
from pathlib import Path

import click

from .config import Config, FeatureFlags
from .errors import ConfigurationError, ReconcileError
from .main import Command, build_engine, main as watch_main, run_plan, setup_logging
from .models import Cluster, Integration, ReadReplicas, Vpc
from .reconciler import Action, ReconcileResult
from .spec_loader import PlannedResource, SpecLoadError, load_plan
from .translator import validate_cluster, validate_integration, validate_read_replicas, validate_vpc

# CLI constants with documented bounds
DEFAULT_WATCH_INTERVAL_SECONDS = 300
MIN_WATCH_INTERVAL_SECONDS = 10

ACTION_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NOOP: " ",
    Action.REFRESH: "=",
}

plan_files_argument = click.argument(
    "plan_files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path)
)


def load_config(state_file: Path | None) -> Config:
    """Load configuration from the environment, applying CLI overrides.

    Raises:
        click.ClickException: If the configuration is invalid.
    """
    try:
        config = Config.from_env()
        if state_file is not None:
            config = dataclasses.replace(config, state_file=state_file)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return config


def validate_offline(resource: PlannedResource, flags: FeatureFlags) -> None:
    """Run the checks that need no API access.

    Raises:
        ConfigurationError: On the first violated rule.
    """
    spec = resource.spec
    if isinstance(spec, Cluster):
        validate_cluster(spec, creating=spec.cluster_id is None, flags=flags)
    elif isinstance(spec, Vpc):
        validate_vpc(spec)
    elif isinstance(spec, ReadReplicas):
        validate_read_replicas(spec)
    elif isinstance(spec, Integration):
        validate_integration(spec, flags)


def echo_result(result: ReconcileResult) -> None:
    symbol = ACTION_SYMBOLS[result.action]
    line = f"{symbol} {result.key} ({result.action.value})"
    if result.error is not None:
        click.secho(f"{line}: {result.error}", fg="red", err=True)
        return
    click.echo(line)
    for item in result.drift:
        click.echo(f"    {item.path}: {item.observed!r} -> {item.desired!r}")


def execute(command: Command, plan_files: tuple[Path, ...], state_file: Path | None) -> None:
    config = load_config(state_file)
    setup_logging(config.log_level_value)

    try:
        engine = build_engine(config)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    try:
        results = asyncio.run(run_plan(engine, command, list(plan_files)))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    finally:
        engine.shutdown()

    for result in results:
        echo_result(result)

    failed = [r for r in results if not r.success]
    if failed:
        click.secho(f"\n{len(failed)} of {len(results)} resource passes failed", fg="red", err=True)
        sys.exit(1)


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="ybmctl")
def cli() -> None:
    """YugabyteDB Aeon controller (ybmctl).

    Converges clusters, VPCs, allow lists, backups, read replicas,
    integrations and DB audit logging to a declared YAML plan.

    \b
    Configuration comes from YBM_* environment variables:
        YBM_API_KEY        API key (required)
        YBM_HOST           API host (default: cloud.yugabyte.com)
        YBM_STATE_FILE     State file (default: ybm-state.json)
    """
    pass


@cli.command()
@plan_files_argument
def validate(plan_files: tuple[Path, ...]) -> None:
    """Validate plan files without calling the API."""
    flags = FeatureFlags.from_env()
    try:
        resources = load_plan(list(plan_files))
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e

    errors = 0
    for resource in resources:
        try:
            validate_offline(resource, flags)
        except ReconcileError as e:
            errors += 1
            click.secho(f"✗ {resource.key}: {e}", fg="red", err=True)
        else:
            click.echo(f"✓ {resource.key}")

    if errors:
        sys.exit(1)


@cli.command()
@plan_files_argument
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file")
def plan(plan_files: tuple[Path, ...], state_file: Path | None) -> None:
    """Show what apply would change."""
    execute(Command.PLAN, plan_files, state_file)


@cli.command()
@plan_files_argument
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file")
def apply(plan_files: tuple[Path, ...], state_file: Path | None) -> None:
    """Create or update resources to match the plan."""
    execute(Command.APPLY, plan_files, state_file)


@cli.command()
@plan_files_argument
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file")
def refresh(plan_files: tuple[Path, ...], state_file: Path | None) -> None:
    """Re-read tracked resources into the state file."""
    execute(Command.REFRESH, plan_files, state_file)


@cli.command()
@plan_files_argument
@click.option("--state-file", type=click.Path(dir_okay=False, path_type=Path), help="State file")
@click.confirmation_option(prompt="Delete every resource declared in the plan?")
def destroy(plan_files: tuple[Path, ...], state_file: Path | None) -> None:
    """Delete the declared resources, dependents first."""
    execute(Command.DESTROY, plan_files, state_file)


@cli.command()
@plan_files_argument
@click.option(
    "--interval",
    type=click.IntRange(min=MIN_WATCH_INTERVAL_SECONDS),
    default=DEFAULT_WATCH_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between reconciliation cycles",
)
def watch(plan_files: tuple[Path, ...], interval: int) -> None:
    """Apply the plan continuously until SIGINT/SIGTERM."""
    sys.exit(asyncio.run(watch_main(list(plan_files), interval)))


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()

# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Main CLI entry point for orchestrate.

Thin trigger: parses args, builds the context, loads and resolves the
playbook, hands it to the coordinator, renders the report.
"""

import json
import logging
import signal
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import typer

from orchestrate import __version__
from orchestrate.config import ConfigurationContext, load_config
from orchestrate.context import ExecutionContext, build_context
from orchestrate.coordinator import Coordinator
from orchestrate.environment import EnvironmentAdapter
from orchestrate.errors import PlaybookLoadError
from orchestrate.events import EventClient
from orchestrate.loader import get_playbook_search_paths, list_playbooks, load_playbook
from orchestrate.registry import get_manifest_path, load_manifest
from orchestrate.render import render_plan, render_report, write_report
from orchestrate.resolver import resolve_phases
from orchestrate.schemas import PhaseGroup, Playbook, RunStatus

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOAD_ERROR = 2
EXIT_ABORTED = 130

EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_OK,
    RunStatus.SUCCEEDED_WITH_WARNINGS: EXIT_OK,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.ABORTED: EXIT_ABORTED,
}

app = typer.Typer(
    name="orchestrate",
    help="Playbook orchestration engine for infrastructure automation",
    no_args_is_help=True,
)


def _parse_kv_args(args: Optional[List[str]]) -> dict:
    """Parse key=value arguments into a dict.

    Supports:
    - Booleans: true, false
    - Nulls: null, none
    - Numbers: integers and floats
    - JSON: values starting with { or [ are parsed as JSON
    - Strings: everything else

    Raises:
        typer.BadParameter: If an argument has no "=".
    """
    if not args:
        return {}
    result: Dict[str, Any] = {}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{arg}'")
        key, value = arg.split("=", 1)
        lowered = value.lower()
        if lowered == "true":
            result[key] = True
        elif lowered == "false":
            result[key] = False
        elif lowered in ("null", "none"):
            result[key] = None
        elif value.startswith("{") or value.startswith("["):
            try:
                result[key] = json.loads(value)
            except json.JSONDecodeError:
                result[key] = value
        else:
            try:
                result[key] = int(value)
            except ValueError:
                try:
                    result[key] = float(value)
                except ValueError:
                    result[key] = value
    return result


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _prepare(
    playbook_ref: str,
    args: Optional[List[str]],
    profile: Optional[str],
    non_interactive: bool,
    dry_run: bool,
    max_concurrency: Optional[int],
    features: Optional[List[str]],
    config_path: Optional[str],
    manifest: Optional[str],
) -> Tuple[ExecutionContext, Playbook, List[PhaseGroup]]:
    """Build the context and a resolved playbook.

    Raises:
        PlaybookLoadError: On any configuration, manifest or playbook defect.
        FileNotFoundError: If an explicit config file does not exist.
    """
    cli_vars = _parse_kv_args(args)
    raw_config = load_config(config_path)
    environment = EnvironmentAdapter(non_interactive=non_interactive)
    config = ConfigurationContext(
        raw_config,
        profile=profile,
        environment=environment,
        overrides={"max_concurrency": max_concurrency},
        features=features,
    )

    registry = load_manifest(get_manifest_path(manifest, raw_config))
    known = {**config.variables(), **cli_vars}
    playbook = load_playbook(
        playbook_ref,
        registry,
        profile=config.profile,
        variables=known,
        search_paths=get_playbook_search_paths(config.playbook_dirs()),
    )
    groups = resolve_phases(playbook)

    # Playbook defaults < profile variables < command line
    context = build_context(config, environment, dry_run=dry_run, variables={**playbook.variables, **known})
    return context, playbook, groups


def _install_signal_handlers(context: ExecutionContext) -> Dict[int, Any]:
    """Route SIGINT/SIGTERM to the cancellation signal. Returns previous handlers.

    Ctrl-C during a feature prompt on the main thread also interrupts the
    prompt, which then counts as declined.
    """

    def handler(signum, frame):
        if not context.cancelled:
            typer.echo(f"\nReceived {signal.Signals(signum).name}, cancelling run...", err=True)
        context.cancel()
        environment = context.environment
        if signum == signal.SIGINT and environment is not None and environment.prompting_on_main_thread():
            raise KeyboardInterrupt

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            previous[sig] = signal.signal(sig, handler)
        except ValueError:
            # Not in the main thread
            pass
    return previous


def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


def _execute(
    playbook_ref: str,
    args: Optional[List[str]],
    profile: Optional[str],
    non_interactive: bool,
    dry_run: bool,
    max_concurrency: Optional[int],
    features: Optional[List[str]],
    config_path: Optional[str],
    manifest: Optional[str],
    report_path: Optional[str],
    events_path: Optional[str],
    format: str,
) -> None:
    try:
        context, playbook, groups = _prepare(
            playbook_ref, args, profile, non_interactive, dry_run,
            max_concurrency, features, config_path, manifest,
        )
    except PlaybookLoadError as e:
        typer.echo(f"Load error: {e}", err=True)
        raise typer.Exit(EXIT_LOAD_ERROR)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_LOAD_ERROR)

    events = EventClient(Path(events_path)) if events_path else None
    previous = _install_signal_handlers(context)
    try:
        report = Coordinator(context, events=events).run(playbook, groups)
    finally:
        _restore_signal_handlers(previous)

    render_report(report, format_type=format)
    if report_path:
        target = write_report(report, report_path)
        typer.echo(f"Report written to {target}", err=True)

    raise typer.Exit(EXIT_CODES[report.overall_status])


@app.command()
def run(
    playbook: str = typer.Argument(..., help="Playbook name or path"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value variables"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Configuration profile"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would run without executing"),
    non_interactive: bool = typer.Option(False, "--non-interactive", help="Never prompt"),
    max_concurrency: Optional[int] = typer.Option(None, "--max-concurrency", min=1, help="Global cap on concurrent steps"),
    feature: Optional[List[str]] = typer.Option(None, "--feature", help="Enable a feature (repeatable)"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    manifest: Optional[str] = typer.Option(None, "--manifest", "-m", help="Path to step manifest"),
    report: Optional[str] = typer.Option(None, "--report", help="Write the JSON run report to this path"),
    events: Optional[str] = typer.Option(None, "--events", help="Append run events (JSONL) to this path"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Run a playbook.

    Exit codes: 0 succeeded (possibly with warnings), 1 failed,
    2 configuration or playbook error, 130 cancelled.

    Examples:
        orchestrate run setup
        orchestrate run setup --profile ci --non-interactive
        orchestrate run deploy target=staging --dry-run
    """
    _configure_logging(verbose)
    _execute(
        playbook, args, profile, non_interactive, dry_run, max_concurrency,
        feature, config_path, manifest, report, events, format,
    )


@app.command()
def plan(
    playbook: str = typer.Argument(..., help="Playbook name or path"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value variables"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Configuration profile"),
    feature: Optional[List[str]] = typer.Option(None, "--feature", help="Enable a feature (repeatable)"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    manifest: Optional[str] = typer.Option(None, "--manifest", "-m", help="Path to step manifest"),
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Dry-run a playbook: evaluate conditions and list what would run."""
    _configure_logging(verbose)
    _execute(
        playbook, args, profile, True, True, None,
        feature, config_path, manifest, None, None, format,
    )


@app.command()
def validate(
    playbook: str = typer.Argument(..., help="Playbook name or path"),
    args: Optional[List[str]] = typer.Argument(None, help="key=value variables"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Configuration profile"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    manifest: Optional[str] = typer.Option(None, "--manifest", "-m", help="Path to step manifest"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Load a playbook, resolve its phases and print the execution groups."""
    _configure_logging(verbose)
    try:
        _, loaded, groups = _prepare(
            playbook, args, profile, True, True, None, None, config_path, manifest,
        )
    except PlaybookLoadError as e:
        typer.echo(f"Invalid: {e}", err=True)
        raise typer.Exit(EXIT_LOAD_ERROR)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_LOAD_ERROR)

    typer.echo(f"Playbook '{loaded.name}' is valid ({loaded.source})")
    render_plan(groups)


@app.command()
def playbooks(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List playbooks on the search path."""
    try:
        config = ConfigurationContext(load_config(config_path), environ={})
    except (PlaybookLoadError, FileNotFoundError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(EXIT_LOAD_ERROR)

    search_paths = get_playbook_search_paths(config.playbook_dirs())
    found = list_playbooks(search_paths)
    if not found:
        typer.echo("No playbooks found in search paths:")
        for path in search_paths:
            typer.echo(f"  - {path}")
        return

    for item in found:
        typer.echo(f"{item['name']}")
        if item["description"]:
            typer.echo(f"    {item['description']}")


@app.command()
def version():
    """Show version information."""
    typer.echo(f"orchestrate version {__version__}")


# Static commands (config, steps)
from orchestrate.commands import config, steps  # noqa: E402

app.add_typer(config.app, name="config")
app.add_typer(steps.app, name="steps")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()

"""
Steps command for orchestrate.

Browse the step manifest: list registered steps and show one step's
declaration.

Copyright 2025 Orchestrate Contributors
Licensed under the Apache License, Version 2.0
"""

import fnmatch
from typing import Optional

import typer

from orchestrate.config import load_config
from orchestrate.errors import ManifestError, UnknownStepError
from orchestrate.registry import StepRegistry, get_manifest_path, load_manifest

app = typer.Typer(help="Browse registered steps")


def _load_registry(manifest: Optional[str], config_path: Optional[str]) -> StepRegistry:
    try:
        raw_config = load_config(config_path)
        return load_manifest(get_manifest_path(manifest, raw_config))
    except (ManifestError, FileNotFoundError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)


@app.command("list")
def list_command(
    category: Optional[str] = typer.Option(None, "--category", help="Only steps in this category (glob allowed)"),
    manifest: Optional[str] = typer.Option(None, "--manifest", "-m", help="Path to step manifest"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """List registered steps, grouped by category.

    Examples:
        orchestrate steps list
        orchestrate steps list --category dev-tools
    """
    registry = _load_registry(manifest, config_path)

    shown = 0
    for name, steps in registry.categories().items():
        if category and not fnmatch.fnmatchcase(name, category):
            continue
        typer.echo(f"{name}:")
        for step in steps:
            badge = " [exclusive]" if step.exclusive else ""
            typer.echo(f"  {step.id}  {step.name}{badge}")
            shown += 1
        typer.echo()

    if not shown:
        typer.echo("No steps found.")


@app.command("info")
def info_command(
    step_id: str = typer.Argument(..., help="Step id, e.g. 0201"),
    manifest: Optional[str] = typer.Option(None, "--manifest", "-m", help="Path to step manifest"),
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show a step's manifest declaration.

    Examples:
        orchestrate steps info 0201
    """
    registry = _load_registry(manifest, config_path)
    try:
        step = registry.get(step_id)
    except UnknownStepError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    command = step.command if isinstance(step.command, str) else " ".join(step.command)
    typer.echo(f"Step: {step.id}")
    typer.echo(f"  Name: {step.name}")
    typer.echo(f"  Category: {step.category}")
    if step.description:
        typer.echo(f"  Description: {step.description}")
    typer.echo(f"  Command: {command}")
    if step.cwd:
        typer.echo(f"  Working dir: {step.cwd}")
    typer.echo(f"  Exclusive: {'yes' if step.exclusive else 'no'}")
    typer.echo(f"  Supports dry run: {'yes' if step.supports_dry_run else 'no'}")
    if step.timeout:
        typer.echo(f"  Timeout: {step.timeout}s")
    if step.retries:
        typer.echo(f"  Retries: {step.retries}")
    if step.tags:
        typer.echo(f"  Tags: {', '.join(step.tags)}")
    if step.parameters:
        typer.echo()
        typer.echo("Parameters:")
        for spec in step.parameters.values():
            required = " (required)" if spec.required else ""
            default = f" [default: {spec.default}]" if spec.default is not None else ""
            typer.echo(f"  {spec.name}: {spec.type}{required}{default}")
            if spec.description:
                typer.echo(f"    {spec.description}")

# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Config command for orchestrate.

Validates the configuration file and shows what a profile resolves to.
"""

from typing import Optional

import typer

from orchestrate.config import ENGINE_DEFAULTS, ConfigurationContext, load_config
from orchestrate.errors import ConfigError

app = typer.Typer(help="Validate configuration and inspect profiles")


@app.command()
def validate(
    config_path: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config file"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile to resolve"),
):
    """
    Validate configuration file.

    Checks that the config file is valid YAML and that the profile exists,
    then prints the resolved settings and feature flags.
    """
    typer.echo("Validating configuration...")
    typer.echo()

    try:
        raw = load_config(config_path)
        config = ConfigurationContext(raw, profile=profile)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    except ConfigError as e:
        typer.echo(f"Validation failed: {e}", err=True)
        raise typer.Exit(2)

    typer.echo(f"Config file: {raw.get('_path', '(none, using defaults)')}")
    typer.echo(f"Profile: {config.profile}")
    typer.echo()
    typer.echo("Settings:")
    for key in sorted(ENGINE_DEFAULTS):
        typer.echo(f"  {key}: {config.get(key)}")

    features = config.features()
    if features:
        typer.echo()
        typer.echo("Features:")
        for name in sorted(features):
            typer.echo(f"  {name}: {'enabled' if features[name] else 'disabled'}")

    variables = config.variables()
    if variables:
        typer.echo()
        typer.echo("Variables:")
        for name in sorted(variables):
            typer.echo(f"  {name}: {variables[name]}")

    typer.echo()
    typer.echo("Configuration validation complete!")

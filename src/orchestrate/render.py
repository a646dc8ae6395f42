# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Run report rendering and export."""

import json
from pathlib import Path
from typing import Dict, List, Union

import typer

from orchestrate.schemas import PhaseGroup, RunReport, RunStatus, StepStatus

STATUS_BADGES = {
    StepStatus.SUCCEEDED: "ok",
    StepStatus.FAILED: "FAILED",
    StepStatus.SKIPPED: "skipped",
    StepStatus.CANCELLED: "cancelled",
    StepStatus.PENDING: "pending",
    StepStatus.RUNNING: "running",
}


def render_report(report: RunReport, format_type: str = "table") -> None:
    """Render a RunReport to stdout."""
    if format_type == "json":
        typer.echo(json.dumps(report.to_dict(), indent=2))
        return

    rows = []
    for phase in report.phases:
        for result in phase.steps:
            rows.append({
                "phase": phase.name,
                "step": result.step_id,
                "status": STATUS_BADGES.get(result.status, result.status.value),
                "exit": "" if result.exit_code is None else result.exit_code,
                "ms": "" if result.duration_ms is None else result.duration_ms,
                "tries": result.retry + 1 if result.started_at else "",
            })
    _render_table(rows)
    typer.echo()
    _render_status(report)


def _render_table(rows: List[Dict]) -> None:
    """Render rows as a simple table."""
    if not rows:
        typer.echo("(no steps)")
        return
    keys = list(rows[0].keys())
    widths = {k: max(len(str(k)), max(len(str(r.get(k, ""))) for r in rows)) for k in keys}
    header = " | ".join(str(k).ljust(widths[k]) for k in keys)
    typer.echo(header)
    typer.echo("-" * len(header))
    for row in rows:
        typer.echo(" | ".join(str(row.get(k, "")).ljust(widths[k]) for k in keys))


def _render_status(report: RunReport) -> None:
    typer.echo(f"Playbook: {report.playbook}{' (dry run)' if report.dry_run else ''}")
    typer.echo(f"Run ID: {report.run_id}")
    typer.echo(f"Profile: {report.profile}")
    for phase in report.phases:
        typer.echo(f"  {phase.name}: {phase.status.value}")
    typer.echo(f"Status: {report.overall_status.value}")
    if report.fatal_error:
        typer.echo(f"Fatal: {report.fatal_error}", err=True)

    if report.overall_status in (RunStatus.FAILED, RunStatus.SUCCEEDED_WITH_WARNINGS):
        for phase in report.phases:
            for result in phase.steps:
                if result.status == StepStatus.FAILED:
                    typer.echo(f"  Step '{result.step_id}' ({phase.name}): {result.error}", err=True)
                    if result.stderr_tail:
                        for line in result.stderr_tail.splitlines():
                            typer.echo(f"    {line}", err=True)


def render_plan(groups: List[PhaseGroup]) -> None:
    """Print resolved phase groups and their steps."""
    for group in groups:
        typer.echo(f"Group {group.index + 1}:")
        for phase in group.phases:
            flags = []
            if phase.max_concurrency > 1:
                flags.append(f"max_concurrency={phase.max_concurrency}")
            if phase.continue_on_error:
                flags.append("continue_on_error")
            if phase.condition is not None:
                flags.append("conditional")
            suffix = f" ({', '.join(flags)})" if flags else ""
            typer.echo(f"  {phase.name}{suffix}")
            for bound in phase.steps:
                marker = " [exclusive]" if bound.exclusive else ""
                typer.echo(f"    {bound.id}  {bound.step.name}{marker}")


def write_report(report: RunReport, path: Union[str, Path]) -> Path:
    """Write the report as JSON, creating parent directories."""
    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(report.to_dict(), indent=2) + "\n")
    return target

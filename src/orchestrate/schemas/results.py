# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Run result schemas: per-step results, per-phase status, run report."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class StepStatus(str, Enum):
    """Lifecycle of one step attempt."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


class PhaseStatus(str, Enum):
    """Status of a phase after the run."""

    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_WARNINGS = "SucceededWithWarnings"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    CANCELLED = "Cancelled"


class RunStatus(str, Enum):
    """Overall outcome of a run."""

    SUCCEEDED = "Succeeded"
    SUCCEEDED_WITH_WARNINGS = "SucceededWithWarnings"
    FAILED = "Failed"
    ABORTED = "Aborted"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _duration_ms(start: Optional[datetime], end: Optional[datetime]) -> Optional[int]:
    if start is None or end is None:
        return None
    return int((end - start).total_seconds() * 1000)


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step attempt. Never modified once recorded.

    A retry is a new StepResult with a higher ``retry`` index.
    """
    step_id: str
    phase: str
    status: StepStatus
    exit_code: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    stdout_tail: str = ""
    stderr_tail: str = ""
    retry: int = 0
    sequence: int = 0
    exclusive: bool = False
    dry_run: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None  # exit, timeout, spawn, cancelled, condition, upstream

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.started_at, self.finished_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "id": self.step_id,
            "phase": self.phase,
            "status": self.status.value,
            "exitCode": self.exit_code,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "durationMs": self.duration_ms,
            "retry": self.retry,
            "exclusive": self.exclusive,
            "dryRun": self.dry_run,
            "error": self.error,
            "errorKind": self.error_kind,
            "stdoutTail": self.stdout_tail,
            "stderrTail": self.stderr_tail,
        }


@dataclass
class PhaseReport:
    """Final status of a phase and the last attempt of each of its steps."""
    name: str
    status: PhaseStatus
    steps: List[StepResult] = field(default_factory=list)
    continue_on_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "steps": [
                {
                    "id": result.step_id,
                    "status": result.status.value,
                    "exitCode": result.exit_code,
                    "durationMs": result.duration_ms,
                    "retries": result.retry,
                    "error": result.error,
                }
                for result in self.steps
            ],
        }


@dataclass
class RunReport:
    """Aggregate outcome of a playbook run."""
    run_id: str
    playbook: str
    profile: str
    overall_status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    phases: List[PhaseReport] = field(default_factory=list)
    results: List[StepResult] = field(default_factory=list)
    dry_run: bool = False
    fatal_error: Optional[str] = None

    @property
    def duration_ms(self) -> Optional[int]:
        return _duration_ms(self.started_at, self.finished_at)

    def phase(self, name: str) -> PhaseReport:
        for report in self.phases:
            if report.name == name:
                return report
        raise KeyError(name)

    def to_dict(self, include_results: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "runId": self.run_id,
            "playbook": self.playbook,
            "profile": self.profile,
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
            "durationMs": self.duration_ms,
            "dryRun": self.dry_run,
            "overallStatus": self.overall_status.value,
            "fatalError": self.fatal_error,
            "phases": [phase.to_dict() for phase in self.phases],
        }
        if include_results:
            data["results"] = [result.to_dict() for result in self.results]
        return data

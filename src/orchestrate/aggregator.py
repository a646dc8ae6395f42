# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Result aggregator - collects step results into a RunReport.

Results are appended as steps complete, from any worker thread. A single
lock serializes writers and assigns each result a sequence number, so the
report is totally ordered even when steps finish concurrently.

Status rules:
- phase: Cancelled if any step was cancelled; Failed (or
  SucceededWithWarnings when the phase tolerates errors) if a step's last
  attempt failed; Skipped if every step was skipped; else Succeeded.
- run: Aborted if cancelled; Failed on a fatal error or a Failed phase;
  SucceededWithWarnings if a tolerant phase had failures; else Succeeded.
"""

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from orchestrate.context import ExecutionContext
from orchestrate.schemas import (
    PhaseReport,
    PhaseStatus,
    Playbook,
    RunReport,
    RunStatus,
    StepResult,
    StepStatus,
)

Listener = Callable[[StepResult], None]


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


class ResultAggregator:
    """Append-only collection of step results for one run."""

    def __init__(self, playbook: Playbook, context: ExecutionContext):
        self.playbook = playbook
        self.context = context
        self.started_at = _utcnow()
        self._results: List[StepResult] = []
        self._phase_marks: Dict[str, PhaseStatus] = {}
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._sequence = 0

    def add_listener(self, listener: Listener) -> None:
        """Call listener(result) for every recorded result, in sequence order."""
        self._listeners.append(listener)

    def record(self, result: StepResult) -> StepResult:
        """Append a result and return it with its sequence number."""
        with self._lock:
            self._sequence += 1
            recorded = dataclasses.replace(result, sequence=self._sequence)
            self._results.append(recorded)
            for listener in self._listeners:
                listener(recorded)
        return recorded

    def mark_phase(self, name: str, status: PhaseStatus) -> None:
        """Set a phase status decided at phase level (skipped, cancelled)."""
        with self._lock:
            self._phase_marks[name] = status

    @property
    def results(self) -> List[StepResult]:
        with self._lock:
            return list(self._results)

    def final_results(self, phase: str) -> List[StepResult]:
        """Last attempt of each step of a phase, in the phase's step order."""
        latest: Dict[str, StepResult] = {}
        for result in self.results:
            if result.phase == phase:
                latest[result.step_id] = result
        order = self.playbook.phase(phase).step_ids
        return [latest[step_id] for step_id in order if step_id in latest]

    def phase_status(self, name: str) -> PhaseStatus:
        with self._lock:
            mark = self._phase_marks.get(name)
        if mark is not None:
            return mark

        phase = self.playbook.phase(name)
        finals = self.final_results(name)
        if not finals:
            return PhaseStatus.PENDING if phase.steps else PhaseStatus.SUCCEEDED
        statuses = {result.status for result in finals}
        if StepStatus.CANCELLED in statuses:
            return PhaseStatus.CANCELLED
        if StepStatus.FAILED in statuses:
            if phase.continue_on_error:
                return PhaseStatus.SUCCEEDED_WITH_WARNINGS
            return PhaseStatus.FAILED
        if statuses == {StepStatus.SKIPPED}:
            return PhaseStatus.SKIPPED
        if len(finals) < len(phase.steps):
            return PhaseStatus.PENDING
        return PhaseStatus.SUCCEEDED

    def has_blocking_failure(self, name: str) -> bool:
        """True if the phase failed and does not tolerate errors."""
        return self.phase_status(name) == PhaseStatus.FAILED

    def finalize(self, cancelled: bool = False, fatal_error: Optional[str] = None) -> RunReport:
        """Build the final report."""
        phases = [
            PhaseReport(
                name=phase.name,
                status=self.phase_status(phase.name),
                steps=self.final_results(phase.name),
                continue_on_error=phase.continue_on_error,
            )
            for phase in self.playbook.phases
        ]
        statuses = {report.status for report in phases}

        if cancelled:
            overall = RunStatus.ABORTED
        elif fatal_error or PhaseStatus.FAILED in statuses:
            overall = RunStatus.FAILED
        elif PhaseStatus.SUCCEEDED_WITH_WARNINGS in statuses:
            overall = RunStatus.SUCCEEDED_WITH_WARNINGS
        else:
            overall = RunStatus.SUCCEEDED

        return RunReport(
            run_id=self.context.run_id,
            playbook=self.playbook.name,
            profile=self.context.profile,
            overall_status=overall,
            started_at=self.started_at,
            finished_at=_utcnow(),
            phases=phases,
            results=self.results,
            dry_run=self.context.dry_run,
            fatal_error=fatal_error,
        )

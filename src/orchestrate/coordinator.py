# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Coordinator - execute resolved phase groups.

Groups run one after another. Phases inside a group run concurrently, each
on its own thread. Inside a phase, steps are split into lane segments in
declaration order:

- consecutive non-exclusive steps form a batch on a worker pool bounded by
  min(phase.max_concurrency, context.max_concurrency)
- each exclusive step runs alone, after the previous segment has drained

so an exclusive step never overlaps any other step of its phase.

Failure policy:
- a failed step in a phase without continue_on_error stops the run after
  its group; every later phase is recorded Skipped
- SpawnError is fatal: scheduling stops at once, whatever the phase policy,
  and steps still running in any phase are terminated
- cancellation stops scheduling, terminates running steps and records
  everything not yet run as Cancelled
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

from orchestrate import conditions
from orchestrate.aggregator import ResultAggregator
from orchestrate.context import ExecutionContext
from orchestrate.errors import OrchestrateError, SpawnError
from orchestrate.events import EventClient
from orchestrate.resolver import resolve_phases
from orchestrate.runner import StepRunner
from orchestrate.schemas import (
    BoundStep,
    Phase,
    PhaseGroup,
    PhaseStatus,
    Playbook,
    RunReport,
    StepResult,
    StepStatus,
)

logger = logging.getLogger(__name__)

Segment = Union[BoundStep, List[BoundStep]]


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def lane_segments(phase: Phase) -> List[Segment]:
    """Split a phase's steps into serial-lane segments.

    A list is a batch of concurrent steps; a bare BoundStep is an exclusive
    step that runs alone.
    """
    segments: List[Segment] = []
    batch: List[BoundStep] = []
    for bound in phase.steps:
        if bound.exclusive:
            if batch:
                segments.append(batch)
                batch = []
            segments.append(bound)
        else:
            batch.append(bound)
    if batch:
        segments.append(batch)
    return segments


class Coordinator:
    """Runs a resolved playbook against the step runner."""

    def __init__(
        self,
        context: ExecutionContext,
        runner: Optional[StepRunner] = None,
        events: Optional[EventClient] = None,
    ):
        self.context = context
        self.runner = runner or StepRunner(context)
        self.events = events
        self._fatal: Optional[str] = None
        self._fatal_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        playbook: Playbook,
        groups: Sequence[PhaseGroup],
        aggregator: Optional[ResultAggregator] = None,
    ) -> RunReport:
        """Execute phase groups in order and return the run report."""
        aggregator = aggregator or ResultAggregator(playbook, self.context)
        if self.events:
            aggregator.add_listener(self._on_result)

        self._emit("run.started", "running", {
            "playbook": playbook.name,
            "profile": self.context.profile,
            "dry_run": self.context.dry_run,
            "groups": [group.names for group in groups],
        })
        logger.info(
            f"Running playbook '{playbook.name}' (profile={self.context.profile}, "
            f"dry_run={self.context.dry_run}, interactive={self.context.interactive})"
        )

        for position, group in enumerate(groups):
            if self.context.cancelled:
                logger.info(f"Run cancelled before group {position + 1}")
                self._close_groups(groups[position:], aggregator, cancelled=True, reason="run cancelled")
                break
            if self._fatal:
                self._close_groups(groups[position:], aggregator, cancelled=False, reason="run aborted")
                break

            logger.info(f"Executing phase group {position + 1}/{len(groups)}: {group.names}")
            self._run_group(playbook, group, aggregator)

            blocking = [p.name for p in group.phases if aggregator.has_blocking_failure(p.name)]
            if blocking and not self.context.cancelled and not self._fatal:
                logger.error(
                    f"Phase(s) {blocking} failed without continue_on_error; "
                    f"skipping {sum(len(g.phases) for g in groups[position + 1:])} later phase(s)"
                )
                self._close_groups(
                    groups[position + 1:], aggregator, cancelled=False,
                    reason=f"required phase failed: {', '.join(blocking)}",
                )
                break

        report = aggregator.finalize(cancelled=self.context.cancelled, fatal_error=self._fatal)
        self._emit("run.completed", report.overall_status.value, {
            "playbook": playbook.name,
            "duration_ms": report.duration_ms,
            "phases": {p.name: p.status.value for p in report.phases},
        }, error_message=self._fatal)
        logger.info(f"Playbook '{playbook.name}' finished: {report.overall_status.value}")
        return report

    def _run_group(self, playbook: Playbook, group: PhaseGroup, aggregator: ResultAggregator) -> None:
        if len(group.phases) == 1:
            self._run_phase(playbook, group.phases[0], aggregator)
            return

        with ThreadPoolExecutor(max_workers=len(group.phases), thread_name_prefix="phase") as executor:
            futures = {
                executor.submit(self._run_phase, playbook, phase, aggregator): phase
                for phase in group.phases
            }
            for future in as_completed(futures):
                future.result()

    # ------------------------------------------------------------------
    # Phase
    # ------------------------------------------------------------------

    def _run_phase(self, playbook: Playbook, phase: Phase, aggregator: ResultAggregator) -> None:
        if self._should_stop():
            self._close_phase(phase, aggregator, cancelled=self.context.cancelled, reason="run stopped")
            return

        self._emit("phase.started", "running", {"phase": phase.name, "steps": phase.step_ids})

        try:
            applies = conditions.evaluate(phase.condition, self.context, playbook.name, phase.name)
        except (OrchestrateError, OSError) as e:
            logger.error(f"Condition of phase '{phase.name}' failed: {e}")
            self._set_fatal(str(e))
            self._close_phase(phase, aggregator, cancelled=False, reason="condition error")
            return

        if not applies:
            logger.info(f"Skipping phase '{phase.name}': condition not met")
            for bound in phase.steps:
                aggregator.record(self._closed_result(bound, phase.name, StepStatus.SKIPPED, "condition", "condition not met"))
            aggregator.mark_phase(phase.name, PhaseStatus.SKIPPED)
            self._emit("phase.completed", PhaseStatus.SKIPPED.value, {"phase": phase.name})
            return

        for segment in lane_segments(phase):
            if isinstance(segment, BoundStep):
                self._execute_step(segment, phase, aggregator)
            else:
                self._run_batch(segment, phase, aggregator)

        status = aggregator.phase_status(phase.name)
        self._emit("phase.completed", status.value, {"phase": phase.name})
        logger.info(f"Phase '{phase.name}' finished: {status.value}")

    def _run_batch(self, batch: List[BoundStep], phase: Phase, aggregator: ResultAggregator) -> None:
        workers = min(phase.max_concurrency, self.context.max_concurrency, len(batch))
        if self.context.dry_run or workers <= 1:
            # Dry runs never touch the pool
            for bound in batch:
                self._execute_step(bound, phase, aggregator)
            return

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"step-{phase.name}") as pool:
            futures = [pool.submit(self._execute_step, bound, phase, aggregator) for bound in batch]
            for future in as_completed(futures):
                future.result()

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def _execute_step(self, bound: BoundStep, phase: Phase, aggregator: ResultAggregator) -> None:
        attempt = 0
        while True:
            if self._should_stop():
                self._close_step(bound, phase.name, aggregator, attempt)
                return
            try:
                result = self.runner.run(bound, phase.name, retry=attempt)
            except SpawnError as e:
                logger.error(str(e))
                now = _utcnow()
                aggregator.record(StepResult(
                    step_id=bound.id,
                    phase=phase.name,
                    status=StepStatus.FAILED,
                    started_at=now,
                    finished_at=now,
                    retry=attempt,
                    exclusive=bound.exclusive,
                    error=str(e),
                    error_kind="spawn",
                ))
                self._set_fatal(str(e))
                return

            recorded = aggregator.record(result)
            if recorded.status != StepStatus.FAILED or attempt >= bound.retries or self._should_stop():
                return
            attempt += 1
            logger.warning(f"Step {bound.id} failed, retrying ({attempt}/{bound.retries})")

    def _close_step(self, bound: BoundStep, phase: str, aggregator: ResultAggregator, attempt: int) -> None:
        if self.context.cancelled:
            aggregator.record(self._closed_result(bound, phase, StepStatus.CANCELLED, "cancelled", "run cancelled", attempt))
        else:
            aggregator.record(self._closed_result(bound, phase, StepStatus.SKIPPED, "upstream", "run aborted", attempt))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _should_stop(self) -> bool:
        return self.context.cancelled or self._fatal is not None

    def _set_fatal(self, message: str) -> None:
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = message
        self.context.abort()

    @staticmethod
    def _closed_result(
        bound: BoundStep,
        phase: str,
        status: StepStatus,
        kind: str,
        reason: str,
        attempt: int = 0,
    ) -> StepResult:
        return StepResult(
            step_id=bound.id,
            phase=phase,
            status=status,
            retry=attempt,
            exclusive=bound.exclusive,
            error=reason,
            error_kind=kind,
        )

    def _close_phase(self, phase: Phase, aggregator: ResultAggregator, cancelled: bool, reason: str) -> None:
        """Record every step of a phase that will not run."""
        status = StepStatus.CANCELLED if cancelled else StepStatus.SKIPPED
        kind = "cancelled" if cancelled else "upstream"
        for bound in phase.steps:
            aggregator.record(self._closed_result(bound, phase.name, status, kind, reason))
        aggregator.mark_phase(phase.name, PhaseStatus.CANCELLED if cancelled else PhaseStatus.SKIPPED)
        self._emit("phase.completed", "cancelled" if cancelled else "skipped", {"phase": phase.name, "reason": reason})

    def _close_groups(self, groups: Sequence[PhaseGroup], aggregator: ResultAggregator, cancelled: bool, reason: str) -> None:
        for group in groups:
            for phase in group.phases:
                self._close_phase(phase, aggregator, cancelled, reason)

    def _on_result(self, result: StepResult) -> None:
        self._emit("step.completed", result.status.value, {
            "step": result.step_id,
            "phase": result.phase,
            "sequence": result.sequence,
            "exit_code": result.exit_code,
            "duration_ms": result.duration_ms,
            "retry": result.retry,
            "dry_run": result.dry_run,
        }, error_message=result.error if result.status == StepStatus.FAILED else None)

    def _emit(self, event_type: str, status: str, payload: Dict[str, Any], error_message: Optional[str] = None) -> None:
        if self.events:
            self.events.log_event(
                event_type=event_type,
                run_id=self.context.run_id,
                status=status,
                payload=payload,
                error_message=error_message,
            )


def execute_playbook(
    playbook: Playbook,
    context: ExecutionContext,
    runner: Optional[StepRunner] = None,
    events: Optional[EventClient] = None,
) -> RunReport:
    """Resolve a playbook's phases and run them."""
    groups = resolve_phases(playbook)
    return Coordinator(context, runner=runner, events=events).run(playbook, groups)

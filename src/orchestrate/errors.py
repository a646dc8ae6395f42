# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Exceptions raised by the orchestration engine.

Two families:
- PlaybookLoadError and its subclasses are raised before any step runs.
  The CLI maps them to exit code 2.
- Execution errors (StepExecutionError, SpawnError, CancelledError) are
  raised while a playbook runs. Step failures are recorded in the run
  report; SpawnError and CancelledError stop the run.
"""

from typing import List, Optional


class OrchestrateError(Exception):
    """Base class for all engine errors."""

    pass


class PlaybookLoadError(OrchestrateError):
    """Raised when the workflow itself is broken (exit code 2)."""

    pass


class ConfigError(PlaybookLoadError):
    """Raised when the configuration file is invalid."""

    pass


class ManifestError(PlaybookLoadError):
    """Raised when the step manifest is invalid."""

    pass


class PlaybookParseError(PlaybookLoadError):
    """Raised when a playbook definition is malformed."""

    def __init__(self, message: str, playbook: Optional[str] = None, phase: Optional[str] = None):
        self.playbook = playbook
        self.phase = phase
        location = ""
        if playbook and phase:
            location = f"playbook '{playbook}', phase '{phase}': "
        elif playbook:
            location = f"playbook '{playbook}': "
        super().__init__(f"{location}{message}")


class UnknownStepError(PlaybookLoadError):
    """Raised when a step selector matches no registered step."""

    def __init__(self, selector: str, phase: Optional[str] = None):
        self.selector = selector
        self.phase = phase
        where = f" (phase '{phase}')" if phase else ""
        super().__init__(f"No step matches selector '{selector}'{where}")


class MissingDependencyError(PlaybookLoadError):
    """Raised when a phase requires a phase that does not exist."""

    def __init__(self, phase: str, missing: str):
        self.phase = phase
        self.missing = missing
        super().__init__(f"Phase '{phase}' requires unknown phase '{missing}'")


class CyclicDependencyError(PlaybookLoadError):
    """Raised when phase requirements form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic phase dependency: {' -> '.join(cycle)}")


class StepExecutionError(OrchestrateError):
    """Raised when a step process exits non-zero."""

    kind = "exit"

    def __init__(self, step_id: str, exit_code: Optional[int], message: Optional[str] = None):
        self.step_id = step_id
        self.exit_code = exit_code
        super().__init__(message or f"Step '{step_id}' exited with code {exit_code}")


class StepTimeoutError(StepExecutionError):
    """Raised when a step process exceeds its timeout."""

    kind = "timeout"

    def __init__(self, step_id: str, timeout: float, exit_code: Optional[int] = None):
        self.timeout = timeout
        super().__init__(
            step_id,
            exit_code,
            f"Step '{step_id}' timed out after {timeout:g}s",
        )


class StepAbortedError(StepExecutionError):
    """Raised when a running step is stopped because the run hit a fatal error."""

    kind = "aborted"

    def __init__(self, step_id: str, exit_code: Optional[int] = None):
        super().__init__(step_id, exit_code, f"Step '{step_id}' stopped: run aborted")


class SpawnError(OrchestrateError):
    """Raised when a step process cannot be started at all."""

    def __init__(self, step_id: str, reason: str):
        self.step_id = step_id
        self.reason = reason
        super().__init__(f"Could not start step '{step_id}': {reason}")


class CancelledError(OrchestrateError):
    """Raised when the run is cancelled while a step is active."""

    pass

"""
Step runner for orchestrate.

Runs one step attempt as a child process with parameter substitution,
captured output, an optional timeout and cooperative cancellation.

Copyright 2025 Orchestrate Contributors
Licensed under the Apache License, Version 2.0
"""

import json
import logging
import os
import re
import signal
import subprocess
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from orchestrate.context import ExecutionContext
from orchestrate.errors import (
    CancelledError,
    SpawnError,
    StepAbortedError,
    StepExecutionError,
    StepTimeoutError,
)
from orchestrate.schemas import BoundStep, StepResult, StepStatus

ENV_PREFIX = "ORCHESTRATE_"


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, dict)):
        return json.dumps(value)
    if value is None:
        return ""
    return str(value)


def _tail(text: Optional[str], lines: int) -> str:
    if not text:
        return ""
    return "\n".join(text.strip().splitlines()[-lines:])


class StepRunner:
    """Spawns step processes for one run."""

    def __init__(self, context: ExecutionContext, output_tail_lines: int = 10, poll_interval: float = 0.1):
        """
        Initialize step runner.

        Args:
            context: Run context (dry-run flag, cancellation, variables)
            output_tail_lines: Lines of stdout/stderr kept in each result
            poll_interval: Seconds between cancellation/timeout checks
        """
        self.context = context
        self.output_tail_lines = output_tail_lines
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(__name__)

    def substitute_variables(self, command: str, variables: Dict[str, Any]) -> str:
        """
        Substitute {name} placeholders in a command string.

        Supports escaping with double braces: {{text}} becomes {text}

        Example:
            >>> runner.substitute_variables("git checkout {branch}", {"branch": "main"})
            'git checkout main'
        """
        escape_open = "\x00ESCAPED_OPEN\x00"
        escape_close = "\x00ESCAPED_CLOSE\x00"
        result = command.replace("{{", escape_open).replace("}}", escape_close)

        for key, value in variables.items():
            placeholder = f"{{{key}}}"
            if placeholder in result:
                result = result.replace(placeholder, _stringify(value))

        remaining = re.findall(r"\{(\w+)\}", result)
        if remaining:
            self.logger.warning(f"Unsubstituted variables: {remaining}")

        return result.replace(escape_open, "{").replace(escape_close, "}")

    def resolve_params(self, bound: BoundStep) -> Dict[str, Any]:
        """Step parameters with {variable} references resolved."""
        resolved = {}
        for name, value in bound.params.items():
            if isinstance(value, str):
                value = self.substitute_variables(value, self.context.variables)
            resolved[name] = value
        return resolved

    def build_command(self, bound: BoundStep, params: Dict[str, Any]) -> Tuple[Union[str, List[str]], bool]:
        """Render the step command. A string runs through the shell, a list does not."""
        variables = {**self.context.variables, **params}
        command = bound.step.command
        if isinstance(command, str):
            return self.substitute_variables(command, variables), True
        return [self.substitute_variables(part, variables) for part in command], False

    def build_env(self, bound: BoundStep, phase: str, params: Dict[str, Any], retry: int = 0) -> Dict[str, str]:
        """Environment for the child: parent env plus run and parameter variables."""
        env = os.environ.copy()
        env[f"{ENV_PREFIX}RUN_ID"] = self.context.run_id
        env[f"{ENV_PREFIX}STEP_ID"] = bound.id
        env[f"{ENV_PREFIX}PHASE"] = phase
        env[f"{ENV_PREFIX}PROFILE"] = self.context.profile
        env[f"{ENV_PREFIX}ATTEMPT"] = str(retry + 1)
        if not self.context.interactive:
            env[f"{ENV_PREFIX}NONINTERACTIVE"] = "1"
        for name, value in params.items():
            env[f"{ENV_PREFIX}PARAM_{name.upper()}"] = _stringify(value)
        return env

    def dry_run(self, bound: BoundStep, phase: str) -> StepResult:
        """Echo what would run without spawning anything."""
        params = self.resolve_params(bound)
        command, _ = self.build_command(bound, params)
        display = command if isinstance(command, str) else " ".join(command)
        self.logger.info(f"[DRY RUN] Would execute step {bound.id} ({bound.step.name}): {display}")
        now = _utcnow()
        return StepResult(
            step_id=bound.id,
            phase=phase,
            status=StepStatus.SUCCEEDED,
            started_at=now,
            finished_at=now,
            exclusive=bound.exclusive,
            dry_run=True,
        )

    def run(self, bound: BoundStep, phase: str, retry: int = 0) -> StepResult:
        """
        Run one attempt of a step.

        Returns:
            StepResult with status Succeeded, Failed or Cancelled

        Raises:
            SpawnError: If the process could not be started
        """
        if self.context.dry_run:
            return self.dry_run(bound, phase)

        params = self.resolve_params(bound)
        command, shell = self.build_command(bound, params)
        env = self.build_env(bound, phase, params, retry)
        timeout = bound.timeout or self.context.step_timeout

        display = command if isinstance(command, str) else " ".join(command)
        if len(display) > 100:
            display = display[:100] + "..."
        self.logger.info(f"Executing step {bound.id} (attempt {retry + 1}): {display}")

        started_at = _utcnow()
        try:
            proc = subprocess.Popen(
                command,
                shell=shell,
                cwd=bound.step.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            raise SpawnError(bound.id, str(e))

        stdout, stderr, reason = self._wait(proc, timeout)
        finished_at = _utcnow()

        status = StepStatus.SUCCEEDED
        error = None
        error_kind = None
        try:
            self._check_outcome(bound, proc.returncode, reason, timeout)
        except CancelledError as e:
            status, error, error_kind = StepStatus.CANCELLED, str(e), "cancelled"
        except StepExecutionError as e:
            # Tagged "timeout", "aborted" or "exit"
            status, error, error_kind = StepStatus.FAILED, str(e), e.kind

        if stdout:
            self.logger.debug(f"STDOUT ({bound.id}):\n{stdout}")
        if stderr and status != StepStatus.SUCCEEDED:
            self.logger.warning(f"STDERR ({bound.id}):\n{_tail(stderr, self.output_tail_lines)}")

        return StepResult(
            step_id=bound.id,
            phase=phase,
            status=status,
            exit_code=proc.returncode,
            started_at=started_at,
            finished_at=finished_at,
            stdout_tail=_tail(stdout, self.output_tail_lines),
            stderr_tail=_tail(stderr, self.output_tail_lines),
            retry=retry,
            exclusive=bound.exclusive,
            error=error,
            error_kind=error_kind,
        )

    def _check_outcome(self, bound: BoundStep, returncode: int, reason: Optional[str], timeout: Optional[float]) -> None:
        if reason == "cancelled":
            raise CancelledError(f"Step '{bound.id}' cancelled")
        if reason == "aborted":
            raise StepAbortedError(bound.id, exit_code=returncode)
        if reason == "timeout":
            raise StepTimeoutError(bound.id, timeout or 0, exit_code=returncode)
        if returncode != 0:
            raise StepExecutionError(bound.id, returncode)

    def _wait(self, proc: subprocess.Popen, timeout: Optional[float]) -> Tuple[str, str, Optional[str]]:
        """Wait for the process, watching cancellation, the run abort flag and the timeout."""
        deadline = time.monotonic() + timeout if timeout else None
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=self.poll_interval)
                return stdout, stderr, None
            except subprocess.TimeoutExpired:
                if self.context.cancelled:
                    stdout, stderr = self._stop(proc)
                    return stdout, stderr, "cancelled"
                if self.context.aborted:
                    stdout, stderr = self._stop(proc)
                    return stdout, stderr, "aborted"
                if deadline is not None and time.monotonic() >= deadline:
                    stdout, stderr = self._stop(proc)
                    return stdout, stderr, "timeout"

    def _signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass

    def _stop(self, proc: subprocess.Popen) -> Tuple[str, str]:
        """Terminate, wait for the grace period, then kill."""
        self.logger.info(f"Terminating process {proc.pid}")
        self._signal(proc, signal.SIGTERM)
        try:
            return proc.communicate(timeout=max(self.context.grace_period, self.poll_interval))
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Process {proc.pid} ignored SIGTERM, killing")
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            return proc.communicate()

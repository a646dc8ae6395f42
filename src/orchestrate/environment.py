# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Environment adapter: decides whether a human can be asked anything.

Both the coordinator and the configuration context go through this
adapter for prompts, so CI runs never block on input.
"""

import logging
import os
import sys
import threading
from typing import Callable, Mapping, Optional, TextIO

import typer

logger = logging.getLogger(__name__)

# Variables set by common CI systems. Any of them, with any value, forces
# non-interactive mode.
CI_INDICATORS = (
    "CI",
    "GITHUB_ACTIONS",
    "TF_BUILD",
    "GITLAB_CI",
    "JENKINS_URL",
    "BUILDKITE",
    "CIRCLECI",
    "TEAMCITY_VERSION",
    "ORCHESTRATE_NONINTERACTIVE",
)


def _typer_confirm(message: str, default: bool) -> bool:
    return typer.confirm(message, default=default)


class EnvironmentAdapter:
    """Interactivity check and confirmation prompts."""

    def __init__(
        self,
        non_interactive: bool = False,
        environ: Optional[Mapping[str, str]] = None,
        stdin: Optional[TextIO] = None,
        prompt: Optional[Callable[[str, bool], bool]] = None,
    ):
        """
        Initialize the adapter.

        Args:
            non_interactive: Caller explicitly asked for non-interactive mode
            environ: Environment to inspect (defaults to os.environ)
            stdin: Stream checked for a TTY (defaults to sys.stdin)
            prompt: Callable(message, default) -> bool used to ask the user
        """
        self.non_interactive = non_interactive
        self.environ = environ if environ is not None else os.environ
        self.stdin = stdin if stdin is not None else sys.stdin
        self._prompt = prompt or _typer_confirm
        self._lock = threading.Lock()
        self._prompt_thread: Optional[threading.Thread] = None

    def ci_indicator(self) -> Optional[str]:
        """Return the name of the first CI variable that is set, if any."""
        for name in CI_INDICATORS:
            if name in self.environ:
                return name
        return None

    def prompting_on_main_thread(self) -> bool:
        """True while a prompt waits for input on the main thread.

        Only there can a SIGINT handler break the read. A prompt on a phase
        worker thread keeps waiting for its answer; the cancellation is seen
        once it returns.
        """
        return self._prompt_thread is threading.main_thread()

    def _is_tty(self) -> bool:
        try:
            return bool(self.stdin and self.stdin.isatty())
        except (AttributeError, ValueError):
            # Closed or replaced stream
            return False

    def is_interactive(self) -> bool:
        """True unless CI is detected, the caller opted out, or stdin is not a TTY."""
        if self.non_interactive:
            return False
        if self.ci_indicator():
            return False
        return self._is_tty()

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask the user a yes/no question.

        Never blocks in non-interactive mode: returns False immediately.
        Prompts are serialized so concurrent steps cannot interleave them.
        """
        if not self.is_interactive():
            logger.info(f"Skipped prompt (non-interactive): {message}")
            return False

        with self._lock:
            self._prompt_thread = threading.current_thread()
            try:
                answer = bool(self._prompt(message, default))
            except (EOFError, KeyboardInterrupt, typer.Abort):
                logger.info(f"Prompt aborted: {message}")
                return False
            finally:
                self._prompt_thread = None

        if not answer:
            logger.info(f"User declined prompt: {message}")
        return answer

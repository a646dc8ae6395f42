# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Run-wide execution context.

Built once per invocation and passed explicitly to the loader, resolver and
coordinator. Steps only ever read it.
"""

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

from orchestrate.config import ConfigurationContext
from orchestrate.environment import EnvironmentAdapter


@dataclass
class ExecutionContext:
    """Parameters shared by every phase and step of one run."""
    profile: str
    interactive: bool
    dry_run: bool = False
    max_concurrency: int = 4
    step_timeout: Optional[float] = None
    grace_period: float = 5.0
    variables: Dict[str, Any] = field(default_factory=dict)
    features: Dict[str, bool] = field(default_factory=dict)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    abort_event: threading.Event = field(default_factory=threading.Event)
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    config: Optional[ConfigurationContext] = None
    environment: Optional[EnvironmentAdapter] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Raise the cancellation signal. Only the first call matters."""
        self.cancel_event.set()

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def abort(self) -> None:
        """Stop running steps after a fatal error. The overall status stays Failed."""
        self.abort_event.set()

    def is_feature_enabled(self, name: str) -> bool:
        if self.config is not None:
            return self.config.is_feature_enabled(name)
        return self.features.get(name, False)

    def request_feature_enable(self, name: str) -> bool:
        if self.config is not None:
            return self.config.request_feature_enable(name)
        return self.features.get(name, False)


def _positive_int(value: Any, default: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def build_context(
    config: ConfigurationContext,
    environment: EnvironmentAdapter,
    dry_run: bool = False,
    variables: Optional[Dict[str, Any]] = None,
) -> ExecutionContext:
    """Build the execution context from resolved configuration.

    Variables: profile variables, overridden by caller variables.
    """
    merged = config.variables()
    merged.update(variables or {})

    timeout = config.get("step_timeout")
    return ExecutionContext(
        profile=config.profile,
        interactive=environment.is_interactive(),
        dry_run=dry_run,
        max_concurrency=_positive_int(config.get("max_concurrency"), 4),
        step_timeout=float(timeout) if timeout else None,
        grace_period=float(config.get("grace_period") or 0),
        variables=merged,
        features=config.features(),
        config=config,
        environment=environment,
    )


def simple_context(
    profile: str = "default",
    dry_run: bool = False,
    interactive: bool = False,
    features: Optional[Iterable[str]] = None,
    **kwargs: Any,
) -> ExecutionContext:
    """Context without a config file, for library use and tests."""
    environment = EnvironmentAdapter(non_interactive=not interactive)
    config = ConfigurationContext({}, profile=profile, environment=environment, features=features, environ={})
    return ExecutionContext(
        profile=profile,
        interactive=interactive,
        dry_run=dry_run,
        features=config.features(),
        config=config,
        environment=environment,
        **kwargs,
    )

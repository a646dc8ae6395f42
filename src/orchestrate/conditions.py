# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Phase conditions.

A condition is stored unevaluated at load time and evaluated when its phase
is about to start, so features enabled earlier in the run are visible.

Two forms:
- Expression string (Jinja2, sandboxed):
      condition: "feature('docker') and profile in ['full', 'ci']"
- Mapping, all keys must hold:
      condition:
        feature: docker
        profile: [full, ci]
"""

import logging
import os
from typing import Any, Callable, Dict

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from orchestrate.context import ExecutionContext
from orchestrate.errors import PlaybookParseError

logger = logging.getLogger(__name__)

MAPPING_KEYS = {"feature", "features", "profile", "not_profile", "env"}

_env = SandboxedEnvironment(undefined=jinja2.StrictUndefined)


def _as_list(value: Any) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def check_condition(condition: Any, playbook: str = "", phase: str = "") -> None:
    """Validate a condition without evaluating it.

    Raises:
        PlaybookParseError: If the expression does not parse or the mapping
            uses unknown keys.
    """
    if condition is None or isinstance(condition, bool):
        return
    if isinstance(condition, str):
        try:
            _env.compile_expression(condition, undefined_to_none=False)
        except jinja2.TemplateSyntaxError as e:
            raise PlaybookParseError(f"invalid condition '{condition}': {e}", playbook, phase)
        return
    if isinstance(condition, dict):
        unknown = set(condition) - MAPPING_KEYS
        if unknown:
            valid = ", ".join(sorted(MAPPING_KEYS))
            raise PlaybookParseError(
                f"unknown condition keys {sorted(unknown)} (valid: {valid})", playbook, phase
            )
        return
    raise PlaybookParseError(
        f"condition must be a string expression or a mapping, got {type(condition).__name__}",
        playbook,
        phase,
    )


def _namespace(context: ExecutionContext) -> Dict[str, Any]:
    def env(name: str, default: Any = None) -> Any:
        return os.environ.get(name, default)

    return {
        "profile": context.profile,
        "variables": dict(context.variables),
        "dry_run": context.dry_run,
        "interactive": context.interactive,
        "feature": context.request_feature_enable,
        "enabled": context.is_feature_enabled,
        "env": env,
    }


def _evaluate_mapping(condition: Dict[str, Any], context: ExecutionContext) -> bool:
    features = _as_list(condition.get("feature")) + _as_list(condition.get("features"))
    for name in features:
        if not context.request_feature_enable(str(name)):
            logger.info(f"Condition failed: feature '{name}' is disabled")
            return False

    if "profile" in condition:
        allowed = [str(p) for p in _as_list(condition["profile"])]
        if context.profile not in allowed:
            logger.info(f"Condition failed: profile '{context.profile}' not in {allowed}")
            return False

    if "not_profile" in condition:
        excluded = [str(p) for p in _as_list(condition["not_profile"])]
        if context.profile in excluded:
            logger.info(f"Condition failed: profile '{context.profile}' is excluded")
            return False

    if "env" in condition:
        required = condition["env"]
        if isinstance(required, dict):
            for name, expected in required.items():
                if os.environ.get(str(name)) != str(expected):
                    logger.info(f"Condition failed: ${name} != {expected}")
                    return False
        else:
            for name in _as_list(required):
                if not os.environ.get(str(name)):
                    logger.info(f"Condition failed: ${name} is not set")
                    return False

    return True


def evaluate(condition: Any, context: ExecutionContext, playbook: str = "", phase: str = "") -> bool:
    """Evaluate a phase condition against the run context.

    Feature checks go through the context, which may prompt to enable a
    disabled feature when the run is interactive.

    Raises:
        PlaybookParseError: If the expression cannot be evaluated.
    """
    if condition is None:
        return True
    if isinstance(condition, bool):
        return condition
    if isinstance(condition, dict):
        return _evaluate_mapping(condition, context)

    try:
        compiled: Callable[..., Any] = _env.compile_expression(str(condition), undefined_to_none=False)
        result = compiled(**_namespace(context))
        # An unknown bare name raises here
        applies = bool(result)
    except jinja2.TemplateError as e:
        raise PlaybookParseError(f"cannot evaluate condition '{condition}': {e}", playbook, phase)
    except (TypeError, ValueError) as e:
        raise PlaybookParseError(f"cannot evaluate condition '{condition}': {e}", playbook, phase)

    logger.debug(f"Condition '{condition}' -> {applies!r}")
    return applies

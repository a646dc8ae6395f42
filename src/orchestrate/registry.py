# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Step registry built from a declarative manifest.

The manifest (steps.yaml) lists every step the engine may run. It is
loaded and validated once at startup; playbooks then select steps by id,
numeric range, category, tag or id pattern.
"""

import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import yaml

from orchestrate.errors import ManifestError, UnknownStepError
from orchestrate.schemas import ParameterSpec, Step

logger = logging.getLogger(__name__)

# Step ids: alphanumeric start, then alphanumerics, dot, underscore, hyphen
ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
RANGE_PATTERN = re.compile(r"^(\d+)-(\d+)$")

PARAMETER_TYPES = {"string", "int", "number", "bool", "list"}

# Numeric bands used when a 4-digit step id has no explicit category
CATEGORY_BANDS: List[Tuple[int, int, str]] = [
    (0, 99, "environment"),
    (100, 199, "infrastructure"),
    (200, 299, "dev-tools"),
    (400, 499, "testing"),
    (500, 599, "reporting"),
    (700, 799, "dev-workflows"),
    (800, 899, "issues"),
    (900, 999, "test-generation"),
]

DEFAULT_MANIFEST = "steps.yaml"


def category_for_number(number: int) -> Optional[str]:
    """Return the category band a numeric step id falls in."""
    for low, high, name in CATEGORY_BANDS:
        if low <= number <= high:
            return name
    return None


def validate_step_id(step_id: Any) -> str:
    """Validate a step id from the manifest.

    Raises:
        ManifestError: If the id is missing, not a string or malformed.
    """
    if step_id is None or step_id == "":
        raise ManifestError("step id cannot be empty")
    if isinstance(step_id, bool) or not isinstance(step_id, str):
        # YAML reads unquoted 0201 as an octal int
        raise ManifestError(
            f"step id must be a string, got {type(step_id).__name__} {step_id!r} "
            f"(quote numeric ids, e.g. id: \"0201\")"
        )
    if not ID_PATTERN.match(step_id):
        raise ManifestError(
            f"step id must match [A-Za-z0-9][A-Za-z0-9_.-]*, got: {step_id}"
        )
    return step_id


def _parse_parameters(step_id: str, raw: Any) -> Dict[str, ParameterSpec]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ManifestError(f"step '{step_id}': parameters must be a mapping")

    parameters = {}
    for name, spec in raw.items():
        if spec is None:
            spec = {}
        elif isinstance(spec, str):
            spec = {"type": spec}
        elif not isinstance(spec, dict):
            raise ManifestError(f"step '{step_id}': parameter '{name}' must be a mapping or type name")

        param_type = spec.get("type", "string")
        if param_type not in PARAMETER_TYPES:
            valid = ", ".join(sorted(PARAMETER_TYPES))
            raise ManifestError(
                f"step '{step_id}': parameter '{name}' has unknown type '{param_type}' (valid: {valid})"
            )
        parameters[str(name)] = ParameterSpec(
            name=str(name),
            type=param_type,
            default=spec.get("default"),
            required=bool(spec.get("required", False)),
            description=spec.get("description", ""),
        )
    return parameters


def _parse_step(data: Any, base_dir: Optional[Path]) -> Step:
    if not isinstance(data, dict):
        raise ManifestError(f"each step must be a mapping, got: {data!r}")

    step_id = validate_step_id(data.get("id"))

    command = data.get("command")
    if isinstance(command, list):
        if not command or not all(isinstance(part, (str, int, float)) for part in command):
            raise ManifestError(f"step '{step_id}': command list must contain strings")
        command = tuple(str(part) for part in command)
    elif not isinstance(command, str) or not command.strip():
        raise ManifestError(f"step '{step_id}': command is required")

    category = data.get("category")
    if not category:
        category = category_for_number(int(step_id)) if step_id.isdigit() else None
    category = category or "uncategorized"

    timeout = data.get("timeout")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ManifestError(f"step '{step_id}': timeout must be a number, got: {timeout!r}")
        if timeout <= 0:
            raise ManifestError(f"step '{step_id}': timeout must be positive")

    retries = data.get("retries", 0)
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ManifestError(f"step '{step_id}': retries must be a non-negative integer")

    tags = data.get("tags") or []
    if isinstance(tags, str):
        tags = [tags]

    cwd = data.get("cwd")
    if base_dir is not None:
        cwd = str((base_dir / cwd).resolve()) if cwd else str(base_dir)

    return Step(
        id=step_id,
        name=data.get("name") or step_id,
        command=command,
        category=str(category),
        description=data.get("description", ""),
        parameters=_parse_parameters(step_id, data.get("parameters")),
        supports_dry_run=bool(data.get("supports_dry_run", False)),
        exclusive=bool(data.get("exclusive", False)),
        timeout=timeout,
        retries=retries,
        tags=tuple(str(tag) for tag in tags),
        cwd=cwd,
    )


class StepRegistry:
    """Read-only index of registered steps, in manifest order."""

    def __init__(self, steps: List[Step]):
        self._steps: Dict[str, Step] = {}
        for step in steps:
            if step.id in self._steps:
                raise ManifestError(f"duplicate step id: {step.id}")
            self._steps[step.id] = step

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[Step]:
        return iter(self._steps.values())

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def get(self, step_id: str) -> Step:
        """Get a step by exact id.

        Raises:
            UnknownStepError: If no step has this id.
        """
        try:
            return self._steps[step_id]
        except KeyError:
            raise UnknownStepError(step_id)

    def categories(self) -> Dict[str, List[Step]]:
        """Group steps by category, preserving manifest order."""
        grouped: Dict[str, List[Step]] = {}
        for step in self._steps.values():
            grouped.setdefault(step.category, []).append(step)
        return grouped

    def resolve(self, selector: Union[str, Dict[str, Any]], phase: Optional[str] = None) -> List[Step]:
        """Resolve a selector to the steps it names.

        Selector forms:
        - "0201": exact id
        - "0200-0299": inclusive numeric range
        - "category:dev-tools" (glob allowed): steps in a category
        - "tag:git": steps carrying a tag
        - "02*": glob over ids
        A trailing "?" or {select: ..., optional: true} marks the selector
        optional: matching nothing is then allowed.

        Raises:
            UnknownStepError: If a required selector matches nothing.
        """
        optional = False
        if isinstance(selector, dict):
            optional = bool(selector.get("optional", False))
            selector = selector.get("select") or selector.get("step") or ""
        selector = str(selector).strip()
        if selector.endswith("?"):
            optional = True
            selector = selector[:-1]

        matches = self._match(selector)
        if not matches:
            if optional:
                logger.info(f"Optional selector '{selector}' matched no steps")
                return []
            raise UnknownStepError(selector, phase=phase)
        return matches

    def _match(self, selector: str) -> List[Step]:
        if not selector:
            return []

        if selector in self._steps:
            return [self._steps[selector]]

        range_match = RANGE_PATTERN.match(selector)
        if range_match:
            low, high = int(range_match.group(1)), int(range_match.group(2))
            if low > high:
                low, high = high, low
            return [s for s in self._steps.values() if s.number is not None and low <= s.number <= high]

        if selector.startswith("category:"):
            pattern = selector[len("category:"):]
            return [s for s in self._steps.values() if fnmatch.fnmatchcase(s.category, pattern)]

        if selector.startswith("tag:"):
            pattern = selector[len("tag:"):]
            return [
                s for s in self._steps.values()
                if any(fnmatch.fnmatchcase(tag, pattern) for tag in s.tags)
            ]

        if any(ch in selector for ch in "*["):
            return [s for s in self._steps.values() if fnmatch.fnmatchcase(s.id, selector)]

        return []


def get_manifest_path(explicit: Optional[str] = None, config: Optional[Dict[str, Any]] = None) -> Path:
    """Pick the manifest path.

    Order:
    1. explicit path (--manifest)
    2. $ORCHESTRATE_MANIFEST
    3. "manifest" key in the configuration
    4. ./steps.yaml
    """
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.environ.get("ORCHESTRATE_MANIFEST")
    if env_path:
        return Path(env_path).expanduser()
    if config and config.get("manifest"):
        path = Path(str(config["manifest"])).expanduser()
        # Relative to the config file that named it
        if not path.is_absolute() and config.get("_path"):
            path = Path(config["_path"]).parent / path
        return path
    return Path(DEFAULT_MANIFEST)


def load_manifest(path: Union[str, Path]) -> StepRegistry:
    """Load and validate a step manifest.

    Raises:
        ManifestError: If the file is missing or any entry is invalid.
    """
    manifest_path = Path(path).expanduser()
    if not manifest_path.exists():
        raise ManifestError(f"step manifest not found: {manifest_path}")

    try:
        with open(manifest_path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ManifestError(f"invalid YAML in {manifest_path}: {e}")

    if not isinstance(data, dict) or not isinstance(data.get("steps"), list):
        raise ManifestError(f"manifest {manifest_path} must contain a 'steps' list")

    base_dir = manifest_path.resolve().parent
    steps = [_parse_step(entry, base_dir) for entry in data["steps"]]
    registry = StepRegistry(steps)
    logger.debug(f"Loaded {len(registry)} steps from {manifest_path}")
    return registry

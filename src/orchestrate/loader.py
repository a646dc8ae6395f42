# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Playbook loader - Transform playbook YAML/JSON into a Playbook.

Binds every phase's step selectors to the step registry, so unknown steps
fail before anything runs. Phase conditions are syntax-checked but kept
unevaluated; the coordinator evaluates them when the phase starts.

Playbook format:

    name: dev-setup
    profiles: [default, full]
    variables: {branch: main}
    phases:
      - name: setup
        steps: ["0001", "0200-0299"]
        max_concurrency: 2
        params: {version: "2.44"}
      - name: verify
        steps:
          - select: "category:testing"
            params: {coverage: true}
        requires: [setup]
        condition: "feature('tests')"
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import yaml

from orchestrate.conditions import check_condition
from orchestrate.errors import PlaybookParseError
from orchestrate.registry import StepRegistry
from orchestrate.schemas import BoundStep, ParameterSpec, Phase, Playbook, Step

logger = logging.getLogger(__name__)

PLAYBOOK_EXTENSIONS = (".yaml", ".yml", ".json")

PHASE_KEYS = {
    "name", "description", "steps", "max_concurrency", "maxConcurrency",
    "continue_on_error", "continueOnError", "requires", "independent",
    "condition", "params", "timeout", "retries",
}


def get_playbook_search_paths(extra: Optional[Iterable[Path]] = None) -> List[Path]:
    """Playbook directories in priority order.

    Order:
    1. $ORCHESTRATE_PLAYBOOKS_DIR (if set)
    2. configured playbook_dirs
    3. ./orchestration/playbooks/ (repo-local)
    4. ~/.orchestrate/playbooks/ (user-local)
    """
    paths = []
    env_dir = os.environ.get("ORCHESTRATE_PLAYBOOKS_DIR")
    if env_dir:
        paths.append(Path(env_dir).expanduser())
    paths.extend(extra or [])
    paths.append(Path("./orchestration/playbooks"))
    paths.append(Path("~/.orchestrate/playbooks").expanduser())
    return paths


def find_playbook(source: Union[str, Path], search_paths: Optional[List[Path]] = None) -> Path:
    """Find a playbook file by path or by name.

    Raises:
        PlaybookParseError: If no playbook file is found.
    """
    path = Path(source).expanduser()
    if path.is_file():
        return path

    search_paths = search_paths if search_paths is not None else get_playbook_search_paths()
    name = str(source)
    for directory in search_paths:
        for ext in PLAYBOOK_EXTENSIONS:
            candidate = Path(directory).expanduser() / f"{name}{ext}"
            if candidate.is_file():
                return candidate

    searched = ", ".join(str(p) for p in search_paths)
    raise PlaybookParseError(f"Playbook not found: {name}. Searched: {searched}")


def list_playbooks(search_paths: Optional[List[Path]] = None) -> List[Dict[str, Any]]:
    """List playbooks on the search path. Earlier directories shadow later ones."""
    search_paths = search_paths if search_paths is not None else get_playbook_search_paths()
    seen: Dict[str, Dict[str, Any]] = {}
    for directory in search_paths:
        directory = Path(directory).expanduser()
        if not directory.is_dir():
            continue
        for path in sorted(directory.iterdir()):
            if path.suffix not in PLAYBOOK_EXTENSIONS or path.stem in seen:
                continue
            try:
                data = _read_definition(path)
                description = data.get("description", "") if isinstance(data, dict) else ""
            except PlaybookParseError as e:
                description = f"(invalid: {e})"
            seen[path.stem] = {"name": path.stem, "path": str(path), "description": description}
    return list(seen.values())


def _read_definition(path: Path) -> Any:
    try:
        text = path.read_text()
    except OSError as e:
        raise PlaybookParseError(f"cannot read {path}: {e}")
    try:
        if path.suffix == ".json":
            return json.loads(text)
        return yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PlaybookParseError(f"invalid definition in {path}: {e}")


def _get(data: Dict[str, Any], key: str, alias: Optional[str] = None, default: Any = None) -> Any:
    if key in data:
        return data[key]
    if alias and alias in data:
        return data[alias]
    return default


def _check_type(spec: ParameterSpec, value: Any) -> bool:
    if value is None or (isinstance(value, str) and "{" in value):
        # Templated values are substituted at run time
        return True
    if spec.type == "string":
        return isinstance(value, (str, int, float)) and not isinstance(value, bool)
    if spec.type == "int":
        return isinstance(value, int) and not isinstance(value, bool)
    if spec.type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if spec.type == "bool":
        return isinstance(value, bool)
    if spec.type == "list":
        return isinstance(value, list)
    return True


def _bind_params(
    step: Step,
    phase_params: Dict[str, Any],
    selector_params: Dict[str, Any],
    variables: Dict[str, Any],
    playbook: str,
    phase: str,
) -> Dict[str, Any]:
    params = {name: spec.default for name, spec in step.parameters.items() if spec.default is not None}

    # Phase-wide params apply to the steps that declare them
    for name, value in phase_params.items():
        if name in step.parameters:
            params[name] = value

    for name, value in selector_params.items():
        if name not in step.parameters:
            raise PlaybookParseError(f"step '{step.id}' has no parameter '{name}'", playbook, phase)
        params[name] = value

    for name, value in params.items():
        spec = step.parameters[name]
        if not _check_type(spec, value):
            raise PlaybookParseError(
                f"step '{step.id}' parameter '{name}' expects {spec.type}, got {value!r}",
                playbook,
                phase,
            )

    for name, spec in step.parameters.items():
        if spec.required and name not in params and name not in variables:
            raise PlaybookParseError(
                f"step '{step.id}' requires parameter '{name}'", playbook, phase
            )
    return params


def _parse_selectors(raw: Any, playbook: str, phase: str) -> List[Tuple[Any, Dict[str, Any]]]:
    if raw is None:
        raise PlaybookParseError("'steps' is required", playbook, phase)
    if isinstance(raw, (str, int)) or isinstance(raw, dict):
        raw = [raw]
    if not isinstance(raw, list):
        raise PlaybookParseError("'steps' must be a list of selectors", playbook, phase)

    selectors = []
    for item in raw:
        if isinstance(item, bool):
            raise PlaybookParseError(f"invalid step selector: {item!r}", playbook, phase)
        if isinstance(item, int):
            # Unquoted YAML ids lose their leading zeros
            raise PlaybookParseError(
                f"step selector {item!r} must be quoted (e.g. \"{item:04d}\")", playbook, phase
            )
        if isinstance(item, str):
            selectors.append((item, {}))
        elif isinstance(item, dict):
            if not (item.get("select") or item.get("step")):
                raise PlaybookParseError(f"selector mapping needs 'select': {item!r}", playbook, phase)
            params = item.get("params") or {}
            if not isinstance(params, dict):
                raise PlaybookParseError("selector 'params' must be a mapping", playbook, phase)
            selectors.append((item, params))
        else:
            raise PlaybookParseError(f"invalid step selector: {item!r}", playbook, phase)
    return selectors


def _parse_number(value: Any, name: str, playbook: str, phase: str, minimum: int = 0) -> Any:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < minimum:
        raise PlaybookParseError(f"'{name}' must be a number >= {minimum}, got {value!r}", playbook, phase)
    return value


def _parse_phase(
    data: Any,
    index: int,
    registry: StepRegistry,
    playbook: str,
    variables: Dict[str, Any],
) -> Phase:
    if not isinstance(data, dict):
        raise PlaybookParseError(f"phase #{index + 1} must be a mapping", playbook)

    name = data.get("name")
    if not name or not isinstance(name, str):
        raise PlaybookParseError(f"phase #{index + 1} needs a 'name'", playbook)

    unknown = set(data) - PHASE_KEYS
    if unknown:
        raise PlaybookParseError(f"unknown phase keys: {sorted(unknown)}", playbook, name)

    max_concurrency = _get(data, "max_concurrency", "maxConcurrency", 1)
    if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int) or max_concurrency < 1:
        raise PlaybookParseError(
            f"'max_concurrency' must be a positive integer, got {max_concurrency!r}", playbook, name
        )

    requires = data.get("requires") or []
    if isinstance(requires, str):
        requires = [requires]
    if not isinstance(requires, list) or not all(isinstance(r, str) for r in requires):
        raise PlaybookParseError("'requires' must be a list of phase names", playbook, name)

    phase_params = data.get("params") or {}
    if not isinstance(phase_params, dict):
        raise PlaybookParseError("'params' must be a mapping", playbook, name)

    timeout = _parse_number(data.get("timeout"), "timeout", playbook, name, minimum=1)
    retries = _parse_number(data.get("retries"), "retries", playbook, name)
    if retries is not None and not isinstance(retries, int):
        raise PlaybookParseError("'retries' must be an integer", playbook, name)

    condition = data.get("condition")
    check_condition(condition, playbook, name)

    selectors = _parse_selectors(data.get("steps"), playbook, name)
    bound: List[BoundStep] = []
    seen = set()
    declared = set()
    for selector, selector_params in selectors:
        for step in registry.resolve(selector, phase=name):
            declared.update(step.parameters)
            if step.id in seen:
                logger.debug(f"Step {step.id} selected twice in phase '{name}', keeping first")
                continue
            seen.add(step.id)
            bound.append(BoundStep(
                step=step,
                params=_bind_params(step, phase_params, selector_params, variables, playbook, name),
                timeout=timeout if timeout is not None else step.timeout,
                retries=retries if retries is not None else step.retries,
            ))

    unused = set(phase_params) - declared
    if unused:
        raise PlaybookParseError(
            f"phase params {sorted(unused)} are not declared by any of its steps", playbook, name
        )

    return Phase(
        name=name,
        steps=tuple(bound),
        selectors=tuple(sel for sel, _ in selectors),
        max_concurrency=max_concurrency,
        continue_on_error=bool(_get(data, "continue_on_error", "continueOnError", False)),
        requires=tuple(requires),
        independent=bool(data.get("independent", False)),
        condition=condition,
        description=data.get("description", ""),
    )


def parse_playbook(
    data: Any,
    registry: StepRegistry,
    profile: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    source: Optional[Path] = None,
    default_name: Optional[str] = None,
) -> Playbook:
    """Build a Playbook from an already-parsed definition.

    Raises:
        PlaybookParseError: If the definition is malformed.
        UnknownStepError: If a selector matches no step.
    """
    label = default_name or (source.stem if source else "<inline>")
    if not isinstance(data, dict):
        raise PlaybookParseError("definition must be a mapping", label)

    name = data.get("name") or default_name
    if not name or not isinstance(name, str):
        raise PlaybookParseError("'name' is required", label)

    profiles = data.get("profiles") or []
    if isinstance(profiles, str):
        profiles = [profiles]
    if profile and profiles and profile not in profiles:
        raise PlaybookParseError(
            f"does not apply to profile '{profile}' (profiles: {', '.join(profiles)})", name
        )

    playbook_vars = data.get("variables") or {}
    if not isinstance(playbook_vars, dict):
        raise PlaybookParseError("'variables' must be a mapping", name)
    known_vars = {**playbook_vars, **(variables or {})}

    raw_phases = data.get("phases")
    if not isinstance(raw_phases, list) or not raw_phases:
        raise PlaybookParseError("'phases' must be a non-empty list", name)

    phases = [_parse_phase(item, i, registry, name, known_vars) for i, item in enumerate(raw_phases)]

    names = [phase.name for phase in phases]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise PlaybookParseError(f"duplicate phase names: {duplicates}", name)

    return Playbook(
        name=name,
        phases=tuple(phases),
        description=data.get("description", ""),
        profiles=tuple(str(p) for p in profiles),
        variables=dict(playbook_vars),
        source=source,
    )


def load_playbook(
    source: Union[str, Path],
    registry: StepRegistry,
    profile: Optional[str] = None,
    variables: Optional[Dict[str, Any]] = None,
    search_paths: Optional[List[Path]] = None,
) -> Playbook:
    """Load a playbook by path or name and bind it to the registry."""
    path = find_playbook(source, search_paths)
    data = _read_definition(path)
    playbook = parse_playbook(
        data, registry, profile=profile, variables=variables, source=path, default_name=path.stem
    )
    logger.info(
        f"Loaded playbook '{playbook.name}' from {path}: "
        f"{len(playbook.phases)} phases, {sum(len(p.steps) for p in playbook.phases)} steps"
    )
    return playbook

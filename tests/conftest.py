# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Shared fixtures: steps that run real child processes via the current interpreter."""

import sys
from typing import Any, Dict, List

import pytest
import yaml

from orchestrate.loader import parse_playbook
from orchestrate.registry import StepRegistry
from orchestrate.schemas import Playbook, Step

PY = sys.executable


def py_step(step_id: str, code: str = "pass", **kwargs: Any) -> Step:
    """A step running `python -c code`. Avoid braces in code: they are placeholders."""
    kwargs.setdefault("name", f"step {step_id}")
    return Step(id=step_id, command=(PY, "-c", code), **kwargs)


def build_playbook(steps: List[Step], phases: List[Dict[str, Any]], **extra: Any) -> Playbook:
    """Parse an inline playbook against a registry of the given steps."""
    data = {"name": extra.pop("name", "test-playbook"), "phases": phases}
    data.update(extra)
    return parse_playbook(data, StepRegistry(steps))


@pytest.fixture
def write_yaml(tmp_path):
    """Write a YAML file under tmp_path and return its path."""

    def _write(relative: str, data: Any):
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write


@pytest.fixture
def clean_env(monkeypatch):
    """Remove CI and orchestrate variables that would leak into tests."""
    for name in (
        "CI", "GITHUB_ACTIONS", "TF_BUILD", "GITLAB_CI", "JENKINS_URL", "BUILDKITE",
        "CIRCLECI", "TEAMCITY_VERSION", "ORCHESTRATE_NONINTERACTIVE",
        "ORCHESTRATE_CONFIG", "ORCHESTRATE_MANIFEST", "ORCHESTRATE_PLAYBOOKS_DIR",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch

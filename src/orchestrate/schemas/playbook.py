# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Step, phase and playbook schemas.

Flow:
- steps.yaml (manifest) → StepRegistry → Step
- playbook YAML → load → Playbook (phases with bound steps)
- Playbook → resolve → PhaseGroup list → execute → RunReport
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union


@dataclass(frozen=True)
class ParameterSpec:
    """A parameter a step declares in the manifest."""
    name: str
    type: str = "string"  # string, int, number, bool, list
    default: Any = None
    required: bool = False
    description: str = ""


@dataclass(frozen=True)
class Step:
    """One executable unit of work, as registered in the manifest."""
    id: str
    name: str
    command: Union[str, Tuple[str, ...]]
    category: str = "uncategorized"
    description: str = ""
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)
    supports_dry_run: bool = False
    exclusive: bool = False
    timeout: Optional[float] = None
    retries: int = 0
    tags: Tuple[str, ...] = ()
    cwd: Optional[str] = None

    @property
    def number(self) -> Optional[int]:
        """Numeric value of the id, or None for non-numeric ids."""
        return int(self.id) if self.id.isdigit() else None


@dataclass(frozen=True)
class BoundStep:
    """A registered step bound into a phase with its resolved parameters."""
    step: Step
    params: Dict[str, Any] = field(default_factory=dict)
    timeout: Optional[float] = None
    retries: int = 0

    @property
    def id(self) -> str:
        return self.step.id

    @property
    def exclusive(self) -> bool:
        return self.step.exclusive


@dataclass(frozen=True)
class Phase:
    """A group of steps sharing one concurrency and failure policy.

    The condition is kept unevaluated; the coordinator evaluates it when
    the phase is about to start.
    """
    name: str
    steps: Tuple[BoundStep, ...] = ()
    selectors: Tuple[Any, ...] = ()
    max_concurrency: int = 1
    continue_on_error: bool = False
    requires: Tuple[str, ...] = ()
    independent: bool = False
    condition: Any = None
    description: str = ""

    @property
    def step_ids(self) -> List[str]:
        return [bound.id for bound in self.steps]


@dataclass(frozen=True)
class Playbook:
    """A named, declarative workflow."""
    name: str
    phases: Tuple[Phase, ...]
    description: str = ""
    profiles: Tuple[str, ...] = ()
    variables: Dict[str, Any] = field(default_factory=dict)
    source: Optional[Path] = None

    def phase(self, name: str) -> Phase:
        for phase in self.phases:
            if phase.name == name:
                return phase
        raise KeyError(name)


@dataclass(frozen=True)
class PhaseGroup:
    """Phases that may start together once all earlier groups are done."""
    index: int
    phases: Tuple[Phase, ...]

    @property
    def names(self) -> List[str]:
        return [phase.name for phase in self.phases]

# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""Dependency resolver: linearize playbook phases into execution groups.

Each phase depends on the phases it `requires` and, unless it is marked
`independent`, on the phase declared right before it. Phases are layered
with Kahn's algorithm:

- Group 1: every phase with no dependencies
- Group N: every remaining phase whose dependencies are all in groups < N

Within a group, phases keep declaration order so runs are reproducible.
"""

import logging
from typing import Dict, List

from orchestrate.errors import CyclicDependencyError, MissingDependencyError
from orchestrate.schemas import Phase, PhaseGroup, Playbook

logger = logging.getLogger(__name__)


def phase_dependencies(playbook: Playbook) -> Dict[str, List[str]]:
    """Dependency lists per phase, explicit `requires` first.

    Raises:
        MissingDependencyError: If a phase requires an unknown phase.
    """
    names = {phase.name for phase in playbook.phases}
    deps: Dict[str, List[str]] = {}
    previous = None
    for phase in playbook.phases:
        phase_deps: List[str] = []
        for required in phase.requires:
            if required not in names:
                raise MissingDependencyError(phase.name, required)
            if required not in phase_deps:
                phase_deps.append(required)
        if previous is not None and not phase.independent and previous not in phase_deps:
            phase_deps.append(previous)
        deps[phase.name] = phase_deps
        previous = phase.name
    return deps


def find_cycle(order: List[str], deps: Dict[str, List[str]]) -> List[str]:
    """Return one dependency cycle as a path (first node repeated at the end).

    Depth-first search in declaration order; returns [] for an acyclic graph.
    """
    visiting: List[str] = []
    done = set()

    def visit(name: str) -> List[str]:
        if name in done:
            return []
        if name in visiting:
            start = visiting.index(name)
            return visiting[start:] + [name]
        visiting.append(name)
        for dep in deps.get(name, []):
            cycle = visit(dep)
            if cycle:
                return cycle
        visiting.pop()
        done.add(name)
        return []

    for name in order:
        cycle = visit(name)
        if cycle:
            # Present the path in execution direction: dependency -> dependent
            return list(reversed(cycle))
    return []


def resolve_phases(playbook: Playbook) -> List[PhaseGroup]:
    """Resolve a playbook into sequential groups of concurrently runnable phases.

    Raises:
        MissingDependencyError: If a phase requires an unknown phase.
        CyclicDependencyError: If the requirements form a cycle.
    """
    deps = phase_dependencies(playbook)
    order = [phase.name for phase in playbook.phases]
    lookup: Dict[str, Phase] = {phase.name: phase for phase in playbook.phases}

    placed: set = set()
    groups: List[PhaseGroup] = []
    while len(placed) < len(order):
        ready = [
            name for name in order
            if name not in placed and all(dep in placed for dep in deps[name])
        ]
        if not ready:
            remaining = [name for name in order if name not in placed]
            cycle = find_cycle(remaining, {n: deps[n] for n in remaining})
            raise CyclicDependencyError(cycle or remaining)
        groups.append(PhaseGroup(index=len(groups), phases=tuple(lookup[name] for name in ready)))
        placed.update(ready)

    logger.info(
        f"Resolved {len(order)} phases into {len(groups)} groups: "
        f"{[group.names for group in groups]}"
    )
    return groups

"""Tests for phase dependency resolution."""

import pytest

from orchestrate.errors import CyclicDependencyError, MissingDependencyError
from orchestrate.resolver import find_cycle, phase_dependencies, resolve_phases
from orchestrate.schemas import Phase, Playbook


def _playbook(*phases):
    return Playbook(name="p", phases=tuple(phases))


def _assert_topological(playbook, groups):
    """Every dependency of a phase sits in an earlier group."""
    position = {}
    for group in groups:
        for phase in group.phases:
            position[phase.name] = group.index
    deps = phase_dependencies(playbook)
    for name, required in deps.items():
        for dep in required:
            assert position[dep] < position[name], f"{dep} must run before {name}"


class TestPhaseDependencies:
    """Tests for implicit and explicit dependencies."""

    def test_implicit_chain(self):
        """Each phase depends on the one declared before it."""
        playbook = _playbook(Phase("a"), Phase("b"), Phase("c"))
        assert phase_dependencies(playbook) == {"a": [], "b": ["a"], "c": ["b"]}

    def test_independent_drops_implicit(self):
        playbook = _playbook(Phase("a"), Phase("b", independent=True))
        assert phase_dependencies(playbook) == {"a": [], "b": []}

    def test_explicit_requires(self):
        playbook = _playbook(Phase("a"), Phase("b", independent=True), Phase("c", requires=("a",)))
        assert phase_dependencies(playbook)["c"] == ["a", "b"]

    def test_missing_dependency(self):
        playbook = _playbook(Phase("a", requires=("setup",)))
        with pytest.raises(MissingDependencyError, match="requires unknown phase 'setup'"):
            phase_dependencies(playbook)


class TestResolvePhases:
    """Tests for resolve_phases."""

    def test_linear(self):
        playbook = _playbook(Phase("a"), Phase("b"), Phase("c"))
        groups = resolve_phases(playbook)
        assert [g.names for g in groups] == [["a"], ["b"], ["c"]]
        assert [g.index for g in groups] == [0, 1, 2]

    def test_independent_phases_share_a_group(self):
        """Independent phases run together, in declaration order."""
        playbook = _playbook(
            Phase("lint"),
            Phase("docs", independent=True),
            Phase("package", independent=True, requires=("lint",)),
            Phase("publish", requires=("docs",)),
        )
        groups = resolve_phases(playbook)
        assert [g.names for g in groups] == [["lint", "docs"], ["package"], ["publish"]]
        _assert_topological(playbook, groups)

    def test_diamond(self):
        playbook = _playbook(
            Phase("setup"),
            Phase("build", requires=("setup",)),
            Phase("test", independent=True, requires=("setup",)),
            Phase("report", independent=True, requires=("build", "test")),
        )
        groups = resolve_phases(playbook)
        assert [g.names for g in groups] == [["setup"], ["build", "test"], ["report"]]
        _assert_topological(playbook, groups)

    def test_every_phase_placed_once(self):
        playbook = _playbook(*[Phase(f"p{i}", independent=(i % 2 == 0)) for i in range(7)])
        groups = resolve_phases(playbook)
        placed = [name for g in groups for name in g.names]
        assert sorted(placed) == sorted(p.name for p in playbook.phases)
        _assert_topological(playbook, groups)

    def test_cycle(self):
        """A requirement cycle is reported with its path."""
        playbook = _playbook(Phase("a", requires=("c",)), Phase("b"), Phase("c"))
        with pytest.raises(CyclicDependencyError) as exc_info:
            resolve_phases(playbook)

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        assert "Cyclic phase dependency: " in str(exc_info.value)
        assert " -> " in str(exc_info.value)

    def test_self_cycle(self):
        playbook = _playbook(Phase("a", requires=("a",)))
        with pytest.raises(CyclicDependencyError) as exc_info:
            resolve_phases(playbook)
        assert exc_info.value.cycle == ["a", "a"]


class TestFindCycle:
    def test_acyclic(self):
        assert find_cycle(["a", "b"], {"a": [], "b": ["a"]}) == []

    def test_path_direction(self):
        """The path reads dependency -> dependent."""
        assert find_cycle(["a", "b"], {"a": ["b"], "b": ["a"]}) == ["a", "b", "a"]

"""Tests for playbook loading and selector binding."""

import json

import pytest

from orchestrate.errors import PlaybookParseError, UnknownStepError
from orchestrate.loader import find_playbook, list_playbooks, load_playbook, parse_playbook
from orchestrate.registry import StepRegistry
from orchestrate.schemas import ParameterSpec, Step


def _registry():
    return StepRegistry([
        Step(id="0001", name="Ensure shell", command="true"),
        Step(
            id="0201",
            name="Install git",
            command="install-git {version}",
            parameters={
                "version": ParameterSpec(name="version", type="string", default="2.40"),
                "force": ParameterSpec(name="force", type="bool"),
            },
        ),
        Step(id="0207", name="Configure git", command="true", exclusive=True, retries=1),
        Step(
            id="0402",
            name="Unit tests",
            command="pytest",
            parameters={"suite": ParameterSpec(name="suite", required=True)},
        ),
    ])


class TestParsePlaybook:
    """Tests for parse_playbook."""

    def test_basic_playbook(self):
        """Phases bind selectors to steps in declaration order."""
        playbook = parse_playbook({
            "name": "dev-setup",
            "description": "Developer machine",
            "phases": [
                {"name": "setup", "steps": ["0001", "0200-0299"], "max_concurrency": 2},
                {"name": "verify", "steps": [{"select": "0402", "params": {"suite": "unit"}}],
                 "continue_on_error": True, "requires": ["setup"]},
            ],
        }, _registry())

        assert playbook.name == "dev-setup"
        setup = playbook.phase("setup")
        assert setup.step_ids == ["0001", "0201", "0207"]
        assert setup.max_concurrency == 2
        assert setup.continue_on_error is False
        assert setup.selectors == ("0001", "0200-0299")

        verify = playbook.phase("verify")
        assert verify.requires == ("setup",)
        assert verify.continue_on_error is True
        assert verify.steps[0].params == {"suite": "unit"}

    def test_defaults_and_overrides(self):
        """Declared defaults bind, phase params override them, step retries carry over."""
        playbook = parse_playbook({
            "name": "p",
            "phases": [{"name": "git", "steps": ["0201", "0207"], "params": {"version": "2.44"}}],
        }, _registry())

        install, configure = playbook.phase("git").steps
        assert install.params == {"version": "2.44"}
        assert configure.params == {}
        assert configure.retries == 1
        assert configure.exclusive is True

    def test_phase_timeout_and_retries_override(self):
        playbook = parse_playbook({
            "name": "p",
            "phases": [{"name": "git", "steps": ["0207"], "timeout": 30, "retries": 0}],
        }, _registry())
        bound = playbook.phase("git").steps[0]
        assert bound.timeout == 30
        assert bound.retries == 0

    def test_camel_case_aliases(self):
        playbook = parse_playbook({
            "name": "p",
            "phases": [{"name": "a", "steps": ["0001"], "maxConcurrency": 3, "continueOnError": True}],
        }, _registry())
        phase = playbook.phase("a")
        assert phase.max_concurrency == 3
        assert phase.continue_on_error is True

    def test_duplicate_selection_kept_once(self):
        playbook = parse_playbook({
            "name": "p",
            "phases": [{"name": "a", "steps": ["0201", "02*"]}],
        }, _registry())
        assert playbook.phase("a").step_ids == ["0201", "0207"]

    def test_unknown_step(self):
        """Unknown selectors fail at load time."""
        with pytest.raises(UnknownStepError, match="0999"):
            parse_playbook({"name": "p", "phases": [{"name": "a", "steps": ["0999"]}]}, _registry())

    def test_unquoted_selector(self):
        with pytest.raises(PlaybookParseError, match="must be quoted"):
            parse_playbook({"name": "p", "phases": [{"name": "a", "steps": [201]}]}, _registry())

    def test_unknown_phase_key(self):
        with pytest.raises(PlaybookParseError, match="unknown phase keys"):
            parse_playbook({"name": "p", "phases": [{"name": "a", "steps": ["0001"], "parallel": True}]}, _registry())

    def test_invalid_max_concurrency(self):
        with pytest.raises(PlaybookParseError, match="max_concurrency"):
            parse_playbook({"name": "p", "phases": [{"name": "a", "steps": ["0001"], "max_concurrency": 0}]}, _registry())

    def test_undeclared_selector_param(self):
        with pytest.raises(PlaybookParseError, match="has no parameter 'color'"):
            parse_playbook({
                "name": "p",
                "phases": [{"name": "a", "steps": [{"select": "0201", "params": {"color": "red"}}]}],
            }, _registry())

    def test_unused_phase_param(self):
        with pytest.raises(PlaybookParseError, match="not declared by any of its steps"):
            parse_playbook({
                "name": "p",
                "phases": [{"name": "a", "steps": ["0001"], "params": {"version": "1"}}],
            }, _registry())

    def test_param_type_mismatch(self):
        with pytest.raises(PlaybookParseError, match="expects bool"):
            parse_playbook({
                "name": "p",
                "phases": [{"name": "a", "steps": [{"select": "0201", "params": {"force": "yes"}}]}],
            }, _registry())

    def test_required_param_missing(self):
        with pytest.raises(PlaybookParseError, match="requires parameter 'suite'"):
            parse_playbook({"name": "p", "phases": [{"name": "a", "steps": ["0402"]}]}, _registry())

    def test_required_param_from_variables(self):
        """A required parameter may come from run variables."""
        playbook = parse_playbook(
            {"name": "p", "phases": [{"name": "a", "steps": ["0402"]}]},
            _registry(),
            variables={"suite": "unit"},
        )
        assert playbook.phase("a").step_ids == ["0402"]

    def test_profile_mismatch(self):
        with pytest.raises(PlaybookParseError, match="does not apply to profile 'ci'"):
            parse_playbook(
                {"name": "p", "profiles": ["full"], "phases": [{"name": "a", "steps": ["0001"]}]},
                _registry(),
                profile="ci",
            )

    def test_duplicate_phase_names(self):
        with pytest.raises(PlaybookParseError, match="duplicate phase names"):
            parse_playbook({
                "name": "p",
                "phases": [{"name": "a", "steps": ["0001"]}, {"name": "a", "steps": ["0001"]}],
            }, _registry())

    def test_empty_phases(self):
        with pytest.raises(PlaybookParseError, match="non-empty list"):
            parse_playbook({"name": "p", "phases": []}, _registry())

    def test_invalid_condition_syntax(self):
        """Conditions are syntax-checked at load."""
        with pytest.raises(PlaybookParseError, match="invalid condition"):
            parse_playbook({
                "name": "p",
                "phases": [{"name": "a", "steps": ["0001"], "condition": "feature('x') and"}],
            }, _registry())

    def test_condition_kept_unevaluated(self):
        playbook = parse_playbook({
            "name": "p",
            "phases": [{"name": "a", "steps": ["0001"], "condition": "feature('docker')"}],
        }, _registry())
        assert playbook.phase("a").condition == "feature('docker')"


class TestFindPlaybook:
    """Tests for playbook lookup on the search path."""

    def test_by_path(self, write_yaml):
        path = write_yaml("anywhere/setup.yaml", {"name": "setup", "phases": []})
        assert find_playbook(str(path)) == path

    def test_by_name(self, write_yaml, tmp_path):
        path = write_yaml("playbooks/setup.yml", {"name": "setup"})
        assert find_playbook("setup", [tmp_path / "playbooks"]) == path

    def test_earlier_directory_wins(self, write_yaml, tmp_path):
        first = write_yaml("a/setup.yaml", {"name": "setup"})
        write_yaml("b/setup.yaml", {"name": "setup"})
        assert find_playbook("setup", [tmp_path / "a", tmp_path / "b"]) == first

    def test_not_found(self, tmp_path):
        with pytest.raises(PlaybookParseError, match="Playbook not found: nope"):
            find_playbook("nope", [tmp_path])


class TestLoadPlaybook:
    """Tests for load_playbook and list_playbooks."""

    def test_load_yaml(self, write_yaml, tmp_path):
        write_yaml("playbooks/setup.yaml", {"phases": [{"name": "a", "steps": ["0001"]}]})
        playbook = load_playbook("setup", _registry(), search_paths=[tmp_path / "playbooks"])
        assert playbook.name == "setup"
        assert playbook.source == tmp_path / "playbooks" / "setup.yaml"

    def test_load_json(self, tmp_path):
        path = tmp_path / "verify.json"
        path.write_text(json.dumps({
            "name": "verify",
            "phases": [{"name": "tests", "steps": ["0402"], "params": {"suite": "all"}}],
        }))
        playbook = load_playbook(str(path), _registry())
        assert playbook.phase("tests").steps[0].params == {"suite": "all"}

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("phases: [unclosed\n")
        with pytest.raises(PlaybookParseError, match="invalid definition"):
            load_playbook(str(path), _registry())

    def test_list_playbooks(self, write_yaml, tmp_path):
        write_yaml("a/setup.yaml", {"name": "setup", "description": "Machine setup"})
        write_yaml("b/setup.yaml", {"name": "setup", "description": "Shadowed"})
        write_yaml("b/verify.json", {"name": "verify"})
        (tmp_path / "b" / "notes.txt").write_text("ignored")

        found = list_playbooks([tmp_path / "a", tmp_path / "b", tmp_path / "missing"])

        assert [p["name"] for p in found] == ["setup", "verify"]
        assert found[0]["description"] == "Machine setup"

"""Tests for the step registry and manifest loading."""

from pathlib import Path

import pytest

from orchestrate.errors import ManifestError, UnknownStepError
from orchestrate.registry import (
    StepRegistry,
    category_for_number,
    get_manifest_path,
    load_manifest,
    validate_step_id,
)
from orchestrate.schemas import Step


def _registry():
    return StepRegistry([
        Step(id="0001", name="Ensure shell", command="true", category="environment"),
        Step(id="0201", name="Install git", command="true", category="dev-tools", tags=("git",)),
        Step(id="0207", name="Configure git", command="true", category="dev-tools", tags=("git", "config")),
        Step(id="0402", name="Unit tests", command="true", category="testing"),
        Step(id="lint", name="Lint", command="true"),
    ])


class TestValidateStepId:
    """Tests for validate_step_id."""

    def test_valid_ids(self):
        """Numeric and named ids pass."""
        for step_id in ["0001", "0201", "lint", "build.docs", "a_b-c"]:
            assert validate_step_id(step_id) == step_id

    def test_numeric_id_must_be_quoted(self):
        """An int id (unquoted YAML) is rejected with a hint."""
        with pytest.raises(ManifestError, match="quote numeric ids"):
            validate_step_id(201)

    def test_empty_id(self):
        with pytest.raises(ManifestError, match="cannot be empty"):
            validate_step_id("")

    def test_invalid_characters(self):
        with pytest.raises(ManifestError, match="must match"):
            validate_step_id("bad id")


class TestCategoryBands:
    """Numeric ids fall into category bands."""

    def test_bands(self):
        assert category_for_number(1) == "environment"
        assert category_for_number(201) == "dev-tools"
        assert category_for_number(402) == "testing"
        assert category_for_number(350) is None


class TestStepRegistry:
    """Tests for StepRegistry lookups and selectors."""

    def test_duplicate_ids_rejected(self):
        """Step ids are unique across the registry."""
        steps = [Step(id="0001", name="a", command="true"), Step(id="0001", name="b", command="true")]
        with pytest.raises(ManifestError, match="duplicate step id: 0001"):
            StepRegistry(steps)

    def test_get_unknown(self):
        with pytest.raises(UnknownStepError):
            _registry().get("9999")

    def test_contains_and_len(self):
        registry = _registry()
        assert "0201" in registry
        assert "9999" not in registry
        assert len(registry) == 5

    def test_resolve_exact(self):
        assert [s.id for s in _registry().resolve("0201")] == ["0201"]

    def test_resolve_range(self):
        """Inclusive numeric ranges keep manifest order."""
        assert [s.id for s in _registry().resolve("0200-0299")] == ["0201", "0207"]

    def test_resolve_category(self):
        assert [s.id for s in _registry().resolve("category:dev-*")] == ["0201", "0207"]

    def test_resolve_tag(self):
        assert [s.id for s in _registry().resolve("tag:config")] == ["0207"]

    def test_resolve_glob(self):
        assert [s.id for s in _registry().resolve("04*")] == ["0402"]

    def test_resolve_unknown_raises(self):
        """A selector matching nothing names the selector and phase."""
        with pytest.raises(UnknownStepError) as exc_info:
            _registry().resolve("0999", phase="setup")
        assert exc_info.value.selector == "0999"
        assert "phase 'setup'" in str(exc_info.value)

    def test_resolve_optional(self):
        """Optional selectors may match nothing."""
        registry = _registry()
        assert registry.resolve("0999?") == []
        assert registry.resolve({"select": "tag:docker", "optional": True}) == []

    def test_categories_grouped(self):
        categories = _registry().categories()
        assert list(categories) == ["environment", "dev-tools", "testing", "uncategorized"]
        assert [s.id for s in categories["dev-tools"]] == ["0201", "0207"]


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_load_manifest(self, write_yaml, tmp_path):
        """Steps load with defaults and derived categories."""
        path = write_yaml("steps.yaml", {
            "steps": [
                {"id": "0201", "name": "Install git", "command": ["git", "--version"], "exclusive": True},
                {"id": "0402", "command": "pytest -q", "timeout": 60, "retries": 2,
                 "parameters": {"coverage": {"type": "bool", "default": False}}},
            ]
        })

        registry = load_manifest(path)

        git = registry.get("0201")
        assert git.command == ("git", "--version")
        assert git.category == "dev-tools"
        assert git.exclusive is True
        assert git.cwd == str(tmp_path.resolve())

        tests = registry.get("0402")
        assert tests.name == "0402"
        assert tests.category == "testing"
        assert tests.timeout == 60.0
        assert tests.retries == 2
        assert tests.parameters["coverage"].type == "bool"

    def test_unquoted_id_in_yaml(self, tmp_path):
        """YAML reads 0201 as a number; the manifest is rejected."""
        path = tmp_path / "steps.yaml"
        path.write_text("steps:\n  - id: 201\n    command: 'true'\n")
        with pytest.raises(ManifestError, match="quote numeric ids"):
            load_manifest(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError, match="not found"):
            load_manifest(tmp_path / "missing.yaml")

    def test_missing_steps_list(self, write_yaml):
        path = write_yaml("steps.yaml", {"things": []})
        with pytest.raises(ManifestError, match="'steps' list"):
            load_manifest(path)

    def test_missing_command(self, write_yaml):
        path = write_yaml("steps.yaml", {"steps": [{"id": "0001"}]})
        with pytest.raises(ManifestError, match="command is required"):
            load_manifest(path)

    def test_unknown_parameter_type(self, write_yaml):
        path = write_yaml("steps.yaml", {
            "steps": [{"id": "0001", "command": "true", "parameters": {"x": "date"}}]
        })
        with pytest.raises(ManifestError, match="unknown type 'date'"):
            load_manifest(path)


class TestGetManifestPath:
    """Tests for manifest path precedence."""

    def test_explicit_wins(self, monkeypatch):
        monkeypatch.setenv("ORCHESTRATE_MANIFEST", "/env/steps.yaml")
        assert get_manifest_path("custom.yaml", {"manifest": "cfg.yaml"}) == Path("custom.yaml")

    def test_env_over_config(self, monkeypatch):
        monkeypatch.setenv("ORCHESTRATE_MANIFEST", "/env/steps.yaml")
        assert get_manifest_path(None, {"manifest": "cfg.yaml"}) == Path("/env/steps.yaml")

    def test_config_relative_to_config_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("ORCHESTRATE_MANIFEST", raising=False)
        config = {"manifest": "steps/all.yaml", "_path": str(tmp_path / "orchestrate.yaml")}
        assert get_manifest_path(None, config) == tmp_path / "steps" / "all.yaml"

    def test_default(self, monkeypatch):
        monkeypatch.delenv("ORCHESTRATE_MANIFEST", raising=False)
        assert get_manifest_path() == Path("steps.yaml")

"""Tests for configuration loading and profile resolution."""

import logging
from unittest.mock import MagicMock

import pytest
import yaml

from orchestrate.config import ConfigurationContext, load_config
from orchestrate.context import build_context
from orchestrate.environment import EnvironmentAdapter
from orchestrate.errors import ConfigError

CONFIG = {
    "default_profile": "dev",
    "defaults": {
        "max_concurrency": 2,
        "features": {"docker": False, "git": True},
        "variables": {"branch": "main", "region": "eu"},
    },
    "profiles": {
        "dev": {"features": {"docker": True}},
        "ci": {
            "max_concurrency": 8,
            "step_timeout": 600,
            "features": {"git-hooks": "yes"},
            "variables": {"branch": "release"},
        },
    },
}


def _adapter(answer=False, interactive=True):
    prompt = MagicMock(return_value=answer)
    adapter = EnvironmentAdapter(non_interactive=not interactive, environ={}, prompt=prompt)
    adapter.is_interactive = lambda: interactive
    return adapter, prompt


class TestLoadConfig:
    """Tests for load_config."""

    def test_explicit_path(self, write_yaml):
        path = write_yaml("orchestrate.yaml", CONFIG)
        config = load_config(str(path))
        assert config["default_profile"] == "dev"
        assert config["_path"] == str(path.resolve())

    def test_explicit_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_search_path_env(self, write_yaml, monkeypatch):
        path = write_yaml("elsewhere/config.yaml", {"manifest": "steps.yaml"})
        monkeypatch.setenv("ORCHESTRATE_CONFIG", str(path))
        assert load_config()["manifest"] == "steps.yaml"

    def test_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ORCHESTRATE_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert load_config() == {}

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "orchestrate.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="must contain a YAML mapping"):
            load_config(str(path))


class TestConfigurationContext:
    """Tests for profile-resolved settings."""

    def test_default_profile_from_config(self):
        config = ConfigurationContext(CONFIG, environ={})
        assert config.profile == "dev"

    def test_unknown_profile(self):
        with pytest.raises(ConfigError, match="Unknown profile 'prod'"):
            ConfigurationContext(CONFIG, profile="prod", environ={})

    def test_settings_precedence(self):
        """CLI override > profile > defaults > engine default."""
        ci = ConfigurationContext(CONFIG, profile="ci", environ={})
        assert ci.get("max_concurrency") == 8
        assert ci.get("step_timeout") == 600
        assert ci.get("grace_period") == 5.0

        dev = ConfigurationContext(CONFIG, profile="dev", environ={})
        assert dev.get("max_concurrency") == 2

        overridden = ConfigurationContext(CONFIG, profile="ci", overrides={"max_concurrency": 1, "step_timeout": None}, environ={})
        assert overridden.get("max_concurrency") == 1
        assert overridden.get("step_timeout") == 600

    def test_variables_merge(self):
        config = ConfigurationContext(CONFIG, profile="ci", environ={})
        assert config.variables() == {"branch": "release", "region": "eu"}

    def test_feature_layers(self):
        """Profile overrides defaults, env overrides profile, CLI wins."""
        dev = ConfigurationContext(CONFIG, profile="dev", environ={})
        assert dev.is_feature_enabled("docker") is True
        assert dev.is_feature_enabled("git") is True

        ci = ConfigurationContext(CONFIG, profile="ci", environ={"ORCHESTRATE_FEATURE_GIT": "0"})
        assert ci.is_feature_enabled("docker") is False
        assert ci.is_feature_enabled("git") is False
        assert ci.is_feature_enabled("git_hooks") is True
        assert ci.is_feature_enabled("git-hooks") is True

        cli = ConfigurationContext(CONFIG, profile="ci", features=["docker"], environ={})
        assert cli.is_feature_enabled("docker") is True

    def test_request_enabled_feature_does_not_prompt(self):
        adapter, prompt = _adapter(answer=False)
        config = ConfigurationContext(CONFIG, profile="dev", environment=adapter, environ={})
        assert config.request_feature_enable("docker") is True
        prompt.assert_not_called()

    def test_request_feature_approved(self):
        adapter, prompt = _adapter(answer=True)
        config = ConfigurationContext(CONFIG, profile="ci", environment=adapter, environ={})

        assert config.request_feature_enable("docker") is True
        assert config.is_feature_enabled("docker") is True
        prompt.assert_called_once()

    def test_request_feature_declined_is_remembered(self):
        """A declined feature is not asked for again in the same run."""
        adapter, prompt = _adapter(answer=False)
        config = ConfigurationContext(CONFIG, profile="ci", environment=adapter, environ={})

        assert config.request_feature_enable("docker") is False
        assert config.request_feature_enable("docker") is False
        assert prompt.call_count == 1

    def test_request_feature_non_interactive(self):
        adapter, prompt = _adapter(answer=True, interactive=False)
        config = ConfigurationContext(CONFIG, profile="ci", environment=adapter, environ={})

        assert config.request_feature_enable("docker") is False
        prompt.assert_not_called()

    def test_approved_feature_persisted(self, tmp_path):
        persist = tmp_path / "features.yaml"
        raw = dict(CONFIG, persist_features=str(persist))
        adapter, _ = _adapter(answer=True)

        config = ConfigurationContext(raw, profile="ci", environment=adapter, environ={})
        config.request_feature_enable("docker")

        assert yaml.safe_load(persist.read_text()) == {"features": {"docker": True}}
        reloaded = ConfigurationContext(raw, profile="ci", environ={})
        assert reloaded.is_feature_enabled("docker") is True

    def test_persist_failure_keeps_feature_enabled(self, tmp_path, caplog):
        """An unwritable feature file is logged; the feature stays on for the run."""
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        raw = dict(CONFIG, persist_features=str(blocker / "features.yaml"))
        adapter, _ = _adapter(answer=True)
        config = ConfigurationContext(raw, profile="ci", environment=adapter, environ={})

        with caplog.at_level(logging.WARNING):
            assert config.request_feature_enable("docker") is True

        assert config.is_feature_enabled("docker") is True
        assert "Could not persist feature 'docker'" in caplog.text


class TestBuildContext:
    """Tests for build_context."""

    def test_context_from_config(self):
        adapter, _ = _adapter(interactive=False)
        config = ConfigurationContext(CONFIG, profile="ci", environment=adapter, environ={})

        context = build_context(config, adapter, dry_run=True, variables={"region": "us"})

        assert context.profile == "ci"
        assert context.interactive is False
        assert context.dry_run is True
        assert context.max_concurrency == 8
        assert context.step_timeout == 600.0
        assert context.variables == {"branch": "release", "region": "us"}
        assert context.features["git_hooks"] is True
        assert context.cancelled is False

    def test_cancel(self):
        adapter, _ = _adapter(interactive=False)
        context = build_context(ConfigurationContext({}, environ={}), adapter)
        context.cancel()
        context.cancel()
        assert context.cancelled is True

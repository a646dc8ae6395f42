# Copyright 2025 Orchestrate Contributors
# SPDX-License-Identifier: Apache-2.0

"""
Configuration context for orchestrate.

Loads orchestrate.yaml and resolves values for one profile. Layers, lowest
to highest priority:

1. defaults:              shared settings and feature flags
2. profiles.<profile>:    profile-specific settings and feature flags
3. persisted overrides:   features enabled at a previous prompt
4. ORCHESTRATE_FEATURE_*: environment overrides
5. CLI overrides:         --feature / --max-concurrency
"""

import logging
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from orchestrate.environment import EnvironmentAdapter
from orchestrate.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_PROFILE = "default"
FEATURE_ENV_PREFIX = "ORCHESTRATE_FEATURE_"

ENGINE_DEFAULTS: Dict[str, Any] = {
    "max_concurrency": 4,
    "step_timeout": None,
    "grace_period": 5.0,
}


def get_config_search_paths() -> List[Path]:
    """Config file locations in priority order.

    Order:
    1. $ORCHESTRATE_CONFIG (if set)
    2. ./orchestrate.yaml (repo-local)
    3. ~/.orchestrate/config.yaml (user-local)
    """
    paths = []
    env_path = os.environ.get("ORCHESTRATE_CONFIG")
    if env_path:
        paths.append(Path(env_path).expanduser())
    paths.append(Path("./orchestrate.yaml"))
    paths.append(Path("~/.orchestrate/config.yaml").expanduser())
    return paths


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a YAML mapping")
    return data


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load the configuration file.

    An explicit path must exist. Without one, the first existing file on the
    search path is used, and a missing file yields an empty configuration.

    Returns:
        Config dict; the loaded file path is stored under "_path".

    Raises:
        FileNotFoundError: If an explicit config path does not exist.
        ConfigError: If the file is not a valid YAML mapping.
    """
    if config_path:
        path = Path(config_path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        config = _read_yaml(path)
        config["_path"] = str(path.resolve())
        return config

    for path in get_config_search_paths():
        if path.exists():
            config = _read_yaml(path)
            config["_path"] = str(path.resolve())
            logger.debug(f"Loaded config from {path}")
            return config

    logger.debug("No config file found, using defaults")
    return {}


def _to_bool(value: Any) -> bool:
    """Convert value to boolean, handling strings from env vars and YAML."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "on")
    return bool(value)


def _normalize_feature(name: str) -> str:
    return name.strip().lower().replace("-", "_")


class ConfigurationContext:
    """Profile-resolved view of the configuration, plus runtime feature gating."""

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        profile: Optional[str] = None,
        environment: Optional[EnvironmentAdapter] = None,
        overrides: Optional[Dict[str, Any]] = None,
        features: Optional[Iterable[str]] = None,
        environ: Optional[Dict[str, str]] = None,
    ):
        """
        Args:
            config: Raw config dict from load_config
            profile: Profile name (defaults to config's default_profile or "default")
            environment: Adapter used when a disabled feature is requested
            overrides: CLI setting overrides (e.g. max_concurrency)
            features: Features enabled on the command line
            environ: Environment for ORCHESTRATE_FEATURE_* lookups

        Raises:
            ConfigError: If the profile is not defined in the configuration.
        """
        self.config = config or {}
        self.profile = profile or self.config.get("default_profile") or DEFAULT_PROFILE
        self.environment = environment
        self.overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        self.environ = environ if environ is not None else os.environ
        self._lock = threading.Lock()
        self._declined: set = set()

        profiles = self.config.get("profiles") or {}
        if not isinstance(profiles, dict):
            raise ConfigError("'profiles' must be a mapping of profile name to settings")
        if profiles and self.profile != DEFAULT_PROFILE and self.profile not in profiles:
            known = ", ".join(sorted(profiles))
            raise ConfigError(f"Unknown profile '{self.profile}' (known: {known})")

        self._defaults = self.config.get("defaults") or {}
        self._profile_section = profiles.get(self.profile) or {}
        self._features = self._resolve_features(features or [])

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve a setting: CLI override > profile > defaults > top level > engine default."""
        if key in self.overrides:
            return self.overrides[key]
        for source in (self._profile_section, self._defaults, self.config):
            if isinstance(source, dict) and key in source:
                return source[key]
        if key in ENGINE_DEFAULTS:
            return ENGINE_DEFAULTS[key]
        return default

    def variables(self) -> Dict[str, Any]:
        """Profile variables merged over default variables."""
        merged: Dict[str, Any] = {}
        merged.update(self._defaults.get("variables") or {})
        merged.update(self._profile_section.get("variables") or {})
        return merged

    @property
    def config_dir(self) -> Path:
        path = self.config.get("_path")
        return Path(path).parent if path else Path.cwd()

    def playbook_dirs(self) -> List[Path]:
        """Configured playbook directories, relative to the config file."""
        dirs = self.get("playbook_dirs") or []
        if isinstance(dirs, str):
            dirs = [dirs]
        return [self.config_dir / Path(d).expanduser() for d in dirs]

    # ------------------------------------------------------------------
    # Features
    # ------------------------------------------------------------------

    def _persist_path(self) -> Optional[Path]:
        target = self.get("persist_features")
        if not target:
            return None
        path = Path(str(target)).expanduser()
        return path if path.is_absolute() else self.config_dir / path

    def _resolve_features(self, cli_features: Iterable[str]) -> Dict[str, bool]:
        features: Dict[str, bool] = {}
        for source in (self._defaults.get("features"), self._profile_section.get("features")):
            if isinstance(source, dict):
                for name, value in source.items():
                    features[_normalize_feature(str(name))] = _to_bool(value)

        persist_path = self._persist_path()
        if persist_path and persist_path.exists():
            persisted = _read_yaml(persist_path).get("features") or {}
            for name, value in persisted.items():
                features[_normalize_feature(str(name))] = _to_bool(value)

        for key, value in self.environ.items():
            if key.startswith(FEATURE_ENV_PREFIX):
                features[_normalize_feature(key[len(FEATURE_ENV_PREFIX):])] = _to_bool(value)

        for name in cli_features:
            features[_normalize_feature(name)] = True
        return features

    def features(self) -> Dict[str, bool]:
        """Snapshot of resolved feature flags."""
        with self._lock:
            return dict(self._features)

    def is_feature_enabled(self, name: str) -> bool:
        with self._lock:
            return self._features.get(_normalize_feature(name), False)

    def request_feature_enable(self, name: str) -> bool:
        """Ask to enable a disabled feature for this run.

        The interactivity decision belongs to the environment adapter; a
        declined or skipped request is remembered for the rest of the run.

        Returns:
            True if the feature is (now) enabled.
        """
        key = _normalize_feature(name)
        if self.is_feature_enabled(key):
            return True
        with self._lock:
            if key in self._declined:
                return False
        if self.environment is None:
            logger.info(f"Feature '{name}' is disabled and no environment adapter is available")
            return False

        approved = self.environment.confirm(
            f"Feature '{name}' is disabled for profile '{self.profile}'. Enable it?"
        )
        with self._lock:
            if not approved:
                self._declined.add(key)
                return False
            self._features[key] = True

        logger.info(f"Feature '{name}' enabled at runtime")
        self._persist_feature(key)
        return True

    def _persist_feature(self, name: str) -> None:
        path = self._persist_path()
        if path is None:
            return
        try:
            with self._lock:
                data = _read_yaml(path) if path.exists() else {}
                data.setdefault("features", {})[name] = True
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "w") as f:
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
        except (OSError, ConfigError) as e:
            # Still enabled for this run
            logger.warning(f"Could not persist feature '{name}' to {path}: {e}")
            return
        logger.debug(f"Persisted feature '{name}' to {path}")

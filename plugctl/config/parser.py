"""Configuration file parsing utilities."""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from plugctl.config.schemas import FeatureFlags, MarketplaceIndex, PluginManifest, Settings

logger = logging.getLogger(__name__)

ENV_PREFIX = "PLUGCTL_"
ENV_FLAG_PREFIX = "PLUGCTL_FLAG_"
CONFIG_FILENAME = "config.yaml"
MANIFEST_LOCATIONS = (Path(".claude-plugin") / "plugin.json", Path("plugin.json"))


class ConfigError(Exception):
    """Error loading or parsing configuration."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(message)


def load_json(path: Path) -> dict[str, Any]:
    """Load and parse a JSON file.

    Args:
        path: Path to the JSON file

    Returns:
        Parsed JSON as a dictionary

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    if not path.exists():
        raise ConfigError(f"File not found: {path}", path)

    try:
        with open(path, encoding="utf-8") as f:
            result = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}", path) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}", path) from e

    if not isinstance(result, dict):
        raise ConfigError(f"JSON file must contain an object: {path}", path)
    return result


def load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Parsed YAML as a dictionary

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    if not path.exists():
        raise ConfigError(f"File not found: {path}", path)

    try:
        with open(path, encoding="utf-8") as f:
            result = yaml.safe_load(f)
            if result is None:
                return {}
            if not isinstance(result, dict):
                raise ConfigError(f"YAML file must contain a mapping: {path}", path)
            return result
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", path) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}", path) from e


def save_yaml(path: Path, data: dict[str, Any]) -> None:
    """Save data to a YAML file.

    Args:
        path: Path to write to
        data: Data to serialize
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)


def _env_settings(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect PLUGCTL_* environment variables as a settings mapping."""
    values: dict[str, Any] = {}
    flags: dict[str, Any] = {}
    for key, value in environ.items():
        if key.startswith(ENV_FLAG_PREFIX):
            name = key[len(ENV_FLAG_PREFIX) :].lower()
            if name in FeatureFlags.model_fields:
                flags[name] = value
        elif key.startswith(ENV_PREFIX):
            name = key[len(ENV_PREFIX) :].lower()
            if name in Settings.model_fields and name != "flags":
                values[name] = value
    if flags:
        values["flags"] = flags
    return values


def _merge(base: dict[str, Any], layer: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay ``layer`` on ``base``; the flags mapping is merged key by key."""
    merged = dict(base)
    for key, value in layer.items():
        if value is None:
            continue
        if key == "flags" and isinstance(value, Mapping):
            flags = dict(merged.get("flags") or {})
            flags.update({k: v for k, v in value.items() if v is not None})
            merged["flags"] = flags
        else:
            merged[key] = value
    return merged


def load_settings(
    project_root: Path,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load settings with precedence: overrides > environment > config.yaml > defaults.

    The config file is read from ``<plugin_dir>/config.yaml``, where
    ``plugin_dir`` itself comes from the overrides, the environment, or the
    default. Relative directories are resolved against ``project_root``.

    Args:
        project_root: Directory that relative paths are resolved against
        overrides: Values given on the command line (None values are ignored)
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Validated Settings with absolute directories

    Raises:
        ConfigError: If the config file or any value is invalid
    """
    if environ is None:
        environ = os.environ
    overrides = dict(overrides or {})
    env_values = _env_settings(environ)

    plugin_dir = Path(
        overrides.get("plugin_dir")
        or env_values.get("plugin_dir")
        or Settings.model_fields["plugin_dir"].default
    )
    if not plugin_dir.is_absolute():
        plugin_dir = project_root / plugin_dir

    config_path = plugin_dir / CONFIG_FILENAME
    file_values: dict[str, Any] = {}
    if config_path.exists():
        file_values = load_yaml(config_path)
        logger.debug("Loaded settings from %s", config_path)

    data = _merge(_merge(file_values, env_values), overrides)
    data["plugin_dir"] = plugin_dir

    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}", config_path) from e

    if not settings.install_dir.is_absolute():
        settings.install_dir = project_root / settings.install_dir
    if settings.source and "://" not in settings.source and not settings.source.startswith("file:"):
        if not Path(settings.source).is_absolute():
            settings.source = str(project_root / settings.source)
    return settings


def save_settings(settings: Settings) -> Path:
    """Write settings to ``<plugin_dir>/config.yaml``.

    Returns:
        Path of the written file
    """
    config_path = settings.plugin_dir / CONFIG_FILENAME
    data = settings.model_dump(mode="json", exclude={"plugin_dir"})
    save_yaml(config_path, data)
    return config_path


def find_manifest_path(plugin_path: Path) -> Path | None:
    """Locate plugin.json inside an artifact tree, if present."""
    for relative in MANIFEST_LOCATIONS:
        candidate = plugin_path / relative
        if candidate.is_file():
            return candidate
    return None


def load_plugin_manifest(plugin_path: Path) -> PluginManifest:
    """Load plugin manifest from .claude-plugin/plugin.json or plugin.json.

    Args:
        plugin_path: Path to the plugin artifact directory

    Returns:
        Parsed PluginManifest

    Raises:
        ConfigError: If the file is missing or invalid
    """
    manifest_path = find_manifest_path(plugin_path)
    if manifest_path is None:
        raise ConfigError(f"No plugin.json found in {plugin_path}", plugin_path)

    data = load_json(manifest_path)

    try:
        return PluginManifest.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid plugin manifest: {e}", manifest_path) from e


def load_marketplace_index(root: Path) -> MarketplaceIndex | None:
    """Load marketplace.json from a local artifact source, if it exists.

    Raises:
        ConfigError: If the file exists but is invalid
    """
    index_path = root / "marketplace.json"
    if not index_path.exists():
        return None

    data = load_json(index_path)
    try:
        return MarketplaceIndex.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid marketplace index: {e}", index_path) from e


def find_project_root(start_path: Path | None = None) -> Path | None:
    """Find the project root by looking for a .claude-plugin directory.

    Args:
        start_path: Directory to start searching from (defaults to cwd)

    Returns:
        Path to project root, or None if not found
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    while current != current.parent:
        if (current / ".claude-plugin").is_dir():
            return current
        current = current.parent

    # Check root
    if (current / ".claude-plugin").is_dir():
        return current

    return None

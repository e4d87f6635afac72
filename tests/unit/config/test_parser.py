"""Tests for plugctl.config.parser module."""

import json
from pathlib import Path

import pytest
import yaml

from plugctl.config.parser import (
    ConfigError,
    find_manifest_path,
    find_project_root,
    load_json,
    load_marketplace_index,
    load_plugin_manifest,
    load_settings,
    load_yaml,
    save_settings,
)


class TestLoadJson:
    """Tests for load_json function."""

    def test_loads_valid_json(self, temp_dir: Path):
        """Loads valid JSON file."""
        file_path = temp_dir / "test.json"
        file_path.write_text('{"key": "value"}')

        assert load_json(file_path) == {"key": "value"}

    def test_raises_for_missing_file(self, temp_dir: Path):
        """Raises ConfigError for missing file."""
        with pytest.raises(ConfigError, match="File not found"):
            load_json(temp_dir / "nonexistent.json")

    def test_raises_for_invalid_json(self, temp_dir: Path):
        """Raises ConfigError for invalid JSON."""
        file_path = temp_dir / "invalid.json"
        file_path.write_text("not valid json {")

        with pytest.raises(ConfigError, match="Invalid JSON"):
            load_json(file_path)

    def test_raises_for_non_object(self, temp_dir: Path):
        """A top-level array is rejected."""
        file_path = temp_dir / "list.json"
        file_path.write_text("[1, 2]")

        with pytest.raises(ConfigError, match="must contain an object"):
            load_json(file_path)


class TestLoadYaml:
    """Tests for load_yaml function."""

    def test_empty_file_is_empty_mapping(self, temp_dir: Path):
        """An empty YAML file loads as {}."""
        file_path = temp_dir / "empty.yaml"
        file_path.write_text("")

        assert load_yaml(file_path) == {}

    def test_raises_for_invalid_yaml(self, temp_dir: Path):
        """Raises ConfigError for invalid YAML."""
        file_path = temp_dir / "bad.yaml"
        file_path.write_text("key: [unclosed")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_yaml(file_path)


class TestLoadSettings:
    """Tests for load_settings precedence."""

    def test_defaults(self, project_dir: Path):
        """Without config, defaults apply and directories are absolute."""
        settings = load_settings(project_dir, environ={})

        assert settings.plugin_dir == project_dir / ".claude-plugin"
        assert settings.install_dir == project_dir / ".claude" / "plugins"
        assert settings.max_cache_size_mb == 500
        assert settings.max_versions_per_plugin == 3
        assert settings.telemetry_enabled is False
        assert settings.flags.enable_rollback is True

    def test_config_file_values(self, project_dir: Path):
        """Values from <plugin_dir>/config.yaml are applied."""
        config = project_dir / ".claude-plugin" / "config.yaml"
        config.parent.mkdir()
        config.write_text(
            yaml.safe_dump({"max_cache_size_mb": 100, "flags": {"enable_rollback": False}})
        )

        settings = load_settings(project_dir, environ={})

        assert settings.max_cache_size_mb == 100
        assert settings.flags.enable_rollback is False
        assert settings.flags.enable_lifecycle_hooks is True

    def test_environment_overrides_file(self, project_dir: Path):
        """PLUGCTL_* variables win over the config file."""
        config = project_dir / ".claude-plugin" / "config.yaml"
        config.parent.mkdir()
        config.write_text(yaml.safe_dump({"max_cache_size_mb": 100}))

        settings = load_settings(
            project_dir,
            environ={"PLUGCTL_MAX_CACHE_SIZE_MB": "250", "PLUGCTL_FLAG_ENABLE_ROLLBACK": "false"},
        )

        assert settings.max_cache_size_mb == 250
        assert settings.flags.enable_rollback is False

    def test_overrides_win_and_none_is_ignored(self, project_dir: Path):
        """Explicit overrides beat the environment; None overrides are skipped."""
        settings = load_settings(
            project_dir,
            {"max_cache_size_mb": 10, "max_versions_per_plugin": None},
            environ={"PLUGCTL_MAX_CACHE_SIZE_MB": "250", "PLUGCTL_MAX_VERSIONS_PER_PLUGIN": "5"},
        )

        assert settings.max_cache_size_mb == 10
        assert settings.max_versions_per_plugin == 5

    def test_unknown_environment_variables_ignored(self, project_dir: Path):
        """PLUGCTL_ variables that name no setting are ignored."""
        settings = load_settings(project_dir, environ={"PLUGCTL_NOT_A_SETTING": "x"})
        assert settings.max_cache_size_mb == 500

    def test_invalid_value_raises(self, project_dir: Path):
        """Out-of-range values raise ConfigError."""
        with pytest.raises(ConfigError, match="Invalid settings"):
            load_settings(project_dir, {"max_cache_size_mb": 0}, environ={})

    def test_relative_source_resolved_against_root(self, project_dir: Path):
        """A relative source path is made absolute."""
        settings = load_settings(project_dir, {"source": "market"}, environ={})
        assert settings.source == str(project_dir / "market")

    def test_file_url_source_kept(self, project_dir: Path):
        """URL sources are left untouched."""
        settings = load_settings(project_dir, {"source": "file:///srv/market"}, environ={})
        assert settings.source == "file:///srv/market"

    def test_save_settings_round_trip(self, project_dir: Path):
        """Saved settings load back with the same values."""
        settings = load_settings(project_dir, {"max_cache_size_mb": 42}, environ={})
        path = save_settings(settings)

        assert path == project_dir / ".claude-plugin" / "config.yaml"
        assert "plugin_dir" not in yaml.safe_load(path.read_text())
        assert load_settings(project_dir, environ={}).max_cache_size_mb == 42


class TestLoadPluginManifest:
    """Tests for load_plugin_manifest function."""

    def test_prefers_claude_plugin_location(self, temp_dir: Path):
        """.claude-plugin/plugin.json is found before plugin.json."""
        (temp_dir / ".claude-plugin").mkdir()
        (temp_dir / ".claude-plugin" / "plugin.json").write_text(
            json.dumps({"name": "a", "version": "1.0.0"})
        )
        (temp_dir / "plugin.json").write_text(json.dumps({"name": "b", "version": "2.0.0"}))

        assert find_manifest_path(temp_dir) == temp_dir / ".claude-plugin" / "plugin.json"
        assert load_plugin_manifest(temp_dir).name == "a"

    def test_falls_back_to_root_plugin_json(self, temp_dir: Path):
        """A root plugin.json is used when .claude-plugin/ is absent."""
        (temp_dir / "plugin.json").write_text(json.dumps({"name": "b", "version": "2.0.0"}))
        assert load_plugin_manifest(temp_dir).version == "2.0.0"

    def test_missing_manifest_raises(self, temp_dir: Path):
        """No manifest raises ConfigError."""
        with pytest.raises(ConfigError, match="No plugin.json"):
            load_plugin_manifest(temp_dir)

    def test_invalid_manifest_raises(self, temp_dir: Path):
        """A manifest without a version is invalid."""
        (temp_dir / "plugin.json").write_text(json.dumps({"name": "b"}))
        with pytest.raises(ConfigError, match="Invalid plugin manifest"):
            load_plugin_manifest(temp_dir)


class TestLoadMarketplaceIndex:
    """Tests for load_marketplace_index function."""

    def test_missing_returns_none(self, temp_dir: Path):
        """No marketplace.json yields None."""
        assert load_marketplace_index(temp_dir) is None

    def test_loads_versions(self, temp_dir: Path):
        """Versions and checksums are parsed."""
        (temp_dir / "marketplace.json").write_text(
            json.dumps(
                {
                    "plugins": {
                        "alpha": {"latest": "1.0.0", "versions": {"1.0.0": {"checksum": "x"}}}
                    }
                }
            )
        )
        index = load_marketplace_index(temp_dir)
        assert index is not None
        assert index.plugins["alpha"].versions["1.0.0"].checksum == "x"


class TestFindProjectRoot:
    """Tests for find_project_root function."""

    def test_finds_root_from_subdirectory(self, temp_dir: Path):
        """Walks up to the directory holding .claude-plugin/."""
        (temp_dir / ".claude-plugin").mkdir()
        nested = temp_dir / "a" / "b"
        nested.mkdir(parents=True)

        assert find_project_root(nested) == temp_dir.resolve()

    def test_returns_none_without_marker(self, temp_dir: Path):
        """Returns None when no marker exists up the tree."""
        nested = temp_dir / "x"
        nested.mkdir()
        result = find_project_root(nested)
        assert result is None or (result / ".claude-plugin").is_dir()

"""Integration tests for CLI commands."""

import json
import os
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from plugctl import __version__
from plugctl.cli.main import app


@pytest.fixture
def runner():
    """Get a CLI test runner."""
    return CliRunner()


@pytest.fixture
def project(runner: CliRunner, temp_dir: Path, marketplace) -> Path:
    """An initialized project pointing at the test marketplace."""
    root = temp_dir / "project"
    root.mkdir()
    result = runner.invoke(app, ["init", "--path", str(root), "--source", str(marketplace.root)])
    assert result.exit_code == 0
    return root


def invoke(runner: CliRunner, project: Path, *args: str):
    return runner.invoke(app, [*args, "--path", str(project)])


def registry_data(project: Path) -> dict:
    path = project / ".claude-plugin" / "registry.json"
    if not path.exists():
        return {"plugins": [], "activePins": []}
    return json.loads(path.read_text())


def installed(project: Path) -> dict[str, str]:
    """Map plugin id to installed version from the registry file."""
    return {p["pluginId"]: p["version"] for p in registry_data(project)["plugins"]}


class TestVersionCommand:
    """Tests for 'plugctl version' command."""

    def test_prints_version(self, runner: CliRunner):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output


class TestInitCommand:
    """Tests for 'plugctl init' command."""

    def test_init_creates_config(self, runner: CliRunner, temp_dir: Path):
        """Init writes .claude-plugin/config.yaml with defaults."""
        result = runner.invoke(app, ["init", "--path", str(temp_dir)])

        assert result.exit_code == 0
        config_path = temp_dir / ".claude-plugin" / "config.yaml"
        assert config_path.exists()

        config = yaml.safe_load(config_path.read_text())
        assert config["max_cache_size_mb"] == 500
        assert config["install_dir"] == ".claude/plugins"

    def test_init_with_options(self, runner: CliRunner, temp_dir: Path, marketplace):
        """Source and cache size are persisted."""
        result = runner.invoke(
            app,
            [
                "init",
                "--source",
                str(marketplace.root),
                "--max-cache-size-mb",
                "25",
                "--path",
                str(temp_dir),
            ],
        )

        assert result.exit_code == 0
        config = yaml.safe_load((temp_dir / ".claude-plugin" / "config.yaml").read_text())
        assert config["source"] == str(marketplace.root)
        assert config["max_cache_size_mb"] == 25

    def test_init_fails_for_existing_project(self, runner: CliRunner, temp_dir: Path):
        """Init fails if the project is already initialized."""
        runner.invoke(app, ["init", "--path", str(temp_dir)])

        result = runner.invoke(app, ["init", "--path", str(temp_dir)])

        assert result.exit_code == 1

    def test_init_fails_for_missing_directory(self, runner: CliRunner, temp_dir: Path):
        result = runner.invoke(app, ["init", "--path", str(temp_dir / "nope")])

        assert result.exit_code == 1


class TestInstallCommand:
    """Tests for 'plugctl install' command."""

    def test_install_and_list(self, runner: CliRunner, project: Path, marketplace):
        """Installed plugins appear in the registry and in 'list'."""
        marketplace.add("alpha", "1.0.0")

        result = invoke(runner, project, "install", "alpha")

        assert result.exit_code == 0
        assert "Install alpha@1.0.0" in result.output
        assert installed(project)["alpha"] == "1.0.0"
        assert (project / ".claude" / "plugins" / "alpha").is_symlink()

        listed = invoke(runner, project, "list")
        assert listed.exit_code == 0
        assert "No plugins installed" not in listed.output

    def test_install_exact_version(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        marketplace.add("alpha", "2.0.0")

        result = invoke(runner, project, "install", "alpha@1.0.0")

        assert result.exit_code == 0
        assert installed(project)["alpha"] == "1.0.0"

    def test_install_unknown_plugin_fails(self, runner: CliRunner, project: Path):
        """A plugin missing from the source exits with status 1."""
        result = invoke(runner, project, "install", "ghost")

        assert result.exit_code == 1
        assert "PLUGIN_NOT_FOUND" in result.output

    def test_install_without_source_fails(self, runner: CliRunner, temp_dir: Path):
        runner.invoke(app, ["init", "--path", str(temp_dir)])

        result = runner.invoke(app, ["install", "alpha", "--path", str(temp_dir)])

        assert result.exit_code == 1
        assert "SOURCE_NOT_CONFIGURED" in result.output

    def test_install_dry_run(self, runner: CliRunner, project: Path, marketplace):
        """Dry runs leave no registry behind."""
        marketplace.add("alpha", "1.0.0")

        result = invoke(runner, project, "install", "alpha", "--dry-run")

        assert result.exit_code == 0
        assert "Dry run" in result.output
        assert "alpha" not in installed(project)

    def test_install_json_output(self, runner: CliRunner, project: Path, marketplace):
        """--json prints the transaction summary."""
        marketplace.add("alpha", "1.0.0")

        result = invoke(runner, project, "install", "alpha", "--json")

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["operation"] == "install"
        assert data["pluginId"] == "alpha"
        assert data["success"] is True
        assert data["transactionId"].startswith("tx-")

    def test_install_script_requires_consent(self, runner: CliRunner, project: Path, marketplace):
        """Lifecycle scripts block the install until their digest is approved."""
        marketplace.add(
            "alpha",
            "1.0.0",
            files={"install.py": "print('hi')\n"},
            lifecycle={"install": "install.py"},
        )

        result = invoke(runner, project, "install", "alpha")

        assert result.exit_code == 1
        assert "LIFECYCLE_CONSENT_REQUIRED" in result.output
        assert "--consent" in result.output
        assert "alpha" not in installed(project)


class TestUpdateCommands:
    """Tests for 'plugctl update' and 'plugctl outdated'."""

    def test_outdated_and_update(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")
        marketplace.add("alpha", "1.1.0")

        outdated = invoke(runner, project, "outdated")
        assert outdated.exit_code == 0
        assert "update available" in outdated.output

        result = invoke(runner, project, "update")

        assert result.exit_code == 0
        assert "1.0.0 -> 1.1.0" in result.output
        assert installed(project)["alpha"] == "1.1.0"

    def test_update_with_nothing_installed(self, runner: CliRunner, project: Path):
        result = invoke(runner, project, "update")

        assert result.exit_code == 0
        assert "No plugins installed" in result.output

    def test_update_duplicate_plugins_fails(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")

        result = invoke(runner, project, "update", "alpha", "alpha")

        assert result.exit_code == 1


class TestRollbackCommands:
    """Tests for 'plugctl rollback' and 'plugctl rollback-targets'."""

    @pytest.fixture
    def updated(self, runner: CliRunner, project: Path, marketplace) -> Path:
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")
        marketplace.add("alpha", "1.1.0")
        invoke(runner, project, "update", "alpha")
        return project

    def test_rollback_targets(self, runner: CliRunner, updated: Path):
        result = invoke(runner, updated, "rollback-targets", "alpha")

        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_rollback_to_previous(self, runner: CliRunner, updated: Path):
        result = invoke(runner, updated, "rollback", "alpha")

        assert result.exit_code == 0
        assert installed(updated)["alpha"] == "1.0.0"

    def test_rollback_to_uncached_version(self, runner: CliRunner, updated: Path):
        """Rolling back to a version that is not cached leaves the registry alone."""
        before = (updated / ".claude-plugin" / "registry.json").read_text()

        result = invoke(runner, updated, "rollback", "alpha", "--to", "0.9.0")

        assert result.exit_code == 1
        assert "NOT_CACHED" in result.output
        assert (updated / ".claude-plugin" / "registry.json").read_text() == before

    def test_no_rollback_targets(self, runner: CliRunner, project: Path):
        result = invoke(runner, project, "rollback-targets", "ghost")

        assert result.exit_code == 0
        assert "No rollback targets" in result.output


class TestPinCommands:
    """Tests for 'plugctl pin' and 'plugctl unpin'."""

    def test_pin_and_unpin(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")

        pinned = invoke(runner, project, "pin", "alpha")
        assert pinned.exit_code == 0
        assert registry_data(project)["activePins"] == ["alpha"]

        listed = invoke(runner, project, "list", "--pinned")
        assert "No plugins installed" not in listed.output

        unpinned = invoke(runner, project, "unpin", "alpha")
        assert unpinned.exit_code == 0
        assert registry_data(project)["activePins"] == []

    def test_pin_unknown_plugin_fails(self, runner: CliRunner, project: Path):
        result = invoke(runner, project, "pin", "ghost")

        assert result.exit_code == 1

    def test_unpin_unknown_plugin_succeeds(self, runner: CliRunner, project: Path):
        """Unpinning a plugin that was never installed is a no-op."""
        result = invoke(runner, project, "unpin", "ghost")

        assert result.exit_code == 0
        assert "not pinned" in result.output


class TestUninstallCommand:
    """Tests for 'plugctl uninstall' command."""

    def test_uninstall_removes_record_and_link(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")

        result = invoke(runner, project, "uninstall", "alpha", "--retention", "purge")

        assert result.exit_code == 0
        assert "alpha" not in installed(project)
        assert not (project / ".claude" / "plugins" / "alpha").exists()
        assert not (project / ".claude-plugin" / "cache" / "alpha" / "1.0.0").exists()

    def test_uninstall_not_installed(self, runner: CliRunner, project: Path):
        result = invoke(runner, project, "uninstall", "ghost")

        assert result.exit_code == 1


class TestVerifyCommand:
    """Tests for 'plugctl verify' command."""

    def test_verify_healthy(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")

        result = invoke(runner, project, "verify")

        assert result.exit_code == 0
        assert "healthy" in result.output

    def test_verify_broken_link(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")
        (project / ".claude" / "plugins" / "alpha").unlink()

        result = invoke(runner, project, "verify", "alpha")

        assert result.exit_code == 1


class TestCacheCommands:
    """Tests for the 'plugctl cache' sub-commands."""

    @pytest.fixture
    def cached_project(self, runner: CliRunner, project: Path, marketplace) -> Path:
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")
        return project

    def test_stats(self, runner: CliRunner, cached_project: Path):
        result = invoke(runner, cached_project, "cache", "stats")

        assert result.exit_code == 0
        assert "1 versions of 1 plugins" in result.output

    def test_list(self, runner: CliRunner, cached_project: Path):
        result = invoke(runner, cached_project, "cache", "list")

        assert result.exit_code == 0
        assert "alpha" in result.output

    def test_list_empty(self, runner: CliRunner, project: Path):
        result = invoke(runner, project, "cache", "list")

        assert result.exit_code == 0
        assert "Cache is empty" in result.output

    def test_evict_within_limits(self, runner: CliRunner, cached_project: Path):
        result = invoke(runner, cached_project, "cache", "evict")

        assert result.exit_code == 0
        assert "within its limits" in result.output

    def test_rebuild(self, runner: CliRunner, cached_project: Path):
        """Rebuilding recovers entries after the index is lost."""
        (cached_project / ".claude-plugin" / "cache" / "index.json").unlink()

        result = invoke(runner, cached_project, "cache", "rebuild")

        assert result.exit_code == 0
        assert "1 entries" in result.output

    def test_validate(self, runner: CliRunner, cached_project: Path):
        result = invoke(runner, cached_project, "cache", "validate")

        assert result.exit_code == 0

        tampered = cached_project / ".claude-plugin" / "cache" / "alpha" / "1.0.0" / "README.md"
        tampered.write_text("changed")

        result = invoke(runner, cached_project, "cache", "validate")
        assert result.exit_code == 1
        assert "alpha@1.0.0" in result.output

    def test_cleanup_tmp(self, runner: CliRunner, project: Path):
        """Old staging directories are removed."""
        orphan = project / ".claude-plugin" / "tmp" / "tx-1-deadbeef"
        orphan.mkdir(parents=True)
        (orphan / "file").write_text("x")
        os.utime(orphan, (1_000_000_000, 1_000_000_000))

        result = invoke(runner, project, "cache", "cleanup-tmp", "--max-age-hours", "0")

        assert result.exit_code == 0
        assert not orphan.exists()


class TestRegistryCommands:
    """Tests for the 'plugctl registry' sub-commands."""

    def test_validate_backup_and_restore(self, runner: CliRunner, project: Path, marketplace):
        marketplace.add("alpha", "1.0.0")
        invoke(runner, project, "install", "alpha")

        assert invoke(runner, project, "registry", "validate").exit_code == 0
        assert invoke(runner, project, "registry", "backup").exit_code == 0

        backups = sorted((project / ".claude-plugin" / "backups").glob("*.json"))
        assert backups
        listed = invoke(runner, project, "registry", "backups")
        assert listed.exit_code == 0

        invoke(runner, project, "uninstall", "alpha", "--retention", "keep-all")
        assert "alpha" not in installed(project)

        restored = invoke(runner, project, "registry", "restore", str(backups[-1]))

        assert restored.exit_code == 0
        assert "alpha" in installed(project)

    def test_validate_reports_violations(self, runner: CliRunner, project: Path):
        registry_path = project / ".claude-plugin" / "registry.json"
        registry_path.write_text("{not json")

        result = invoke(runner, project, "registry", "validate")

        assert result.exit_code == 1

"""Tests for the configuration system."""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from iterctl.config import (
    CoreConfig,
    LoopConfig,
    RecoveryConfig,
    ReplanConfig,
    ScopeConfig,
    UIConfig,
    format_config_for_display,
    get_config,
    get_config_path,
    list_config_keys,
    load_config,
    read_config_file,
    reload_config,
    reset_config,
    save_config,
)
from iterctl.errors import ConfigError


# =============================================================================
# Section Tests
# =============================================================================


class TestSections:
    """Tests for the configuration section dataclasses."""

    def test_core_defaults(self):
        """Test default values."""
        config = CoreConfig()
        assert config.plan_file == "plan.json"
        assert config.progress_file == "progress.txt"
        assert config.agent_cmd == "cursor-agent"
        assert config.agent_timeout == 600

    def test_recovery_defaults(self):
        config = RecoveryConfig()
        assert config.max_retries == 3
        assert config.strategy == "retry"

    def test_replan_defaults(self):
        config = ReplanConfig()
        assert config.auto_replan is False
        assert config.strategy == "incremental"
        assert config.threshold == 3
        assert config.min_blocked == 1

    def test_scope_defaults(self):
        config = ScopeConfig()
        assert config.scope_limit == 0
        assert config.deadline == ""
        assert config.auto_defer is True

    def test_from_dict_partial(self):
        """Missing keys keep their defaults."""
        config = ReplanConfig.from_dict({"threshold": 5})
        assert config.threshold == 5
        assert config.strategy == "incremental"

    def test_from_dict_converts_string_numbers(self):
        assert ReplanConfig.from_dict({"threshold": "4"}).threshold == 4

    def test_from_dict_rejects_wrong_type(self):
        with pytest.raises(ConfigError, match="scope.deadline must be a string"):
            ScopeConfig.from_dict({"deadline": 30})

    def test_section_must_be_a_table(self):
        with pytest.raises(ConfigError, match=r"\[core\] must be a table"):
            LoopConfig.from_dict({"core": "plan.json"})

    def test_scope_to_constraints(self):
        """The deadline is measured from the given time."""
        now = datetime(2026, 3, 1, 9, 0, 0)
        constraints = ScopeConfig(scope_limit=4, deadline="2h").to_constraints(now)
        assert constraints.max_iterations_per_feature == 4
        assert constraints.deadline == now + timedelta(hours=2)
        assert constraints.auto_defer is True

    def test_scope_to_constraints_no_deadline(self):
        assert ScopeConfig().to_constraints().deadline is None


# =============================================================================
# LoopConfig Tests
# =============================================================================


class TestLoopConfig:
    """Tests for LoopConfig."""

    def test_round_trip_dict(self):
        config = LoopConfig(recovery=RecoveryConfig(max_retries=5), ui=UIConfig(log_level="debug"))
        restored = LoopConfig.from_dict(config.to_dict())
        assert restored.recovery.max_retries == 5
        assert restored.ui.log_level == "debug"

    def test_get_dotted_key(self):
        config = LoopConfig()
        assert config.get("replan.strategy") == "incremental"
        assert config.get("core.plan_file") == "plan.json"
        assert config.get("nope.key", "fallback") == "fallback"

    def test_set_dotted_key(self):
        config = LoopConfig()
        assert config.set("scope.scope_limit", 4) is True
        assert config.scope.scope_limit == 4

    def test_set_invalid_keys(self):
        config = LoopConfig()
        assert config.set("scope.unknown", 1) is False
        assert config.set("unknown.field", 1) is False
        assert config.set("single_key", "value") is False
        assert config.set("core.to_dict", "value") is False

    def test_set_converts_strings(self):
        """Values typed on the command line take the field's type."""
        config = LoopConfig()
        config.set("replan.auto_replan", "yes")
        config.set("recovery.max_retries", "5")
        config.set("scope.deadline", "2h")
        assert config.replan.auto_replan is True
        assert config.recovery.max_retries == 5
        assert config.scope.deadline == "2h"

    @pytest.mark.parametrize(
        "key,value,match",
        [
            ("replan.threshold", "abc", "replan.threshold must be an integer"),
            ("core.agent_timeout", True, "core.agent_timeout must be an integer"),
            ("scope.deadline", 30, "scope.deadline must be a string"),
            ("scope.auto_defer", "maybe", "scope.auto_defer must be true or false"),
        ],
    )
    def test_set_rejects_wrong_type(self, key: str, value, match: str):
        config = LoopConfig()
        with pytest.raises(ConfigError, match=match):
            config.set(key, value)

    def test_validate_defaults(self):
        LoopConfig().validate()

    @pytest.mark.parametrize(
        "key,value,match",
        [
            ("recovery.max_retries", -1, "max_retries"),
            ("scope.scope_limit", -2, "scope_limit"),
            ("replan.threshold", -1, "threshold"),
            ("core.agent_timeout", 0, "agent_timeout"),
            ("ui.log_level", "loud", "log_level"),
            ("recovery.strategy", "pray", "unknown recovery strategy"),
            ("replan.strategy", "magic", "unknown replan strategy"),
            ("scope.deadline", "soon", "invalid duration"),
        ],
    )
    def test_validate_rejects(self, key: str, value, match: str):
        config = LoopConfig()
        config.set(key, value)
        with pytest.raises(ConfigError, match=match):
            config.validate()

    def test_apply_env_overrides(self):
        """Test that environment overrides are applied."""
        config = LoopConfig()
        config.apply_env_overrides(
            {
                "ITERCTL_MAX_RETRIES": "5",
                "ITERCTL_AUTO_REPLAN": "true",
                "ITERCTL_REPLAN_STRATEGY": "agent",
                "ITERCTL_DEADLINE": "30m",
            }
        )
        assert config.recovery.max_retries == 5
        assert config.replan.auto_replan is True
        assert config.replan.strategy == "agent"
        assert config.scope.deadline == "30m"

    def test_invalid_env_value_ignored(self):
        config = LoopConfig()
        config.apply_env_overrides({"ITERCTL_MAX_RETRIES": "many", "ITERCTL_SCOPE_LIMIT": ""})
        assert config.recovery.max_retries == 3
        assert config.scope.scope_limit == 0

    def test_env_overrides_from_os_environ(self):
        config = LoopConfig()
        with patch.dict(os.environ, {"ITERCTL_AGENT_CMD": "claude -p"}):
            config.apply_env_overrides()
        assert config.core.agent_cmd == "claude -p"


# =============================================================================
# Load/Save Tests
# =============================================================================


class TestLoadSave:
    """Tests for loading and saving configuration."""

    def test_get_config_path_explicit(self):
        assert get_config_path("/tmp/x.toml") == Path("/tmp/x.toml")

    def test_get_config_path_custom(self):
        """Test custom config path from environment."""
        with patch.dict(os.environ, {"ITERCTL_CONFIG": "/custom/path/config.toml"}):
            path = get_config_path()
            assert str(path) == "/custom/path/config.toml"

    def test_get_config_path_local_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """A project-local iterctl.toml is preferred over the user config."""
        monkeypatch.delenv("ITERCTL_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        (tmp_path / "iterctl.toml").write_text("")
        assert get_config_path() == tmp_path / "iterctl.toml"

    def test_get_config_path_default(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        """Test default config path."""
        monkeypatch.delenv("ITERCTL_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        path = get_config_path()
        assert path.name == "config.toml"
        assert ".iterctl" in str(path)

    def test_load_config_nonexistent(self):
        """Test loading config when file doesn't exist."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.toml"
            config = load_config(config_path)
            assert config.recovery.max_retries == 3
            assert config.config_path == config_path

    def test_save_and_load_config(self):
        """Test saving and loading configuration."""
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "nested" / "config.toml"

            config = LoopConfig()
            config.replan.auto_replan = True
            config.scope.deadline = "2h"

            assert save_config(config, config_path)
            assert config_path.exists()

            loaded = load_config(config_path)
            assert loaded.replan.auto_replan is True
            assert loaded.scope.deadline == "2h"
            assert loaded.last_modified is not None

    def test_load_invalid_toml_falls_back(self, tmp_path: Path):
        config_path = tmp_path / "config.toml"
        config_path.write_text("[recovery\nmax_retries = ")
        config = load_config(config_path)
        assert config.recovery.max_retries == 3
        assert config.config_path == config_path

    def test_load_mistyped_value_falls_back(self, tmp_path: Path):
        """A wrongly typed value is reported and the defaults are used."""
        config_path = tmp_path / "config.toml"
        config_path.write_text("[scope]\ndeadline = 30\n")
        config = load_config(config_path)
        assert config.scope.deadline == ""
        assert config.scope.to_constraints().deadline is None

    def test_read_config_file_skips_env(self, tmp_path: Path):
        config_path = tmp_path / "config.toml"
        config_path.write_text("[recovery]\nmax_retries = 7\n")
        with patch.dict(os.environ, {"ITERCTL_MAX_RETRIES": "2"}):
            config = read_config_file(config_path)
        assert config.recovery.max_retries == 7
        assert config.config_path == config_path

    def test_read_config_file_missing(self, tmp_path: Path):
        config = read_config_file(tmp_path / "none.toml")
        assert config.recovery.max_retries == 3
        assert config.last_modified is None

    def test_read_config_file_invalid_toml(self, tmp_path: Path):
        config_path = tmp_path / "config.toml"
        config_path.write_text("[recovery\n")
        with pytest.raises(ConfigError, match="failed to read"):
            read_config_file(config_path)

    def test_load_config_with_env_overrides(self, tmp_path: Path):
        """Environment overrides win over the file."""
        config_path = tmp_path / "config.toml"
        config = LoopConfig()
        config.recovery.max_retries = 7
        save_config(config, config_path)

        with patch.dict(os.environ, {"ITERCTL_MAX_RETRIES": "2"}):
            loaded = load_config(config_path)
        assert loaded.recovery.max_retries == 2


# =============================================================================
# Singleton Tests
# =============================================================================


class TestSingleton:
    """Tests for singleton behavior."""

    def setup_method(self):
        reset_config()

    def teardown_method(self):
        reset_config()

    def test_get_config_returns_same_instance(self):
        """Test that get_config returns singleton."""
        config1 = get_config()
        config2 = get_config()
        assert config1 is config2

    def test_reload_config_creates_new_instance(self):
        """Test that reload_config creates new instance."""
        config1 = get_config()
        config2 = reload_config()
        assert config2 is not config1
        assert get_config() is config2

    def test_reset_config(self):
        """Test resetting singleton."""
        config1 = get_config()
        reset_config()
        assert get_config() is not config1


# =============================================================================
# Helper Function Tests
# =============================================================================


class TestHelperFunctions:
    """Tests for helper functions."""

    def test_format_config_for_display(self, tmp_path: Path):
        config = LoopConfig()
        config.config_path = tmp_path / "missing.toml"
        text = format_config_for_display(config)
        assert text.startswith("iterctl Configuration")
        assert "(not found, using defaults)" in text
        assert "[replan]" in text
        assert "  threshold = 3" in text

    def test_list_config_keys(self):
        keys = list_config_keys()
        assert "recovery.max_retries" in keys
        assert "replan.min_blocked" in keys
        assert "ui.log_level" in keys
        assert len(keys) == len(set(keys))

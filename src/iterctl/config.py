"""Configuration system for iterctl.

Configuration is stored as TOML and organized into sections.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (--config, $ITERCTL_CONFIG, ./iterctl.toml, ~/.iterctl/config.toml)
3. Defaults (lowest)

Sections:
    [core]       - Plan/progress files and the agent command
    [recovery]   - Tier-1 retry budget and strategy
    [scope]      - Iteration limits and deadline
    [replan]     - Tier-2 replanning settings
    [ui]         - Logging settings

Example:
    from iterctl.config import get_config

    config = get_config()
    print(config.recovery.max_retries)
    print(config.replan.strategy)
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli_w

from .errors import ConfigError
from .recovery.strategies import parse_recovery_strategy
from .replan.strategies import parse_replan_strategy
from .scope import Constraints, parse_deadline

logger = logging.getLogger(__name__)

# Default config locations
DEFAULT_CONFIG_DIR = Path.home() / ".iterctl"
DEFAULT_CONFIG_FILE = "config.toml"
LOCAL_CONFIG_FILE = "iterctl.toml"

LOG_LEVELS = ("debug", "info", "warning", "error")

TRUE_VALUES = ("1", "true", "yes", "on")
FALSE_VALUES = ("0", "false", "no", "off")

# Singleton instance
_config: LoopConfig | None = None


def _coerce(key: str, value: Any, default: Any) -> Any:
    """Convert a raw value to the type of the field's default.

    Strings are accepted for bool and int fields so that values typed on
    the command line parse the same way as values read from TOML.

    Raises:
        ConfigError: If the value does not fit the field's type.
    """
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in TRUE_VALUES:
            return True
        if isinstance(value, str) and value.strip().lower() in FALSE_VALUES:
            return False
        raise ConfigError(f"{key} must be true or false, got {value!r}")

    if isinstance(default, int):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lstrip("-").isdigit():
            return int(value.strip())
        raise ConfigError(f"{key} must be an integer, got {value!r}")

    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string, got {value!r}")
    return value


def _read(data: dict[str, Any], section: str, name: str, default: Any) -> Any:
    if name not in data:
        return default
    return _coerce(f"{section}.{name}", data[name], default)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table, got {value!r}")
    return value


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class CoreConfig:
    """Core settings.

    Attributes:
        plan_file: Path to the JSON plan file.
        progress_file: Path to the append-only progress log.
        agent_cmd: Command used to invoke the agent.
        agent_timeout: Seconds before an agent call is abandoned.
    """

    plan_file: str = "plan.json"
    progress_file: str = "progress.txt"
    agent_cmd: str = "cursor-agent"
    agent_timeout: int = 600

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoreConfig:
        """Create from dictionary."""
        return cls(
            plan_file=_read(data, "core", "plan_file", "plan.json"),
            progress_file=_read(data, "core", "progress_file", "progress.txt"),
            agent_cmd=_read(data, "core", "agent_cmd", "cursor-agent"),
            agent_timeout=_read(data, "core", "agent_timeout", 600),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "plan_file": self.plan_file,
            "progress_file": self.progress_file,
            "agent_cmd": self.agent_cmd,
            "agent_timeout": self.agent_timeout,
        }


@dataclass
class RecoveryConfig:
    """Tier-1 recovery settings.

    Attributes:
        max_retries: Failures allowed per feature before it is skipped.
        strategy: retry, skip or rollback.
    """

    max_retries: int = 3
    strategy: str = "retry"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryConfig:
        """Create from dictionary."""
        return cls(
            max_retries=_read(data, "recovery", "max_retries", 3),
            strategy=_read(data, "recovery", "strategy", "retry"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_retries": self.max_retries,
            "strategy": self.strategy,
        }


@dataclass
class ScopeConfig:
    """Scope control settings.

    Attributes:
        scope_limit: Max iterations per feature (0 = unlimited).
        deadline: Run duration such as "2h" or "45m" (empty = none).
        auto_defer: Defer features automatically when limits are hit.
    """

    scope_limit: int = 0
    deadline: str = ""
    auto_defer: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScopeConfig:
        """Create from dictionary."""
        return cls(
            scope_limit=_read(data, "scope", "scope_limit", 0),
            deadline=_read(data, "scope", "deadline", ""),
            auto_defer=_read(data, "scope", "auto_defer", True),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "scope_limit": self.scope_limit,
            "deadline": self.deadline,
            "auto_defer": self.auto_defer,
        }

    def to_constraints(self, now: datetime | None = None) -> Constraints:
        """Build run constraints. The deadline is measured from ``now``."""
        return Constraints(
            max_iterations_per_feature=self.scope_limit,
            deadline=parse_deadline(self.deadline, now),
            auto_defer=self.auto_defer,
        )


@dataclass
class ReplanConfig:
    """Tier-2 replanning settings.

    Attributes:
        auto_replan: Apply replans automatically when a trigger fires.
        strategy: incremental, agent or none.
        threshold: Consecutive failures that trigger a replan.
        min_blocked: Blocked features that trigger a replan.
    """

    auto_replan: bool = False
    strategy: str = "incremental"
    threshold: int = 3
    min_blocked: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReplanConfig:
        """Create from dictionary."""
        return cls(
            auto_replan=_read(data, "replan", "auto_replan", False),
            strategy=_read(data, "replan", "strategy", "incremental"),
            threshold=_read(data, "replan", "threshold", 3),
            min_blocked=_read(data, "replan", "min_blocked", 1),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "auto_replan": self.auto_replan,
            "strategy": self.strategy,
            "threshold": self.threshold,
            "min_blocked": self.min_blocked,
        }


@dataclass
class UIConfig:
    """Output settings.

    Attributes:
        log_level: Logging level (debug, info, warning, error).
    """

    log_level: str = "info"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UIConfig:
        """Create from dictionary."""
        return cls(log_level=_read(data, "ui", "log_level", "info"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"log_level": self.log_level}


# =============================================================================
# Main Configuration
# =============================================================================


def _env_bool(value: str) -> bool:
    return value.strip().lower() in TRUE_VALUES


# env var -> (section, field, converter)
ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "ITERCTL_MAX_RETRIES": ("recovery", "max_retries", int),
    "ITERCTL_RECOVERY_STRATEGY": ("recovery", "strategy", str),
    "ITERCTL_AUTO_REPLAN": ("replan", "auto_replan", _env_bool),
    "ITERCTL_REPLAN_STRATEGY": ("replan", "strategy", str),
    "ITERCTL_REPLAN_THRESHOLD": ("replan", "threshold", int),
    "ITERCTL_SCOPE_LIMIT": ("scope", "scope_limit", int),
    "ITERCTL_DEADLINE": ("scope", "deadline", str),
    "ITERCTL_PLAN_FILE": ("core", "plan_file", str),
    "ITERCTL_AGENT_CMD": ("core", "agent_cmd", str),
}


@dataclass
class LoopConfig:
    """Main iterctl configuration container.

    Use get_config() to get the singleton instance.
    """

    core: CoreConfig = field(default_factory=CoreConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    scope: ScopeConfig = field(default_factory=ScopeConfig)
    replan: ReplanConfig = field(default_factory=ReplanConfig)
    ui: UIConfig = field(default_factory=UIConfig)

    # Metadata
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopConfig:
        """Create configuration from dictionary.

        Raises:
            ConfigError: If a section is not a table or a value has the wrong type.
        """
        return cls(
            core=CoreConfig.from_dict(_section(data, "core")),
            recovery=RecoveryConfig.from_dict(_section(data, "recovery")),
            scope=ScopeConfig.from_dict(_section(data, "scope")),
            replan=ReplanConfig.from_dict(_section(data, "replan")),
            ui=UIConfig.from_dict(_section(data, "ui")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "core": self.core.to_dict(),
            "recovery": self.recovery.to_dict(),
            "scope": self.scope.to_dict(),
            "replan": self.replan.to_dict(),
            "ui": self.ui.to_dict(),
        }

    def apply_env_overrides(self, environ: dict[str, str] | None = None) -> None:
        """Apply environment variable overrides to configuration."""
        env = os.environ if environ is None else environ
        for name, (section_name, field_name, convert) in ENV_OVERRIDES.items():
            raw = env.get(name)
            if raw is None or raw == "":
                continue
            try:
                value = convert(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid value for {name}: {raw!r}")
                continue
            setattr(getattr(self, section_name), field_name, value)

    def validate(self) -> None:
        """Check values that would otherwise fail deep inside a run.

        Raises:
            ConfigError: On the first invalid value.
        """
        if self.recovery.max_retries < 0:
            raise ConfigError(f"recovery.max_retries must be >= 0, got {self.recovery.max_retries}")
        if self.scope.scope_limit < 0:
            raise ConfigError(f"scope.scope_limit must be >= 0, got {self.scope.scope_limit}")
        if self.replan.threshold < 0:
            raise ConfigError(f"replan.threshold must be >= 0, got {self.replan.threshold}")
        if self.replan.min_blocked < 0:
            raise ConfigError(f"replan.min_blocked must be >= 0, got {self.replan.min_blocked}")
        if self.core.agent_timeout <= 0:
            raise ConfigError(f"core.agent_timeout must be > 0, got {self.core.agent_timeout}")
        if self.ui.log_level.lower() not in LOG_LEVELS:
            raise ConfigError(f"ui.log_level must be one of {', '.join(LOG_LEVELS)}, got {self.ui.log_level}")

        parse_recovery_strategy(self.recovery.strategy)
        parse_replan_strategy(self.replan.strategy)
        parse_deadline(self.scope.deadline)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key path.

        Args:
            key: Dotted key path (e.g., 'recovery.max_retries').
            default: Default value if key not found.

        Returns:
            Configuration value or default.

        Example:
            config.get('replan.strategy')  # Returns 'incremental'
        """
        parts = key.split(".")
        obj: Any = self

        for part in parts:
            if hasattr(obj, part):
                obj = getattr(obj, part)
            else:
                return default

        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value by dotted key path.

        Args:
            key: Dotted key path (e.g., 'scope.scope_limit').
            value: Value to set. Strings are converted for bool and int fields.

        Returns:
            True if set successfully, False if the key is unknown.

        Raises:
            ConfigError: If the value does not fit the field's type.
        """
        parts = key.split(".")
        if len(parts) != 2:
            return False

        section_name, field_name = parts
        if section_name not in self.to_dict():
            return False

        section = getattr(self, section_name)
        if field_name not in section.to_dict():
            return False

        default = getattr(type(section)(), field_name)
        setattr(section, field_name, _coerce(key, value, default))
        return True


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path(explicit: Path | str | None = None) -> Path:
    """Resolve which config file to use.

    Order: explicit path, $ITERCTL_CONFIG, ./iterctl.toml, ~/.iterctl/config.toml.
    The returned path may not exist.
    """
    if explicit:
        return Path(explicit)

    if custom_path := os.environ.get("ITERCTL_CONFIG"):
        return Path(custom_path)

    local = Path.cwd() / LOCAL_CONFIG_FILE
    if local.exists():
        return local

    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def read_config_file(path: Path) -> LoopConfig:
    """Read a config file as written, without environment overrides.

    A missing file yields the defaults.

    Raises:
        ConfigError: If the file cannot be read or holds invalid values.
    """
    config = LoopConfig()

    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
            last_modified = datetime.fromtimestamp(path.stat().st_mtime)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigError(f"failed to read {path}: {e}") from e

        config = LoopConfig.from_dict(data)
        config.last_modified = last_modified

    config.config_path = path
    return config


def load_config(config_path: Path | str | None = None) -> LoopConfig:
    """Load configuration from TOML file.

    An unreadable or invalid file is logged and the defaults are used.

    Args:
        config_path: Path to config file. Uses the search order if not specified.

    Returns:
        LoopConfig with settings from file and environment.
    """
    path = get_config_path(config_path)

    try:
        config = read_config_file(path)
    except ConfigError as e:
        logger.error(f"Failed to load config from {path}: {e}")
        config = LoopConfig()
        config.config_path = path

    # Apply environment overrides
    config.apply_env_overrides()

    return config


def save_config(config: LoopConfig, config_path: Path | str | None = None) -> bool:
    """Save configuration to TOML file.

    Args:
        config: LoopConfig to save.
        config_path: Path to config file. Uses the config's own path if not specified.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = Path(config_path) if config_path else config.config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(config.to_dict(), f)
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False

    config.config_path = path
    config.last_modified = datetime.now()
    logger.info(f"Saved config to {path}")
    return True


def get_config() -> LoopConfig:
    """Get the singleton configuration instance.

    Loads from file on first call, returns cached instance after.
    Use reload_config() to force reload.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Path | str | None = None) -> LoopConfig:
    """Force reload configuration from file."""
    global _config
    _config = load_config(config_path)
    return _config


def reset_config() -> None:
    """Reset singleton to force reload on next access."""
    global _config
    _config = None


# =============================================================================
# CLI Helpers
# =============================================================================


def format_config_for_display(config: LoopConfig) -> str:
    """Format configuration for CLI display."""
    lines = []
    lines.append("iterctl Configuration")
    lines.append("=" * 50)
    lines.append("")

    if config.config_path:
        exists = "" if config.config_path.exists() else " (not found, using defaults)"
        lines.append(f"Config file: {config.config_path}{exists}")
        if config.last_modified:
            lines.append(f"Last modified: {config.last_modified.strftime('%Y-%m-%d %H:%M:%S')}")
        lines.append("")

    for section, values in config.to_dict().items():
        lines.append(f"[{section}]")
        for key, value in values.items():
            lines.append(f"  {key} = {value}")
        lines.append("")

    return "\n".join(lines).rstrip()


def list_config_keys() -> list[str]:
    """List all available configuration keys as dotted paths."""
    return [
        f"{section}.{key}"
        for section, values in LoopConfig().to_dict().items()
        for key in values
    ]

"""Settings registry with environment and config file resolution."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Union

from dvr_manager.config import env
from dvr_manager.core.errors import ConfigurationError
from dvr_manager.core.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class FieldBase:
    """Base class for all settings fields."""
    key: str                              # Config key
    label: str                            # Human readable name
    description: str = ""                 # Help text
    default: Any = None                   # Default value if not set
    required: bool = False                # Whether field must have a value
    env_var: Optional[str] = None         # Override env var name (defaults to prefixed key)
    env_supported: bool = True            # Whether this setting can be set via ENV var
    requires_restart: bool = False        # Changing this setting only applies after a restart

    def get_env_var_name(self) -> str:
        """Get the environment variable name for this field."""
        return self.env_var or f"{env.ENV_PREFIX}{self.key}"


@dataclass
class TextField(FieldBase):
    """Free-form string value."""


@dataclass
class PathField(FieldBase):
    """Filesystem path value."""
    must_exist: bool = False


@dataclass
class NumberField(FieldBase):
    """Numeric value with optional bounds."""
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    default: float = 0


@dataclass
class CheckboxField(FieldBase):
    """Boolean value."""
    default: bool = False


@dataclass
class SelectField(FieldBase):
    """Single choice from a fixed list of values."""
    options: List[str] = field(default_factory=list)


@dataclass
class MultiSelectField(FieldBase):
    """List of strings; comma-separated when set via ENV."""
    default: List[str] = field(default_factory=list)


SettingsField = Union[TextField, PathField, NumberField, CheckboxField, SelectField, MultiSelectField]


@dataclass
class SettingsTab:
    """A named section of related settings."""
    name: str
    display_name: str
    fields: List[SettingsField] = field(default_factory=list)
    order: int = 100


_SETTINGS_REGISTRY: Dict[str, SettingsTab] = {}
_REGISTRY_LOCK = Lock()


def register_settings(name: str, display_name: str, order: int = 100):
    def decorator(func: Callable[[], List[SettingsField]]):
        with _REGISTRY_LOCK:
            fields = func()
            _SETTINGS_REGISTRY[name] = SettingsTab(
                name=name,
                display_name=display_name,
                fields=fields,
                order=order,
            )
            logger.debug(f"Registered settings tab: {name} ({len(fields)} fields)")
        return func
    return decorator


def get_all_settings_tabs() -> List[SettingsTab]:
    """Get all registered settings tabs, sorted by order."""
    return sorted(_SETTINGS_REGISTRY.values(), key=lambda t: (t.order, t.name))


def get_all_fields() -> List[SettingsField]:
    return [f for tab in get_all_settings_tabs() for f in tab.fields]


def _get_config_dir() -> Path:
    return Path(env.CONFIG_DIR)


def _get_config_file_path() -> Path:
    return _get_config_dir() / "settings.json"


def load_config_file() -> Dict[str, Any]:
    """Read the JSON settings file.

    A missing file is an empty config. A file that exists but cannot be read
    or parsed raises ConfigurationError so callers can keep a prior config.
    """
    config_path = _get_config_file_path()

    if not config_path.exists():
        return {}

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file {config_path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object")
    return data


def get_setting_value(field: SettingsField, file_config: Optional[Dict[str, Any]] = None) -> Any:
    # 1. Environment variable (if supported for this field)
    if field.env_supported:
        env_value = os.environ.get(field.get_env_var_name())
        if env_value is not None:
            return _parse_env_value(env_value, field)

    # 2. Config file
    if file_config is None:
        file_config = load_config_file()
    if field.key in file_config:
        return file_config[field.key]

    # 3. Default
    return field.default


def _parse_env_value(value: str, field: SettingsField) -> Any:
    """Parse an environment variable value to the appropriate type."""
    if isinstance(field, CheckboxField):
        return env.string_to_bool(value)
    elif isinstance(field, NumberField):
        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{field.get_env_var_name()} must be a number, got {value!r}")
    elif isinstance(field, MultiSelectField):
        return [v.strip() for v in value.split(",") if v.strip()]
    else:
        return value


def load_all_values() -> Dict[str, Any]:
    """Resolve every registered field (ENV > config file > default)."""
    file_config = load_config_file()
    return {f.key: get_setting_value(f, file_config) for f in get_all_fields()}

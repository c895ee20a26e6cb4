"""Validated configuration snapshot shared by the daemon components."""

import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import dvr_manager.config.settings  # noqa: F401  (registers settings tabs)
from dvr_manager.core.errors import ConfigurationError
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.settings_registry import (
    CheckboxField,
    MultiSelectField,
    NumberField,
    PathField,
    SelectField,
    SettingsField,
    get_all_fields,
    load_all_values,
)

logger = setup_logger(__name__)


def _coerce(field: SettingsField, value: Any) -> Any:
    name = field.key

    if isinstance(field, CheckboxField):
        if isinstance(value, str):
            return value.lower() in ("true", "yes", "1", "y", "on")
        return bool(value)

    if isinstance(field, NumberField):
        if isinstance(value, bool):
            raise ConfigurationError(f"{name} must be a number, got {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"{name} must be a number, got {value!r}")
        if field.min_value is not None and number < field.min_value:
            raise ConfigurationError(f"{name} must be >= {field.min_value}, got {number}")
        if field.max_value is not None and number > field.max_value:
            raise ConfigurationError(f"{name} must be <= {field.max_value}, got {number}")
        if isinstance(field.default, int) and number.is_integer():
            return int(number)
        return number

    if isinstance(field, SelectField):
        value = "" if value is None else str(value).strip().lower()
        if value not in field.options:
            raise ConfigurationError(f"{name} must be one of {field.options}, got {value!r}")
        return value

    if isinstance(field, MultiSelectField):
        if isinstance(value, str):
            value = [v for v in value.split(",")]
        if not isinstance(value, (list, tuple)):
            raise ConfigurationError(f"{name} must be a list, got {value!r}")
        return [str(v).strip().lower().lstrip(".") for v in value if str(v).strip()]

    if isinstance(field, PathField):
        if value in (None, ""):
            if field.required:
                raise ConfigurationError(f"{name} is required")
            return None
        path = Path(str(value)).expanduser()
        if field.must_exist:
            if not path.is_dir():
                raise ConfigurationError(f"{name} does not exist or is not a directory: {path}")
            if not os.access(path, os.R_OK | os.X_OK):
                raise ConfigurationError(f"{name} is not readable: {path}")
        return path

    if value is None:
        if field.required:
            raise ConfigurationError(f"{name} is required")
        return None
    return str(value)


def validate_settings(raw: Dict[str, Any], fields: Optional[List[SettingsField]] = None) -> Dict[str, Any]:
    """Coerce raw values into typed settings, raising ConfigurationError on the first problem."""
    fields = fields if fields is not None else get_all_fields()
    values: Dict[str, Any] = {}
    for field in fields:
        values[field.key] = _coerce(field, raw.get(field.key, field.default))

    if values["MIN_CONFIDENCE"] > values["CONFIDENCE_THRESHOLD"]:
        raise ConfigurationError("MIN_CONFIDENCE cannot be higher than CONFIDENCE_THRESHOLD")
    if values["RETRY_BACKOFF_BASE"] > values["RETRY_BACKOFF_MAX"]:
        raise ConfigurationError("RETRY_BACKOFF_BASE cannot be higher than RETRY_BACKOFF_MAX")

    watch_dir = values["WATCH_DIR"].resolve()
    library_dir = values["LIBRARY_DIR"].resolve()
    if watch_dir == library_dir:
        raise ConfigurationError("WATCH_DIR and LIBRARY_DIR must be different directories")
    if watch_dir.is_relative_to(library_dir):
        raise ConfigurationError("WATCH_DIR cannot be inside LIBRARY_DIR")

    return values


class Config:
    """Thread-safe holder for the active settings.

    ``refresh()`` re-reads ENV and the config file. If the new values are
    invalid the previous snapshot stays active and ConfigurationError is raised.
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._lock = Lock()
        self._values: Dict[str, Any] = dict(values) if values else {}

    @classmethod
    def from_values(cls, overrides: Dict[str, Any]) -> "Config":
        """Build a config from defaults plus overrides, bypassing ENV and files."""
        return cls(validate_settings(overrides))

    @property
    def loaded(self) -> bool:
        return bool(self._values)

    def refresh(self) -> List[str]:
        """Reload settings; returns the keys whose values changed."""
        new_values = validate_settings(load_all_values())

        with self._lock:
            changed = [k for k, v in new_values.items() if self._values.get(k) != v]
            self._values = new_values

        for key in changed:
            logger.debug(f"Setting {key} = {new_values[key]!r}")
        return changed

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def __getattr__(self, name: str) -> Any:
        if name.isupper():
            with self.__dict__["_lock"]:
                values = self.__dict__["_values"]
                if name in values:
                    return values[name]
        raise AttributeError(name)


config = Config()

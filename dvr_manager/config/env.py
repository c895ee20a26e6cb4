"""Bootstrap configuration read directly from the environment.

These values are needed before the settings registry is available (logging,
config file location). Everything else is a registered setting.
"""

import os
from pathlib import Path

ENV_PREFIX = "DVR_MANAGER_"


def string_to_bool(s: str) -> bool:
    return s.lower() in ["true", "yes", "1", "y", "on"]


def _env(name: str, default: str = "") -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default).strip()


CONFIG_DIR = Path(_env("CONFIG_DIR", "/config/dvr-manager"))
LOG_DIR = Path(_env("LOG_DIR", "/var/log/dvr-manager"))

DEBUG = string_to_bool(_env("DEBUG", "false"))
ENABLE_LOGGING = string_to_bool(_env("ENABLE_LOGGING", "false"))

LOG_LEVEL = _env("LOG_LEVEL", "DEBUG" if DEBUG else "INFO").upper()
if LOG_LEVEL not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
    LOG_LEVEL = "INFO"

LOG_FILE = LOG_DIR / "dvr-manager.log"

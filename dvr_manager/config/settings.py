"""Registered daemon settings.

Every option can be set in ``CONFIG_DIR/settings.json`` or through a
``DVR_MANAGER_<KEY>`` environment variable (environment wins).
"""

from dvr_manager.config import env
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.settings_registry import (
    CheckboxField,
    MultiSelectField,
    NumberField,
    PathField,
    SelectField,
    TextField,
    register_settings,
)

logger = setup_logger(__name__)

logger.debug("Bootstrap configuration:")
for key in ["CONFIG_DIR", "LOG_DIR", "LOG_LEVEL", "ENABLE_LOGGING", "DEBUG"]:
    logger.debug(f"  {key}: {getattr(env, key)}")

DUPLICATE_POLICIES = ["delete", "quarantine"]

_RECORDING_EXTENSIONS = ["ts", "mkv", "mp4", "m4v", "avi", "mpg", "mpeg", "wtv"]


@register_settings("general", "General", order=0)
def general_settings():
    """Where recordings come from and where they go."""
    return [
        PathField(
            key="WATCH_DIR",
            label="Recordings Directory",
            description="Directory the DVR writes recordings into.",
            default="/data/recordings",
            required=True,
            must_exist=True,
        ),
        PathField(
            key="LIBRARY_DIR",
            label="TV Library Directory",
            description="Root of the TV library scanned by the media server.",
            default="/data/tv",
            required=True,
        ),
        PathField(
            key="AUDIT_LOG",
            label="Audit Log",
            description="Append-only JSON lines log of every move attempt. Empty keeps the log in memory only.",
            default=str(env.CONFIG_DIR / "moves.jsonl"),
            requires_restart=True,
        ),
        MultiSelectField(
            key="RECORDING_EXTENSIONS",
            label="Recording Extensions",
            description="File extensions treated as recordings.",
            default=list(_RECORDING_EXTENSIONS),
        ),
    ]


@register_settings("processing", "Processing", order=1)
def processing_settings():
    """Stability detection, retries and worker pool."""
    return [
        NumberField(
            key="STABILITY_INTERVAL",
            label="Stability Interval",
            description="Seconds a recording's size and mtime must stay unchanged before it is processed.",
            default=30,
            min_value=0,
        ),
        NumberField(
            key="POLL_INTERVAL",
            label="Poll Interval",
            description="Seconds between scans of the recordings directory.",
            default=5,
            min_value=0.1,
        ),
        CheckboxField(
            key="CHECK_OPEN_WRITERS",
            label="Check Open Writers",
            description="Skip recordings still held open for writing by another process (Linux only).",
            default=True,
        ),
        NumberField(
            key="RETRY_CEILING",
            label="Retry Ceiling",
            description="Attempts before a recording is quarantined.",
            default=5,
            min_value=1,
        ),
        NumberField(
            key="RETRY_BACKOFF_BASE",
            label="Retry Backoff",
            description="Seconds before the first retry; doubles on each failed attempt.",
            default=30,
            min_value=0,
        ),
        NumberField(
            key="RETRY_BACKOFF_MAX",
            label="Maximum Retry Backoff",
            description="Upper bound for the retry delay in seconds.",
            default=3600,
            min_value=0,
        ),
        SelectField(
            key="DUPLICATE_POLICY",
            label="Duplicate Handling",
            description="What to do with a recording that already exists byte-for-byte in the library.",
            options=DUPLICATE_POLICIES,
            default="quarantine",
        ),
        NumberField(
            key="MAX_WORKERS",
            label="Workers",
            description="Recordings processed concurrently.",
            default=2,
            min_value=1,
            max_value=16,
            requires_restart=True,
        ),
        NumberField(
            key="DRAIN_TIMEOUT",
            label="Drain Timeout",
            description="Seconds in-flight moves may run after a stop request before they are cancelled.",
            default=30,
            min_value=0,
        ),
    ]


@register_settings("metadata", "Metadata", order=2)
def metadata_settings():
    """Show and episode identification."""
    return [
        SelectField(
            key="METADATA_PROVIDER",
            label="Metadata Provider",
            description="External lookup used when the file name alone is not conclusive. Empty disables lookups.",
            options=["", "tvmaze"],
            default="tvmaze",
        ),
        TextField(
            key="TVMAZE_URL",
            label="TVmaze API URL",
            default="https://api.tvmaze.com",
        ),
        NumberField(
            key="METADATA_TIMEOUT",
            label="Lookup Timeout",
            description="Seconds to wait for the metadata service.",
            default=15,
            min_value=1,
        ),
        NumberField(
            key="CONFIDENCE_THRESHOLD",
            label="Confidence Threshold",
            description="Local name matches below this confidence are checked with the metadata provider.",
            default=0.7,
            min_value=0,
            max_value=1,
        ),
        NumberField(
            key="MIN_CONFIDENCE",
            label="Minimum Confidence",
            description="Matches below this confidence are never used.",
            default=0.5,
            min_value=0,
            max_value=1,
        ),
    ]


@register_settings("plex", "Plex", order=3)
def plex_settings():
    return [
        PathField(
            key="PLEX_PREFS_PATH",
            label="Plex Preferences",
            description=(
                "Path to the Plex Media Server Preferences.xml holding the server token, e.g. "
                "/config/Library/Application Support/Plex Media Server/Preferences.xml. "
                "Empty disables the Plex library check."
            ),
            default="",
        ),
        TextField(
            key="PLEX_URL",
            label="Plex URL",
            default="http://localhost:32400",
        ),
        TextField(
            key="PLEX_TV_LIBRARY_ID",
            label="Plex TV Library",
            description="Section ID of the TV library LIBRARY_DIR belongs to. Empty uses the first TV library.",
            default="",
        ),
    ]

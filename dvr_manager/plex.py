"""Plex Media Server library check.

The daemon is coupled to the media server only through the library layout.
This module confirms at startup (and after a reload) that ``LIBRARY_DIR`` is
a location of a Plex TV library, so a misconfigured path shows up in the log
instead of as recordings that never appear in Plex.
"""

from __future__ import annotations

import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass, field
from pathlib import Path
from threading import BoundedSemaphore
from typing import Any, Dict, List, Mapping, Optional

import requests

from dvr_manager.core.logger import setup_logger

logger = setup_logger(__name__)

PLEX_DEFAULT_URL = "http://localhost:32400"
PLEX_LIBRARY_PROVIDER = "com.plexapp.plugins.library"
# Plex gets slow and drops connections under many parallel requests
MAX_CONCURRENT_REQUESTS = 5
REQUEST_TIMEOUT = 10


class PlexError(Exception):
    """Raised when the Plex server cannot be queried."""


@dataclass(frozen=True)
class PlexConfig:
    prefs_path: Path
    base_url: str = PLEX_DEFAULT_URL
    tv_library_id: Optional[str] = None


@dataclass(frozen=True)
class PlexLibrary:
    """A Plex library section and the folders it scans."""
    id: str
    title: str
    locations: List[Path] = field(default_factory=list)

    def contains(self, path: Path) -> bool:
        path = Path(path).resolve()
        return any(path == loc or path.is_relative_to(loc) for loc in self.locations)


def build_plex_config(values: Mapping[str, Any]) -> Optional[PlexConfig]:
    """Plex settings from a config snapshot; None when no Preferences.xml is configured."""
    prefs_path = values.get("PLEX_PREFS_PATH")
    if not prefs_path:
        return None

    base_url = str(values.get("PLEX_URL") or PLEX_DEFAULT_URL).strip().rstrip("/")
    tv_library_id = str(values.get("PLEX_TV_LIBRARY_ID") or "").strip() or None
    return PlexConfig(prefs_path=Path(prefs_path), base_url=base_url, tv_library_id=tv_library_id)


def read_plex_token(prefs_path: Path) -> str:
    """Read ``PlexOnlineToken`` from the server's Preferences.xml."""
    try:
        root = ElementTree.parse(prefs_path).getroot()
    except OSError as exc:
        raise PlexError(f"Cannot read Plex preferences {prefs_path}: {exc}") from exc
    except ElementTree.ParseError as exc:
        raise PlexError(f"Invalid Plex preferences {prefs_path}: {exc}") from exc

    token = root.get("PlexOnlineToken")
    if not token:
        raise PlexError(f"No PlexOnlineToken in {prefs_path}")
    return token


class PlexClient:
    """Minimal JSON client for the Plex server API."""

    def __init__(self, base_url: str, token: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.session = session or requests.Session()
        self._request_slots = BoundedSemaphore(MAX_CONCURRENT_REQUESTS)

    def get(self, resource: str) -> Dict[str, Any]:
        url = f"{self.base_url}/{resource}"
        with self._request_slots:
            try:
                response = self.session.get(
                    url,
                    params={"X-Plex-Token": self.token},
                    headers={"Accept": "application/json"},
                    timeout=REQUEST_TIMEOUT,
                )
                response.raise_for_status()
            except requests.exceptions.ConnectionError as exc:
                raise PlexError(f"Could not connect to Plex at {self.base_url}") from exc
            except requests.exceptions.Timeout as exc:
                raise PlexError("Plex connection timed out") from exc
            except requests.exceptions.RequestException as exc:
                raise PlexError(f"Plex request {resource} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise PlexError(f"Invalid Plex response for {resource}") from exc

        container = data.get("MediaContainer") if isinstance(data, dict) else None
        if not isinstance(container, dict):
            raise PlexError(f"Plex response for {resource} has no MediaContainer")
        return container

    def get_providers(self) -> List[Dict[str, Any]]:
        return self.get("media/providers").get("MediaProvider") or []

    def get_sections(self) -> List[Dict[str, Any]]:
        return self.get("library/sections").get("Directory") or []


def library_ids_of_type(providers: List[Dict[str, Any]], library_type: str) -> List[str]:
    """IDs of the library sections of ``library_type`` ("show", "movie") listed by media/providers."""
    library = next((p for p in providers if p.get("identifier") == PLEX_LIBRARY_PROVIDER), None)
    if library is None:
        raise PlexError("Plex is missing its library provider")

    features = library.get("Feature") or []
    if not features:
        raise PlexError("Plex library has no features")

    directories = features[0].get("Directory") or []
    return [str(d["id"]) for d in directories if d.get("type") == library_type and d.get("id") is not None]


def find_tv_library(client: PlexClient, preferred_id: Optional[str] = None) -> PlexLibrary:
    """The configured TV library, or the first one Plex reports."""
    show_ids = library_ids_of_type(client.get_providers(), "show")
    if not show_ids:
        raise PlexError("No TV Show library found in Plex")

    library_id = show_ids[0]
    if preferred_id in show_ids:
        library_id = preferred_id
    elif preferred_id:
        logger.warning(
            f"Plex library {preferred_id} is not a TV Show library "
            f"(found: {', '.join(show_ids)}), using {library_id}"
        )

    for section in client.get_sections():
        if str(section.get("key")) != library_id:
            continue
        locations = [Path(loc["path"]) for loc in section.get("Location") or [] if loc.get("path")]
        return PlexLibrary(id=library_id, title=section.get("title") or library_id, locations=locations)

    raise PlexError(f"Plex library section {library_id} not found")


def check_library_dir(
    plex_config: PlexConfig,
    library_dir: Path,
    session: Optional[requests.Session] = None,
) -> PlexLibrary:
    """Look up the TV library and warn if ``library_dir`` is not one of its locations.

    Paths are compared as seen by this process; when Plex runs in another
    container with different mounts the warning can be a false alarm.
    """
    token = read_plex_token(plex_config.prefs_path)
    client = PlexClient(plex_config.base_url, token, session=session)
    library = find_tv_library(client, plex_config.tv_library_id)

    if library.contains(library_dir):
        logger.info(f"LIBRARY_DIR {library_dir} belongs to Plex library '{library.title}' ({library.id})")
    else:
        locations = ", ".join(str(loc) for loc in library.locations) or "none"
        logger.warning(
            f"LIBRARY_DIR {library_dir} is not a location of Plex library '{library.title}' "
            f"({library.id}, locations: {locations}); moved recordings may not show up in Plex"
        )
    return library

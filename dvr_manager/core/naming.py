"""Name normalization and library path building."""

import hashlib
import os
import re
from pathlib import Path
from typing import Optional

from dvr_manager.core.models import MediaIdentity

# Characters not allowed on common filesystems (Windows/SMB shares included)
_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_WHITESPACE = re.compile(r"\s+")
_SEPARATORS = re.compile(r"[._]+")
_FINGERPRINT_STRIP = re.compile(r"[^a-z0-9]+")

_SMALL_WORDS = {"a", "an", "and", "as", "at", "but", "by", "for", "in", "of", "on", "or", "the", "to", "vs"}

MAX_FILENAME_LENGTH = 240


def sanitize_filename(name: str) -> str:
    """Strip characters that are illegal in file names and tidy whitespace."""
    name = _ILLEGAL_CHARS.sub("", name)
    name = _WHITESPACE.sub(" ", name).strip()
    # Trailing dots and spaces are silently dropped by SMB and Windows
    name = name.rstrip(". ")
    if len(name) > MAX_FILENAME_LENGTH:
        name = name[:MAX_FILENAME_LENGTH].rstrip(". ")
    return name


def _capitalize(word: str, first: bool) -> str:
    if not first and word in _SMALL_WORDS:
        return word
    return word[:1].upper() + word[1:]


def normalize_show_name(name: str) -> str:
    """Normalize a show name for use as a library folder.

    Dots and underscores become spaces. Names written entirely in one case
    are title-cased; mixed-case names are kept as written.
    """
    # Dots only separate words when the name has no spaces ("Mr. Robot" keeps its dot)
    if "." in name and " " not in name:
        name = _SEPARATORS.sub(" ", name)
    else:
        name = name.replace("_", " ")
    name = _WHITESPACE.sub(" ", name).strip(" -")

    if name and (name.islower() or name.isupper()):
        words = name.lower().split(" ")
        name = " ".join(_capitalize(w, i == 0) for i, w in enumerate(words))

    return sanitize_filename(name)


def season_dir_name(season: int) -> str:
    return f"Season {season:02d}"


def build_episode_filename(identity: MediaIdentity, extension: str, fallback_title: Optional[str] = None) -> str:
    """Build the library file name for an identity (without collision suffix).

    ``Show - S01E02 - Title.ext``; date based shows use ``Show - 2024-01-05``;
    without an episode number the season and title (or ``fallback_title``) are used.
    """
    show = normalize_show_name(identity.show)
    title = sanitize_filename(identity.title) if identity.title else ""

    if identity.episode is not None:
        parts = [show, f"S{identity.season:02d}E{identity.episode:02d}"]
    elif identity.air_date is not None:
        parts = [show, identity.air_date.isoformat()]
    else:
        parts = [show, f"S{identity.season:02d}"]
        if not title and fallback_title:
            title = sanitize_filename(fallback_title)

    if title:
        parts.append(title)

    stem = sanitize_filename(" - ".join(parts))
    extension = extension.lstrip(".")
    return f"{stem}.{extension}" if extension else stem


def build_library_dir(library_base: Path, identity: MediaIdentity) -> Path:
    """Library folder for an identity: ``<library>/<Show>/Season NN``."""
    return Path(library_base) / normalize_show_name(identity.show) / season_dir_name(identity.season)


def with_collision_suffix(filename: str, suffix: Optional[int]) -> str:
    """``Show - S01E02.mkv`` with suffix 2 -> ``Show - S01E02-2.mkv``."""
    if not suffix:
        return filename
    path = Path(filename)
    return f"{path.stem}-{suffix}{path.suffix}"


def normalize_for_fingerprint(filename: str) -> str:
    """Lowercase the stem and collapse everything but letters and digits."""
    stem = Path(filename).stem
    return _FINGERPRINT_STRIP.sub(" ", stem.lower()).strip()


def filename_fingerprint(filename: str) -> str:
    return hashlib.md5(normalize_for_fingerprint(filename).encode()).hexdigest()


def same_filesystem(path1: Path, path2: Path) -> bool:
    """True if both paths live on the same device.

    Missing paths are checked through their closest existing parent.
    """
    def _device(path: Path) -> int:
        path = Path(path)
        while not path.exists() and path != path.parent:
            path = path.parent
        return os.stat(path).st_dev

    try:
        return _device(path1) == _device(path2)
    except OSError:
        return False

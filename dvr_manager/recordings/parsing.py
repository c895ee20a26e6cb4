"""Local show/episode extraction from recording file names.

Each pattern yields a candidate identity with a fixed confidence. The
resolver decides whether the best candidate is good enough or whether the
metadata provider has to be asked.
"""

from __future__ import annotations

import re
from datetime import date
from pathlib import Path
from typing import List, Optional, Tuple

from dvr_manager.core.models import MediaIdentity
from dvr_manager.core.naming import normalize_show_name

CONFIDENCE_SXXEYY = 0.95
CONFIDENCE_NXNN = 0.85
CONFIDENCE_AIR_DATE = 0.80
CONFIDENCE_NUMBER = 0.50

# Show.Name.S01E02, Show Name - s1e2 - Title, Show_S01_E02
_SXXEYY_RE = re.compile(r"(?<![a-z0-9])s(\d{1,2})[ ._-]*e(\d{1,3})(?:-?e\d{1,3})*(?![0-9])", re.IGNORECASE)
# Show Name 1x02
_NXNN_RE = re.compile(r"(?<![a-z0-9])(\d{1,2})x(\d{2,3})(?![0-9])", re.IGNORECASE)
# Show Name 2024-01-05, Show.Name.2024.01.05
_AIR_DATE_RE = re.compile(r"(?<![0-9])((?:19|20)\d{2})[ ._-](\d{2})[ ._-](\d{2})(?![0-9])")
# Show Name - 102 (season 1, episode 02)
_NUMBER_RE = re.compile(r"^(?P<show>.+?)\s*-\s*(?P<num>\d{3,4})(?:\s*-\s*(?P<title>.*))?$")

# Release noise that never belongs in an episode title
_NOISE_RE = re.compile(
    r"\b(?:480p|576p|720p|1080[pi]|2160p|4k|hdtv|web[ .-]?dl|webrip|bluray|x26[45]|h\.?26[45]|hevc|aac|ac3|proper|repack)\b",
    re.IGNORECASE,
)
_YEAR_SUFFIX_RE = re.compile(r"\s*\((?:19|20)\d{2}\)\s*$")


def _clean_show(raw: str) -> str:
    raw = raw.strip(" ._-")
    return normalize_show_name(raw)


def _clean_title(raw: Optional[str]) -> Optional[str]:
    """Episode title from the text after the episode token.

    Only text introduced with `` - `` is trusted as a title; dotted scene
    names carry release noise instead.
    """
    if not raw:
        return None
    if not raw.lstrip().startswith("-") and " - " not in raw:
        return None
    raw = raw.strip(" -")
    if " - " in raw:
        raw = raw.split(" - ")[0]
    raw = _NOISE_RE.split(raw)[0].strip(" ._-[]()")
    return raw or None


def _split(stem: str, match: re.Match) -> Tuple[str, str]:
    return stem[: match.start()], stem[match.end():]


def parse_recording_name(filename: str) -> List[MediaIdentity]:
    """Return candidate identities for a recording file name, best first."""
    stem = Path(filename).stem
    candidates: List[MediaIdentity] = []

    match = _SXXEYY_RE.search(stem)
    if match:
        show, rest = _split(stem, match)
        show = _clean_show(show)
        if show:
            candidates.append(MediaIdentity(
                show=show,
                season=int(match.group(1)),
                episode=int(match.group(2)),
                title=_clean_title(rest),
                confidence=CONFIDENCE_SXXEYY,
            ))

    match = _NXNN_RE.search(stem)
    if match:
        show, rest = _split(stem, match)
        show = _clean_show(show)
        if show:
            candidates.append(MediaIdentity(
                show=show,
                season=int(match.group(1)),
                episode=int(match.group(2)),
                title=_clean_title(rest),
                confidence=CONFIDENCE_NXNN,
            ))

    match = _AIR_DATE_RE.search(stem)
    if match:
        show, rest = _split(stem, match)
        show = _clean_show(show)
        try:
            aired = date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        except ValueError:
            aired = None
        if show and aired:
            candidates.append(MediaIdentity(
                show=show,
                season=aired.year,
                air_date=aired,
                title=_clean_title(rest),
                confidence=CONFIDENCE_AIR_DATE,
            ))

    if not candidates:
        match = _NUMBER_RE.match(stem)
        if match:
            num = match.group("num")
            # 102 -> S01E02, 1012 -> S10E12
            season, episode = (int(num[0]), int(num[1:])) if len(num) == 3 else (int(num[:2]), int(num[2:]))
            show = _clean_show(match.group("show"))
            title = (match.group("title") or "").strip()
            if show and episode:
                candidates.append(MediaIdentity(
                    show=show,
                    season=season,
                    episode=episode,
                    title=title or None,
                    confidence=CONFIDENCE_NUMBER,
                ))

    candidates.sort(key=lambda c: c.confidence, reverse=True)
    return candidates


def guess_show_name(filename: str) -> str:
    """Best-effort show name used as a lookup query when no pattern matched."""
    candidates = parse_recording_name(filename)
    if candidates:
        return candidates[0].show
    stem = Path(filename).stem
    stem = _NOISE_RE.split(stem)[0]
    return _clean_show(stem)


def strip_year(show: str) -> str:
    """``Doctor Who (2005)`` -> ``Doctor Who``."""
    return _YEAR_SUFFIX_RE.sub("", show).strip()

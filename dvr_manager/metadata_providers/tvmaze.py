"""TVmaze metadata provider. No API key required, rate limited."""

import difflib
import threading
import time
from collections import deque
from datetime import date
from threading import Event
from typing import Any, Deque, Dict, List, Optional

import requests

from dvr_manager.core.errors import MetadataServiceError, OperationCancelled
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MediaIdentity
from dvr_manager.metadata_providers import (
    LookupQuery,
    MetadataProvider,
    register_provider,
    register_provider_kwargs,
)
from dvr_manager.recordings.parsing import strip_year

logger = setup_logger(__name__)

TVMAZE_BASE_URL = "https://api.tvmaze.com"

# TVmaze allows 20 calls every 10 seconds per IP
RATE_LIMIT_REQUESTS = 20
RATE_LIMIT_WINDOW_SECONDS = 10

# Only the best few search hits are worth an episode lookup each
MAX_SHOWS_PER_QUERY = 3
MIN_NAME_SIMILARITY = 0.5

# Confidence multiplier when the show matched but the episode could not be confirmed
UNCONFIRMED_EPISODE_FACTOR = 0.7


class RateLimiter:
    """Simple sliding window rate limiter."""

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.timestamps: Deque[float] = deque()
        self.lock = threading.Lock()

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.timestamps and self.timestamps[0] < cutoff:
            self.timestamps.popleft()

    def wait_if_needed(self, cancel_flag: Optional[Event] = None) -> None:
        """Block until a request is allowed (thread-safe).

        Raises OperationCancelled if ``cancel_flag`` is set while waiting.
        """
        while True:
            with self.lock:
                now = time.time()
                self._prune(now)
                if len(self.timestamps) < self.max_requests:
                    self.timestamps.append(now)
                    return
                wait_time = self.timestamps[0] + self.window_seconds - now

            # Sleep outside the lock to avoid blocking other threads
            logger.debug(f"Rate limited, waiting {wait_time:.2f}s")
            if cancel_flag is not None:
                if cancel_flag.wait(max(wait_time, 0)):
                    raise OperationCancelled("Metadata lookup cancelled")
            else:
                time.sleep(max(wait_time, 0))


# Global rate limiter for TVmaze, shared by every provider instance
_rate_limiter = RateLimiter(RATE_LIMIT_REQUESTS, RATE_LIMIT_WINDOW_SECONDS)


def name_similarity(a: str, b: str) -> float:
    """Similarity of two show names in [0, 1], ignoring case, punctuation and year suffixes."""
    def _norm(s: str) -> str:
        s = strip_year(s).casefold()
        return " ".join("".join(ch if ch.isalnum() else " " for ch in s).split())

    a_norm, b_norm = _norm(a), _norm(b)
    if not a_norm or not b_norm:
        return 0.0
    if a_norm == b_norm:
        return 1.0
    return difflib.SequenceMatcher(None, a_norm, b_norm).ratio()


@register_provider_kwargs("tvmaze")
def _tvmaze_kwargs(config) -> Dict[str, Any]:
    return {
        "base_url": config.get("TVMAZE_URL", TVMAZE_BASE_URL),
        "timeout": config.get("METADATA_TIMEOUT", 15),
    }


@register_provider("tvmaze")
class TVMazeProvider(MetadataProvider):
    """TVmaze show/episode lookup using the public REST API."""

    name = "tvmaze"
    display_name = "TVmaze"

    def __init__(
        self,
        base_url: str = TVMAZE_BASE_URL,
        timeout: float = 15,
        session: Optional[requests.Session] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.rate_limiter = rate_limiter or _rate_limiter

    def is_available(self) -> bool:
        """TVmaze needs no credentials."""
        return bool(self.base_url)

    def _get(self, resource: str, params: Dict[str, Any], cancel_flag: Optional[Event]) -> Optional[Any]:
        """GET a resource; None on 404, MetadataServiceError on transport failures."""
        self.rate_limiter.wait_if_needed(cancel_flag)

        url = f"{self.base_url}/{resource}"
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return response.json()
        except requests.Timeout as e:
            raise MetadataServiceError(f"TVmaze request timed out: {resource}") from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            if status == 429:
                raise MetadataServiceError("TVmaze rate limit exceeded (429)") from e
            raise MetadataServiceError(f"TVmaze HTTP error {status}: {resource}") from e
        except requests.RequestException as e:
            raise MetadataServiceError(f"TVmaze unreachable: {e}") from e
        except ValueError as e:
            raise MetadataServiceError(f"TVmaze returned invalid JSON for {resource}") from e

    def _search_shows(self, show: str, cancel_flag: Optional[Event]) -> List[Dict[str, Any]]:
        data = self._get("search/shows", {"q": strip_year(show)}, cancel_flag) or []
        shows = [
            item["show"] for item in data
            if isinstance(item, dict) and isinstance(item.get("show"), dict) and item["show"].get("id") is not None
        ]
        logger.debug(f"TVmaze search '{show}' returned {len(shows)} shows")
        return shows

    def _find_episode(self, show_id: int, query: LookupQuery, cancel_flag: Optional[Event]) -> Optional[Dict[str, Any]]:
        if query.season is not None and query.episode is not None:
            return self._get(
                f"shows/{show_id}/episodebynumber",
                {"season": query.season, "number": query.episode},
                cancel_flag,
            )
        if query.air_date is not None:
            episodes = self._get(
                f"shows/{show_id}/episodesbydate",
                {"date": query.air_date.isoformat()},
                cancel_flag,
            )
            if isinstance(episodes, list) and episodes:
                return episodes[0]
        return None

    def identify(self, query: LookupQuery, cancel_flag: Optional[Event] = None) -> List[MediaIdentity]:
        """Search the show by name, then confirm the episode by number or air date."""
        if not query.show:
            return []

        candidates: List[MediaIdentity] = []
        for show in self._search_shows(query.show, cancel_flag)[:MAX_SHOWS_PER_QUERY]:
            show_name = show.get("name") or ""
            similarity = name_similarity(query.show, show_name)
            if similarity < MIN_NAME_SIMILARITY:
                continue

            episode = self._find_episode(show["id"], query, cancel_flag)
            if isinstance(episode, dict):
                candidates.append(self._identity_from_episode(show_name, episode, similarity))
            elif query.season is not None:
                # Show exists but TVmaze does not list this episode (yet)
                candidates.append(MediaIdentity(
                    show=show_name,
                    season=query.season,
                    episode=query.episode,
                    air_date=query.air_date,
                    confidence=round(similarity * UNCONFIRMED_EPISODE_FACTOR, 4),
                    source=self.name,
                ))

        candidates.sort(key=lambda c: c.confidence, reverse=True)
        logger.info(f"TVmaze lookup for '{query.filename}' returned {len(candidates)} candidates")
        return candidates

    def _identity_from_episode(self, show_name: str, episode: Dict[str, Any], similarity: float) -> MediaIdentity:
        air_date = None
        airdate = episode.get("airdate")
        if airdate:
            try:
                air_date = date.fromisoformat(airdate)
            except ValueError:
                air_date = None

        season = episode.get("season")
        if season is None and air_date is not None:
            season = air_date.year

        return MediaIdentity(
            show=show_name,
            season=int(season or 0),
            episode=episode.get("number"),
            title=episode.get("name") or None,
            air_date=air_date,
            confidence=round(similarity, 4),
            source=self.name,
        )

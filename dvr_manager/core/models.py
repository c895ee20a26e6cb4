"""Data model for recordings moving through the daemon."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

from dvr_manager.core.errors import InvalidTransition


class RecordingState(str, Enum):
    """Lifecycle states of a tracked recording."""
    WRITING = "writing"
    STABLE_UNRESOLVED = "stable_unresolved"
    RESOLVED = "resolved"
    MOVED = "moved"
    FAILED = "failed"
    QUARANTINED = "quarantined"


_ALLOWED_TRANSITIONS: Dict[RecordingState, FrozenSet[RecordingState]] = {
    RecordingState.WRITING: frozenset({RecordingState.STABLE_UNRESOLVED, RecordingState.FAILED}),
    RecordingState.STABLE_UNRESOLVED: frozenset({
        RecordingState.RESOLVED,
        RecordingState.FAILED,
        RecordingState.QUARANTINED,
    }),
    RecordingState.RESOLVED: frozenset({
        RecordingState.MOVED,
        RecordingState.FAILED,
        RecordingState.QUARANTINED,
    }),
    RecordingState.FAILED: frozenset({RecordingState.STABLE_UNRESOLVED, RecordingState.QUARANTINED}),
    RecordingState.MOVED: frozenset(),
    RecordingState.QUARANTINED: frozenset(),
}

TERMINAL_STATES = frozenset({RecordingState.MOVED, RecordingState.QUARANTINED})


class MoveOutcome(str, Enum):
    """Outcome written to the audit trail."""
    SUCCESS = "success"
    FAILED = "failed"
    QUARANTINED = "quarantined"
    DUPLICATE = "duplicate"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class DirectoryEntry:
    """One file seen during a scan of the watch directory."""
    path: Path
    size: int
    mtime: float


@dataclass(frozen=True)
class MediaIdentity:
    """Canonical show/episode identity of a recording."""
    show: str
    season: int
    episode: Optional[int] = None
    title: Optional[str] = None
    air_date: Optional[date] = None
    confidence: float = 0.0
    source: str = "local"

    def same_target(self, other: "MediaIdentity") -> bool:
        """True if both identities would be filed at the same place."""
        return (
            self.show.casefold() == other.show.casefold()
            and self.season == other.season
            and self.episode == other.episode
            and self.air_date == other.air_date
        )


@dataclass
class RecordingFile:
    """A recording tracked from first sight until it is moved or quarantined."""
    path: Path
    size: int
    mtime: float
    state: RecordingState = RecordingState.WRITING
    first_seen: float = field(default_factory=time.monotonic)
    # When size/mtime were last seen to change; stability is measured from here.
    baseline_at: float = field(default_factory=time.monotonic)
    identity: Optional[MediaIdentity] = None
    resolve_attempts: int = 0
    move_attempts: int = 0
    verify_failures: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    # Size and mtime have held still for a full stability interval since baseline_at
    stable: bool = False
    in_flight: bool = False

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def can_transition(self, new_state: RecordingState) -> bool:
        return new_state in _ALLOWED_TRANSITIONS[self.state]

    def transition(self, new_state: RecordingState, reason: Optional[str] = None) -> RecordingState:
        """Move to ``new_state``; returns the previous state."""
        if not self.can_transition(new_state):
            raise InvalidTransition(
                f"{self.path.name}: cannot go from {self.state.value} to {new_state.value}"
            )
        old_state = self.state
        self.state = new_state
        if new_state in (RecordingState.FAILED, RecordingState.QUARANTINED) and reason:
            self.last_error = reason
        return old_state

    def record_error(self, kind: str, message: str) -> None:
        self.last_error_kind = kind
        self.last_error = message


@dataclass(frozen=True)
class PlacementPlan:
    """Where a resolved recording should end up."""
    recording: RecordingFile = field(compare=False)
    identity: MediaIdentity
    destination_dir: Path
    filename: str
    collision_suffix: Optional[int] = None
    duplicate_of: Optional[Path] = None

    @property
    def destination(self) -> Path:
        return self.destination_dir / self.filename

    @property
    def source(self) -> Path:
        return self.recording.path

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None


@dataclass(frozen=True)
class MoveRecord:
    """One entry of the append-only audit trail."""
    source: Path
    destination: Optional[Path]
    outcome: MoveOutcome
    timestamp: float = field(default_factory=time.time)
    retry_count: int = 0
    error_kind: Optional[str] = None
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": str(self.source),
            "destination": str(self.destination) if self.destination else None,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp,
            "retry_count": self.retry_count,
            "error_kind": self.error_kind,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MoveRecord":
        destination = data.get("destination")
        return cls(
            source=Path(data["source"]),
            destination=Path(destination) if destination else None,
            outcome=MoveOutcome(data["outcome"]),
            timestamp=float(data.get("timestamp", 0)),
            retry_count=int(data.get("retry_count", 0)),
            error_kind=data.get("error_kind"),
            detail=data.get("detail"),
        )

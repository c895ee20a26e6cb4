"""Recording state tracking and completion detection."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, Iterable, List, Optional, Set

from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import DirectoryEntry, MediaIdentity, RecordingFile, RecordingState

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Transition:
    """A state change reported by the tracker. ``old_state`` is None on first sight."""
    recording: RecordingFile = field(compare=False)
    old_state: Optional[RecordingState]
    new_state: RecordingState
    reason: Optional[str] = None

    def describe(self) -> str:
        old = self.old_state.value if self.old_state else "new"
        suffix = f" ({self.reason})" if self.reason else ""
        return f"{self.recording.name}: {old} -> {self.new_state.value}{suffix}"


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """Exponential backoff: base, 2*base, 4*base ... capped at maximum."""
    if attempts <= 0:
        return 0.0
    return min(base * (2 ** (attempts - 1)), maximum)


class FileStateTracker:
    """Tracks every recording in the watch directory.

    ``observe()`` is fed directory snapshots and decides when a recording is
    complete: size and mtime unchanged across two observations at least
    ``min_interval`` seconds apart, and no process holding it open for
    writing. Recordings claimed by a worker are left alone until released.
    """

    def __init__(
        self,
        min_interval: float,
        writer_check: Optional[Callable[[Path], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
        ignored: Optional[Iterable[Path]] = None,
    ):
        self.min_interval = float(min_interval)
        self._writer_check = writer_check or (lambda path: False)
        self._clock = clock
        self._lock = RLock()
        self._recordings: Dict[Path, RecordingFile] = {}
        self._ignored: Set[Path] = set(ignored or [])

    # -------------------------------------------------------------------------
    # Observation
    # -------------------------------------------------------------------------

    def observe(self, entries: Iterable[DirectoryEntry], now: Optional[float] = None) -> List[Transition]:
        """Apply a directory snapshot and return the resulting transitions."""
        now = self._clock() if now is None else now
        transitions: List[Transition] = []
        seen: Set[Path] = set()

        with self._lock:
            for entry in entries:
                seen.add(entry.path)
                if entry.path in self._ignored:
                    continue

                recording = self._recordings.get(entry.path)
                if recording is None:
                    recording = RecordingFile(
                        path=entry.path,
                        size=entry.size,
                        mtime=entry.mtime,
                        first_seen=now,
                        baseline_at=now,
                    )
                    self._recordings[entry.path] = recording
                    transitions.append(Transition(recording, None, RecordingState.WRITING, "first seen"))
                    continue

                if recording.in_flight:
                    continue

                transition = self._update(recording, entry, now)
                if transition:
                    transitions.append(transition)

            for path in list(self._recordings):
                if path in seen:
                    continue
                recording = self._recordings[path]
                if recording.in_flight:
                    continue
                transitions.append(self._disappeared(recording))
                del self._recordings[path]

            # Quarantined files removed by hand may come back later as new recordings
            self._ignored &= seen

        for transition in transitions:
            logger.debug(transition.describe())
        return transitions

    def _update(self, recording: RecordingFile, entry: DirectoryEntry, now: float) -> Optional[Transition]:
        if entry.size != recording.size or entry.mtime != recording.mtime:
            if recording.state != RecordingState.WRITING:
                logger.warning(
                    f"{recording.name} changed after it was considered complete "
                    f"({recording.size} -> {entry.size} bytes), waiting for it to settle again"
                )
            recording.size = entry.size
            recording.mtime = entry.mtime
            recording.baseline_at = now
            recording.stable = False
            return None

        if recording.stable or now - recording.baseline_at < self.min_interval:
            return None

        if self._writer_check(recording.path):
            logger.debug(f"{recording.name} unchanged but still open for writing")
            return None

        recording.stable = True
        if recording.state == RecordingState.WRITING:
            old_state = recording.transition(RecordingState.STABLE_UNRESOLVED)
            return Transition(recording, old_state, RecordingState.STABLE_UNRESOLVED, "stable")
        return None

    def _disappeared(self, recording: RecordingFile) -> Transition:
        recording.record_error("disappeared", "disappeared")
        if recording.state == RecordingState.FAILED:
            return Transition(recording, RecordingState.FAILED, RecordingState.FAILED, "disappeared")
        old_state = recording.transition(RecordingState.FAILED, "disappeared")
        return Transition(recording, old_state, RecordingState.FAILED, "disappeared")

    # -------------------------------------------------------------------------
    # Work selection
    # -------------------------------------------------------------------------

    def ready(self, now: Optional[float] = None) -> List[RecordingFile]:
        """Recordings that can be handed to a worker now, oldest first."""
        now = self._clock() if now is None else now
        with self._lock:
            ready = [
                r for r in self._recordings.values()
                if r.state in (RecordingState.STABLE_UNRESOLVED, RecordingState.FAILED)
                and r.stable
                and not r.in_flight
                and r.next_attempt_at <= now
            ]
        return sorted(ready, key=lambda r: (r.first_seen, str(r.path)))

    def claim(self, recording: RecordingFile) -> bool:
        """Mark a recording as owned by a worker. Failed recordings re-enter the pipeline here."""
        with self._lock:
            if recording.in_flight or recording.is_terminal:
                return False
            if recording.state == RecordingState.FAILED:
                recording.transition(RecordingState.STABLE_UNRESOLVED)
                logger.debug(f"{recording.name}: failed -> stable_unresolved (retry)")
            recording.in_flight = True
            return True

    def release(self, recording: RecordingFile) -> None:
        """Hand a recording back after a worker finished with it."""
        with self._lock:
            recording.in_flight = False
            if not recording.is_terminal:
                return
            self._recordings.pop(recording.path, None)
            if recording.state == RecordingState.QUARANTINED:
                self._ignored.add(recording.path)

    # -------------------------------------------------------------------------
    # Resolution outcomes
    # -------------------------------------------------------------------------

    def mark_resolved(self, recording: RecordingFile, identity: MediaIdentity) -> None:
        with self._lock:
            recording.identity = identity
            recording.transition(RecordingState.RESOLVED)

    def mark_unresolved(
        self,
        recording: RecordingFile,
        error: Exception,
        retry_ceiling: int,
        backoff_base: float,
        backoff_max: float,
    ) -> Optional[Transition]:
        """Count a failed resolution; quarantine once the ceiling is reached."""
        with self._lock:
            recording.resolve_attempts += 1
            recording.record_error(getattr(error, "kind", type(error).__name__), str(error))

            if recording.resolve_attempts >= retry_ceiling:
                old_state = recording.transition(RecordingState.QUARANTINED, str(error))
                return Transition(recording, old_state, RecordingState.QUARANTINED, "retries exhausted")

            delay = backoff_delay(recording.resolve_attempts, backoff_base, backoff_max)
            recording.next_attempt_at = self._clock() + delay
            logger.info(
                f"{recording.name}: unresolved (attempt {recording.resolve_attempts}/{retry_ceiling}), "
                f"retrying in {delay:.0f}s"
            )
            return None

    def schedule_retry(self, recording: RecordingFile, delay: float) -> None:
        with self._lock:
            recording.next_attempt_at = self._clock() + delay

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    def is_ignored(self, path: Path) -> bool:
        with self._lock:
            return path in self._ignored

    def get(self, path: Path) -> Optional[RecordingFile]:
        with self._lock:
            return self._recordings.get(path)

    def set_interval(self, seconds: float) -> None:
        with self._lock:
            self.min_interval = float(seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._recordings)

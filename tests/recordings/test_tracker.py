"""Tests for recording completion detection and retry bookkeeping."""

from pathlib import Path
from unittest.mock import MagicMock

from dvr_manager.core.errors import ResolutionUnresolvable
from dvr_manager.core.models import DirectoryEntry, MediaIdentity, RecordingState
from dvr_manager.recordings.tracker import FileStateTracker, backoff_delay

PATH = Path("/recordings/Show - S01E02.ts")


def _entry(size: int = 100, mtime: float = 1.0, path: Path = PATH) -> DirectoryEntry:
    return DirectoryEntry(path=path, size=size, mtime=mtime)


def _stable_tracker(interval: float = 30, **kwargs) -> FileStateTracker:
    tracker = FileStateTracker(interval, **kwargs)
    tracker.observe([_entry()], now=0)
    tracker.observe([_entry()], now=interval)
    return tracker


# =============================================================================
# Stability Detection
# =============================================================================


class TestStabilityDetection:
    """Tests for FileStateTracker.observe()."""

    def test_first_sight_is_writing(self):
        tracker = FileStateTracker(30)
        transitions = tracker.observe([_entry()], now=0)

        assert len(transitions) == 1
        assert transitions[0].old_state is None
        assert transitions[0].new_state == RecordingState.WRITING
        assert tracker.get(PATH).state == RecordingState.WRITING

    def test_unchanged_before_interval_stays_writing(self):
        tracker = FileStateTracker(30)
        tracker.observe([_entry()], now=0)
        transitions = tracker.observe([_entry()], now=29)

        assert transitions == []
        assert tracker.get(PATH).state == RecordingState.WRITING

    def test_unchanged_after_interval_is_stable(self):
        tracker = FileStateTracker(30)
        tracker.observe([_entry()], now=0)
        transitions = tracker.observe([_entry()], now=30)

        assert [t.new_state for t in transitions] == [RecordingState.STABLE_UNRESOLVED]
        assert tracker.get(PATH).stable

    def test_size_change_resets_baseline(self):
        tracker = FileStateTracker(30)
        tracker.observe([_entry(size=100)], now=0)
        tracker.observe([_entry(size=200)], now=20)

        assert tracker.observe([_entry(size=200)], now=40) == []
        assert tracker.get(PATH).state == RecordingState.WRITING

        transitions = tracker.observe([_entry(size=200)], now=50)
        assert [t.new_state for t in transitions] == [RecordingState.STABLE_UNRESOLVED]

    def test_mtime_change_resets_baseline(self):
        tracker = FileStateTracker(30)
        tracker.observe([_entry(mtime=1.0)], now=0)
        tracker.observe([_entry(mtime=2.0)], now=30)

        assert tracker.get(PATH).state == RecordingState.WRITING

    def test_never_stable_while_growing(self):
        tracker = FileStateTracker(0)
        for i in range(5):
            tracker.observe([_entry(size=100 + i)], now=i * 100)
            assert tracker.get(PATH).state == RecordingState.WRITING

    def test_open_writer_blocks_stability(self):
        writer_check = MagicMock(return_value=True)
        tracker = FileStateTracker(30, writer_check=writer_check)
        tracker.observe([_entry()], now=0)

        assert tracker.observe([_entry()], now=60) == []
        writer_check.assert_called_with(PATH)

        writer_check.return_value = False
        transitions = tracker.observe([_entry()], now=61)
        assert [t.new_state for t in transitions] == [RecordingState.STABLE_UNRESOLVED]

    def test_change_after_stable_waits_again(self):
        tracker = _stable_tracker()
        tracker.observe([_entry(size=150)], now=40)

        recording = tracker.get(PATH)
        assert not recording.stable
        assert tracker.ready(now=40) == []


class TestDisappearance:
    """Tests for tracked files that vanish from the watch directory."""

    def test_disappeared_file_fails_and_is_dropped(self):
        tracker = FileStateTracker(30)
        tracker.observe([_entry()], now=0)
        transitions = tracker.observe([], now=10)

        assert len(transitions) == 1
        assert transitions[0].new_state == RecordingState.FAILED
        assert transitions[0].reason == "disappeared"
        assert tracker.get(PATH) is None

    def test_in_flight_file_is_not_evaluated(self):
        tracker = _stable_tracker()
        recording = tracker.get(PATH)
        assert tracker.claim(recording)

        assert tracker.observe([], now=100) == []
        assert tracker.get(PATH) is recording


# =============================================================================
# Work Selection and Retries
# =============================================================================


class TestWorkSelection:
    """Tests for ready(), claim() and release()."""

    def test_ready_only_returns_stable_unclaimed(self):
        tracker = _stable_tracker()
        recording = tracker.get(PATH)

        assert tracker.ready(now=30) == [recording]
        assert tracker.claim(recording)
        assert tracker.ready(now=30) == []
        assert not tracker.claim(recording)

    def test_claim_moves_failed_back_to_unresolved(self):
        tracker = _stable_tracker()
        recording = tracker.get(PATH)
        recording.transition(RecordingState.FAILED, "boom")

        assert tracker.claim(recording)
        assert recording.state == RecordingState.STABLE_UNRESOLVED

    def test_release_drops_moved(self):
        tracker = _stable_tracker()
        recording = tracker.get(PATH)
        tracker.claim(recording)
        tracker.mark_resolved(recording, MediaIdentity(show="Show", season=1, episode=2))
        recording.transition(RecordingState.MOVED)
        tracker.release(recording)

        assert tracker.get(PATH) is None
        assert not tracker.is_ignored(PATH)

    def test_quarantined_file_is_ignored_until_removed(self):
        tracker = _stable_tracker()
        recording = tracker.get(PATH)
        tracker.claim(recording)
        recording.transition(RecordingState.QUARANTINED, "bad")
        tracker.release(recording)

        assert tracker.observe([_entry()], now=100) == []
        assert tracker.is_ignored(PATH)

        # Removed by hand, then a new file with the same name shows up
        tracker.observe([], now=110)
        transitions = tracker.observe([_entry()], now=120)
        assert transitions[0].new_state == RecordingState.WRITING

    def test_ignored_paths_from_constructor(self):
        tracker = FileStateTracker(30, ignored=[PATH])
        assert tracker.observe([_entry()], now=0) == []
        assert len(tracker) == 0


class TestUnresolvedBackoff:
    """Tests for mark_unresolved()."""

    def test_backoff_delay(self):
        assert backoff_delay(0, 30, 3600) == 0
        assert backoff_delay(1, 30, 3600) == 30
        assert backoff_delay(3, 30, 3600) == 120
        assert backoff_delay(20, 30, 3600) == 3600

    def test_schedules_retry_then_quarantines(self):
        clock = MagicMock(return_value=1000.0)
        tracker = FileStateTracker(30, clock=clock)
        tracker.observe([_entry()], now=0)
        tracker.observe([_entry()], now=30)
        recording = tracker.get(PATH)
        error = ResolutionUnresolvable("no match")

        tracker.claim(recording)
        assert tracker.mark_unresolved(recording, error, retry_ceiling=2, backoff_base=30, backoff_max=3600) is None
        tracker.release(recording)

        assert recording.state == RecordingState.STABLE_UNRESOLVED
        assert recording.next_attempt_at == 1030.0
        assert recording.last_error_kind == "unresolvable"
        assert tracker.ready(now=1000.0) == []
        assert tracker.ready(now=1030.0) == [recording]

        tracker.claim(recording)
        transition = tracker.mark_unresolved(recording, error, retry_ceiling=2, backoff_base=30, backoff_max=3600)
        tracker.release(recording)

        assert transition.new_state == RecordingState.QUARANTINED
        assert recording.state == RecordingState.QUARANTINED
        assert tracker.is_ignored(PATH)

"""Tests for MoveExecutor: commit paths, verification retries and error classification."""

import errno
import hashlib
from pathlib import Path
from threading import Event
from unittest.mock import patch

from dvr_manager.core.errors import PermanentIOError, TransientIOError
from dvr_manager.core.models import MediaIdentity, MoveOutcome, RecordingFile, RecordingState
from dvr_manager.recordings.audit import AuditTrail
from dvr_manager.transfer import fs
from dvr_manager.transfer.executor import MoveExecutor
from dvr_manager.transfer.fs import temp_path_for
from dvr_manager.transfer.planner import PlacementPlanner

CONTENT = b"finished recording " * 500
IDENTITY = MediaIdentity(show="Some Show", season=1, episode=2, confidence=0.95)


def _setup(tmp_path: Path, content: bytes = CONTENT, **executor_kwargs):
    watch = tmp_path / "recordings"
    library = tmp_path / "library"
    watch.mkdir()
    source = watch / "Some.Show.S01E02.ts"
    source.write_bytes(content)
    st = source.stat()
    recording = RecordingFile(
        path=source,
        size=st.st_size,
        mtime=st.st_mtime,
        state=RecordingState.RESOLVED,
        identity=IDENTITY,
        stable=True,
    )
    audit = AuditTrail()
    planner = PlacementPlanner(library)
    executor_kwargs.setdefault("backoff_base", 0)
    executor_kwargs.setdefault("backoff_max", 0)
    executor = MoveExecutor(audit, planner, **executor_kwargs)
    return recording, planner, executor, audit


def _retry(recording: RecordingFile) -> None:
    """What the tracker and orchestrator do before the next attempt."""
    recording.transition(RecordingState.STABLE_UNRESOLVED)
    recording.transition(RecordingState.RESOLVED)


def _flaky_checksum(failures: int):
    """file_checksum that reports a wrong digest for the first ``failures`` calls."""
    real = fs.file_checksum
    calls = {"n": 0}

    def checksum(path, cancel_flag=None):
        calls["n"] += 1
        if calls["n"] <= failures:
            return "f" * 64
        return real(path, cancel_flag)

    return checksum


# =============================================================================
# Successful Moves
# =============================================================================


class TestSameFilesystemMove:
    """Same device: a single no-clobber rename."""

    def test_moves_and_records_success(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)
        plan = planner.plan(recording, IDENTITY)

        record = executor.execute(plan)

        assert record.outcome == MoveOutcome.SUCCESS
        assert record.retry_count == 0
        assert record.destination == plan.destination
        assert recording.state == RecordingState.MOVED
        assert plan.destination.read_bytes() == CONTENT
        assert not recording.path.exists()
        assert audit.records() == [record]
        assert not planner.is_reserved(plan.destination)


class TestCrossFilesystemMove:
    """Different devices: copy, verify, rename, delete source."""

    def test_copy_verify_and_delete_source(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)
        plan = planner.plan(recording, IDENTITY)

        with patch("dvr_manager.transfer.executor.same_filesystem", return_value=False):
            record = executor.execute(plan)

        assert record.outcome == MoveOutcome.SUCCESS
        assert hashlib.sha256(plan.destination.read_bytes()).hexdigest() == hashlib.sha256(CONTENT).hexdigest()
        assert not recording.path.exists()
        assert not temp_path_for(plan.destination).exists()

    def test_checksum_mismatch_once_then_success(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)

        with patch("dvr_manager.transfer.executor.same_filesystem", return_value=False), \
             patch("dvr_manager.transfer.fs.file_checksum", side_effect=_flaky_checksum(1)):
            first = executor.execute(planner.plan(recording, IDENTITY))

            assert first.outcome == MoveOutcome.FAILED
            assert first.error_kind == "verification_mismatch"
            assert recording.state == RecordingState.FAILED
            assert recording.verify_failures == 1
            assert recording.path.exists()

            _retry(recording)
            second = executor.execute(planner.plan(recording, IDENTITY))

        assert second.outcome == MoveOutcome.SUCCESS
        assert second.retry_count == 1
        assert recording.state == RecordingState.MOVED
        assert [r.outcome for r in audit.records()] == [MoveOutcome.FAILED, MoveOutcome.SUCCESS]

    def test_second_checksum_mismatch_quarantines(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)

        with patch("dvr_manager.transfer.executor.same_filesystem", return_value=False), \
             patch("dvr_manager.transfer.fs.file_checksum", side_effect=_flaky_checksum(2)):
            executor.execute(planner.plan(recording, IDENTITY))
            _retry(recording)
            record = executor.execute(planner.plan(recording, IDENTITY))

        assert record.outcome == MoveOutcome.QUARANTINED
        assert record.retry_count == 1
        assert recording.state == RecordingState.QUARANTINED
        assert recording.path.read_bytes() == CONTENT
        assert not list((tmp_path / "library").rglob("*.ts"))

    def test_source_delete_failure_rolls_back_destination(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)
        plan = planner.plan(recording, IDENTITY)
        source = recording.path
        real_unlink = Path.unlink

        def unlink(self, *args, **kwargs):
            if self == source:
                raise PermissionError(errno.EACCES, "Permission denied", str(self))
            return real_unlink(self, *args, **kwargs)

        with patch("dvr_manager.transfer.executor.same_filesystem", return_value=False), \
             patch.object(Path, "unlink", unlink):
            record = executor.execute(plan)

        assert record.outcome == MoveOutcome.QUARANTINED
        assert record.error_kind == "permanent_io"
        assert source.exists()
        assert not plan.destination.exists()

    def test_cancel_does_not_consume_attempt(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)
        plan = planner.plan(recording, IDENTITY)
        cancel = Event()
        cancel.set()

        with patch("dvr_manager.transfer.executor.same_filesystem", return_value=False):
            record = executor.execute(plan, cancel)

        assert record.outcome == MoveOutcome.FAILED
        assert record.error_kind == "cancelled"
        assert recording.move_attempts == 0
        assert recording.state == RecordingState.FAILED
        assert recording.path.exists()
        assert not plan.destination.exists()
        assert not temp_path_for(plan.destination).exists()


# =============================================================================
# Failures
# =============================================================================


class TestFailureClassification:
    """Transient errors are retried with backoff, permanent ones quarantine."""

    def test_permanent_error_quarantines(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)
        plan = planner.plan(recording, IDENTITY)

        with patch(
            "dvr_manager.transfer.executor.rename_no_clobber",
            side_effect=OSError(errno.ENOSPC, "No space left on device"),
        ):
            record = executor.execute(plan)

        assert record.outcome == MoveOutcome.QUARANTINED
        assert record.error_kind == "permanent_io"
        assert recording.state == RecordingState.QUARANTINED
        assert recording.path.exists()
        assert not planner.is_reserved(plan.destination)

    def test_transient_error_schedules_retry(self, tmp_path):
        recording, planner, executor, audit = _setup(
            tmp_path, backoff_base=30, backoff_max=3600, clock=lambda: 1000.0
        )
        plan = planner.plan(recording, IDENTITY)

        with patch("dvr_manager.transfer.executor.rename_no_clobber", side_effect=OSError(errno.EIO, "I/O error")):
            record = executor.execute(plan)

        assert record.outcome == MoveOutcome.FAILED
        assert record.error_kind == "transient_io"
        assert recording.state == RecordingState.FAILED
        assert recording.next_attempt_at == 1030.0
        assert recording.last_error_kind == "transient_io"

    def test_transient_errors_quarantine_at_ceiling(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path, retry_ceiling=2)

        with patch("dvr_manager.transfer.executor.rename_no_clobber", side_effect=OSError(errno.EIO, "I/O error")):
            executor.execute(planner.plan(recording, IDENTITY))
            _retry(recording)
            record = executor.execute(planner.plan(recording, IDENTITY))

        assert record.outcome == MoveOutcome.QUARANTINED
        assert record.retry_count == 1
        assert recording.state == RecordingState.QUARANTINED

    def test_changed_source_is_not_moved(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)
        plan = planner.plan(recording, IDENTITY)
        with open(recording.path, "ab") as f:
            f.write(b"still recording")

        record = executor.execute(plan)

        assert record.outcome == MoveOutcome.FAILED
        assert recording.state == RecordingState.FAILED
        assert recording.stable is False
        assert recording.path.exists()
        assert not plan.destination.exists()

    def test_reject_counts_an_attempt(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)

        record = executor.reject(recording, TransientIOError("library not mounted"))

        assert record.outcome == MoveOutcome.FAILED
        assert record.destination is None
        assert recording.move_attempts == 1
        assert recording.state == RecordingState.FAILED

    def test_reject_permanent(self, tmp_path):
        recording, planner, executor, audit = _setup(tmp_path)

        record = executor.reject(recording, PermanentIOError("no free name"))

        assert record.outcome == MoveOutcome.QUARANTINED
        assert recording.state == RecordingState.QUARANTINED


# =============================================================================
# Duplicates
# =============================================================================


class TestDuplicates:
    """Byte-identical recordings already in the library."""

    def _duplicate_plan(self, tmp_path, **executor_kwargs):
        recording, planner, executor, audit = _setup(tmp_path, **executor_kwargs)
        existing = tmp_path / "library" / "Some Show" / "Season 01" / "Some Show - S01E02.ts"
        existing.parent.mkdir(parents=True)
        existing.write_bytes(CONTENT)
        plan = planner.plan(recording, IDENTITY)
        assert plan.duplicate_of == existing
        return recording, plan, executor, existing

    def test_delete_policy_removes_source(self, tmp_path):
        recording, plan, executor, existing = self._duplicate_plan(tmp_path, duplicate_policy="delete")

        record = executor.execute(plan)

        assert record.outcome == MoveOutcome.DUPLICATE
        assert record.destination == existing
        assert recording.state == RecordingState.MOVED
        assert not recording.path.exists()
        assert existing.read_bytes() == CONTENT

    def test_quarantine_policy_leaves_source(self, tmp_path):
        recording, plan, executor, existing = self._duplicate_plan(tmp_path, duplicate_policy="quarantine")

        record = executor.execute(plan)

        assert record.outcome == MoveOutcome.QUARANTINED
        assert record.error_kind == "duplicate"
        assert recording.state == RecordingState.QUARANTINED
        assert recording.path.exists()

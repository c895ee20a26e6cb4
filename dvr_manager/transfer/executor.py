"""Commits placement plans: rename or copy, verify, then remove the source."""

import time
from pathlib import Path
from threading import Event
from typing import Callable, Optional

from dvr_manager.core.errors import (
    OperationCancelled,
    RecordingIOError,
    TransientIOError,
    VerificationMismatch,
)
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MoveOutcome, MoveRecord, PlacementPlan, RecordingFile, RecordingState
from dvr_manager.core.naming import same_filesystem
from dvr_manager.recordings.audit import AuditTrail
from dvr_manager.recordings.tracker import backoff_delay
from dvr_manager.transfer.fs import (
    classify_os_error,
    copy_verified,
    remove_stale_temp,
    rename_no_clobber,
)
from dvr_manager.transfer.planner import PlacementPlanner

logger = setup_logger(__name__)

# A second checksum mismatch means the storage cannot be trusted with this file
MAX_VERIFY_FAILURES = 2


class MoveExecutor:
    """Performs one move attempt per ``execute()`` call.

    The outcome is applied to the plan's RecordingFile (MOVED, FAILED with a
    retry time, or QUARANTINED) and appended to the audit trail. The plan's
    reservation is always released.
    """

    def __init__(
        self,
        audit: AuditTrail,
        planner: PlacementPlanner,
        duplicate_policy: str = "quarantine",
        retry_ceiling: int = 5,
        backoff_base: float = 30,
        backoff_max: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.audit = audit
        self.planner = planner
        self.duplicate_policy = duplicate_policy
        self.retry_ceiling = retry_ceiling
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock

    def configure(self, duplicate_policy: str, retry_ceiling: int, backoff_base: float, backoff_max: float) -> None:
        self.duplicate_policy = duplicate_policy
        self.retry_ceiling = retry_ceiling
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def execute(self, plan: PlacementPlan, cancel_flag: Optional[Event] = None) -> MoveRecord:
        recording = plan.recording
        recording.move_attempts += 1

        try:
            if plan.is_duplicate:
                record = self._handle_duplicate(plan)
            else:
                self._check_source(recording)
                self._commit(plan, cancel_flag)
                recording.transition(RecordingState.MOVED)
                logger.info(f"Moved {recording.name} -> {plan.destination}")
                record = self._record(recording, MoveOutcome.SUCCESS, plan.destination)
        except OperationCancelled as e:
            # Shutdown is not the file's fault
            recording.move_attempts -= 1
            record = self._fail(recording, e, 0, plan.destination)
        except OSError as e:
            record = self._handle_error(recording, classify_os_error(e, f"Moving {recording.name}"), plan.destination)
        except RecordingIOError as e:
            record = self._handle_error(recording, e, plan.destination)
        finally:
            self.planner.release(plan)

        return self.audit.append(record)

    def reject(self, recording: RecordingFile, error: RecordingIOError) -> MoveRecord:
        """Count a failure that happened before a plan existed (e.g. while planning)."""
        recording.move_attempts += 1
        return self.audit.append(self._handle_error(recording, error, None))

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _check_source(self, recording: RecordingFile) -> None:
        """The source must still look exactly as it did when it was judged stable."""
        try:
            stat = recording.path.stat()
        except FileNotFoundError:
            raise TransientIOError(f"{recording.name} disappeared before it could be moved")

        if stat.st_size != recording.size or stat.st_mtime != recording.mtime:
            # Force the tracker to wait for a fresh stability window
            recording.stable = False
            raise TransientIOError(
                f"{recording.name} changed since it was judged complete "
                f"({recording.size} -> {stat.st_size} bytes)"
            )

    def _commit(self, plan: PlacementPlan, cancel_flag: Optional[Event]) -> None:
        source = plan.source
        destination = plan.destination
        plan.destination_dir.mkdir(parents=True, exist_ok=True)

        if same_filesystem(source, plan.destination_dir):
            logger.debug(f"Renaming {source} -> {destination}")
            rename_no_clobber(source, destination)
            return

        logger.debug(f"Copying {source} -> {destination} (different filesystem)")
        remove_stale_temp(destination)
        copy_verified(source, destination, cancel_flag)

        try:
            source.unlink()
        except OSError as e:
            # Never leave the recording in two places
            logger.warning(f"Could not remove {source} after copy, rolling back {destination}: {e}")
            try:
                destination.unlink()
            except OSError as rollback_error:
                logger.error(f"Rollback of {destination} failed: {rollback_error}")
            raise

    def _handle_duplicate(self, plan: PlacementPlan) -> MoveRecord:
        recording = plan.recording
        detail = f"identical to {plan.duplicate_of}"

        if self.duplicate_policy == "delete":
            self._check_source(recording)
            recording.path.unlink()
            recording.transition(RecordingState.MOVED)
            logger.info(f"Deleted {recording.name}: {detail}")
            return self._record(
                recording, MoveOutcome.DUPLICATE, plan.duplicate_of, error_kind="duplicate", detail=detail
            )

        recording.record_error("duplicate", detail)
        recording.transition(RecordingState.QUARANTINED, detail)
        logger.warning(f"Quarantined {recording.name}: {detail}")
        return self._record(
            recording, MoveOutcome.QUARANTINED, plan.duplicate_of, error_kind="duplicate", detail=detail
        )

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    def _record(
        self,
        recording: RecordingFile,
        outcome: MoveOutcome,
        destination: Optional[Path],
        error_kind: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> MoveRecord:
        return MoveRecord(
            source=recording.path,
            destination=destination,
            outcome=outcome,
            retry_count=max(recording.move_attempts - 1, 0),
            error_kind=error_kind,
            detail=detail,
        )

    def _handle_error(
        self,
        recording: RecordingFile,
        error: RecordingIOError,
        destination: Optional[Path],
    ) -> MoveRecord:
        if isinstance(error, VerificationMismatch):
            recording.verify_failures += 1
            if recording.verify_failures >= MAX_VERIFY_FAILURES:
                return self._quarantine(recording, error)

        if not error.retryable or recording.move_attempts >= self.retry_ceiling:
            return self._quarantine(recording, error)

        delay = backoff_delay(recording.move_attempts, self.backoff_base, self.backoff_max)
        return self._fail(recording, error, delay, destination)

    def _fail(
        self,
        recording: RecordingFile,
        error: Exception,
        retry_delay: float,
        destination: Optional[Path],
    ) -> MoveRecord:
        kind = getattr(error, "kind", type(error).__name__)
        recording.record_error(kind, str(error))
        recording.transition(RecordingState.FAILED, str(error))
        recording.next_attempt_at = self._clock() + retry_delay
        logger.warning(
            f"Move of {recording.name} failed (attempt {recording.move_attempts}/{self.retry_ceiling}), "
            f"retrying in {retry_delay:.0f}s: {error}"
        )
        return self._record(recording, MoveOutcome.FAILED, destination, error_kind=kind, detail=str(error))

    def _quarantine(self, recording: RecordingFile, error: RecordingIOError) -> MoveRecord:
        recording.record_error(error.kind, str(error))
        recording.transition(RecordingState.QUARANTINED, str(error))
        logger.error(f"Quarantined {recording.name} after {recording.move_attempts} attempt(s): {error}")
        return self._record(recording, MoveOutcome.QUARANTINED, None, error_kind=error.kind, detail=str(error))

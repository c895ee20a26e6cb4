"""Append-only audit trail of move attempts."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Optional, Set

from dvr_manager.core.cache import ReadWriteLock
from dvr_manager.core.errors import ConfigurationError
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MoveOutcome, MoveRecord

logger = setup_logger(__name__)


class AuditTrail:
    """MoveRecords kept in memory and, when a path is given, in a JSON lines file.

    Appends are serialized; reads take a snapshot and may run concurrently.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else None
        self._lock = ReadWriteLock()
        self._records: List[MoveRecord] = []
        if self.path:
            self._records = self._load(self.path)

    @staticmethod
    def _load(path: Path) -> List[MoveRecord]:
        """Read an existing log.

        Raises:
            ConfigurationError: the log exists but cannot be read
        """
        if not path.exists():
            return []

        records: List[MoveRecord] = []
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigurationError(f"Cannot read audit log {path}: {e}") from e

        for line_number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                records.append(MoveRecord.from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed audit entry {path}:{line_number}: {e}")
        logger.debug(f"Loaded {len(records)} audit entries from {path}")
        return records

    def append(self, record: MoveRecord) -> MoveRecord:
        with self._lock.write():
            self._records.append(record)
            if self.path:
                try:
                    self.path.parent.mkdir(parents=True, exist_ok=True)
                    with open(self.path, "a") as f:
                        f.write(json.dumps(record.to_dict()) + "\n")
                except OSError as e:
                    # The in-memory trail still has the entry
                    logger.error(f"Failed to write audit entry to {self.path}: {e}")

        level = logger.warning if record.outcome in (MoveOutcome.QUARANTINED, MoveOutcome.AMBIGUOUS) else logger.debug
        error = f", {record.error_kind}: {record.detail}" if record.error_kind else ""
        level(
            f"Audit: {record.outcome.value} {record.source} -> {record.destination} "
            f"(retries={record.retry_count}{error})"
        )
        return record

    def records(self) -> List[MoveRecord]:
        with self._lock.read():
            return list(self._records)

    def records_for(self, source: Path) -> List[MoveRecord]:
        with self._lock.read():
            return [r for r in self._records if r.source == source]

    def quarantined_paths(self) -> Set[Path]:
        """Sources whose latest move outcome is QUARANTINED."""
        latest: Dict[Path, MoveOutcome] = {}
        with self._lock.read():
            for record in self._records:
                if record.outcome == MoveOutcome.AMBIGUOUS:
                    continue
                latest[record.source] = record.outcome
        return {path for path, outcome in latest.items() if outcome == MoveOutcome.QUARANTINED}

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._records)

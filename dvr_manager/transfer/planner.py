"""Library placement: destination paths and collision resolution."""

from pathlib import Path
from threading import Event, Lock
from typing import Optional, Set

from dvr_manager.core.errors import PermanentIOError
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MediaIdentity, PlacementPlan, RecordingFile
from dvr_manager.core.naming import (
    build_episode_filename,
    build_library_dir,
    with_collision_suffix,
)
from dvr_manager.transfer.fs import files_identical

logger = setup_logger(__name__)

MAX_COLLISION_ATTEMPTS = 100


class PlacementPlanner:
    """Computes where a resolved recording goes in the library.

    Candidate names are tried in a fixed order (``name``, ``name-2``,
    ``name-3`` ...) so the same library contents always give the same
    result. Chosen destinations stay reserved until ``release()`` so two
    workers never pick the same free name.
    """

    def __init__(self, library_dir: Path):
        self.library_dir = Path(library_dir)
        self._lock = Lock()
        self._reserved: Set[Path] = set()

    def set_library_dir(self, library_dir: Path) -> None:
        with self._lock:
            self.library_dir = Path(library_dir)

    def plan(
        self,
        recording: RecordingFile,
        identity: MediaIdentity,
        cancel_flag: Optional[Event] = None,
    ) -> PlacementPlan:
        """Pick the destination for ``recording`` and reserve it.

        An existing candidate with the same content as the recording makes
        the plan a duplicate; nothing is reserved in that case.

        Raises:
            PermanentIOError: every candidate name is taken
        """
        with self._lock:
            library_dir = self.library_dir
        destination_dir = build_library_dir(library_dir, identity)
        base_name = build_episode_filename(
            identity,
            recording.path.suffix,
            fallback_title=recording.path.stem,
        )

        for attempt in range(1, MAX_COLLISION_ATTEMPTS + 1):
            suffix = attempt if attempt > 1 else None
            filename = with_collision_suffix(base_name, suffix)
            candidate = destination_dir / filename

            if candidate.exists():
                if files_identical(recording.path, candidate, cancel_flag):
                    logger.info(f"{recording.name} already in library as {candidate}")
                    return PlacementPlan(
                        recording=recording,
                        identity=identity,
                        destination_dir=destination_dir,
                        filename=filename,
                        collision_suffix=suffix,
                        duplicate_of=candidate,
                    )
                continue

            with self._lock:
                if candidate in self._reserved:
                    continue
                self._reserved.add(candidate)

            if suffix:
                logger.info(f"{recording.name}: {base_name} exists, using {filename}")
            return PlacementPlan(
                recording=recording,
                identity=identity,
                destination_dir=destination_dir,
                filename=filename,
                collision_suffix=suffix,
            )

        raise PermanentIOError(
            f"No free destination for {recording.name} after {MAX_COLLISION_ATTEMPTS} attempts in {destination_dir}"
        )

    def release(self, plan: PlacementPlan) -> None:
        with self._lock:
            self._reserved.discard(plan.destination)

    def is_reserved(self, path: Path) -> bool:
        with self._lock:
            return path in self._reserved

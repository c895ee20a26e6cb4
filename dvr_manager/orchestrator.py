"""Daemon loop: scans the watch directory and runs recordings through the pipeline.

Each stable recording is handled by one worker job (resolve -> plan ->
execute). A single coordinator thread scans, dispatches and harvests jobs;
lifecycle commands reach it through a queue so signal handlers never touch
daemon state directly.
"""

import queue
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from pathlib import Path
from threading import Event, Lock
from typing import Callable, Dict, List, Optional, Set

from dvr_manager.core.cache import IdentityCache
from dvr_manager.core.config import Config
from dvr_manager.core.errors import (
    ConfigurationError,
    OperationCancelled,
    RecordingIOError,
    ResolutionUnresolvable,
    TransientIOError,
)
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MoveOutcome, MoveRecord, RecordingFile, RecordingState
from dvr_manager.core.settings_registry import get_all_fields
from dvr_manager.metadata_providers import MetadataProvider, get_configured_provider
from dvr_manager.plex import PlexError, build_plex_config, check_library_dir
from dvr_manager.recordings.audit import AuditTrail
from dvr_manager.recordings.resolver import MetadataResolver
from dvr_manager.recordings.scan import WriterCheck, scan_watch_directory
from dvr_manager.recordings.tracker import FileStateTracker, Transition
from dvr_manager.transfer.executor import MoveExecutor
from dvr_manager.transfer.fs import classify_os_error
from dvr_manager.transfer.planner import PlacementPlanner

logger = setup_logger(__name__)

# Settings that are only read when the components are built
RESTART_KEYS = tuple(f.key for f in get_all_fields() if f.requires_restart)

PLEX_KEYS = ("LIBRARY_DIR", "PLEX_PREFS_PATH", "PLEX_URL", "PLEX_TV_LIBRARY_ID")


class DaemonState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RELOADING = "reloading"
    DRAINING = "draining"
    STOPPED = "stopped"


class Command(str, Enum):
    RELOAD = "reload"
    STOP = "stop"


ProviderFactory = Callable[[Config], Optional[MetadataProvider]]


class Orchestrator:
    """Owns the daemon components and their lifecycle.

    Use ``start()`` for the background daemon, or ``run_once()`` to run a
    single scan/dispatch cycle synchronously.
    """

    def __init__(
        self,
        config: Config,
        cache: Optional[IdentityCache] = None,
        provider_factory: ProviderFactory = get_configured_provider,
    ):
        self.config = config
        self.cache = cache if cache is not None else IdentityCache()
        self._provider_factory = provider_factory

        self._state = DaemonState.STARTING
        self._state_lock = Lock()
        self._commands: "queue.Queue[Command]" = queue.Queue()
        self._cancel_flag = Event()
        self._stopped = Event()

        self._pool: Optional[ThreadPoolExecutor] = None
        self._coordinator: Optional[threading.Thread] = None
        self._active: Dict[Future, RecordingFile] = {}
        self._max_workers = 1

        self.audit: Optional[AuditTrail] = None
        self.writer_check: Optional[WriterCheck] = None
        self.tracker: Optional[FileStateTracker] = None
        self.resolver: Optional[MetadataResolver] = None
        self.planner: Optional[PlacementPlanner] = None
        self.executor: Optional[MoveExecutor] = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> DaemonState:
        with self._state_lock:
            return self._state

    def _set_state(self, state: DaemonState) -> None:
        with self._state_lock:
            old_state, self._state = self._state, state
        if old_state != state:
            logger.info(f"Daemon {old_state.value} -> {state.value}")

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    def prepare(self) -> None:
        """Load configuration and build the components.

        Raises:
            ConfigurationError: the configuration is invalid or the watch
                directory is missing or unreadable
        """
        if self.tracker is not None:
            return
        if not self.config.loaded:
            self.config.refresh()

        cfg = self.config
        self.audit = AuditTrail(cfg.AUDIT_LOG)
        self.writer_check = WriterCheck(cfg.CHECK_OPEN_WRITERS)

        quarantined = self.audit.quarantined_paths()
        if quarantined:
            logger.info(f"Ignoring {len(quarantined)} quarantined recording(s) from the audit log")

        self.tracker = FileStateTracker(
            cfg.STABILITY_INTERVAL,
            writer_check=self.writer_check,
            ignored=quarantined,
        )
        self.resolver = MetadataResolver(
            self.cache,
            provider=self._provider_factory(cfg),
            audit=self.audit,
            confidence_threshold=cfg.CONFIDENCE_THRESHOLD,
            min_confidence=cfg.MIN_CONFIDENCE,
        )
        self.planner = PlacementPlanner(cfg.LIBRARY_DIR)
        self.executor = MoveExecutor(
            self.audit,
            self.planner,
            duplicate_policy=cfg.DUPLICATE_POLICY,
            retry_ceiling=cfg.RETRY_CEILING,
            backoff_base=cfg.RETRY_BACKOFF_BASE,
            backoff_max=cfg.RETRY_BACKOFF_MAX,
        )

        self._max_workers = int(cfg.MAX_WORKERS)
        self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="Recording")

        provider = self.resolver.provider
        logger.info(
            f"Watching {cfg.WATCH_DIR} -> {cfg.LIBRARY_DIR} "
            f"(provider: {provider.display_name if provider else 'none'}, workers: {self._max_workers})"
        )
        self._check_plex_library()

    def _check_plex_library(self) -> None:
        """Warn when LIBRARY_DIR is not part of the Plex TV library. Never fatal."""
        plex_config = build_plex_config(self.config.snapshot())
        if plex_config is None:
            return
        try:
            check_library_dir(plex_config, self.config.LIBRARY_DIR)
        except PlexError as e:
            logger.warning(f"Plex library check skipped: {e}")

    def start(self) -> None:
        """Prepare, take a first snapshot of the watch directory and start the coordinator."""
        if self._coordinator is not None:
            logger.debug("Coordinator already started")
            return

        self.prepare()
        self._observe()
        self._set_state(DaemonState.RUNNING)

        self._coordinator = threading.Thread(
            target=self._coordinator_loop,
            daemon=True,
            name="RecordingCoordinator",
        )
        self._coordinator.start()

    def run_once(self) -> int:
        """Run one cycle and work through every recording that is ready.

        Dispatches in rounds of at most MAX_WORKERS jobs until nothing is
        ready. A recording is handled at most once per call, so a retry
        with no backoff waits for the next call. Returns the job count.
        """
        self.prepare()
        if self.state == DaemonState.STARTING:
            self._set_state(DaemonState.RUNNING)

        handled: Set[Path] = set()
        dispatched = self._cycle(handled)
        while True:
            if self._active:
                wait(list(self._active))
            self._harvest()
            if self.state != DaemonState.RUNNING:
                break
            count = self._dispatch(handled)
            if not count:
                break
            dispatched += count
        return dispatched

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _coordinator_running(self) -> bool:
        return self._coordinator is not None and self._coordinator.is_alive()

    def request_reload(self) -> None:
        if self._coordinator_running():
            self._commands.put(Command.RELOAD)
        else:
            self._reload()

    def request_stop(self) -> None:
        if self._coordinator_running():
            self._commands.put(Command.STOP)
        elif self.state != DaemonState.STOPPED:
            self._drain()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the daemon has stopped; False on timeout."""
        return self._stopped.wait(timeout)

    def run_forever(self) -> None:
        self.start()
        # Short waits keep the main thread responsive to signals
        while not self.wait(1.0):
            pass

    # -------------------------------------------------------------------------
    # Coordinator
    # -------------------------------------------------------------------------

    def _coordinator_loop(self) -> None:
        logger.info(f"Coordinator started with {self._max_workers} workers")
        try:
            while True:
                try:
                    self._cycle()
                except Exception as e:
                    logger.error_trace(f"Scan cycle failed: {e}")

                try:
                    command = self._commands.get(timeout=self.config.POLL_INTERVAL)
                except queue.Empty:
                    continue

                if command == Command.RELOAD:
                    self._reload()
                elif command == Command.STOP:
                    break
        finally:
            self._drain()

    def _cycle(self, handled: Optional[Set[Path]] = None) -> int:
        """Harvest finished jobs, observe the watch directory and dispatch ready recordings."""
        self._harvest()
        self._observe()
        if self.state != DaemonState.RUNNING:
            return 0
        return self._dispatch(handled)

    def _observe(self) -> List[Transition]:
        watch_dir = self.config.WATCH_DIR
        if not watch_dir.is_dir():
            # Keep tracked state; an unmounted share must not look like deleted recordings
            logger.warning(f"Watch directory {watch_dir} is not available, skipping scan")
            return []

        self.writer_check.refresh()
        entries = scan_watch_directory(
            watch_dir,
            self.config.RECORDING_EXTENSIONS,
            exclude=[self.config.LIBRARY_DIR],
        )
        transitions = self.tracker.observe(entries)

        for transition in transitions:
            if transition.new_state == RecordingState.STABLE_UNRESOLVED:
                logger.info(f"Recording complete: {transition.recording.name}")
            elif transition.old_state is None:
                logger.info(f"New recording: {transition.recording.name}")
            elif transition.reason == "disappeared":
                logger.info(f"Recording disappeared: {transition.recording.path}")
        return transitions

    def _dispatch(self, handled: Optional[Set[Path]] = None) -> int:
        dispatched = 0
        for recording in self.tracker.ready():
            if len(self._active) >= self._max_workers:
                break
            if handled is not None and recording.path in handled:
                continue
            if not self.tracker.claim(recording):
                continue
            future = self._pool.submit(self._process_recording, recording)
            self._active[future] = recording
            if handled is not None:
                handled.add(recording.path)
            dispatched += 1
        return dispatched

    def _harvest(self) -> None:
        for future in [f for f in self._active if f.done()]:
            recording = self._active.pop(future)
            try:
                future.result()
            except Exception as e:
                logger.error_trace(f"Job for {recording.name} failed: {e}")

    # -------------------------------------------------------------------------
    # Worker job
    # -------------------------------------------------------------------------

    def _process_recording(self, recording: RecordingFile) -> None:
        """Resolve, plan and move one recording. Runs on a worker thread."""
        cancel_flag = self._cancel_flag
        try:
            if recording.state == RecordingState.STABLE_UNRESOLVED:
                try:
                    identity = self.resolver.resolve(recording, cancel_flag)
                except ResolutionUnresolvable as e:
                    self._unresolved(recording, e)
                    return
                self.tracker.mark_resolved(recording, identity)

            try:
                plan = self.planner.plan(recording, recording.identity, cancel_flag)
            except OSError as e:
                self.executor.reject(recording, classify_os_error(e, f"Planning {recording.name}"))
                return
            except RecordingIOError as e:
                self.executor.reject(recording, e)
                return

            self.executor.execute(plan, cancel_flag)

        except OperationCancelled:
            logger.info(f"Processing of {recording.name} cancelled")
            if recording.state == RecordingState.RESOLVED:
                recording.transition(RecordingState.FAILED, "cancelled")
        except Exception as e:
            logger.error_trace(f"Unexpected error processing {recording.name}: {e}")
            self._unexpected(recording, e)
        finally:
            self.tracker.release(recording)

    def _unexpected(self, recording: RecordingFile, error: Exception) -> None:
        """Count an unexpected failure as an attempt so the retry ceiling still applies."""
        detail = f"Unexpected error: {type(error).__name__}: {error}"
        if recording.state == RecordingState.STABLE_UNRESOLVED:
            self._unresolved(recording, ResolutionUnresolvable(detail))
        elif recording.state == RecordingState.RESOLVED:
            self.executor.reject(recording, TransientIOError(detail))

    def _unresolved(self, recording: RecordingFile, error: ResolutionUnresolvable) -> None:
        cfg = self.config
        transition = self.tracker.mark_unresolved(
            recording,
            error,
            retry_ceiling=cfg.RETRY_CEILING,
            backoff_base=cfg.RETRY_BACKOFF_BASE,
            backoff_max=cfg.RETRY_BACKOFF_MAX,
        )
        if transition is not None:
            self.audit.append(MoveRecord(
                source=recording.path,
                destination=None,
                outcome=MoveOutcome.QUARANTINED,
                retry_count=recording.resolve_attempts - 1,
                error_kind=error.kind,
                detail=str(error),
            ))

    # -------------------------------------------------------------------------
    # Reload / drain
    # -------------------------------------------------------------------------

    def _reload(self) -> None:
        previous = self.state
        self._set_state(DaemonState.RELOADING)
        try:
            changed = self.config.refresh()
        except ConfigurationError as e:
            logger.error(f"Configuration reload rejected, keeping previous settings: {e}")
            return
        finally:
            self._set_state(previous)

        if not changed:
            logger.info("Configuration reloaded, nothing changed")
            return

        logger.info(f"Configuration reloaded: {', '.join(sorted(changed))}")
        self._apply_config(changed)

    def _apply_config(self, changed: List[str]) -> None:
        if self.tracker is None:
            return

        cfg = self.config
        self.tracker.set_interval(cfg.STABILITY_INTERVAL)
        self.writer_check.enabled = cfg.CHECK_OPEN_WRITERS
        self.planner.set_library_dir(cfg.LIBRARY_DIR)
        self.executor.configure(
            duplicate_policy=cfg.DUPLICATE_POLICY,
            retry_ceiling=cfg.RETRY_CEILING,
            backoff_base=cfg.RETRY_BACKOFF_BASE,
            backoff_max=cfg.RETRY_BACKOFF_MAX,
        )

        provider = self.resolver.provider
        if any(key in changed for key in ("METADATA_PROVIDER", "TVMAZE_URL", "METADATA_TIMEOUT")):
            provider = self._provider_factory(cfg)
        self.resolver.configure(provider, cfg.CONFIDENCE_THRESHOLD, cfg.MIN_CONFIDENCE)

        if any(key in changed for key in PLEX_KEYS):
            self._check_plex_library()

        for key in RESTART_KEYS:
            if key in changed:
                logger.warning(f"{key} changed; the new value applies after a restart")

    def _drain(self) -> None:
        """Finish in-flight jobs within DRAIN_TIMEOUT, then cancel the rest."""
        if self.state == DaemonState.STOPPED:
            return
        self._set_state(DaemonState.DRAINING)

        if self._active:
            timeout = self.config.get("DRAIN_TIMEOUT", 30)
            logger.info(f"Waiting up to {timeout}s for {len(self._active)} in-flight recording(s)")
            _, not_done = wait(list(self._active), timeout=timeout)
            if not_done:
                logger.warning(f"Cancelling {len(not_done)} recording(s) still in flight")
                self._cancel_flag.set()
                wait(not_done)
            self._harvest()

        if self._pool is not None:
            self._pool.shutdown(wait=True)

        self._set_state(DaemonState.STOPPED)
        self._stopped.set()

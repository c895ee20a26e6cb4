"""Watch directory scanning and open-writer detection."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable, List, Optional, Set

from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import DirectoryEntry

logger = setup_logger(__name__)

_PROC = Path("/proc")


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def scan_watch_directory(
    watch_dir: Path,
    extensions: Iterable[str],
    exclude: Optional[Iterable[Path]] = None,
) -> List[DirectoryEntry]:
    """List recording files below ``watch_dir``.

    Hidden files and directories are skipped: DVRs write in-progress grabs
    and our own partial copies under dot-names.
    """
    allowed = {ext.lower().lstrip(".") for ext in extensions}
    excluded: Set[Path] = set()
    for path in exclude or []:
        try:
            excluded.add(Path(path).resolve())
        except OSError:
            continue

    entries: List[DirectoryEntry] = []

    def _on_error(err: OSError) -> None:
        logger.warning(f"Cannot scan {err.filename}: {err.strerror}")

    for root, dirs, files in os.walk(watch_dir, onerror=_on_error):
        root_path = Path(root)
        dirs[:] = sorted(
            d for d in dirs
            if not _is_hidden(d) and (root_path / d).resolve() not in excluded
        )
        for name in sorted(files):
            if _is_hidden(name):
                continue
            path = root_path / name
            if path.suffix.lower().lstrip(".") not in allowed:
                continue
            try:
                st = path.stat()
            except FileNotFoundError:
                # Removed between listing and stat
                continue
            except OSError as e:
                logger.warning(f"Cannot stat {path}: {e}")
                continue
            entries.append(DirectoryEntry(path=path, size=st.st_size, mtime=st.st_mtime))

    return entries


def _fd_open_for_write(fdinfo: Path) -> bool:
    try:
        with open(fdinfo, "r") as f:
            for line in f:
                if line.startswith("flags:"):
                    flags = int(line.split()[1], 8)
                    return bool(flags & (os.O_WRONLY | os.O_RDWR))
    except (OSError, ValueError, IndexError):
        pass
    return False


def open_writer_paths() -> Optional[Set[Path]]:
    """Paths currently open for writing by any visible process.

    Returns None when /proc is unavailable, meaning "no signal".
    """
    if not _PROC.is_dir():
        return None

    writers: Set[Path] = set()
    for pid_dir in _PROC.iterdir():
        if not pid_dir.name.isdigit():
            continue
        fd_dir = pid_dir / "fd"
        try:
            fds = list(fd_dir.iterdir())
        except OSError:
            # Process exited or belongs to another user
            continue
        for fd in fds:
            try:
                target = Path(os.readlink(fd))
            except OSError:
                continue
            if not target.is_absolute():
                continue
            if _fd_open_for_write(pid_dir / "fdinfo" / fd.name):
                writers.add(target)
    return writers


class WriterCheck:
    """Best-effort "is anyone still writing this file" check.

    One /proc walk serves a whole scan; call ``refresh()`` once per cycle.
    """

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._writers: Optional[Set[Path]] = None

    def refresh(self) -> None:
        self._writers = open_writer_paths() if self.enabled else None

    def __call__(self, path: Path) -> bool:
        if not self._writers:
            return False
        return path in self._writers or path.resolve() in self._writers

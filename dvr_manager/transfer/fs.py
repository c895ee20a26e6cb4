"""Filesystem primitives for moving recordings without exposing partial files.

The media server scans the library at any time, so nothing is ever written
under its final name until the content is complete and verified.
"""

import errno
import hashlib
import os
import shutil
import time
from pathlib import Path
from threading import Event
from typing import Optional

from dvr_manager.core.errors import (
    OperationCancelled,
    PermanentIOError,
    RecordingIOError,
    TransientIOError,
    VerificationMismatch,
)
from dvr_manager.core.logger import setup_logger

logger = setup_logger(__name__)

CHUNK_SIZE = 4 * 1024 * 1024
TEMP_SUFFIX = ".partial"

_VERIFY_IO_WAIT_SECONDS = 3.0

# Errors that retrying will not fix
_PERMANENT_ERRNOS = {
    errno.ENOSPC,
    errno.EACCES,
    errno.EPERM,
    errno.EROFS,
    errno.EDQUOT,
    errno.ENAMETOOLONG,
}


def _is_permission_error(e: Exception) -> bool:
    """Check if exception is a permission error (including NFS/SMB issues)."""
    return isinstance(e, PermissionError) or (isinstance(e, OSError) and e.errno == errno.EPERM)


def classify_os_error(e: OSError, action: str) -> RecordingIOError:
    """Wrap an OSError as a transient or permanent recording error."""
    message = f"{action} failed: {e}"
    if _is_permission_error(e) or e.errno in _PERMANENT_ERRNOS:
        return PermanentIOError(message)
    return TransientIOError(message)


def temp_path_for(dest: Path) -> Path:
    """Hidden sibling used while a copy is in progress."""
    return dest.parent / f".{dest.name}{TEMP_SUFFIX}"


def file_checksum(path: Path, cancel_flag: Optional[Event] = None) -> str:
    """SHA-256 of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            if cancel_flag is not None and cancel_flag.is_set():
                raise OperationCancelled(f"Checksum of {path.name} cancelled")
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def files_identical(a: Path, b: Path, cancel_flag: Optional[Event] = None) -> bool:
    """Byte equality via size, then checksum."""
    try:
        if a.stat().st_size != b.stat().st_size:
            return False
    except FileNotFoundError:
        return False
    return file_checksum(a, cancel_flag) == file_checksum(b, cancel_flag)


def _verify_transfer_size(dest: Path, expected_size: int, action: str) -> None:
    """Verify file transfer completed successfully.

    Some filesystems (especially remote NAS/CIFS/NFS) can report stale sizes briefly
    after large writes. Do a second stat after a short delay before declaring failure.
    """
    actual_size = dest.stat().st_size
    if actual_size == expected_size:
        return

    logger.debug(
        f"File {action} size mismatch, waiting for filesystem sync: {dest} "
        f"({actual_size} != {expected_size})"
    )
    time.sleep(_VERIFY_IO_WAIT_SECONDS)

    actual_size = dest.stat().st_size
    if actual_size != expected_size:
        raise VerificationMismatch(
            f"File {action} incomplete: '{dest}' was {actual_size} bytes instead of expected {expected_size}."
        )


def rename_no_clobber(source: Path, dest: Path) -> None:
    """Rename that refuses to replace an existing destination.

    os.rename is atomic on one filesystem and triggers the inotify
    IN_MOVED_TO events media servers watch for, but silently overwrites on
    Unix, hence the existence check.
    """
    if dest.exists():
        raise FileExistsError(errno.EEXIST, "Destination already exists", str(dest))
    os.rename(str(source), str(dest))


def _copy_metadata(source: Path, dest: Path) -> None:
    try:
        shutil.copystat(str(source), str(dest))
    except OSError as e:
        # NFS/SMB mounts often refuse chmod/utime; content is what matters
        if _is_permission_error(e) or e.errno in (errno.ENOTSUP, errno.EOPNOTSUPP):
            logger.debug(f"Could not copy file metadata to {dest}: {e}")
            return
        raise


def copy_verified(source: Path, dest: Path, cancel_flag: Optional[Event] = None) -> str:
    """Copy ``source`` to ``dest`` through a hidden temp file and verify it.

    The temp file is claimed with O_EXCL, filled while hashing the source,
    re-read from disk and compared, then renamed into place. On any failure
    (including cancellation) the temp file is removed and ``dest`` is left
    untouched.

    Returns:
        SHA-256 of the copied content.

    Raises:
        VerificationMismatch: size or checksum of the copy differs from the source
        OperationCancelled: ``cancel_flag`` was set during the copy
        FileExistsError: ``dest`` or its temp file already exists
    """
    temp_path = temp_path_for(dest)
    expected_size = source.stat().st_size
    digest = hashlib.sha256()

    fd = os.open(str(temp_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o666)
    try:
        with open(source, "rb") as src, os.fdopen(fd, "wb") as out:
            while True:
                if cancel_flag is not None and cancel_flag.is_set():
                    raise OperationCancelled(f"Copy of {source.name} cancelled")
                chunk = src.read(CHUNK_SIZE)
                if not chunk:
                    break
                digest.update(chunk)
                out.write(chunk)
            out.flush()
            os.fsync(out.fileno())

        _copy_metadata(source, temp_path)
        _verify_transfer_size(temp_path, expected_size, "copy")

        expected = digest.hexdigest()
        actual = file_checksum(temp_path, cancel_flag)
        if actual != expected:
            raise VerificationMismatch(
                f"Checksum mismatch copying {source.name}: {actual} != {expected}",
                expected=expected,
                actual=actual,
            )

        rename_no_clobber(temp_path, dest)
        return expected

    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def remove_stale_temp(dest: Path) -> None:
    """Remove a temp file left behind by a crash during an earlier copy."""
    temp_path = temp_path_for(dest)
    if temp_path.exists():
        logger.info(f"Removing stale partial copy: {temp_path}")
        temp_path.unlink(missing_ok=True)

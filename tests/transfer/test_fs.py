"""Tests for the copy/verify/rename primitives used by the move executor."""

import errno
import hashlib
from threading import Event
from unittest.mock import patch

import pytest

from dvr_manager.core.errors import (
    OperationCancelled,
    PermanentIOError,
    TransientIOError,
    VerificationMismatch,
)
from dvr_manager.transfer.fs import (
    classify_os_error,
    copy_verified,
    file_checksum,
    files_identical,
    remove_stale_temp,
    rename_no_clobber,
    temp_path_for,
)

CONTENT = b"recording data " * 1000


def _source(tmp_path, content: bytes = CONTENT):
    source = tmp_path / "recordings" / "Show - S01E02.ts"
    source.parent.mkdir(parents=True, exist_ok=True)
    source.write_bytes(content)
    return source


def _destination(tmp_path):
    dest_dir = tmp_path / "library" / "Show" / "Season 01"
    dest_dir.mkdir(parents=True, exist_ok=True)
    return dest_dir / "Show - S01E02.ts"


class TestChecksums:
    """Tests for file_checksum() and files_identical()."""

    def test_checksum_is_sha256(self, tmp_path):
        source = _source(tmp_path)
        assert file_checksum(source) == hashlib.sha256(CONTENT).hexdigest()

    def test_identical_files(self, tmp_path):
        a = _source(tmp_path)
        b = tmp_path / "copy.ts"
        b.write_bytes(CONTENT)

        assert files_identical(a, b)

    def test_same_size_different_content(self, tmp_path):
        a = _source(tmp_path, b"aaaa")
        b = tmp_path / "other.ts"
        b.write_bytes(b"bbbb")

        assert not files_identical(a, b)

    def test_missing_file_is_not_identical(self, tmp_path):
        a = _source(tmp_path)
        assert not files_identical(a, tmp_path / "missing.ts")

    def test_checksum_cancellable(self, tmp_path):
        cancel = Event()
        cancel.set()
        with pytest.raises(OperationCancelled):
            file_checksum(_source(tmp_path), cancel)


class TestCopyVerified:
    """Tests for copy_verified()."""

    def test_copies_and_verifies(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)

        checksum = copy_verified(source, dest)

        assert dest.read_bytes() == CONTENT
        assert checksum == hashlib.sha256(CONTENT).hexdigest()
        assert source.exists()  # Caller removes the source
        assert not temp_path_for(dest).exists()

    def test_preserves_mtime(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)

        copy_verified(source, dest)

        assert dest.stat().st_mtime == pytest.approx(source.stat().st_mtime, abs=1)

    def test_checksum_mismatch_leaves_nothing_behind(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)

        with patch("dvr_manager.transfer.fs.file_checksum", return_value="0" * 64):
            with pytest.raises(VerificationMismatch) as exc_info:
                copy_verified(source, dest)

        assert exc_info.value.actual == "0" * 64
        assert exc_info.value.expected == hashlib.sha256(CONTENT).hexdigest()
        assert not dest.exists()
        assert not temp_path_for(dest).exists()

    def test_cancel_removes_temp(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)
        cancel = Event()
        cancel.set()

        with pytest.raises(OperationCancelled):
            copy_verified(source, dest, cancel)

        assert not dest.exists()
        assert not temp_path_for(dest).exists()

    def test_refuses_existing_destination(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)
        dest.write_bytes(b"already here")

        with pytest.raises(FileExistsError):
            copy_verified(source, dest)

        assert dest.read_bytes() == b"already here"
        assert not temp_path_for(dest).exists()

    def test_temp_name_is_hidden_sibling(self, tmp_path):
        dest = _destination(tmp_path)
        temp = temp_path_for(dest)

        assert temp.parent == dest.parent
        assert temp.name == ".Show - S01E02.ts.partial"

    def test_remove_stale_temp(self, tmp_path):
        dest = _destination(tmp_path)
        temp_path_for(dest).write_bytes(b"half")

        remove_stale_temp(dest)

        assert not temp_path_for(dest).exists()


class TestRenameNoClobber:
    """Tests for rename_no_clobber()."""

    def test_renames(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)

        rename_no_clobber(source, dest)

        assert dest.read_bytes() == CONTENT
        assert not source.exists()

    def test_existing_destination_is_not_replaced(self, tmp_path):
        source = _source(tmp_path)
        dest = _destination(tmp_path)
        dest.write_bytes(b"keep me")

        with pytest.raises(FileExistsError):
            rename_no_clobber(source, dest)

        assert dest.read_bytes() == b"keep me"
        assert source.exists()


class TestClassifyOsError:
    """Tests for permanent vs transient error classification."""

    @pytest.mark.parametrize("code", [errno.ENOSPC, errno.EACCES, errno.EPERM, errno.EROFS, errno.ENAMETOOLONG])
    def test_permanent(self, code):
        error = classify_os_error(OSError(code, "nope"), "Moving x")
        assert isinstance(error, PermanentIOError)
        assert not error.retryable

    def test_permission_error_is_permanent(self):
        assert isinstance(classify_os_error(PermissionError("denied"), "Moving x"), PermanentIOError)

    @pytest.mark.parametrize("code", [errno.EIO, errno.EBUSY, errno.EEXIST, errno.ESTALE])
    def test_transient(self, code):
        error = classify_os_error(OSError(code, "blip"), "Moving x")
        assert isinstance(error, TransientIOError)
        assert error.retryable
        assert "Moving x failed" in str(error)

"""Tests for the encrypted temp file write path and token issuance."""

import copy
import os
from datetime import timedelta
from pathlib import Path

import pytest

from fileswap.core.encryption import EncryptionError, decrypt_stream
from fileswap.core.errors import StorageError, WriterStateError
from fileswap.services import file_swap
from fileswap.services.file_swap import FileSwapHandler, FileWriterState


def test_new_file_writer_creates_file(handler, swap_dir):
    writer = handler.new_file_writer("export")

    path = Path(writer.path)
    assert path.parent == swap_dir
    assert path.name.startswith("export")
    assert path.exists()
    assert writer.state is FileWriterState.OPEN
    writer.remove()


def test_pattern_star_marks_random_part(handler):
    writer = handler.new_file_writer("report-*.csv")

    name = Path(writer.path).name
    assert name.startswith("report-")
    assert name.endswith(".csv")
    writer.remove()


def test_writers_get_distinct_files(handler):
    first = handler.new_file_writer("export")
    second = handler.new_file_writer("export")

    assert first.path != second.path
    first.remove()
    second.remove()


def test_pattern_with_separator_rejected(handler, swap_dir):
    with pytest.raises(StorageError):
        handler.new_file_writer(f"..{os.sep}export")

    assert list(swap_dir.iterdir()) == []


def test_missing_temp_dir_is_storage_error(tmp_path):
    handler = FileSwapHandler(temp_dir=str(tmp_path / "missing"))

    with pytest.raises(StorageError):
        handler.new_file_writer("export")


def test_cipher_setup_failure_leaves_no_file(handler, swap_dir, monkeypatch):
    def broken_writer(*args, **kwargs):
        raise EncryptionError("cipher unavailable")

    monkeypatch.setattr(file_swap, "EncryptingWriter", broken_writer)

    with pytest.raises(StorageError) as exc_info:
        handler.new_file_writer("export")

    assert isinstance(exc_info.value.__cause__, EncryptionError)
    assert list(swap_dir.iterdir()) == []


def test_file_content_is_encrypted(handler):
    payload = b"customer_id,email\n42,someone@example.com\n"
    writer = handler.new_file_writer("export")
    writer.write(payload)
    writer.close()

    data = Path(writer.path).read_bytes()
    assert payload not in data
    with open(writer.path, "rb") as encrypted, open(writer.path + ".plain", "wb") as plain:
        assert decrypt_stream(encrypted, plain, handler.authority.secret()) == len(payload)
    assert Path(writer.path + ".plain").read_bytes() == payload


def test_write_after_close_rejected(handler):
    writer = handler.new_file_writer("export")
    writer.write(b"data")
    writer.close()
    writer.close()

    assert writer.state is FileWriterState.CLOSED
    with pytest.raises(WriterStateError):
        writer.write(b"more")
    writer.remove()


def test_token_requires_closed_writer(handler):
    writer = handler.new_file_writer("export")
    writer.write(b"data")

    with pytest.raises(WriterStateError):
        writer.get_download_token("export.csv")

    writer.close()
    assert writer.get_download_token("export.csv")
    writer.remove()


def test_token_rejects_non_positive_ttl(make_file):
    writer = make_file(b"data")

    with pytest.raises(ValueError):
        writer.get_download_token("export.csv", timedelta(0))
    writer.remove()


def test_token_claims_reference_writer_file(handler, make_file):
    writer = make_file(b"data")

    claims = handler.authority.redeem_token(writer.get_download_token("export.csv", timedelta(minutes=5)))

    assert claims["tmp"] == writer.path
    assert claims["name"] == "export.csv"
    writer.remove()


def test_remove_leaves_no_file(handler, swap_dir):
    writer = handler.new_file_writer("export")
    writer.write(b"abandoned")

    writer.remove()
    writer.remove()

    assert writer.state is FileWriterState.REMOVED
    assert list(swap_dir.iterdir()) == []
    with pytest.raises(WriterStateError):
        writer.get_download_token("export.csv")
    with pytest.raises(WriterStateError):
        writer.write(b"more")


def test_context_manager_closes(handler):
    with handler.new_file_writer("export") as writer:
        writer.write(b"data")

    assert writer.state is FileWriterState.CLOSED
    assert Path(writer.path).exists()
    writer.remove()


def test_context_manager_removes_on_error(handler, swap_dir):
    with pytest.raises(RuntimeError):
        with handler.new_file_writer("export") as writer:
            writer.write(b"partial")
            raise RuntimeError("producer failed")

    assert writer.state is FileWriterState.REMOVED
    assert list(swap_dir.iterdir()) == []


def test_writer_and_handler_cannot_be_copied(handler):
    writer = handler.new_file_writer("export")

    for target in (writer, handler):
        with pytest.raises(TypeError):
            copy.copy(target)
        with pytest.raises(TypeError):
            copy.deepcopy(target)
    writer.remove()


class FullDiskOutput:
    """Stands in for the temp file once the disk is full."""

    def __init__(self, file):
        self._file = file

    def write(self, data):
        raise OSError(28, "No space left on device")

    def flush(self):
        pass

    def close(self):
        self._file.close()


def test_failed_close_removes_file_and_blocks_tokens(handler, swap_dir):
    writer = handler.new_file_writer("export")
    writer.write(b"data")
    writer._stream._output = FullDiskOutput(writer._stream._output)

    with pytest.raises(StorageError):
        writer.close()

    assert writer.state is FileWriterState.REMOVED
    assert list(swap_dir.iterdir()) == []
    with pytest.raises(WriterStateError):
        writer.get_download_token("export.csv")


def test_failed_write_removes_file(small_chunk_handler, swap_dir):
    writer = small_chunk_handler.new_file_writer("export")
    writer._stream._output = FullDiskOutput(writer._stream._output)

    with pytest.raises(StorageError):
        writer.write(b"more than one sixteen byte chunk")

    assert writer.state is FileWriterState.REMOVED
    assert list(swap_dir.iterdir()) == []
    with pytest.raises(WriterStateError):
        writer.write(b"again")

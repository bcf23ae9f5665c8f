"""Shared pytest fixtures for all tests."""

import io

import pytest
from fastapi.testclient import TestClient

from fileswap.main import create_app
from fileswap.services.file_swap import FileSwapHandler


class KeepOpenBytesIO(io.BytesIO):
    """BytesIO whose buffer survives close(), for inspecting ciphertext."""

    def close(self):
        pass


@pytest.fixture
def swap_dir(tmp_path):
    """
    Directory holding the handler's temp files.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to an empty directory
    """
    directory = tmp_path / "swap"
    directory.mkdir()
    return directory


@pytest.fixture
def handler(swap_dir):
    """File swap handler storing temp files in swap_dir."""
    return FileSwapHandler(temp_dir=str(swap_dir))


@pytest.fixture
def small_chunk_handler(swap_dir):
    """Handler sealing 16-byte chunks, so short payloads span several frames."""
    return FileSwapHandler(temp_dir=str(swap_dir), chunk_size=16)


@pytest.fixture
def client(handler):
    """Test client for an app owning the handler fixture."""
    return TestClient(create_app(handler))


@pytest.fixture
def make_file(handler):
    """Write a payload through the handler and return the closed writer."""

    def _make(payload: bytes, hint: str = "export"):
        writer = handler.new_file_writer(hint)
        writer.write(payload)
        writer.close()
        return writer

    return _make


def frame_offsets(data: bytes):
    """
    Start offsets of the frames in an encrypted stream.

    Args:
        data: Full encrypted stream

    Returns:
        List of (offset, total frame size) tuples
    """
    from fileswap.core.encryption import HEADER_SIZE, FRAME_PREFIX_SIZE

    offsets = []
    position = HEADER_SIZE
    while position < len(data):
        length = int.from_bytes(data[position + 1:position + FRAME_PREFIX_SIZE], "big")
        size = FRAME_PREFIX_SIZE + length
        offsets.append((position, size))
        position += size
    return offsets

"""Chunked AES-256-GCM Stream Encryption

This module encrypts arbitrarily large byte streams with bounded memory:
- Plaintext is split into fixed-size chunks, each sealed with AES-256-GCM
- Chunk nonces are derived from a random base nonce and the chunk index
- The final chunk is flagged, so truncated streams are detected
- Every chunk is authenticated before any of its plaintext is released

Stream layout:

    header:  version (1 byte) | base nonce (12 bytes)
    frame:   flag (1 byte) | sealed length (4 bytes, big-endian) | sealed bytes

The flag byte (0 = more frames follow, 1 = final frame) is passed to GCM as
associated data. Exactly one final frame ends the stream.
"""

import secrets
from typing import BinaryIO, Iterator
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import logging

logger = logging.getLogger(__name__)

# AES-256-GCM constants
NONCE_SIZE = 12  # 96 bits (recommended for GCM)
KEY_SIZE = 32  # 256 bits for AES-256
TAG_SIZE = 16  # 128-bit authentication tag (GCM standard)

# Stream format
FORMAT_VERSION = 1
HEADER_SIZE = 1 + NONCE_SIZE
FRAME_PREFIX_SIZE = 1 + 4
FLAG_MORE = b"\x00"
FLAG_FINAL = b"\x01"
DEFAULT_CHUNK_SIZE = 64 * 1024
MAX_CHUNK_SIZE = 1024 * 1024
MAX_CHUNKS = 2 ** 32


class EncryptionError(Exception):
    """Custom exception for encryption errors"""
    pass


def generate_key() -> bytes:
    """
    Generate a cryptographically secure random 256-bit key.

    Returns:
        32-byte random key suitable for AES-256
    """
    return secrets.token_bytes(KEY_SIZE)


def _check_key(key: bytes) -> None:
    if not isinstance(key, bytes) or len(key) != KEY_SIZE:
        raise EncryptionError(f"Key must be exactly {KEY_SIZE} bytes")


def _derive_chunk_nonce(base_nonce: bytes, chunk_index: int) -> bytes:
    """
    Derive a unique nonce for a chunk using the base nonce and chunk index.

    Uses first 8 bytes of the base nonce + 4-byte chunk counter (big-endian).

    Args:
        base_nonce: Base nonce (12 bytes)
        chunk_index: Chunk index (0-based)

    Returns:
        12-byte nonce for the chunk
    """
    if chunk_index >= MAX_CHUNKS:
        raise EncryptionError("Stream exceeds the maximum number of chunks")

    return base_nonce[:8] + chunk_index.to_bytes(4, byteorder="big")


class EncryptingWriter:
    """
    Writable stream that encrypts everything written to it.

    Plaintext is buffered until a full chunk is available; ``close()`` seals
    the remaining bytes as the final frame and closes the underlying stream.
    A stream that was never closed cannot be decrypted.
    """

    def __init__(
        self,
        output_stream: BinaryIO,
        key: bytes,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        """
        Initialize the writer and emit the stream header.

        Args:
            output_stream: Writable binary stream receiving ciphertext
            key: 32-byte encryption key
            chunk_size: Plaintext bytes per sealed chunk

        Raises:
            EncryptionError: If the key or chunk size is invalid, or the header
                cannot be written
        """
        _check_key(key)
        if chunk_size < 1 or chunk_size > MAX_CHUNK_SIZE:
            raise EncryptionError(f"Chunk size must be between 1 and {MAX_CHUNK_SIZE}")

        self._output = output_stream
        self._aesgcm = AESGCM(key)
        self._chunk_size = chunk_size
        self._base_nonce = secrets.token_bytes(NONCE_SIZE)
        self._buffer = bytearray()
        self._chunk_index = 0
        self._total_size = 0
        self.closed = False

        try:
            self._output.write(bytes([FORMAT_VERSION]) + self._base_nonce)
        except OSError as e:
            raise EncryptionError(f"Failed to write stream header: {e}") from e

    def write(self, data: bytes) -> int:
        """Buffer plaintext, sealing full chunks. Returns the number of bytes accepted."""
        if self.closed:
            raise ValueError("write to closed encrypting stream")

        self._buffer += data
        self._total_size += len(data)

        # Keep at least one byte back: the last chunk must be sealed as final
        while len(self._buffer) > self._chunk_size:
            chunk = bytes(self._buffer[:self._chunk_size])
            del self._buffer[:self._chunk_size]
            self._seal(chunk, FLAG_MORE)

        return len(data)

    def flush(self) -> None:
        if not self.closed:
            self._output.flush()

    def close(self) -> None:
        """Seal the final frame and close the underlying stream. Idempotent."""
        if self.closed:
            return

        self.closed = True
        try:
            self._seal(bytes(self._buffer), FLAG_FINAL)
            self._buffer = bytearray()
            self._output.flush()
        finally:
            self._output.close()

        logger.debug(f"Encrypted stream: {self._chunk_index} chunks, {self._total_size} bytes")

    def _seal(self, chunk: bytes, flag: bytes) -> None:
        nonce = _derive_chunk_nonce(self._base_nonce, self._chunk_index)
        sealed = self._aesgcm.encrypt(nonce, chunk, flag)
        self._output.write(flag + len(sealed).to_bytes(4, byteorder="big") + sealed)
        self._chunk_index += 1

    def __enter__(self) -> "EncryptingWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _read_exact(input_stream: BinaryIO, size: int) -> bytes:
    """Read up to ``size`` bytes, stopping early only at end of stream."""
    data = bytearray()
    while len(data) < size:
        part = input_stream.read(size - len(data))
        if not part:
            break
        data += part
    return bytes(data)


def iter_decrypt(input_stream: BinaryIO, key: bytes) -> Iterator[bytes]:
    """
    Decrypt a stream written by EncryptingWriter, chunk by chunk.

    Each chunk is authenticated before it is yielded, so callers never see
    unauthenticated plaintext. Failures surface as EncryptionError at the
    point the bad frame is reached.

    Args:
        input_stream: Readable binary stream containing encrypted data
        key: 32-byte decryption key (must match encryption key)

    Yields:
        Plaintext chunks (non-empty)

    Raises:
        EncryptionError: If the stream is malformed, truncated, reordered or
            fails authentication
    """
    _check_key(key)

    header = _read_exact(input_stream, HEADER_SIZE)
    if not header:
        raise EncryptionError("Stream is empty or missing header")
    if len(header) != HEADER_SIZE or header[0] != FORMAT_VERSION:
        raise EncryptionError("Invalid stream header")

    base_nonce = header[1:]
    aesgcm = AESGCM(key)
    chunk_index = 0
    total_size = 0

    while True:
        prefix = _read_exact(input_stream, FRAME_PREFIX_SIZE)
        if len(prefix) != FRAME_PREFIX_SIZE:
            raise EncryptionError("Stream truncated: missing final chunk")

        flag = prefix[:1]
        if flag not in (FLAG_MORE, FLAG_FINAL):
            raise EncryptionError("Invalid chunk flag")

        length = int.from_bytes(prefix[1:], byteorder="big")
        if length < TAG_SIZE or length > MAX_CHUNK_SIZE + TAG_SIZE:
            raise EncryptionError(f"Invalid chunk length: {length}")

        sealed = _read_exact(input_stream, length)
        if len(sealed) != length:
            raise EncryptionError("Stream truncated inside a chunk")

        try:
            chunk = aesgcm.decrypt(_derive_chunk_nonce(base_nonce, chunk_index), sealed, flag)
        except InvalidTag:
            logger.warning("Decryption failed: Authentication failed (data may be tampered)")
            raise EncryptionError("Stream authentication failed: Data may have been tampered with")

        chunk_index += 1
        total_size += len(chunk)

        if flag == FLAG_FINAL:
            if input_stream.read(1):
                raise EncryptionError("Unexpected data after final chunk")
            if chunk:
                yield chunk
            break

        if chunk:
            yield chunk

    logger.debug(f"Decrypted stream: {chunk_index} chunks, {total_size} bytes")


def decrypt_stream(
    input_stream: BinaryIO,
    output_stream: BinaryIO,
    key: bytes
) -> int:
    """
    Decrypt a stream written by EncryptingWriter into another stream.

    Args:
        input_stream: Readable binary stream containing encrypted data
        output_stream: Writable binary stream for decrypted data
        key: 32-byte decryption key (must match encryption key)

    Returns:
        Total bytes decrypted

    Raises:
        EncryptionError: If decryption or authentication fails
    """
    total_size = 0
    for chunk in iter_decrypt(input_stream, key):
        output_stream.write(chunk)
        total_size += len(chunk)
    return total_size

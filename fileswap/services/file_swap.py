"""File swap service

Stores arbitrary data streams in encrypted temporary files and serves them
back once, through a time-limited download token. Large payloads (exports,
dumps) are never held in memory: they are encrypted chunk by chunk on the way
to disk and decrypted chunk by chunk on the way to the client.

Lifecycle:

    writer = handler.new_file_writer("export")   # OPEN
    writer.write(b"...")
    writer.close()                               # CLOSED
    token = writer.get_download_token("export.csv", timedelta(minutes=5))
    ...
    handler.handle_download_request(token)       # file streamed, then deleted

NOTE: A download token can only be redeemed by the handler instance that
issued it. Each handler owns a random secret for its whole lifetime and
tokens carry no instance identifier, so mixing instances (or restarting the
process) turns every outstanding token into an invalid request.
"""

import os
import secrets
import tempfile
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, BinaryIO, Dict, Iterator, Optional
from urllib.parse import quote

from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from fileswap.config import settings
from fileswap.core.encryption import EncryptingWriter, EncryptionError, iter_decrypt
from fileswap.core.errors import (
    InternalError,
    InvalidRequest,
    StorageError,
    WriterStateError,
)
from fileswap.core.security import DownloadTokenAuthority, TokenVerificationError
import logging

logger = logging.getLogger(__name__)

DOWNLOAD_MEDIA_TYPE = "application/octet-stream"
CLAIMED_SUFFIX = ".redeeming"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _split_pattern(temp_file_pattern: str) -> tuple:
    """Split a filename hint into mkstemp prefix and suffix at the last '*'"""
    if os.sep in temp_file_pattern or (os.altsep and os.altsep in temp_file_pattern):
        raise StorageError(f"Temp file pattern contains a path separator: {temp_file_pattern!r}")

    prefix, star, suffix = temp_file_pattern.rpartition("*")
    if not star:
        return temp_file_pattern, ""
    return prefix, suffix


def content_disposition(filename: str) -> str:
    """Attachment header for a download file name"""
    try:
        filename.encode("ascii")
    except UnicodeEncodeError:
        fallback = filename.encode("ascii", "replace").decode("ascii")
        return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
    return f'attachment; filename="{filename}"'


@dataclass(frozen=True)
class DownloadTokenClaims:
    """Payload of a download token (signed, not encrypted)"""

    temp_file_name: str
    download_file_name: str
    expires_at: datetime

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tmp": self.temp_file_name,
            "name": self.download_file_name,
            "exp": int(self.expires_at.timestamp()),
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DownloadTokenClaims":
        temp_file_name = payload.get("tmp")
        download_file_name = payload.get("name")
        exp = payload.get("exp")
        if not isinstance(temp_file_name, str) or not temp_file_name:
            raise InvalidRequest("Download token has no temp file")
        if not isinstance(download_file_name, str):
            raise InvalidRequest("Download token has no file name")
        if not isinstance(exp, (int, float)):
            raise InvalidRequest("Download token has no expiration")
        return cls(
            temp_file_name=temp_file_name,
            download_file_name=download_file_name,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )


class FileWriterState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    REMOVED = "removed"


class FileWriter:
    """
    Encrypted temporary file being produced by a single owner.

    Writes must come from one producer, in order. Close the writer before
    issuing download tokens: closing seals the final encrypted chunk, and a
    stream without it is rejected on download. Used as a context manager,
    the writer is closed on normal exit and removed if the block raises.
    """

    def __init__(self, stream: EncryptingWriter, authority: DownloadTokenAuthority, file_path: str):
        self._stream = stream
        self._authority = authority
        self._file_path = file_path
        self._state = FileWriterState.OPEN

    @property
    def path(self) -> str:
        """Absolute path of the encrypted temp file"""
        return self._file_path

    @property
    def state(self) -> FileWriterState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is not FileWriterState.OPEN

    def write(self, data: bytes) -> int:
        if self._state is not FileWriterState.OPEN:
            raise WriterStateError(f"Cannot write to a {self._state.value} file writer")
        try:
            return self._stream.write(data)
        except OSError as e:
            self._abandon()
            raise StorageError(f"Failed to write temp file: {e}") from e

    def close(self) -> None:
        """Seal the encrypted stream and release the file descriptor."""
        if self._state is not FileWriterState.OPEN:
            return
        try:
            self._stream.close()
        except (OSError, EncryptionError) as e:
            # An unsealed file can never be downloaded
            self._abandon()
            raise StorageError(f"Failed to close temp file: {e}") from e
        self._state = FileWriterState.CLOSED

    def _abandon(self) -> None:
        self._state = FileWriterState.REMOVED
        try:
            self._stream.close()
        except (OSError, EncryptionError) as e:
            logger.warning(f"Failed to close discarded temp file: {e}")
        _discard(self._file_path)

    def remove(self) -> None:
        """Abandon the file: close it and delete it without issuing a token."""
        if self._state is FileWriterState.REMOVED:
            return
        try:
            self._stream.close()
        except (OSError, EncryptionError) as e:
            logger.warning(f"Failed to close temp file before removal: {e}")
        self._state = FileWriterState.REMOVED

        try:
            os.remove(self._file_path)
        except FileNotFoundError:
            # Already redeemed
            pass
        except OSError as e:
            raise StorageError(f"Failed to remove temp file: {e}") from e
        logger.debug(f"Removed temp file {self._file_path}")

    def get_download_token(self, download_file_name: str, expire_in: Optional[timedelta] = None) -> str:
        """
        Generate a token for downloading this file later.

        Tokens can be generated any number of times for a closed writer; the
        first successful redemption deletes the file and invalidates the rest.
        The download file name is placed in the Content-Disposition header
        verbatim and is readable by anyone holding the token.

        Args:
            download_file_name: File name suggested to the downloading client
            expire_in: Token lifetime (default DOWNLOAD_TOKEN_EXPIRE_MINUTES)

        Returns:
            Signed download token

        Raises:
            WriterStateError: If the writer is still open or was removed
            SigningError: If the token cannot be signed
        """
        if self._state is not FileWriterState.CLOSED:
            raise WriterStateError(
                f"Download token requires a closed file writer, writer is {self._state.value}"
            )
        if expire_in is None:
            expire_in = timedelta(minutes=settings.DOWNLOAD_TOKEN_EXPIRE_MINUTES)
        if expire_in <= timedelta(0):
            raise ValueError("expire_in must be positive")

        claims = DownloadTokenClaims(
            temp_file_name=self._file_path,
            download_file_name=download_file_name,
            expires_at=_utcnow() + expire_in,
        )
        return self._authority.issue_token(claims.to_payload())

    def __enter__(self) -> "FileWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.close()
            return
        try:
            self.remove()
        except StorageError as e:
            logger.warning(f"Failed to discard temp file: {e}")

    def __copy__(self):
        raise TypeError("FileWriter cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("FileWriter cannot be copied")


class DownloadStream:
    """
    Decrypted content of a redeemed file.

    Iterating yields plaintext chunks. The file is closed and deleted when
    iteration ends, fails, or ``close()`` is called, whichever comes first.
    """

    def __init__(self, file: BinaryIO, file_path: str, key: bytes, filename: str):
        self.filename = filename
        self.media_type = DOWNLOAD_MEDIA_TYPE
        self._file = file
        self._file_path = file_path
        self._chunks = iter_decrypt(file, key)
        self._first_chunk = b""
        self._lock = threading.Lock()
        self._closed = False

    @property
    def headers(self) -> Dict[str, str]:
        return {"Content-Disposition": content_disposition(self.filename)}

    def prime(self) -> None:
        """Authenticate the header and first chunk before any response is sent."""
        try:
            self._first_chunk = next(self._chunks, b"")
        except EncryptionError as e:
            logger.error(f"Failed to decrypt download file: {e}")
            raise InternalError(f"Decryption failed: {e}") from e
        except OSError as e:
            logger.error(f"Failed to read download file: {e}", exc_info=True)
            raise InternalError(f"Read failed: {e}") from e

    def __iter__(self) -> Iterator[bytes]:
        try:
            if self._first_chunk:
                yield self._first_chunk
                self._first_chunk = b""
            for chunk in self._chunks:
                yield chunk
        except EncryptionError as e:
            logger.error(f"Download aborted, decryption failed: {e}")
            raise InternalError(f"Decryption failed: {e}") from e
        except OSError as e:
            logger.error(f"Download aborted, read failed: {e}", exc_info=True)
            raise InternalError(f"Read failed: {e}") from e
        finally:
            self.close()

    def close(self) -> None:
        """Close and delete the file. Safe to call repeatedly and from any thread."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

        try:
            self._file.close()
        except OSError as e:
            logger.warning(f"Failed to close download file: {e}")
        try:
            os.remove(self._file_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove download file {self._file_path}: {e}")
        else:
            logger.debug(f"Removed download file {self._file_path}")


class FileSwapHandler:
    """
    Serves file-backed data through one-time download tokens.

    Arbitrary data streams are stored encrypted in temporary files and
    downloaded by the user later. All methods are safe to call concurrently.

    NOTE: Download tokens cannot be mixed between handler instances.
    """

    def __init__(
        self,
        authority: Optional[DownloadTokenAuthority] = None,
        temp_dir: Optional[str] = None,
        chunk_size: Optional[int] = None,
    ):
        self._authority = authority or DownloadTokenAuthority()
        self._temp_dir = temp_dir or settings.temp_dir
        self._chunk_size = chunk_size or settings.ENCRYPTION_CHUNK_SIZE

    @property
    def authority(self) -> DownloadTokenAuthority:
        return self._authority

    def new_file_writer(self, temp_file_pattern: str) -> FileWriter:
        """
        Create an encrypted temp file to write into.

        Args:
            temp_file_pattern: Name hint for the temp file; a '*' marks where
                the random part goes, otherwise it is used as a prefix

        Returns:
            Open FileWriter

        Raises:
            StorageError: If the file or its encrypting stream cannot be created
        """
        prefix, suffix = _split_pattern(temp_file_pattern)
        try:
            fd, file_path = tempfile.mkstemp(prefix=prefix, suffix=suffix, dir=self._temp_dir)
        except OSError as e:
            raise StorageError(f"Failed to create temp file: {e}") from e

        try:
            file = os.fdopen(fd, "wb")
        except OSError as e:
            os.close(fd)
            _discard(file_path)
            raise StorageError(f"Failed to open temp file: {e}") from e

        try:
            stream = EncryptingWriter(file, self._authority.secret(), chunk_size=self._chunk_size)
        except EncryptionError as e:
            try:
                file.close()
            except OSError:
                pass
            _discard(file_path)
            raise StorageError(f"Failed to initialize encrypted stream: {e}") from e

        logger.debug(f"Created temp file {file_path}")
        return FileWriter(stream, self._authority, file_path)

    def open_download(self, token: Optional[str]) -> DownloadStream:
        """
        Redeem a download token.

        The referenced file is claimed atomically, so of several concurrent
        redemptions only one gets the content. The returned stream deletes
        the file when it is exhausted or closed; if this method raises after
        claiming the file, the file is already deleted.

        Raises:
            InvalidRequest: Token is invalid or expired, or the file was
                already downloaded
            InternalError: File cannot be opened or decrypted
        """
        try:
            payload = self._authority.redeem_token(token or "")
        except TokenVerificationError as e:
            logger.warning(f"Rejected download token: {e}")
            raise InvalidRequest(str(e)) from e

        claims = DownloadTokenClaims.from_payload(payload)
        claimed_path = f"{claims.temp_file_name}.{secrets.token_hex(8)}{CLAIMED_SUFFIX}"

        try:
            os.rename(claims.temp_file_name, claimed_path)
        except FileNotFoundError as e:
            # Token reused, or file abandoned by its producer
            logger.warning("Download file not found, token already redeemed")
            raise InvalidRequest(
                "Download file not found",
                public_message="Download file not found. Please retry.",
            ) from e
        except OSError as e:
            logger.error(f"Failed to claim download file: {e}", exc_info=True)
            raise InternalError(f"Failed to claim download file: {e}") from e

        try:
            file = open(claimed_path, "rb")
        except OSError as e:
            logger.error(f"Failed to open download file: {e}", exc_info=True)
            _discard(claimed_path)
            raise InternalError(f"Failed to open download file: {e}") from e

        download = DownloadStream(file, claimed_path, self._authority.secret(), claims.download_file_name)
        try:
            download.prime()
        except BaseException:
            download.close()
            raise

        logger.info(f"Serving download: filename={claims.download_file_name}")
        return download

    def handle_download_request(self, token: Optional[str]) -> StreamingResponse:
        """Redeem a download token into a streaming attachment response."""
        download = self.open_download(token)
        return StreamingResponse(
            iter(download),
            media_type=download.media_type,
            headers=download.headers,
            background=BackgroundTask(download.close),
        )

    def __copy__(self):
        raise TypeError("FileSwapHandler cannot be copied")

    def __deepcopy__(self, memo):
        raise TypeError("FileSwapHandler cannot be copied")


def _discard(file_path: str) -> None:
    """Best-effort removal of a temp file during error cleanup"""
    try:
        os.remove(file_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove temp file {file_path}: {e}")

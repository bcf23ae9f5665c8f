"""Download token signing and verification (JWT)"""

import binascii
from typing import Any, Dict, Optional
from jose import jwt, JWTError, JOSEError
from jose.utils import base64url_decode, base64url_encode

from fileswap.config import settings
from fileswap.core.encryption import generate_key
from fileswap.core.errors import SigningError


class TokenVerificationError(ValueError):
    """Token signature, format or expiry check failed"""
    pass


class DownloadTokenAuthority:
    """
    Signs and verifies download tokens with a process-lifetime secret.

    The secret is random per instance and never leaves the process. The same
    secret keys the stream cipher, so a token is only meaningful to the
    authority (and handler) that issued it.
    """

    def __init__(self, secret: Optional[bytes] = None, algorithm: Optional[str] = None):
        self._secret = secret or generate_key()
        self._algorithm = algorithm or settings.DOWNLOAD_TOKEN_ALGORITHM

    def secret(self) -> bytes:
        """Instance secret key"""
        return self._secret

    def issue_token(self, claims: Dict[str, Any]) -> str:
        """Sign claims into a JWT"""
        try:
            return jwt.encode(claims, self._secret, algorithm=self._algorithm)
        except JOSEError as e:
            raise SigningError(f"Failed to sign download token: {e}") from e

    def redeem_token(self, token: str) -> Dict[str, Any]:
        """Verify a JWT and return its claims (expiry is enforced)"""
        if not token:
            raise TokenVerificationError("Missing token")
        if not _is_canonical(token):
            raise TokenVerificationError("Invalid token: non-canonical encoding")
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as e:
            raise TokenVerificationError(f"Invalid token: {e}") from e



def _is_canonical(token: str) -> bool:
    """Every segment must re-encode to itself (no ignored padding bits)"""
    try:
        segments = token.encode("ascii").split(b".")
        return all(
            segment and base64url_encode(base64url_decode(segment)) == segment
            for segment in segments
        )
    except (UnicodeEncodeError, binascii.Error, ValueError):
        return False

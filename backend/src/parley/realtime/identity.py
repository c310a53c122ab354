"""Bearer credential verification for incoming connections."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from .collaborators import Identity, IdentityDirectory, bounded
from .errors import AuthError, AuthErrorKind

logger = logging.getLogger(__name__)

# Tokens minted by the REST service carry the user id under ``userId``.
_SUBJECT_CLAIMS = ("sub", "userId")


def create_access_token(
    identity_id: int,
    secret_key: str,
    *,
    algorithm: str = "HS256",
    expires_delta: timedelta | None = None,
    extra: Dict[str, Any] | None = None,
) -> str:
    """Create a signed JWT access token for *identity_id*."""

    to_encode: Dict[str, Any] = dict(extra or {})
    expire = datetime.now(timezone.utc) + (expires_delta if expires_delta is not None else timedelta(days=7))
    to_encode.update({"sub": str(identity_id), "exp": expire})
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


class IdentityVerifier:
    """Validate a bearer credential and resolve it to an :class:`Identity`.

    The verifier keeps no state between calls; every connection attempt is
    checked afresh against the signing key and the identity directory.
    """

    def __init__(
        self,
        directory: IdentityDirectory,
        *,
        secret_key: str,
        algorithm: str = "HS256",
        timeout: float = 3.0,
    ) -> None:
        self._directory = directory
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._timeout = timeout

    def decode(self, credential: str) -> int:
        """Return the identity id carried by *credential*."""

        if not credential:
            raise AuthError(AuthErrorKind.INVALID, "Missing token")
        try:
            payload = jwt.decode(credential, self._secret_key, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthError(AuthErrorKind.EXPIRED) from exc
        except jwt.InvalidTokenError as exc:
            raise AuthError(AuthErrorKind.INVALID) from exc

        subject = next((payload[claim] for claim in _SUBJECT_CLAIMS if payload.get(claim) is not None), None)
        try:
            return int(subject)
        except (TypeError, ValueError):
            raise AuthError(AuthErrorKind.INVALID) from None

    async def verify(self, credential: str) -> Identity:
        identity_id = self.decode(credential)
        identity = await bounded(
            "identity lookup", self._directory.resolve(identity_id), self._timeout
        )
        if identity is None:
            logger.info("Rejected credential for unknown user", extra={"identity_id": identity_id})
            raise AuthError(AuthErrorKind.UNKNOWN_IDENTITY)
        return identity


__all__ = ["IdentityVerifier", "create_access_token"]

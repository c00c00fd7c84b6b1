"""JWT helpers for authenticating REST calls and event-channel handshakes.

Tokens are issued by the identity provider; this module only needs to read
them. ``create_access_token`` exists for local development and tests.
"""
from __future__ import annotations

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from signalhub.core.settings import settings
from signalhub.services.errors import NotAuthenticatedError


def create_access_token(user_id: int, extra_claims: dict[str, str] | None = None) -> str:
    """Create JWT access token for user authentication."""
    to_encode: dict[str, object] = {"sub": str(user_id)}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def decode_access_token(token: str) -> int:
    """Return the user id carried by ``token``.

    Raises:
        NotAuthenticatedError: If the token is invalid, expired or has no usable subject.
    """
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as err:
        raise NotAuthenticatedError("Could not validate credentials") from err

    subject = payload.get("sub")
    if subject is None:
        raise NotAuthenticatedError("Could not validate credentials")
    try:
        return int(subject)
    except (TypeError, ValueError) as err:
        raise NotAuthenticatedError("Malformed token subject") from err

"""Shared API dependencies for authentication and common functionality."""

from typing import Annotated, NoReturn

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from signalhub.core.security import decode_access_token
from signalhub.db.session import get_db
from signalhub.models import User
from signalhub.services.errors import ErrorCode, NotAuthenticatedError, SignalError
from signalhub.services.hub import SignalHub

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]

_STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NOT_A_MEMBER: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_AUTHOR: status.HTTP_403_FORBIDDEN,
    ErrorCode.ALREADY_DELETED: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorCode.TARGET_UNREACHABLE: status.HTTP_409_CONFLICT,
    ErrorCode.NOT_CONNECTED: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_PAYLOAD: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.INTERNAL: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def raise_http(exc: SignalError) -> NoReturn:
    """Re-raise a signaling error as the matching ``HTTPException``."""
    raise HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST),
        detail={"error": exc.code.value, "detail": exc.detail},
    ) from exc


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> User:
    """Get the current authenticated user from JWT token.

    Raises:
        HTTPException: If token is invalid or user not found
    """
    try:
        user_id = decode_access_token(credentials.credentials)
    except NotAuthenticatedError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def get_hub(request: Request) -> SignalHub:
    """Return the signaling hub built at application startup."""
    hub: SignalHub | None = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Signaling core is not running",
        )
    return hub


# Type alias for current user dependency
CurrentUserDep = Annotated[User, Depends(get_current_user)]
HubDep = Annotated[SignalHub, Depends(get_hub)]

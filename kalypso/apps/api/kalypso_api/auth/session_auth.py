"""Bearer-token authentication for user-facing routes.

FLOW:
1. The mobile client signs in with Supabase and receives a JWT access token
2. It calls /api/... with Authorization: Bearer <jwt>
3. Supabase validates signature and expiry and returns the auth user
4. The local ``users`` row is created on first sight; the user ID is put in
   the logging context

Every service call is then scoped to ``AuthContext.user_id``; the API never
takes a user ID from the request body.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from kalypso_api.context import request_id_var, user_id_var
from kalypso_api.db.models import User
from kalypso_api.db.session import get_db
from kalypso_api.schemas import ProblemDetail
from kalypso_api.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

bearer_security = HTTPBearer(auto_error=False, description="Supabase JWT access token")


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: Optional[str] = None


def _unauthorized(detail: str) -> HTTPException:
    """401 carrying an RFC 9457 body."""
    request_id = request_id_var.get()
    problem = ProblemDetail(
        type="urn:kalypso:problem:unauthorized",
        title="Unauthorized",
        status=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        instance=f"urn:kalypso:trace:{request_id}" if request_id else None,
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=problem.model_dump(exclude_none=True),
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_token(token: str) -> AuthContext:
    """Resolve a Supabase access token to the user it was issued for.

    Raises:
        HTTPException: 401 if the token is invalid, expired, or cannot be checked
    """
    try:
        user_response = get_supabase_client().auth.get_user(token)
    except Exception as exc:  # supabase raises AuthApiError, httpx errors, RuntimeError on misconfig
        logger.warning(
            "SESSION_TOKEN_VERIFY_FAILED",
            extra={"error_type": type(exc).__name__},
        )
        raise _unauthorized("Session validation failed. Please log in again.") from exc

    if not user_response or not user_response.user:
        raise _unauthorized("Invalid or expired session token. Please log in again.")
    user = user_response.user
    return AuthContext(user_id=str(user.id), email=user.email)


def ensure_local_user(db: Session, auth: AuthContext) -> User:
    user = db.get(User, auth.user_id)
    if user is not None:
        return user
    user = User(id=auth.user_id, email=auth.email)
    db.add(user)
    try:
        db.commit()
    except SQLAlchemyError:
        # Another request created the row first
        db.rollback()
        user = db.get(User, auth.user_id)
        if user is None:
            raise
    else:
        logger.info("LOCAL_USER_CREATED", extra={"user_id": auth.user_id})
    return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_security),
    db: Session = Depends(get_db),
) -> AuthContext:
    """FastAPI dependency: authenticated user for this request.

    Raises:
        HTTPException: 401 when the Authorization header is missing or invalid
    """
    if not credentials:
        raise _unauthorized("Missing Authorization header. Please log in first.")

    auth = verify_token(credentials.credentials)
    ensure_local_user(db, auth)
    user_id_var.set(auth.user_id)
    request.state.user_id = auth.user_id
    return auth

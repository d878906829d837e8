"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from starlette.concurrency import run_in_threadpool

from app.core.security import InvalidTokenError, token_subject
from app.schemas.messages import UserPublic
from app.services import chat_store

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_user_from_token(token: str) -> UserPublic:
    """Resolve the user behind a JWT or raise an HTTP 401 error."""

    try:
        user_id = token_subject(token)
    except InvalidTokenError as exc:
        raise _unauthorized(str(exc)) from None
    user = chat_store.get_user(user_id)
    if user is None:
        raise _unauthorized()
    return user


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserPublic:
    """Retrieve the current user from the bearer token."""

    if credentials is None or not credentials.credentials:
        raise _unauthorized("Not authenticated")
    return await run_in_threadpool(get_user_from_token, credentials.credentials)

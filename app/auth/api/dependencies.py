from typing import Annotated, Optional
from fastapi import Depends, Request, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from app.core.exceptions import Unauthorized
from app.core.logger import get_logger
from pkg.auth_token_client.client import TokenClient

logger = get_logger("AuthDependencies")

# HTTP Bearer token security scheme
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return Unauthorized(detail).to_http()


def get_token_client(request: Request) -> Optional[TokenClient]:
    """Token verifier wired on app.state at startup."""
    return getattr(request.app.state, "token_client", None)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    token_client: Optional[TokenClient] = Depends(get_token_client),
) -> dict:
    """
    Resolve the authenticated user from the bearer token.

    Fails closed: no token, a bad token, or no verifier all yield 401.

    Usage:
        @router.get("/protected")
        async def protected_route(current_user: dict = Depends(get_current_user)):
            user_id = current_user["user_id"]
    """
    if not credentials:
        raise _unauthorized("Not authenticated")

    if token_client is None:
        logger.error("Token client not initialized; rejecting request")
        raise _unauthorized("Not authenticated")

    try:
        user_id = token_client.user_id_from_token(credentials.credentials)
    except ValueError as e:
        logger.debug(f"Token rejected: {e}")
        raise _unauthorized("Invalid or expired token")

    return {"user_id": user_id}


# Type alias for cleaner dependency injection
CurrentUserDep = Annotated[dict, Depends(get_current_user)]

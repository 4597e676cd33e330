from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
import structlog

from procurement.schemas.context import CallerContext
from procurement.services.auth_service import context_from_claims, verify_access_token

logger = structlog.get_logger()

# A missing token is not rejected here: the permission gate reports it as
# AUTHENTICATION_REQUIRED and audits the attempt.
security = HTTPBearer(auto_error=False)


async def get_caller_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[CallerContext]:
    """FastAPI dependency: verify the bearer JWT and build the caller context."""
    if credentials is None:
        return None
    try:
        context = context_from_claims(verify_access_token(credentials.credentials))
    except JWTError as e:
        logger.warning("auth_token_invalid", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": {
                    "code": "AUTH_TOKEN_INVALID",
                    "message": "Invalid or expired token",
                }
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    structlog.contextvars.bind_contextvars(user_id=context.user_id, role=context.role.value)
    return context

"""
Shared dependencies for API endpoints.

Includes:
- Caller identity from the bearer JWT (authentication happens upstream)
- Secure vote service wired to the application's Database
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.security import decode_token
from db.session import Database, get_database
from services.secure_vote_service import SecureVoteService

logger = structlog.get_logger(__name__)

# Security schemes
security = HTTPBearer(auto_error=False)


async def get_current_voter_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> str:
    """
    Extract the stable caller identifier (JWT `sub`) from the bearer token.

    Raises:
        HTTPException: If the token is missing, invalid or has no subject.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = decode_token(credentials.credentials)
    if payload is None:
        logger.info("voter_token_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    voter_id = payload.get("sub")
    if not voter_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return str(voter_id)


def get_secure_vote_service(
    database: Annotated[Database, Depends(get_database)],
) -> SecureVoteService:
    """Secure vote service bound to the app's Database."""
    return SecureVoteService(database)

"""
Helpers and application logic related to first-party API keys.
"""

from typing import Optional

from fastapi import Header, HTTPException, Request, status
from loguru import logger

from api.constants import API_KEY_PREFIX
from api.user.schemas import User


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Pull the credential out of an "Authorization: Bearer ..." header value.
    """
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def could_be_api_key(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(API_KEY_PREFIX)


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> User:
    """
    Resolve the standing API key presented as a bearer token.
    """
    token = extract_bearer_token(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = None
    if could_be_api_key(token):
        user = await request.app.state.user_directory.find_by_api_key(token)
    if not user:
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user

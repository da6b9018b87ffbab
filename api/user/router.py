"""
User routes: first-party sign-in and the standing API key.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger

from api.api_key.util import get_current_user
from api.idp.errors import AuthenticationFailed
from api.user.schemas import (
    ApiKeyResponse,
    GoogleSignInRequest,
    ProfileResponse,
    SignInResponse,
    User,
)

router = APIRouter()


@router.post("/google", response_model=SignInResponse)
async def google_sign_in(args: GoogleSignInRequest, request: Request):
    """
    Exchange a Google ID token obtained natively by the app for the user's API key,
    creating the user on first sign-in.
    """
    if not args.idToken:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="idToken is required",
        )
    try:
        profile = await request.app.state.identity_provider.verify_id_token(args.idToken)
    except AuthenticationFailed:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid Google token",
        )
    user = await request.app.state.user_directory.find_or_create(profile)
    logger.success(f"First-party sign-in for user {user.user_id}")
    return SignInResponse(
        userId=user.user_id,
        email=user.email,
        name=user.name,
        apiKey=user.api_key,
        pictureUrl=user.picture_url,
    )


@router.post("/api-key/refresh", response_model=ApiKeyResponse)
async def refresh_api_key(request: Request, current_user: User = Depends(get_current_user)):
    """Rotate the caller's API key; the presented key stops working immediately."""
    api_key = await request.app.state.user_directory.refresh_api_key(current_user.user_id)
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )
    logger.info(f"API key rotated for user {current_user.user_id}")
    return ApiKeyResponse(apiKey=api_key)


@router.get("/me", response_model=ProfileResponse)
async def me(current_user: User = Depends(get_current_user)):
    return ProfileResponse(
        userId=current_user.user_id,
        email=current_user.email,
        name=current_user.name,
        pictureUrl=current_user.picture_url,
    )

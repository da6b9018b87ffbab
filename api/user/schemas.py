"""
ORM definitions for users.
"""

import secrets
import string
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import Column, DateTime, String, func

from api.constants import API_KEY_PREFIX, TOKEN_SECRET_LENGTH
from api.database import Base, generate_uuid


class User(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True, default=generate_uuid)
    google_id = Column(String, unique=True, nullable=False, index=True)
    email = Column(String, nullable=False)
    name = Column(String, nullable=False)
    picture_url = Column(String, nullable=True)
    api_key = Column(String, unique=True, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @staticmethod
    def generate_api_key() -> str:
        """Generate a standing API key for first-party clients."""
        secret = "".join(
            secrets.choice(string.ascii_letters + string.digits) for _ in range(TOKEN_SECRET_LENGTH)
        )
        return f"{API_KEY_PREFIX}{secret}"


class FederatedProfile(BaseModel):
    """
    Identity fields vouched for by the upstream identity provider.
    """

    subject_id: str
    email: str
    name: str
    picture: Optional[str] = None


class GoogleSignInRequest(BaseModel):
    idToken: Optional[str] = None


class SignInResponse(BaseModel):
    userId: str
    email: str
    name: str
    apiKey: str
    pictureUrl: Optional[str] = None


class ProfileResponse(BaseModel):
    userId: str
    email: str
    name: str
    pictureUrl: Optional[str] = None


class ApiKeyResponse(BaseModel):
    apiKey: str

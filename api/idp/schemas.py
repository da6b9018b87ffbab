"""
Database models for OAuth2/IDP functionality.

Scope Format:
-------------
Scopes are "{action}:{resource}" pairs plus the standalone "profile" scope:
- "read:food" - Read food logs and daily summaries
- "write:food" - Create, modify and delete food logs
- "profile" - Read basic profile information (email, name, picture)

The set of scopes any client may hold is configured globally (settings.allowed_scopes).
Each client additionally carries its own allowed subset.
"""

import hashlib
import secrets
import string
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, func

from api.constants import (
    ACCESS_TOKEN_PREFIX,
    AUTH_CODE_PREFIX,
    MAX_REDIRECT_URIS,
    REFRESH_TOKEN_PREFIX,
    STATE_NONCE_PREFIX,
    SUPPORTED_GRANT_TYPES,
    TOKEN_SECRET_LENGTH,
)
from api.database import Base, generate_uuid
from api.idp.errors import InvalidRedirectURI

SCOPE_DESCRIPTIONS = {
    "read:food": "Read your food logs and daily nutrition summaries",
    "write:food": "Log, edit and delete meals on your behalf",
    "profile": "Read basic profile information (email, name, picture)",
    "read:health": "Read your health samples (glucose, heart rate, ...)",
    "write:health": "Upload health samples on your behalf",
}


def parse_scope(scope: Optional[str]) -> List[str]:
    """
    Split a space-delimited scope parameter, dropping blanks and duplicates (order kept).
    """
    if not scope:
        return []
    seen = []
    for item in scope.split():
        if item not in seen:
            seen.append(item)
    return seen


def format_scope(scopes: Iterable[str]) -> str:
    return " ".join(scopes)


def get_available_scopes(allowed_scopes: Iterable[str]) -> dict:
    """
    Scopes with descriptions, for documentation and discovery.
    """
    return {scope: SCOPE_DESCRIPTIONS.get(scope, f"Access: {scope}") for scope in allowed_scopes}


def filter_scopes(requested: Iterable[str], allowed: Iterable[str]) -> List[str]:
    """
    Intersection of requested and allowed scopes, in request order.
    """
    allowed = set(allowed)
    return [scope for scope in requested if scope in allowed]


def validate_redirect_uri(uri: str) -> str:
    """
    Redirect URIs must be absolute http(s) URLs with a host and no fragment.
    """
    try:
        parsed = urlparse(uri)
    except (TypeError, ValueError):
        raise InvalidRedirectURI(f"Invalid redirect URI format: {uri}")
    if parsed.scheme not in ("http", "https"):
        raise InvalidRedirectURI(f"Invalid redirect URI protocol: {uri}")
    if not parsed.netloc or not parsed.hostname:
        raise InvalidRedirectURI(f"Invalid redirect URI format: {uri}")
    if parsed.fragment:
        raise InvalidRedirectURI(f"Redirect URI must not contain a fragment: {uri}")
    return uri


def validate_redirect_uris(uris: Optional[List[str]]) -> List[str]:
    if not uris or not isinstance(uris, list):
        raise InvalidRedirectURI("redirect_uris is required and must be a non-empty array")
    if len(uris) > MAX_REDIRECT_URIS:
        raise InvalidRedirectURI(f"Maximum {MAX_REDIRECT_URIS} redirect URIs allowed")
    for uri in uris:
        if not isinstance(uri, str):
            raise InvalidRedirectURI(f"Invalid redirect URI format: {uri}")
        validate_redirect_uri(uri)
    return uris


def generate_secret(length: int = TOKEN_SECRET_LENGTH) -> str:
    return "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(length))


class OAuthClient(Base):
    """OAuth2 client (static, provisioned, or dynamically registered)."""

    __tablename__ = "oauth_clients"

    client_id = Column(String, primary_key=True)
    client_secret_hash = Column(String, nullable=False)
    name = Column(String(128), nullable=False)
    redirect_uris = Column(JSON, nullable=False, default=list)
    allowed_scopes = Column(JSON, nullable=False, default=list)
    grant_types = Column(JSON, nullable=False, default=lambda: list(SUPPORTED_GRANT_TYPES))
    created_at = Column(DateTime, server_default=func.now())

    @classmethod
    def generate_client_id(cls) -> str:
        """Generate a unique client ID."""
        suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(24))
        return f"cid_{suffix}"

    @classmethod
    def generate_client_secret(cls) -> str:
        """Generate a secure client secret."""
        return f"csc_{generate_secret()}"

    def is_valid_redirect_uri(self, uri: str) -> bool:
        """Exact string match against the registered redirect URIs."""
        return uri in (self.redirect_uris or [])

    def supports_grant_type(self, grant_type: str) -> bool:
        return grant_type in (self.grant_types or SUPPORTED_GRANT_TYPES)


class TokenKind(str, Enum):
    CODE = "code"
    ACCESS = "access"
    REFRESH = "refresh"
    STATE = "state"

    @property
    def prefix(self) -> str:
        return {
            TokenKind.CODE: AUTH_CODE_PREFIX,
            TokenKind.ACCESS: ACCESS_TOKEN_PREFIX,
            TokenKind.REFRESH: REFRESH_TOKEN_PREFIX,
            TokenKind.STATE: STATE_NONCE_PREFIX,
        }[self]


class OAuthToken(Base):
    """
    Every issued authorization artifact: codes, access/refresh tokens and state nonces.
    Only the SHA-256 digest of the opaque token string is stored.
    """

    __tablename__ = "oauth_tokens"

    token_id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    kind = Column(String(16), nullable=False)
    user_id = Column(String, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=True)
    client_id = Column(
        String,
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scopes = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    # Access tokens: the refresh token issued in the same pair.
    refresh_token_id = Column(String, nullable=True, index=True)
    # Authorization codes: binding checked at exchange time.
    redirect_uri = Column(String, nullable=True)
    code_challenge = Column(String, nullable=True)
    code_challenge_method = Column(String(8), nullable=True)

    @staticmethod
    def generate_token(kind: TokenKind) -> str:
        return f"{kind.prefix}{generate_secret()}"

    @staticmethod
    def hash_token(token: str) -> str:
        """SHA256 rather than argon2: tokens are high-entropy and looked up by digest."""
        return hashlib.sha256(token.encode()).hexdigest()


class TokenInfo(BaseModel):
    """Token Store lookup result."""

    model_config = ConfigDict(from_attributes=True)

    token_id: str
    kind: TokenKind
    user_id: Optional[str] = None
    client_id: str
    scopes: List[str] = []
    created_at: datetime
    expires_at: datetime
    refresh_token_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


class TokenPair(BaseModel):
    """Freshly issued access + refresh tokens."""

    access_token: str
    refresh_token: str
    expires_in: int
    scopes: List[str]
    user_id: str
    client_id: str


class AuthorizationRequest(BaseModel):
    """OAuth2 authorization request parameters, carried across the provider round-trip."""

    client_id: str
    redirect_uri: str
    scope: str
    state: str = ""
    response_type: str = "code"
    code_challenge: Optional[str] = None  # PKCE
    code_challenge_method: Optional[str] = None  # PKCE


class TokenRequest(BaseModel):
    """OAuth2 token request parameters."""

    grant_type: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    refresh_token: Optional[str] = None
    code_verifier: Optional[str] = None  # PKCE


class ClientRegistrationRequest(BaseModel):
    """Dynamic client registration request (RFC 7591)."""

    redirect_uris: Optional[List[str]] = None
    client_name: Optional[str] = None
    scope: Optional[str] = None
    grant_types: Optional[List[str]] = None

    @field_validator("client_name")
    @classmethod
    def validate_client_name(cls, v):
        if v is not None:
            v = v.strip()[:128]
        return v or None

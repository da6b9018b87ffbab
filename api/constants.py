"""
Protocol constants for the authorization server.
"""

# Token lifetimes.
AUTH_CODE_EXPIRY_SECONDS = 300
ACCESS_TOKEN_EXPIRY_SECONDS = 3600
DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS = 30
OAUTH_STATE_EXPIRY_SECONDS = 600

# Opaque token prefixes, one per artifact kind.
AUTH_CODE_PREFIX = "hac_"
ACCESS_TOKEN_PREFIX = "hak_"
REFRESH_TOKEN_PREFIX = "hrk_"
STATE_NONCE_PREFIX = "hsn_"
API_KEY_PREFIX = "hpk_"

# Number of random alphanumeric characters after the prefix.
TOKEN_SECRET_LENGTH = 48

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_CODE_CHALLENGE_METHODS = ("plain", "S256")

# Redirect URI limits for a single client.
MAX_REDIRECT_URIS = 10

# Google (identity provider) endpoints.
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_JWKS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
GOOGLE_LOGIN_SCOPES = ("openid", "email", "profile")
JWKS_REFRESH_INTERVAL_SECONDS = 60

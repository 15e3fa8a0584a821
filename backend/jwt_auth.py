"""
JWT Authentication Module for Command Board

Token types:
- Access token (JWT): 15-minute lifetime, carries user + tenant + license
  tier claims. Validated by signature only (CPU, no DB hit).
- Refresh token: long-lived opaque string stored in refresh_tokens. Used by
  the board client to get a new access token before the old one lapses.

Delivery:
- HTTP: Authorization: Bearer <token>
- WebSocket: ?token=<jwt> query parameter during handshake

Suspension is not cached here: resolve_caller() re-reads the user and
tenant status on every command operation.

DEPENDENCIES: PyJWT
"""

import os
import secrets
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import jwt  # PyJWT

logger = logging.getLogger(__name__)

# =============================================================================
# CONFIGURATION
# =============================================================================

# JWT signing key. MUST be set in production via environment variable.
# If not set, generates a random key (tokens invalidated on restart, fine for dev).
_default_secret = secrets.token_urlsafe(64)
JWT_SECRET = os.environ.get("COMMANDBOARD_JWT_SECRET", _default_secret)
if JWT_SECRET == _default_secret:
    logger.warning(
        "JWT_SECRET not set in environment, using random key. "
        "Tokens will be invalidated on restart. "
        "Set COMMANDBOARD_JWT_SECRET for persistent tokens."
    )

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_LIFETIME = timedelta(minutes=int(os.environ.get("COMMANDBOARD_ACCESS_TOKEN_MINUTES", "15")))
REFRESH_TOKEN_LIFETIME = timedelta(days=int(os.environ.get("COMMANDBOARD_REFRESH_TOKEN_DAYS", "30")))

# =============================================================================
# TOKEN CREATION
# =============================================================================


def create_access_token(user_id: str, tenant_id: str) -> str:
    """
    Create a signed JWT access token.

    Tier and role are not claims; every request re-reads them from the
    database.

    Args:
        user_id: Authenticated user id
        tenant_id: The user's organization

    Returns:
        Encoded JWT string
    """
    now = datetime.now(timezone.utc)

    payload = {
        "user_id": user_id,
        "tenant_id": tenant_id,
        "iat": now,
        "exp": now + ACCESS_TOKEN_LIFETIME,
    }

    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def create_refresh_token() -> str:
    """
    Generate a cryptographically secure refresh token string.

    This is NOT a JWT; it's an opaque token stored in the database.
    The database record links it to the tenant and user.
    """
    return secrets.token_urlsafe(48)


# =============================================================================
# TOKEN VALIDATION
# =============================================================================


class TokenClaims:
    """Parsed and validated JWT claims."""

    __slots__ = ("user_id", "tenant_id")

    def __init__(self, payload: dict):
        self.user_id = payload["user_id"]
        self.tenant_id = payload["tenant_id"]


def validate_access_token(token: str) -> Optional[TokenClaims]:
    """
    Validate a JWT access token by checking its signature and expiration.

    CPU only, no database hit.

    Returns:
        TokenClaims if valid, None if invalid/expired.
    """
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return TokenClaims(payload)
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT: {e}")
        return None
    except KeyError as e:
        logger.warning(f"JWT missing claim: {e}")
        return None


# =============================================================================
# TOKEN EXTRACTION (multi-transport)
# =============================================================================


def extract_token_from_request(request) -> Optional[str]:
    """
    Extract JWT access token from the Authorization header.

    Args:
        request: FastAPI Request object

    Returns:
        Token string or None
    """
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:]
    return None


def extract_token_from_websocket_params(websocket) -> Optional[str]:
    """
    Extract JWT from WebSocket query parameters.

    Browsers cannot set headers on a WebSocket upgrade, so the board client
    passes the token as ?token=<jwt> during handshake. An Authorization
    header is accepted too for non-browser clients.
    """
    token = websocket.query_params.get("token")
    if token:
        return token
    return extract_token_from_request(websocket)

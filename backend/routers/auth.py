"""
Authentication Router

Handles responder (user) level authentication for the board client:
- Login: validates email + password, issues JWT access token + refresh token
- Refresh: exchanges refresh token for new access token
- Logout: revokes refresh token

A login does not create a device session; the client calls
POST /api/command/sessions afterwards so admission can be refused without
invalidating the credential.
"""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from datetime import datetime, timezone
import bcrypt
import logging

from database import get_db
from models import User, Tenant, RefreshToken
from schemas_command import LoginBody, RefreshBody
from services.command.store import as_utc
from jwt_auth import (
    create_access_token,
    create_refresh_token,
    ACCESS_TOKEN_LIFETIME,
    REFRESH_TOKEN_LIFETIME,
)

logger = logging.getLogger(__name__)
router = APIRouter()


# =============================================================================
# HELPERS
# =============================================================================


def verify_password(password: str, password_hash: str) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError as e:
        logger.error(f"Password verification error: {e}")
        return False


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def _issue_access_token(user: User) -> str:
    return create_access_token(user_id=user.id, tenant_id=user.tenant_id)


def _active_tenant(db: Session, tenant_id: str):
    return db.query(Tenant).filter(
        Tenant.id == tenant_id,
        Tenant.status == "active",
    ).first()


# =============================================================================
# LOGIN
# =============================================================================


@router.post("/login")
async def login(data: LoginBody, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == data.email.lower().strip()).first()

    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if user.status != "active":
        raise HTTPException(status_code=403, detail=f"Account is {user.status}")

    tenant = _active_tenant(db, user.tenant_id)
    if not tenant:
        raise HTTPException(status_code=403, detail="Organization account is not active")

    now = datetime.now(timezone.utc)
    refresh_token_str = create_refresh_token()
    db.add(RefreshToken(
        user_id=user.id,
        tenant_id=user.tenant_id,
        token=refresh_token_str,
        expires_at=now + REFRESH_TOKEN_LIFETIME,
    ))
    user.last_login_at = now
    db.commit()

    logger.info(f"User login: {user.email} ({tenant.slug})")

    return {
        "status": "ok",
        "access_token": _issue_access_token(user),
        "refresh_token": refresh_token_str,
        "expires_in": int(ACCESS_TOKEN_LIFETIME.total_seconds()),
        "user_id": user.id,
        "tenant_id": user.tenant_id,
        "license_tier": user.license_tier,
        "display_name": user.display_name,
    }


# =============================================================================
# REFRESH
# =============================================================================


@router.post("/refresh")
async def refresh_access_token(data: RefreshBody, db: Session = Depends(get_db)):
    """
    Exchange a valid refresh token for a new JWT access token.

    Called by the board client on a timer and whenever the page becomes
    visible again after being hidden.
    """
    refresh_record = db.query(RefreshToken).filter(
        RefreshToken.token == data.refresh_token,
        RefreshToken.revoked_at.is_(None),
    ).first()

    if not refresh_record:
        raise HTTPException(status_code=401, detail="Invalid refresh token")

    now = datetime.now(timezone.utc)
    if as_utc(refresh_record.expires_at) < now:
        # Clean up expired token
        db.delete(refresh_record)
        db.commit()
        raise HTTPException(status_code=401, detail="Refresh token expired")

    user = db.query(User).filter(User.id == refresh_record.user_id).first()
    if not user or user.status != "active" or not _active_tenant(db, user.tenant_id):
        # Account suspended or deleted: revoke the refresh token
        refresh_record.revoked_at = now
        db.commit()
        raise HTTPException(status_code=401, detail="Account not active")

    refresh_record.last_used_at = now
    db.commit()

    return {
        "status": "ok",
        "access_token": _issue_access_token(user),
        "expires_in": int(ACCESS_TOKEN_LIFETIME.total_seconds()),
    }


# =============================================================================
# LOGOUT
# =============================================================================


@router.post("/logout")
async def logout(data: RefreshBody, db: Session = Depends(get_db)):
    refresh_record = db.query(RefreshToken).filter(
        RefreshToken.token == data.refresh_token,
    ).first()
    if refresh_record and refresh_record.revoked_at is None:
        refresh_record.revoked_at = datetime.now(timezone.utc)
        db.commit()

    return {"status": "ok", "message": "Logged out"}

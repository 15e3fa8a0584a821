"""
Caller identity for command operations.

The bearer credential is a JWT carrying {user_id, tenant_id, license_tier};
resolve_caller() confirms the account and its tenant are still active so a
suspended user is cut off without waiting for the token to expire.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from config import RESTRICTED_LICENSE_TIER
from models import User, Tenant
from services.command.results import Result, ErrorKind, permission_denied


@dataclass(frozen=True)
class Caller:
    user_id: str
    tenant_id: str
    license_tier: str = "basic"
    role: str = "member"
    display_name: Optional[str] = None

    @property
    def is_restricted_tier(self) -> bool:
        return self.license_tier == RESTRICTED_LICENSE_TIER

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def resolve_caller(db: Session, user_id: str, tenant_id: str) -> Result:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        return Result.failure(ErrorKind.UNAUTHENTICATED, "The provided credential is invalid.")
    if user.status != "active":
        return permission_denied("This account is not currently active.")
    if not user.tenant_id:
        return Result.failure(ErrorKind.INTERNAL, "Configuration error: organization missing for this user.")
    if user.tenant_id != tenant_id:
        return Result.failure(ErrorKind.UNAUTHENTICATED, "Credential does not match this account.")

    tenant = db.query(Tenant).filter(Tenant.id == user.tenant_id).first()
    if tenant is None:
        return Result.failure(ErrorKind.INTERNAL, "Configuration error: organization record missing.")
    if tenant.status != "active":
        return permission_denied(f"Organization account is {tenant.status}.")

    return Result.success(Caller(
        user_id=user.id,
        tenant_id=user.tenant_id,
        license_tier=user.license_tier or "basic",
        role=user.role or "member",
        display_name=user.display_name or user.email,
    ))

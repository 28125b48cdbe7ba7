# apps/backend/auth/dependencies.py
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from database import get_db
from academy.identity import Principal
from academy.models import Account
from .auth_utils import decode_token


def _bearer(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return authorization[len("Bearer "):].strip()


def current_principal(
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> Principal:
    claims = decode_token(_bearer(authorization))
    if not claims or not claims.get("email"):
        raise HTTPException(status_code=401, detail="Unauthorized")
    return Principal(
        email=claims["email"],
        sub=claims.get("sub"),
        role=claims.get("role") or "user",
    )


def require_admin(
    principal: Principal = Depends(current_principal),
    db: Session = Depends(get_db),
) -> Principal:
    # the stored role wins over the token claim
    if not principal.is_admin or not principal.sub:
        raise HTTPException(status_code=403, detail="Forbidden")
    account = db.get(Account, principal.sub)
    if account is None or account.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    return principal

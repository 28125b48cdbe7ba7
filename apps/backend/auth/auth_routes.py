# apps/backend/auth/auth_routes.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import get_db
from academy.identity import Principal, normalize_email, resolve_account
from academy.models import Account
from .auth_utils import create_access_token, hash_password, verify_password
from .dependencies import current_principal

router = APIRouter(prefix="/auth", tags=["auth"])


class RegisterIn(BaseModel):
    email: EmailStr
    password: str
    name: Optional[str] = None


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class AuthOut(BaseModel):
    token: str
    id: str
    email: EmailStr
    name: Optional[str]
    role: str


def _auth_out(account: Account) -> AuthOut:
    return AuthOut(
        token=create_access_token(account.id, account.email, account.role),
        id=account.id,
        email=account.email,
        name=account.name,
        role=account.role,
    )


@router.post("/register", response_model=AuthOut, status_code=201)
def register(body: RegisterIn, db: Session = Depends(get_db)):
    email = normalize_email(body.email)
    if db.scalar(select(Account).where(Account.email == email)):
        raise HTTPException(status_code=409, detail="Email already registered")

    try:
        password_hash = hash_password(body.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    account = Account(email=email, name=(body.name or "").strip() or None, password_hash=password_hash)
    db.add(account)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Email already registered")
    db.refresh(account)
    return _auth_out(account)


def _authenticate(db: Session, body: LoginIn) -> Account:
    email = normalize_email(body.email)
    account = db.scalar(select(Account).where(Account.email == email))
    if not account or not verify_password(body.password, account.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return account


@router.post("/login", response_model=AuthOut)
def login(body: LoginIn, db: Session = Depends(get_db)):
    return _auth_out(_authenticate(db, body))


@router.post("/admin/login", response_model=AuthOut)
def admin_login(body: LoginIn, db: Session = Depends(get_db)):
    account = _authenticate(db, body)
    if account.role != "admin":
        raise HTTPException(status_code=403, detail="Forbidden")
    return _auth_out(account)


@router.get("/me")
def me(principal: Principal = Depends(current_principal), db: Session = Depends(get_db)):
    account = resolve_account(db, principal)
    return {"id": account.id, "email": account.email, "name": account.name, "role": account.role}

# apps/backend/academy/identity.py
"""
Identity resolution.

Sessions always carry the account email and usually the canonical
account id (`sub`). Everything written from now on is keyed by the
canonical id. Historical orders / course_access rows were sometimes
keyed by the email instead; `account_keys` and the conflict/migration
helpers below are the only places that know about that.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import AuthenticationFailure, NotFound
from .models import Account, CourseAccess, Order

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    email: str
    sub: Optional[str] = None
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def resolve_account(session: Session, principal: Principal) -> Account:
    """Session principal -> canonical Account (lookup by sub, then by email)."""
    email = normalize_email(principal.email)
    if not email:
        raise AuthenticationFailure("Session has no email")

    if principal.sub:
        account = session.get(Account, principal.sub)
        if account is not None:
            return account

    account = session.scalar(select(Account).where(Account.email == email))
    if account is None:
        raise NotFound("User not found", email=email)
    if principal.sub and principal.sub != account.id:
        logger.warning(
            "identity.sub_mismatch",
            extra={"sub": principal.sub, "account_id": account.id},
        )
    return account


def account_keys(account: Account) -> tuple[str, str]:
    """(canonical id, legacy email key) for read paths that still meet old rows."""
    return account.id, normalize_email(account.email)


# --- legacy identifier cleanup ------------------------------------------------
@dataclass
class IdentityConflict:
    account_id: str
    email: str
    course_id: str
    table: str

    def to_dict(self) -> dict:
        return {
            "accountId": self.account_id,
            "email": self.email,
            "courseId": self.course_id,
            "table": self.table,
        }


def _email_keyed_access(session: Session) -> list[tuple[CourseAccess, Account]]:
    rows = session.execute(
        select(CourseAccess, Account).join(Account, CourseAccess.account_id == Account.email)
    ).all()
    return [(r[0], r[1]) for r in rows]


def find_identity_conflicts(session: Session) -> list[IdentityConflict]:
    """
    Report every (account, course) that has rows under both identifier
    shapes. Reported only; deciding which row wins is a human call.
    """
    conflicts: list[IdentityConflict] = []

    for legacy, account in _email_keyed_access(session):
        canonical = session.scalar(
            select(CourseAccess).where(
                CourseAccess.account_id == account.id,
                CourseAccess.course_id == legacy.course_id,
            )
        )
        if canonical is not None:
            conflicts.append(
                IdentityConflict(account.id, account.email, legacy.course_id, "course_access")
            )

    order_rows = session.execute(
        select(Order.course_id, Account.id, Account.email)
        .join(Account, Order.account_id == Account.email)
        .distinct()
    ).all()
    for course_id, account_id, email in order_rows:
        has_canonical = session.scalar(
            select(Order.id).where(Order.account_id == account_id, Order.course_id == course_id).limit(1)
        )
        if has_canonical:
            conflicts.append(IdentityConflict(account_id, email, course_id, "orders"))

    if conflicts:
        logger.warning("identity.conflicts_found", extra={"count": len(conflicts)})
    return conflicts


def migrate_legacy_identifiers(session: Session) -> dict:
    """
    Rewrite email-keyed course_access / orders rows to the canonical id.
    Pairs that already have a canonical row are left untouched and
    returned as conflicts.
    """
    conflicts = find_identity_conflicts(session)
    blocked = {(c.email, c.course_id, c.table) for c in conflicts}

    migrated_access = 0
    for legacy, account in _email_keyed_access(session):
        if (account.email, legacy.course_id, "course_access") in blocked:
            continue
        legacy.account_id = account.id
        migrated_access += 1

    migrated_orders = 0
    order_rows = session.execute(
        select(Order.course_id, Account.id, Account.email)
        .join(Account, Order.account_id == Account.email)
        .distinct()
    ).all()
    for course_id, account_id, email in order_rows:
        if (email, course_id, "orders") in blocked:
            continue
        result = session.execute(
            update(Order)
            .where(Order.account_id == email, Order.course_id == course_id)
            .values(account_id=account_id)
        )
        migrated_orders += result.rowcount or 0

    session.commit()
    logger.info(
        "identity.migrated",
        extra={
            "course_access": migrated_access,
            "orders": migrated_orders,
            "conflicts": len(conflicts),
        },
    )
    return {
        "migratedAccess": migrated_access,
        "migratedOrders": migrated_orders,
        "conflicts": [c.to_dict() for c in conflicts],
    }

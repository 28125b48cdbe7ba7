# apps/backend/academy/entitlements.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import NotFound
from .models import (
    ACCESS_ACTIVE,
    ACCESS_EXPIRED,
    ACCESS_REVOKED,
    ACCESS_TYPES,
    Account,
    Course,
    CourseAccess,
)
from .time_utils import as_utc, to_utc_z, utcnow

logger = logging.getLogger(__name__)


# === computed status ==========================================================
def is_expired(record: CourseAccess, now: Optional[datetime] = None) -> bool:
    exp = as_utc(record.expires_at)
    return exp is not None and exp <= (now or utcnow())


def effective_status(record: CourseAccess, now: Optional[datetime] = None) -> str:
    """
    The one status rule used by every read path: a passed expires_at reads
    as "expired" even if no sweep has rewritten the stored status yet.
    A revoked record stays revoked.
    """
    if record.status == ACCESS_REVOKED:
        return ACCESS_REVOKED
    if is_expired(record, now):
        return ACCESS_EXPIRED
    if not record.has_access:
        return record.status if record.status != ACCESS_ACTIVE else ACCESS_REVOKED
    return record.status


def grants_access(record: Optional[CourseAccess], now: Optional[datetime] = None) -> bool:
    return bool(record and record.has_access and not is_expired(record, now))


def serialize_access(record: CourseAccess, now: Optional[datetime] = None) -> dict:
    return {
        "id": record.id,
        "userId": record.account_id,
        "courseId": record.course_id,
        "hasAccess": grants_access(record, now),
        "accessType": record.access_type,
        "status": effective_status(record, now),
        "storedStatus": record.status,
        "grantedAt": to_utc_z(record.granted_at),
        "expiresAt": to_utc_z(record.expires_at),
        "orderId": record.order_id,
        "grantedBy": record.granted_by,
        "notes": record.notes,
    }


# === store ====================================================================
def get_access(session: Session, account_id: str, course_id: str) -> Optional[CourseAccess]:
    return session.scalar(
        select(CourseAccess).where(
            CourseAccess.account_id == account_id,
            CourseAccess.course_id == course_id,
        )
    )


def find_access(session: Session, keys: Sequence[str], course_id: str) -> Optional[CourseAccess]:
    """
    Look the record up under each account key in turn: canonical id first,
    then the legacy email key of rows written before ids were canonical.
    """
    canonical_id = keys[0]
    for key in keys:
        if not key:
            continue
        record = get_access(session, key, course_id)
        if record is None:
            continue
        if key != canonical_id:
            # TODO: drop once migrate_legacy_identifiers has run in production
            logger.warning(
                "access.legacy_identifier",
                extra={"account_id": canonical_id, "course_id": course_id},
            )
        return record
    return None


def _apply_grant(
    record: CourseAccess,
    order_id: Optional[str],
    access_type: str,
    granted_by: Optional[str],
    notes: Optional[str],
    expires_at: Optional[datetime],
) -> None:
    record.has_access = True
    record.status = ACCESS_ACTIVE
    record.access_type = access_type
    record.granted_at = utcnow()
    record.expires_at = expires_at
    if order_id is not None:
        record.order_id = order_id
    if granted_by is not None:
        record.granted_by = granted_by
    if notes is not None:
        record.notes = notes


def grant_access(
    session: Session,
    account_id: str,
    course_id: str,
    order_id: Optional[str] = None,
    access_type: str = "purchase",
    granted_by: Optional[str] = None,
    notes: Optional[str] = None,
    expires_at: Optional[datetime] = None,
) -> CourseAccess:
    """
    Idempotent upsert on (account_id, course_id). Calling it again for the
    same purchase (webhook + manual fix) just refreshes the same row.
    """
    if access_type not in ACCESS_TYPES:
        raise ValueError(f"unknown access type: {access_type}")

    record = get_access(session, account_id, course_id)
    if record is None:
        record = CourseAccess(account_id=account_id, course_id=course_id)
        _apply_grant(record, order_id, access_type, granted_by, notes, expires_at)
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            # a concurrent grant inserted the row first; update that one instead
            session.rollback()
            record = get_access(session, account_id, course_id)
            if record is None:
                raise
            _apply_grant(record, order_id, access_type, granted_by, notes, expires_at)
            session.commit()
    else:
        _apply_grant(record, order_id, access_type, granted_by, notes, expires_at)
        session.commit()

    logger.info(
        "access.granted",
        extra={
            "account_id": account_id,
            "course_id": course_id,
            "order_id": order_id,
            "access_type": access_type,
        },
    )
    return record


def revoke_access(
    session: Session,
    account_id: str,
    course_id: str,
    legacy_keys: Sequence[str] = (),
) -> bool:
    """False (not an error) when there is nothing to revoke."""
    record = find_access(session, (account_id, *legacy_keys), course_id)
    if record is None:
        logger.info("access.revoke.noop", extra={"account_id": account_id, "course_id": course_id})
        return False
    record.has_access = False
    record.status = ACCESS_REVOKED
    session.commit()
    logger.info("access.revoked", extra={"account_id": account_id, "course_id": course_id})
    return True


def check_access(session: Session, account_id: str, course_id: str) -> bool:
    """Evaluated fresh on every call; expiry is judged against now, not the stored status."""
    return grants_access(get_access(session, account_id, course_id))


def set_expiration(
    session: Session,
    account_id: str,
    course_id: str,
    expires_at: Optional[datetime],
    legacy_keys: Sequence[str] = (),
) -> CourseAccess:
    record = find_access(session, (account_id, *legacy_keys), course_id)
    if record is None:
        raise NotFound("Course access not found", account_id=account_id, course_id=course_id)
    record.expires_at = expires_at
    session.commit()
    return record


def list_access(session: Session, account_ids: Iterable[str]) -> list[CourseAccess]:
    ids = [a for a in account_ids if a]
    if not ids:
        return []
    return list(
        session.scalars(
            select(CourseAccess)
            .where(CourseAccess.account_id.in_(ids))
            .order_by(CourseAccess.granted_at.desc())
        )
    )


# === sweeps ===================================================================
@dataclass
class SweepResult:
    count: int = 0
    items: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"expiredCount": self.count, "revokedCourses": self.items}


def sweep_expired(
    session: Session,
    account_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> SweepResult:
    """
    has_access=True and expires_at < now  ->  has_access=False, status="expired".
    Each row is flipped with a conditional UPDATE, so overlapping sweeps
    count a row once and a second run reports nothing.
    """
    now = now or utcnow()
    q = select(CourseAccess.id, CourseAccess.account_id, CourseAccess.course_id, CourseAccess.expires_at).where(
        CourseAccess.has_access.is_(True),
        CourseAccess.expires_at.is_not(None),
        CourseAccess.expires_at < now,
    )
    if account_id is not None:
        q = q.where(CourseAccess.account_id == account_id)

    result = SweepResult()
    for row_id, acc_id, course_id, expires_at in session.execute(q).all():
        res = session.execute(
            update(CourseAccess)
            .where(CourseAccess.id == row_id, CourseAccess.has_access.is_(True))
            .values(has_access=False, status=ACCESS_EXPIRED, updated_at=now)
        )
        if res.rowcount:
            result.count += 1
            result.items.append(
                {"userId": acc_id, "courseId": course_id, "expiresAt": to_utc_z(expires_at)}
            )
    session.commit()

    if result.count:
        logger.info("access.sweep", extra={"expired": result.count, "account_id": account_id})
    return result


def cleanup_orphaned_access(session: Session, sample: int = 10) -> dict:
    """Delete access rows whose course no longer exists."""
    course_ids = select(Course.id)
    orphans = list(
        session.scalars(select(CourseAccess).where(CourseAccess.course_id.not_in(course_ids)))
    )
    kept = session.query(CourseAccess).count() - len(orphans)

    deleted_records = [
        {
            "id": r.id,
            "userId": r.account_id,
            "courseId": r.course_id,
            "accessType": r.access_type,
            "reason": "Course deleted",
        }
        for r in orphans
    ]
    if orphans:
        session.execute(
            delete(CourseAccess).where(CourseAccess.id.in_([r.id for r in orphans]))
        )
    session.commit()

    logger.info("access.cleanup_orphans", extra={"deleted": len(orphans), "kept": kept})
    return {
        "success": True,
        "deletedCount": len(orphans),
        "keptCount": kept,
        "deletedRecords": deleted_records[:sample],
    }


def delete_access_for_account(session: Session, account: Account) -> int:
    """Cascade for account deletion: rows under either identifier shape. Caller commits."""
    res = session.execute(
        delete(CourseAccess).where(
            CourseAccess.account_id.in_([account.id, account.email.lower()])
        )
    )
    return res.rowcount or 0

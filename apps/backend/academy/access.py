# apps/backend/academy/access.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import entitlements
from .identity import Principal, account_keys, resolve_account
from .models import CourseEnrollment
from .time_utils import to_utc_z, utcnow

SOURCE_COURSE_ACCESS = "course_access"
SOURCE_ENROLLMENT = "enrollment"
SOURCE_NONE = "none"


@dataclass
class AccessDecision:
    has_access: bool
    access_source: str
    user_id: Optional[str] = None
    access_details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, course_id: str) -> dict:
        return {
            "hasAccess": self.has_access,
            "courseId": course_id,
            "userId": self.user_id,
            "accessSource": self.access_source,
            "accessDetails": self.access_details,
        }


def _find_completed_enrollment(session: Session, keys: tuple[str, str], course_id: str) -> Optional[CourseEnrollment]:
    return session.scalar(
        select(CourseEnrollment).where(
            CourseEnrollment.account_id.in_(keys),
            CourseEnrollment.course_id == course_id,
            CourseEnrollment.status == "completed",
        )
    )


def has_access_to_course(session: Session, principal: Principal, course_id: str) -> AccessDecision:
    """
    Read path for content routes. Never writes: a record past its
    expires_at simply reads as no access until a sweep flips it.
    """
    account = resolve_account(session, principal)
    keys = account_keys(account)
    now = utcnow()

    record = entitlements.find_access(session, keys, course_id)
    enrollment = _find_completed_enrollment(session, keys, course_id)

    details = {
        "courseAccess": entitlements.serialize_access(record, now) if record else None,
        "enrollment": {
            "status": enrollment.status,
            "completedAt": to_utc_z(enrollment.completed_at),
        } if enrollment else None,
    }

    if entitlements.grants_access(record, now):
        return AccessDecision(True, SOURCE_COURSE_ACCESS, account.id, details)
    if enrollment is not None:
        return AccessDecision(True, SOURCE_ENROLLMENT, account.id, details)
    return AccessDecision(False, SOURCE_NONE, account.id, details)

# apps/backend/academy/routers/courses.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from auth.dependencies import current_principal
from database import get_db

from ..access import has_access_to_course
from ..entitlements import sweep_expired
from ..errors import NotFound
from ..identity import Principal, resolve_account
from ..models import Course
from ..time_utils import to_utc_z

router = APIRouter(prefix="/courses", tags=["courses"])


def serialize_course(course: Course) -> dict:
    return {
        "id": course.id,
        "title": course.title,
        "titleMn": course.title_mn,
        "description": course.description,
        "descriptionMn": course.description_mn,
        "price": course.price,
        "currency": course.currency,
        "status": course.status,
        "accessDays": course.access_days,
        "createdAt": to_utc_z(course.created_at),
    }


@router.get("")
def list_courses(db: Session = Depends(get_db)):
    courses = db.scalars(
        select(Course).where(Course.status == "active").order_by(Course.created_at.desc())
    )
    return [serialize_course(c) for c in courses]


@router.get("/{course_id}")
def get_course(course_id: str, db: Session = Depends(get_db)):
    course = db.get(Course, course_id)
    if course is None or course.status != "active":
        raise NotFound("Course not found", course_id=course_id)
    return serialize_course(course)


@router.get("/{course_id}/access")
def course_access(
    course_id: str,
    principal: Principal = Depends(current_principal),
    db: Session = Depends(get_db),
):
    decision = has_access_to_course(db, principal, course_id)
    return decision.to_dict(course_id)


@router.post("/check-expired")
def check_expired(
    principal: Principal = Depends(current_principal),
    db: Session = Depends(get_db),
):
    """Sweep the caller's own expired grants (the client calls this on dashboard load)."""
    account = resolve_account(db, principal)
    result = sweep_expired(db, account_id=account.id)
    body = result.to_dict()
    body["message"] = (
        f"Successfully revoked access for {result.count} expired courses"
        if result.count
        else "No expired courses found"
    )
    return body

# apps/backend/academy/routers/user.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from auth.dependencies import current_principal
from database import get_db

from ..entitlements import list_access, serialize_access
from ..identity import Principal, account_keys, resolve_account
from ..models import Course
from ..time_utils import utcnow

router = APIRouter(prefix="/user", tags=["user"])


@router.get("/enrolled-courses")
def enrolled_courses(
    principal: Principal = Depends(current_principal),
    db: Session = Depends(get_db),
):
    account = resolve_account(db, principal)
    now = utcnow()
    items = []
    for record in list_access(db, account_keys(account)):
        course = db.get(Course, record.course_id)
        if course is None:
            continue
        entry = serialize_access(record, now)
        entry["courseTitle"] = course.title
        entry["courseTitleMn"] = course.title_mn
        items.append(entry)
    return {"courses": items}

# apps/backend/academy/routers/admin.py
from __future__ import annotations

import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from auth.dependencies import require_admin
from database import get_db

from .. import entitlements, orders
from ..errors import NotFound
from ..identity import Principal, account_keys, find_identity_conflicts, migrate_legacy_identifiers
from ..models import ACCESS_TYPES, COURSE_STATUSES, CURRENCIES, Account, Course
from ..qpay import get_qpay_client
from ..reconciliation import grant_for_order, reconcile_order, repair_paid_order
from ..time_utils import parse_iso_datetime, utcnow
from .courses import serialize_course

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# --- request models -------------------------------------------------------------
class CourseIn(BaseModel):
    title: str
    title_mn: Optional[str] = Field(default=None, alias="titleMn")
    description: Optional[str] = None
    description_mn: Optional[str] = Field(default=None, alias="descriptionMn")
    price: int = 0
    currency: str = "MNT"
    status: str = "draft"
    access_days: Optional[int] = Field(default=None, alias="accessDays")

    model_config = {"populate_by_name": True}


class CourseUpdate(BaseModel):
    title: Optional[str] = None
    title_mn: Optional[str] = Field(default=None, alias="titleMn")
    description: Optional[str] = None
    description_mn: Optional[str] = Field(default=None, alias="descriptionMn")
    price: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    access_days: Optional[int] = Field(default=None, alias="accessDays")

    model_config = {"populate_by_name": True}


class OrderUpdate(BaseModel):
    status: Optional[str] = None
    notes: Optional[str] = None
    amount: Optional[int] = None
    transaction_id: Optional[str] = Field(default=None, alias="transactionId")

    model_config = {"populate_by_name": True}


class GrantIn(BaseModel):
    course_id: str = Field(alias="courseId")
    access_type: str = Field(default="admin_grant", alias="accessType")
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")
    notes: Optional[str] = None

    model_config = {"populate_by_name": True}


class ExpirationIn(BaseModel):
    expires_at: Optional[str] = Field(default=None, alias="expiresAt")

    model_config = {"populate_by_name": True}


class BulkDeleteIn(BaseModel):
    user_ids: List[str] = Field(alias="userIds")

    model_config = {"populate_by_name": True}


def _check_choice(value: Optional[str], allowed: tuple, field: str) -> None:
    if value is not None and value not in allowed:
        raise HTTPException(400, f"{field} must be one of {', '.join(allowed)}")


def _get_account(db: Session, user_id: str) -> Account:
    account = db.get(Account, user_id)
    if account is None:
        raise NotFound("User not found", user_id=user_id)
    return account


def _get_course(db: Session, course_id: str) -> Course:
    course = db.get(Course, course_id)
    if course is None:
        raise NotFound("Course not found", course_id=course_id)
    return course


# --- courses --------------------------------------------------------------------
@router.get("/courses")
def admin_list_courses(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return [serialize_course(c) for c in db.scalars(select(Course).order_by(Course.created_at.desc()))]


@router.post("/courses", status_code=201)
def admin_create_course(
    body: CourseIn, _: Principal = Depends(require_admin), db: Session = Depends(get_db)
):
    _check_choice(body.status, COURSE_STATUSES, "status")
    _check_choice(body.currency, CURRENCIES, "currency")
    course = Course(**body.model_dump())
    db.add(course)
    db.commit()
    return serialize_course(course)


@router.put("/courses/{course_id}")
def admin_update_course(
    course_id: str,
    body: CourseUpdate,
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    course = _get_course(db, course_id)
    changes = body.model_dump(exclude_unset=True)
    _check_choice(changes.get("status"), COURSE_STATUSES, "status")
    _check_choice(changes.get("currency"), CURRENCIES, "currency")
    for key, value in changes.items():
        setattr(course, key, value)
    db.commit()
    return serialize_course(course)


@router.delete("/courses/{course_id}")
def admin_delete_course(
    course_id: str, _: Principal = Depends(require_admin), db: Session = Depends(get_db)
):
    # access rows are left for cleanup-orphaned-access
    course = _get_course(db, course_id)
    db.delete(course)
    db.commit()
    return {"message": "Course deleted successfully", "deletedCourseId": course_id}


# --- orders ---------------------------------------------------------------------
@router.get("/orders")
def admin_list_orders(
    status: Optional[str] = Query(default=None),
    user_id: Optional[str] = Query(default=None, alias="userId"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    rows = orders.list_orders(db, status=status, account_id=user_id, limit=limit, offset=offset)
    return {"orders": [orders.serialize_order(o) for o in rows]}


@router.get("/orders/{order_id}")
def admin_get_order(order_id: str, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return {"order": orders.serialize_order(orders.get_order(db, order_id), include_provider=True)}


@router.put("/orders/{order_id}")
def admin_update_order(
    order_id: str,
    body: OrderUpdate,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    order, moved_to_paid = orders.admin_update_order(
        db,
        order_id,
        status=body.status,
        notes=body.notes,
        amount=body.amount,
        transaction_id=body.transaction_id,
    )
    if moved_to_paid:
        logger.info("order.manual_paid", extra={"order_id": order.id, "admin": admin.sub})
        grant_for_order(db, order)
    return {"message": "Order updated successfully", "order": orders.serialize_order(order)}


@router.post("/orders/{order_id}/reconcile")
def admin_reconcile_order(
    order_id: str,
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
    client: Any = Depends(get_qpay_client),
):
    """Re-run QPay verification by hand; on a paid order, restore a missing entitlement."""
    order = orders.get_order(db, order_id)
    paid_now = False
    repaired = False
    if order.status == "pending":
        paid_now = reconcile_order(db, order, client)
    else:
        repaired = repair_paid_order(db, order)
    db.refresh(order)
    return {"paid": paid_now, "accessRepaired": repaired, "order": orders.serialize_order(order, include_provider=True)}


# --- course access --------------------------------------------------------------
@router.get("/users/{user_id}/course-access")
def admin_list_user_access(user_id: str, _: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    account = _get_account(db, user_id)
    now = utcnow()
    return {
        "userId": account.id,
        "courseAccess": [
            entitlements.serialize_access(r, now) for r in entitlements.list_access(db, account_keys(account))
        ],
    }


@router.post("/users/{user_id}/course-access")
def admin_grant_access(
    user_id: str,
    body: GrantIn,
    admin: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    account = _get_account(db, user_id)
    _get_course(db, body.course_id)
    _check_choice(body.access_type, ACCESS_TYPES, "accessType")
    record = entitlements.grant_access(
        db,
        account.id,
        body.course_id,
        access_type=body.access_type,
        granted_by=admin.sub,
        notes=body.notes,
        expires_at=parse_iso_datetime(body.expires_at),
    )
    return {"ok": True, "courseAccess": entitlements.serialize_access(record)}


@router.delete("/users/{user_id}/course-access/{course_id}")
def admin_revoke_access(
    user_id: str, course_id: str, _: Principal = Depends(require_admin), db: Session = Depends(get_db)
):
    account = _get_account(db, user_id)
    revoked = entitlements.revoke_access(db, account.id, course_id, legacy_keys=account_keys(account)[1:])
    return {"ok": True, "revoked": revoked}


@router.put("/users/{user_id}/course-access/{course_id}/expiration")
def admin_set_expiration(
    user_id: str,
    course_id: str,
    body: ExpirationIn,
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    account = _get_account(db, user_id)
    record = entitlements.set_expiration(
        db,
        account.id,
        course_id,
        parse_iso_datetime(body.expires_at),
        legacy_keys=account_keys(account)[1:],
    )
    return {"ok": True, "courseAccess": entitlements.serialize_access(record)}


@router.post("/users/bulk-delete")
def admin_bulk_delete_users(
    body: BulkDeleteIn, admin: Principal = Depends(require_admin), db: Session = Depends(get_db)
):
    """Deletes accounts and their course access; orders stay as financial records."""
    deleted_users = 0
    deleted_access = 0
    skipped: list[str] = []
    for user_id in body.user_ids:
        account = db.get(Account, user_id)
        if account is None or account.id == admin.sub:
            skipped.append(user_id)
            continue
        deleted_access += entitlements.delete_access_for_account(db, account)
        db.delete(account)
        deleted_users += 1
    db.commit()
    logger.info("users.bulk_delete", extra={"deleted_users": deleted_users, "deleted_access": deleted_access})
    return {
        "success": True,
        "deletedCount": deleted_users,
        "deletedAccessCount": deleted_access,
        "skipped": skipped,
    }


@router.post("/cleanup-orphaned-access")
def admin_cleanup_orphaned_access(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return entitlements.cleanup_orphaned_access(db)


@router.post("/course-access/sweep")
def admin_sweep_expired(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return entitlements.sweep_expired(db).to_dict()


# --- identity cleanup -----------------------------------------------------------
@router.get("/identity/conflicts")
def admin_identity_conflicts(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return {"conflicts": [c.to_dict() for c in find_identity_conflicts(db)]}


@router.post("/identity/migrate")
def admin_identity_migrate(_: Principal = Depends(require_admin), db: Session = Depends(get_db)):
    return migrate_legacy_identifiers(db)

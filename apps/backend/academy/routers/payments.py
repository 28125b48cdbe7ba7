# apps/backend/academy/routers/payments.py
from __future__ import annotations

import logging
import secrets
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from auth.dependencies import current_principal
from database import get_db

from .. import entitlements, orders
from ..access import has_access_to_course
from ..errors import Conflict, ExternalProviderFailure, NotFound, PermissionDenied, QPayError
from ..identity import Principal, account_keys, resolve_account
from ..models import ORDER_PAID, ORDER_PENDING, Course
from ..qpay import get_qpay_client
from ..reconciliation import process_webhook, reconcile_order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pay/qpay", tags=["payments"])


class CreateBody(BaseModel):
    course_id: str = Field(alias="courseId")

    model_config = {"populate_by_name": True}


def _invoice_out(order) -> dict:
    return {
        "orderId": order.id,
        "invoiceId": order.invoice_id,
        "qr_text": order.qr_text,
        "qr_image": order.qr_image,
        "urls": order.urls or [],
    }


# --- checkout -------------------------------------------------------------------
@router.post("/create")
def create_invoice(
    body: CreateBody,
    principal: Principal = Depends(current_principal),
    db: Session = Depends(get_db),
    client: Any = Depends(get_qpay_client),
):
    """
    Start a QPay checkout for one course:
    - 409 when the caller already has access
    - an existing pending QPay order for the same course is handed back as-is
    - free courses are granted straight away
    """
    account = resolve_account(db, principal)
    course = db.get(Course, body.course_id)
    if course is None or course.status != "active":
        raise NotFound("Course not found", course_id=body.course_id)

    if has_access_to_course(db, principal, course.id).has_access:
        raise Conflict("Already purchased", course_id=course.id)

    if course.price <= 0:
        entitlements.grant_access(db, account.id, course.id, access_type="free", notes="free course")
        return {"free": True, "courseId": course.id}

    existing = orders.find_pending_order(db, account.id, course.id)
    if existing is not None and existing.invoice_id:
        return _invoice_out(existing)

    sender_invoice_no = f"WA-{course.id[-8:]}-{account.id[-8:]}-{secrets.token_hex(8)}"
    order = orders.create_order(
        db, account, course, course.price, course.currency, "qpay", "QPay", sender_invoice_no
    )

    try:
        inv = client.create_invoice(
            sender_invoice_no=sender_invoice_no,
            amount=order.amount,
            description=f"Win Academy - {course.title}",
        )
    except QPayError as e:
        logger.error("qpay.invoice.create_failed", extra={"order_id": order.id, **e.to_log_data()})
        orders.mark_failed(db, order.id, reason=f"invoice create failed: {e.code}")
        raise

    if not inv.get("qr_text") and not inv.get("qr_image"):
        logger.warning("qpay.invoice.no_qr", extra={"order_id": order.id, "invoice_id": inv.get("invoice_id")})

    order.invoice_id = inv["invoice_id"]
    order.qr_text = inv.get("qr_text")
    order.qr_image = inv.get("qr_image")
    order.urls = inv.get("urls") or []
    order.create_response = inv
    db.commit()
    return _invoice_out(order)


@router.get("/status")
def payment_status(
    order_id: str = Query(..., alias="orderId"),
    principal: Principal = Depends(current_principal),
    db: Session = Depends(get_db),
    client: Any = Depends(get_qpay_client),
):
    """Client-side poll; asks QPay directly in case the webhook is late."""
    account = resolve_account(db, principal)
    order = orders.get_order(db, order_id)
    if order.account_id not in account_keys(account):
        raise PermissionDenied("Forbidden", order_id=order.id)

    note: Optional[str] = None
    if order.status == ORDER_PENDING and order.invoice_id:
        try:
            reconcile_order(db, order, client)
        except ExternalProviderFailure:
            note = "Payment verification failed, will retry later"
        db.refresh(order)

    body = {
        "status": order.status,
        "access": order.status == ORDER_PAID
        and entitlements.check_access(db, order.account_id, order.course_id),
        "order": orders.serialize_order(order),
    }
    if note:
        body["note"] = note
    return body


# --- webhook --------------------------------------------------------------------
@router.post("/webhook")
async def qpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    client: Any = Depends(get_qpay_client),
):
    """
    QPay callback. Always answers 200 so QPay never enters a retry storm;
    the body says what actually happened.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        payload = {"raw": payload} if payload is not None else {}

    # some QPay setups put the invoice id on the callback URL instead of the body
    qs_invoice = request.query_params.get("invoice_id")
    if qs_invoice and "invoice_id" not in payload:
        payload["invoice_id"] = qs_invoice

    # DB work and the QPay round trip are blocking; keep them off the event loop
    outcome = await run_in_threadpool(process_webhook, db, payload, client)
    return JSONResponse(outcome.to_dict(), status_code=200)

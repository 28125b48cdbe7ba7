# apps/backend/academy/reconciliation.py
"""
QPay payment reconciliation.

A webhook from QPay is only a signal. The amount actually paid is always
read back from QPay's payment/check endpoint before an order is settled
or access is granted.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy.orm import Session

from . import entitlements, orders
from .errors import ExternalProviderFailure, QPayError
from .models import ORDER_PAID, ORDER_PENDING, Course, Order
from .time_utils import as_utc

logger = logging.getLogger(__name__)

_INVOICE_KEYS = ("invoice_id", "invoiceId", "object_id", "qpay_invoice_id")


@dataclass
class WebhookOutcome:
    ok: bool = True
    note: Optional[str] = None
    paid: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"ok": self.ok}
        if self.note:
            body["note"] = self.note
        if self.paid:
            body["paid"] = True
        if self.error:
            body["error"] = self.error
        return body


@dataclass
class Verification:
    paid_amount: Decimal
    transaction_id: Optional[str]
    response: dict


# === payload / response parsing ================================================
def extract_invoice_id(payload: Any) -> Optional[str]:
    """QPay callbacks are loosely shaped; look in every place an invoice id has shown up."""
    if not isinstance(payload, dict):
        return None
    for key in _INVOICE_KEYS:
        v = payload.get(key)
        if v:
            return str(v)
    inv = payload.get("invoice")
    if isinstance(inv, dict):
        v = inv.get("id") or inv.get("invoice_id")
        if v:
            return str(v)
    return None


def _to_decimal(value: Any) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal(0)
    return d if d.is_finite() else Decimal(0)


def sum_payments(check: dict) -> tuple[Decimal, Optional[str]]:
    """
    Sum every payment QPay lists for the invoice. Rows carrying an explicit
    non-PAID payment_status (FAILED, REFUNDED) are skipped.
    Returns (total, first payment id).
    """
    rows = check.get("payments")
    if rows is None:
        rows = check.get("rows") or []
    total = Decimal(0)
    first_id: Optional[str] = None
    for row in rows:
        if not isinstance(row, dict):
            continue
        status = row.get("payment_status") or row.get("status") or "PAID"
        if str(status).upper() != "PAID":
            continue
        amount = row.get("amount")
        if amount is None:
            amount = row.get("payment_amount")
        total += _to_decimal(amount)
        if first_id is None and row.get("payment_id"):
            first_id = str(row["payment_id"])
    return total, first_id


def verify_invoice(client: Any, invoice_id: str) -> Verification:
    check = client.check_payment(invoice_id)
    if not isinstance(check, dict):
        raise QPayError("QPAY_INVALID_RESPONSE", 200, check)
    total, first_id = sum_payments(check)
    return Verification(paid_amount=total, transaction_id=first_id, response=check)


# === settle ===================================================================
def _purchase_expiry(session: Session, order: Order):
    course = session.get(Course, order.course_id)
    if course is None or not course.access_days:
        return None
    paid_at = as_utc(order.paid_at)
    return paid_at + timedelta(days=course.access_days) if paid_at else None


def grant_for_order(session: Session, order: Order):
    return entitlements.grant_access(
        session,
        order.account_id,
        order.course_id,
        order_id=order.id,
        access_type="purchase",
        notes=f"{order.payment_provider or order.payment_method} purchase",
        expires_at=_purchase_expiry(session, order),
    )


def reconcile_order(session: Session, order: Order, client: Any) -> bool:
    """
    Verify `order` against QPay and settle it if fully paid.
    Returns True only when this call moved the order to paid.
    Raises ExternalProviderFailure (after recording it on the order) when
    QPay could not be asked.
    """
    if not order.invoice_id:
        return False

    try:
        result = verify_invoice(client, order.invoice_id)
    except QPayError as e:
        orders.record_check_response(session, order, None, error=f"{e.code}: {e.detail}")
        logger.error("qpay.verify.failed", extra={"order_id": order.id, **e.to_log_data()})
        raise

    orders.record_check_response(session, order, result.response, error=None)

    required = Decimal(order.amount)
    fully_paid = result.paid_amount >= required
    logger.info(
        "qpay.verify.result",
        extra={
            "order_id": order.id,
            "paid_amount": str(result.paid_amount),
            "required_amount": str(required),
            "fully_paid": fully_paid,
        },
    )

    if not fully_paid or order.status != ORDER_PENDING:
        return False

    moved = orders.mark_paid(session, order.id, result.transaction_id or order.invoice_id)
    if not moved:
        # someone else settled it between our read and write
        return False

    session.refresh(order)
    try:
        grant_for_order(session, order)
    except Exception as e:
        # the payment stands; flag the order so admin reconcile re-grants
        session.rollback()
        logger.exception("access.grant_failed", extra={"order_id": order.id})
        orders.record_check_response(session, order, None, error=f"access grant failed: {e}")
    return True


def process_webhook(session: Session, payload: Any, client: Any) -> WebhookOutcome:
    """
    Handle one QPay callback. Never raises: QPay must always receive an
    ok acknowledgement, whatever happened on our side.
    """
    correlation_id = f"webhook_{uuid.uuid4().hex[:12]}"
    try:
        invoice_id = extract_invoice_id(payload)
        if not invoice_id:
            logger.info("qpay.webhook.ack", extra={"correlation_id": correlation_id, "decision": "ignored", "reason": "no_invoice_id"})
            return WebhookOutcome(note="No invoice id in webhook")

        order = orders.find_by_invoice_id(session, invoice_id)
        if order is None:
            logger.info("qpay.webhook.ack", extra={"correlation_id": correlation_id, "decision": "ignored", "reason": "no_local_order", "invoice_id": invoice_id})
            return WebhookOutcome(note="No local order for invoice")

        orders.record_webhook_event(session, order, payload)

        logger.info("qpay.webhook.verify", extra={"correlation_id": correlation_id, "invoice_id": invoice_id})
        was_paid = order.status == ORDER_PAID
        try:
            paid_now = reconcile_order(session, order, client)
        except ExternalProviderFailure:
            return WebhookOutcome(note="Payment verification failed, will retry later")

        if paid_now:
            logger.info("qpay.webhook.ack", extra={"correlation_id": correlation_id, "decision": "paid", "order_id": order.id})
            return WebhookOutcome(paid=True)
        if was_paid or order.status == ORDER_PAID:
            return WebhookOutcome(note="Order already paid")
        if order.status != ORDER_PENDING:
            return WebhookOutcome(note=f"Order is {order.status}")
        logger.info("qpay.webhook.ack", extra={"correlation_id": correlation_id, "decision": "ignored", "reason": "not_paid"})
        return WebhookOutcome(note="Payment not complete")
    except Exception as e:
        session.rollback()
        logger.exception("qpay.webhook.error", extra={"correlation_id": correlation_id})
        return WebhookOutcome(ok=False, error=str(e) or "Webhook error")


def repair_paid_order(session: Session, order: Order) -> bool:
    """Admin reconcile on a paid order: make sure its entitlement exists."""
    if order.status != ORDER_PAID:
        return False
    if entitlements.get_access(session, order.account_id, order.course_id) is not None:
        if order.reconcile_error:
            orders.record_check_response(session, order, None, error=None)
        return False
    grant_for_order(session, order)
    if order.reconcile_error:
        orders.record_check_response(session, order, None, error=None)
    logger.info("access.repaired", extra={"order_id": order.id})
    return True

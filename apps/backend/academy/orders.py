# apps/backend/academy/orders.py
from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from .errors import InvalidTransition, NotFound
from .models import (
    CURRENCIES,
    ORDER_CANCELLED,
    ORDER_FAILED,
    ORDER_PAID,
    ORDER_PENDING,
    ORDER_STATUSES,
    Account,
    Course,
    Order,
)
from .time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)


def create_order(
    session: Session,
    account: Account,
    course: Course,
    amount: int,
    currency: str = "MNT",
    payment_method: str = "qpay",
    payment_provider: Optional[str] = "QPay",
    sender_invoice_no: Optional[str] = None,
) -> Order:
    if amount <= 0:
        raise ValueError("amount must be positive")
    if currency not in CURRENCIES:
        raise ValueError(f"unsupported currency: {currency}")

    order = Order(
        account_id=account.id,
        account_email=account.email,
        course_id=course.id,
        course_title=course.title,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        payment_provider=payment_provider,
        status=ORDER_PENDING,
        sender_invoice_no=sender_invoice_no,
        webhook_events=[],
    )
    session.add(order)
    session.commit()
    logger.info(
        "order.created",
        extra={"order_id": order.id, "account_id": account.id, "course_id": course.id},
    )
    return order


def get_order(session: Session, order_id: str) -> Order:
    order = session.get(Order, order_id)
    if order is None:
        raise NotFound("Order not found", order_id=order_id)
    return order


def find_by_invoice_id(session: Session, invoice_id: str) -> Optional[Order]:
    return session.scalar(select(Order).where(Order.invoice_id == invoice_id))


def find_pending_order(
    session: Session, account_id: str, course_id: str, payment_method: str = "qpay"
) -> Optional[Order]:
    return session.scalar(
        select(Order)
        .where(
            Order.account_id == account_id,
            Order.course_id == course_id,
            Order.status == ORDER_PENDING,
            Order.payment_method == payment_method,
        )
        .order_by(Order.created_at.desc())
        .limit(1)
    )


def list_orders(
    session: Session,
    status: Optional[str] = None,
    account_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Order]:
    q = select(Order)
    if status:
        q = q.where(Order.status == status)
    if account_id:
        q = q.where(Order.account_id == account_id)
    q = q.order_by(Order.created_at.desc()).limit(limit).offset(offset)
    return list(session.scalars(q))


# === transitions ==============================================================
def _transition(session: Session, order_id: str, new_status: str, **values: Any) -> bool:
    """
    Compare-and-set: only a pending order moves. Returns False when the
    order was already settled (duplicate webhook, concurrent poll, ...).
    """
    res = session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == ORDER_PENDING)
        .values(status=new_status, updated_at=utcnow(), **values)
    )
    session.commit()
    moved = bool(res.rowcount)
    if moved:
        logger.info("order.transition", extra={"order_id": order_id, "status": new_status})
    return moved


def mark_paid(session: Session, order_id: str, transaction_id: Optional[str]) -> bool:
    return _transition(
        session, order_id, ORDER_PAID, transaction_id=transaction_id, paid_at=utcnow()
    )


def mark_failed(session: Session, order_id: str, reason: Optional[str] = None) -> bool:
    values = {"notes": reason} if reason else {}
    return _transition(session, order_id, ORDER_FAILED, **values)


def cancel(session: Session, order_id: str, reason: Optional[str] = None) -> bool:
    values = {"notes": reason} if reason else {}
    return _transition(session, order_id, ORDER_CANCELLED, **values)


def admin_update_order(
    session: Session,
    order_id: str,
    status: Optional[str] = None,
    notes: Optional[str] = None,
    amount: Optional[int] = None,
    transaction_id: Optional[str] = None,
) -> tuple[Order, bool]:
    """
    Admin override. Same rules as everyone else: settled orders keep their
    status and amount. Returns (order, moved_to_paid) so the caller can
    grant access when an admin confirms a payment by hand.
    """
    order = get_order(session, order_id)

    # validate everything first; a rejected override leaves the row as it was
    if status is not None:
        if status not in ORDER_STATUSES or status == ORDER_PENDING:
            raise InvalidTransition(f"Cannot move order to {status}", order_id=order_id)
        if order.status != ORDER_PENDING and status != order.status:
            raise InvalidTransition(
                f"Order is already {order.status}", order_id=order_id, status=order.status
            )

    values: dict[str, Any] = {}
    if amount is not None and amount != order.amount:
        if order.status != ORDER_PENDING:
            raise InvalidTransition("Cannot re-price a settled order", order_id=order_id)
        if amount <= 0:
            raise ValueError("amount must be positive")
        values["amount"] = amount
    if notes is not None:
        values["notes"] = notes

    if status is None or status == order.status:
        for key, value in values.items():
            setattr(order, key, value)
        session.commit()
        return order, False

    if status == ORDER_PAID:
        values["transaction_id"] = transaction_id or f"manual-{order_id}"
        values["paid_at"] = utcnow()
    moved = _transition(session, order_id, status, **values)
    session.refresh(order)
    if not moved:
        raise InvalidTransition(
            f"Order is already {order.status}", order_id=order_id, status=order.status
        )
    return order, status == ORDER_PAID


# === provider bookkeeping =====================================================
def record_webhook_event(session: Session, order: Order, payload: Any) -> None:
    events = list(order.webhook_events or [])
    events.append({"receivedAt": to_utc_z(utcnow()), "payload": payload})
    order.webhook_events = events
    session.commit()


def record_check_response(
    session: Session, order: Order, response: Optional[dict], error: Optional[str] = None
) -> None:
    if response is not None:
        order.last_check_response = response
    order.reconcile_error = error
    session.commit()


def serialize_order(order: Order, include_provider: bool = False) -> dict:
    data = {
        "id": order.id,
        "userId": order.account_id,
        "userEmail": order.account_email,
        "courseId": order.course_id,
        "courseTitle": order.course_title,
        "amount": order.amount,
        "currency": order.currency,
        "paymentMethod": order.payment_method,
        "status": order.status,
        "transactionId": order.transaction_id,
        "invoiceId": order.invoice_id,
        "notes": order.notes,
        "paidAt": to_utc_z(order.paid_at),
        "createdAt": to_utc_z(order.created_at),
        "reconcileError": order.reconcile_error,
    }
    if include_provider:
        data["qpay"] = {
            "senderInvoiceNo": order.sender_invoice_no,
            "lastCheckRes": order.last_check_response,
            "webhookEvents": order.webhook_events or [],
        }
    return data

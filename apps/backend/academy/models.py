# apps/backend/academy/models.py
from __future__ import annotations

import secrets
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Integer,
    String,
    Text,
    TIMESTAMP,
    ForeignKey,
    Index,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base

from .time_utils import utcnow


def new_id() -> str:
    """24-hex identifier, same shape as the Mongo ObjectIds of legacy rows."""
    return secrets.token_hex(12)


ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"
ORDER_CANCELLED = "cancelled"
ORDER_STATUSES = (ORDER_PENDING, ORDER_PAID, ORDER_FAILED, ORDER_CANCELLED)

ACCESS_ACTIVE = "active"
ACCESS_EXPIRED = "expired"
ACCESS_REVOKED = "revoked"

ACCESS_TYPES = ("purchase", "admin_grant", "free")
COURSE_STATUSES = ("draft", "active", "archived")
CURRENCIES = ("MNT", "USD", "EUR")


class Account(Base):
    """
    One row per human. `id` is the canonical identifier and the only
    shape new rows in orders / course_access may use.
    `password_hash` is empty for accounts created by a federated sign-in.
    """
    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)
    email: Mapped[str] = mapped_column(String, unique=True, index=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    password_hash: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="user")

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Course(Base):
    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)
    title: Mapped[str] = mapped_column(String, nullable=False)
    title_mn: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description_mn: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MNT")
    status: Mapped[str] = mapped_column(String, nullable=False, default="draft", index=True)

    # None = purchases never expire; otherwise days of access per purchase
    access_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Order(Base):
    """
    Purchase attempt and its financial outcome. Never deleted.
    status: pending -> paid | failed | cancelled (terminal)
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(24), primary_key=True, default=new_id)

    # no FK: orders outlive deleted accounts
    account_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    account_email: Mapped[str] = mapped_column(String, nullable=False)
    course_id: Mapped[str] = mapped_column(String(24), index=True, nullable=False)
    course_title: Mapped[str] = mapped_column(String, nullable=False)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="MNT")
    payment_method: Mapped[str] = mapped_column(String, nullable=False)
    payment_provider: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default=ORDER_PENDING, index=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # QPay
    invoice_id: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    sender_invoice_no: Mapped[Optional[str]] = mapped_column(String, nullable=True, unique=True)
    qr_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    qr_image: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    urls: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    create_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    last_check_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    webhook_events: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    # set when verification against QPay failed; cleared on the next successful check
    reconcile_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class CourseAccess(Base):
    """
    Entitlement of one account to one course.
    - account_id: canonical account id (legacy rows may hold an email)
    - has_access=True implies status="active"
    - expires_at=None means permanent
    """
    __tablename__ = "course_access"
    __table_args__ = (
        UniqueConstraint("account_id", "course_id", name="uq_course_access_account_course"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    # no FK: orphaned rows are removed by cleanup_orphaned_access
    course_id: Mapped[str] = mapped_column(String(24), index=True, nullable=False)

    has_access: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    access_type: Mapped[str] = mapped_column(String, nullable=False, default="purchase")
    status: Mapped[str] = mapped_column(String, nullable=False, default=ACCESS_ACTIVE)

    granted_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, index=True
    )

    order_id: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)
    granted_by: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )


class CourseEnrollment(Base):
    """Older completion records; a completed enrollment still opens the course."""
    __tablename__ = "course_enrollments"
    __table_args__ = (
        UniqueConstraint("account_id", "course_id", name="uq_enrollment_account_course"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String, index=True, nullable=False)
    course_id: Mapped[str] = mapped_column(
        String(24), ForeignKey("courses.id", ondelete="CASCADE"), index=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="active")
    enrolled_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )


Index("ix_course_access_has_access_expires", CourseAccess.has_access, CourseAccess.expires_at)
Index("ix_orders_account_course_status", Order.account_id, Order.course_id, Order.status)

"""Webhook handling and payment verification against a fake QPay."""
from datetime import timedelta
from decimal import Decimal

import pytest

from academy import entitlements, orders
from academy.errors import QPayError
from academy.models import CourseAccess
from academy.reconciliation import (
    extract_invoice_id,
    process_webhook,
    reconcile_order,
    repair_paid_order,
    sum_payments,
)
from academy.time_utils import as_utc


@pytest.mark.parametrize(
    "payload,expected",
    [
        ({"invoice_id": "a1"}, "a1"),
        ({"invoiceId": "a2"}, "a2"),
        ({"object_id": "a3"}, "a3"),
        ({"qpay_invoice_id": "a4"}, "a4"),
        ({"invoice": {"id": "a5"}}, "a5"),
        ({"invoice": {"invoice_id": "a6"}}, "a6"),
        ({"payment_id": "p1"}, None),
        ({}, None),
        ("not-a-dict", None),
        (None, None),
    ],
)
def test_extract_invoice_id(payload, expected):
    assert extract_invoice_id(payload) == expected


def test_sum_payments_mixed_shapes():
    check = {
        "rows": [
            {"payment_id": "p1", "payment_status": "PAID", "payment_amount": "15000.00"},
            {"payment_id": "p2", "payment_status": "FAILED", "payment_amount": 99999},
            {"payment_id": "p3", "amount": 5000},
        ]
    }
    total, first = sum_payments(check)
    assert total == Decimal("20000")
    assert first == "p1"


def test_sum_payments_empty():
    assert sum_payments({}) == (Decimal(0), None)


def test_sum_payments_odd_values():
    check = {
        "payments": [
            {"payment_id": "p1", "payment_status": 1, "amount": 50000},
            {"payment_id": "p2", "amount": "Infinity"},
            {"payment_id": "p3", "amount": "NaN"},
            {"payment_id": "p4", "amount": None},
            {"payment_id": "p5", "status": "paid", "amount": 10000},
        ]
    }
    total, first = sum_payments(check)
    assert total == Decimal("10000")
    assert first == "p2"


@pytest.fixture
def checkout(db, make_account, make_course):
    """A pending 50000 MNT order with QPay invoice inv-1."""

    def _checkout(price=50000, access_days=None):
        account = make_account()
        course = make_course(price=price, access_days=access_days)
        order = orders.create_order(db, account, course, price)
        order.invoice_id = "inv-1"
        db.commit()
        return account, course, order

    return _checkout


def _access_rows(db, account_id, course_id):
    db.expire_all()
    return db.query(CourseAccess).filter_by(account_id=account_id, course_id=course_id).all()


def test_partial_payment_leaves_order_pending(db, qpay_fake, checkout):
    account, course, order = checkout()
    qpay_fake.pay("inv-1", 30000)

    outcome = process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake)

    assert outcome.to_dict() == {"ok": True, "note": "Payment not complete"}
    db.expire_all()
    assert orders.get_order(db, order.id).status == "pending"
    assert _access_rows(db, account.id, course.id) == []


def test_triple_delivery_settles_once(db, qpay_fake, checkout):
    account, course, order = checkout()
    qpay_fake.pay("inv-1", 50000, payment_id="pay-777")

    results = [process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake) for _ in range(3)]

    assert [r.paid for r in results] == [True, False, False]
    assert results[1].note == "Order already paid"
    assert all(r.ok for r in results)

    db.expire_all()
    settled = orders.get_order(db, order.id)
    assert settled.status == "paid"
    assert settled.transaction_id == "pay-777"
    assert len(settled.webhook_events) == 3

    rows = _access_rows(db, account.id, course.id)
    assert len(rows) == 1
    assert rows[0].has_access is True
    assert rows[0].order_id == order.id


def test_purchase_scenario_20000_mnt(db, qpay_fake, checkout):
    account, course, order = checkout(price=20000)
    qpay_fake.pay("inv-1", 20000)

    outcome = process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake)

    assert outcome.paid is True
    db.expire_all()
    assert orders.get_order(db, order.id).status == "paid"
    record = entitlements.get_access(db, account.id, course.id)
    assert record.has_access is True
    assert record.status == "active"
    assert record.access_type == "purchase"
    assert record.expires_at is None


def test_split_payments_add_up(db, qpay_fake, checkout):
    account, course, order = checkout()
    qpay_fake.pay("inv-1", 20000)
    qpay_fake.pay("inv-1", 30000)

    assert process_webhook(db, {"invoiceId": "inv-1"}, qpay_fake).paid is True


def test_provider_failure_still_acknowledged(db, qpay_fake, checkout):
    account, course, order = checkout()
    qpay_fake.pay("inv-1", 50000)
    qpay_fake.fail_check = True

    outcome = process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake)

    assert outcome.ok is True
    assert outcome.note == "Payment verification failed, will retry later"
    db.expire_all()
    failed = orders.get_order(db, order.id)
    assert failed.status == "pending"
    assert failed.reconcile_error.startswith("TIMEOUT")
    assert len(failed.webhook_events) == 1

    # next delivery, QPay is back
    qpay_fake.fail_check = False
    assert process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake).paid is True
    db.expire_all()
    assert orders.get_order(db, order.id).reconcile_error is None


def test_webhook_without_invoice_id(db, qpay_fake):
    outcome = process_webhook(db, {"hello": "world"}, qpay_fake)
    assert outcome.to_dict() == {"ok": True, "note": "No invoice id in webhook"}
    assert qpay_fake.check_calls == 0


def test_webhook_for_unknown_invoice(db, qpay_fake):
    outcome = process_webhook(db, {"invoice_id": "someone-elses"}, qpay_fake)
    assert outcome.to_dict() == {"ok": True, "note": "No local order for invoice"}
    assert qpay_fake.check_calls == 0


def test_webhook_for_cancelled_order(db, qpay_fake, checkout):
    account, course, order = checkout()
    orders.cancel(db, order.id)
    db.expire_all()
    qpay_fake.pay("inv-1", 50000)

    outcome = process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake)

    assert outcome.note == "Order is cancelled"
    assert _access_rows(db, account.id, course.id) == []


def test_access_days_sets_expiry_from_payment(db, qpay_fake, checkout):
    account, course, order = checkout(access_days=30)
    qpay_fake.pay("inv-1", 50000)

    process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake)

    db.expire_all()
    paid = orders.get_order(db, order.id)
    record = entitlements.get_access(db, account.id, course.id)
    assert as_utc(record.expires_at) - as_utc(paid.paid_at) == timedelta(days=30)


def test_reconcile_order_raises_provider_failure(db, qpay_fake, checkout):
    account, course, order = checkout()
    qpay_fake.fail_check = True

    with pytest.raises(QPayError):
        reconcile_order(db, order, qpay_fake)


def test_repair_paid_order_restores_missing_access(db, qpay_fake, checkout):
    account, course, order = checkout()
    orders.mark_paid(db, order.id, "tx-1")
    db.expire_all()
    order = orders.get_order(db, order.id)

    assert repair_paid_order(db, order) is True
    assert repair_paid_order(db, order) is False
    assert entitlements.check_access(db, account.id, course.id) is True


def test_failed_grant_is_flagged_on_paid_order(db, qpay_fake, checkout, monkeypatch):
    account, course, order = checkout()
    qpay_fake.pay("inv-1", 50000)

    def broken_grant(*args, **kwargs):
        raise RuntimeError("db hiccup")

    monkeypatch.setattr(entitlements, "grant_access", broken_grant)
    outcome = process_webhook(db, {"invoice_id": "inv-1"}, qpay_fake)
    monkeypatch.undo()

    assert outcome.paid is True
    db.expire_all()
    flagged = orders.get_order(db, order.id)
    assert flagged.status == "paid"
    assert flagged.reconcile_error == "access grant failed: db hiccup"
    assert entitlements.get_access(db, account.id, course.id) is None

    assert repair_paid_order(db, flagged) is True
    db.expire_all()
    repaired = orders.get_order(db, order.id)
    assert repaired.reconcile_error is None
    assert entitlements.check_access(db, account.id, course.id) is True

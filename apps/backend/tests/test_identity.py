import pytest

from academy import entitlements, orders
from academy.errors import AuthenticationFailure, NotFound
from academy.identity import (
    Principal,
    find_identity_conflicts,
    migrate_legacy_identifiers,
    resolve_account,
)
from academy.models import CourseAccess, Order


def test_resolve_by_sub(db, make_account):
    account = make_account()
    assert resolve_account(db, Principal(email=account.email, sub=account.id)).id == account.id


def test_resolve_falls_back_to_email(db, make_account):
    account = make_account("mixed.case@example.com")

    resolved = resolve_account(db, Principal(email="  Mixed.Case@Example.COM ", sub="stale-sub"))
    assert resolved.id == account.id


def test_resolve_requires_email(db):
    with pytest.raises(AuthenticationFailure):
        resolve_account(db, Principal(email=""))


def test_resolve_unknown_account(db):
    with pytest.raises(NotFound):
        resolve_account(db, Principal(email="ghost@example.com"))


def _legacy_order(db, account, course):
    order = orders.create_order(db, account, course, course.price)
    order.account_id = account.email
    db.commit()
    return order


def test_conflicts_reported_not_merged(db, make_account, make_course):
    account, course = make_account(), make_course()
    entitlements.grant_access(db, account.id, course.id)
    entitlements.grant_access(db, account.email, course.id, access_type="admin_grant")

    conflicts = find_identity_conflicts(db)

    assert [c.to_dict() for c in conflicts] == [
        {"accountId": account.id, "email": account.email, "courseId": course.id, "table": "course_access"}
    ]
    assert db.query(CourseAccess).count() == 2


def test_migrate_rewrites_clean_rows_and_skips_conflicts(db, make_account, make_course):
    account = make_account()
    clean, clashing = make_course("Clean"), make_course("Clash")
    entitlements.grant_access(db, account.email, clean.id)
    entitlements.grant_access(db, account.email, clashing.id)
    entitlements.grant_access(db, account.id, clashing.id)
    legacy = _legacy_order(db, account, clean)

    result = migrate_legacy_identifiers(db)

    assert result["migratedAccess"] == 1
    assert result["migratedOrders"] == 1
    assert len(result["conflicts"]) == 1
    assert result["conflicts"][0]["courseId"] == clashing.id

    db.expire_all()
    assert entitlements.get_access(db, account.id, clean.id) is not None
    assert entitlements.get_access(db, account.email, clean.id) is None
    assert entitlements.get_access(db, account.email, clashing.id) is not None
    assert db.get(Order, legacy.id).account_id == account.id
    assert find_identity_conflicts(db)[0].course_id == clashing.id

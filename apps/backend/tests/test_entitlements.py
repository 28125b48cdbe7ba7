"""Entitlement store: grants, revokes, lazy expiry and sweeps."""
from datetime import timedelta

import pytest

from academy import entitlements
from academy.errors import NotFound
from academy.models import CourseAccess
from academy.time_utils import utcnow


def _snapshot(db, account_id, course_id):
    db.expire_all()
    rows = db.query(CourseAccess).filter_by(account_id=account_id, course_id=course_id).all()
    return [(r.has_access, r.status, r.access_type, r.order_id, r.expires_at) for r in rows]


class TestGrantAccess:

    def test_grant_creates_active_record(self, db, make_account, make_course):
        account, course = make_account(), make_course()

        record = entitlements.grant_access(db, account.id, course.id, order_id="o1")

        assert record.has_access is True
        assert record.status == "active"
        assert record.access_type == "purchase"
        assert record.order_id == "o1"
        assert entitlements.check_access(db, account.id, course.id) is True

    def test_grant_twice_is_same_as_once(self, db, make_account, make_course):
        account, course = make_account(), make_course()

        entitlements.grant_access(db, account.id, course.id, order_id="o1")
        once = _snapshot(db, account.id, course.id)
        entitlements.grant_access(db, account.id, course.id, order_id="o1")
        twice = _snapshot(db, account.id, course.id)

        assert len(twice) == 1
        assert once == twice

    def test_grant_reactivates_revoked_record(self, db, make_account, make_course):
        account, course = make_account(), make_course()
        entitlements.grant_access(db, account.id, course.id)
        entitlements.revoke_access(db, account.id, course.id)

        entitlements.grant_access(db, account.id, course.id, access_type="admin_grant", granted_by="admin1")

        db.expire_all()
        record = entitlements.get_access(db, account.id, course.id)
        assert record.has_access is True
        assert record.status == "active"
        assert record.access_type == "admin_grant"
        assert record.granted_by == "admin1"

    def test_unknown_access_type_rejected(self, db, make_account, make_course):
        account, course = make_account(), make_course()
        with pytest.raises(ValueError):
            entitlements.grant_access(db, account.id, course.id, access_type="gift")


class TestRevokeAccess:

    def test_revoke_existing(self, db, make_account, make_course):
        account, course = make_account(), make_course()
        entitlements.grant_access(db, account.id, course.id)

        assert entitlements.revoke_access(db, account.id, course.id) is True
        assert entitlements.check_access(db, account.id, course.id) is False
        assert entitlements.get_access(db, account.id, course.id).status == "revoked"

    def test_revoke_without_record_is_noop(self, db, make_account, make_course):
        account, course = make_account(), make_course()

        assert entitlements.revoke_access(db, account.id, course.id) is False
        assert db.query(CourseAccess).count() == 0


class TestExpiry:

    def test_past_expiry_denies_before_any_sweep(self, db, make_account, make_course):
        account, course = make_account(), make_course()
        entitlements.grant_access(db, account.id, course.id, expires_at=utcnow() - timedelta(minutes=1))

        record = entitlements.get_access(db, account.id, course.id)
        assert record.has_access is True
        assert record.status == "active"
        assert entitlements.check_access(db, account.id, course.id) is False
        assert entitlements.effective_status(record) == "expired"

    def test_future_expiry_grants(self, db, make_account, make_course):
        account, course = make_account(), make_course()
        entitlements.grant_access(db, account.id, course.id, expires_at=utcnow() + timedelta(days=45))

        assert entitlements.check_access(db, account.id, course.id) is True

    def test_sweep_runs_once(self, db, make_account, make_course):
        account = make_account()
        old, fresh = make_course("Old"), make_course("Fresh")
        entitlements.grant_access(db, account.id, old.id, expires_at=utcnow() - timedelta(days=1))
        entitlements.grant_access(db, account.id, fresh.id, expires_at=utcnow() + timedelta(days=1))

        first = entitlements.sweep_expired(db)
        second = entitlements.sweep_expired(db)

        assert first.count == 1
        assert first.items[0]["courseId"] == old.id
        assert second.count == 0
        assert second.items == []

        db.expire_all()
        swept = entitlements.get_access(db, account.id, old.id)
        assert swept.has_access is False
        assert swept.status == "expired"
        assert entitlements.check_access(db, account.id, fresh.id) is True

    def test_sweep_scoped_to_account(self, db, make_account, make_course):
        alice, bob = make_account("alice@example.com"), make_account("bob@example.com")
        course = make_course()
        past = utcnow() - timedelta(hours=2)
        entitlements.grant_access(db, alice.id, course.id, expires_at=past)
        entitlements.grant_access(db, bob.id, course.id, expires_at=past)

        result = entitlements.sweep_expired(db, account_id=alice.id)

        assert result.count == 1
        assert result.items[0]["userId"] == alice.id
        db.expire_all()
        assert entitlements.get_access(db, bob.id, course.id).status == "active"

    def test_set_expiration_missing_record(self, db, make_account, make_course):
        account, course = make_account(), make_course()
        with pytest.raises(NotFound):
            entitlements.set_expiration(db, account.id, course.id, utcnow())


class TestCleanup:

    def test_orphaned_rows_deleted(self, db, make_account, make_course):
        account = make_account()
        kept, doomed = make_course("Kept"), make_course("Doomed")
        entitlements.grant_access(db, account.id, kept.id)
        entitlements.grant_access(db, account.id, doomed.id)
        db.delete(doomed)
        db.commit()

        result = entitlements.cleanup_orphaned_access(db)

        assert result["deletedCount"] == 1
        assert result["keptCount"] == 1
        assert result["deletedRecords"][0]["reason"] == "Course deleted"
        assert entitlements.get_access(db, account.id, kept.id) is not None

    def test_account_cascade_covers_legacy_email_rows(self, db, make_account, make_course):
        account = make_account()
        c1, c2 = make_course("One"), make_course("Two")
        entitlements.grant_access(db, account.id, c1.id)
        entitlements.grant_access(db, account.email, c2.id)

        deleted = entitlements.delete_access_for_account(db, account)
        db.commit()

        assert deleted == 2
        assert db.query(CourseAccess).count() == 0

"""
Tests for SubscriptionManager against an in-memory SQLite database
"""

import threading
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from paywall.core.exceptions import (
    ConcurrentModification,
    PaymentAlreadyClaimed,
    PersistenceError,
    SubscriptionNotFound,
)
from paywall.core.locks import SubscriptionLockManager
from paywall.models.payment import Network, Payment
from paywall.models.subscription import Subscription, SubscriptionStatus
from paywall.models.subscription_history import SubscriptionHistory
from tests.conftest import NOW


def _row(session_factory, user_id):
    db = session_factory()
    try:
        return db.query(Subscription).filter(Subscription.user_id == user_id).first()
    finally:
        db.close()


class TestCreateOrExtend:
    def test_scenario_a_first_payment_creates_active_subscription(self, manager, make_payment):
        result = manager.create_or_extend_subscription("user-a", make_payment("abc123"))

        sub = result.subscription
        assert result.already_applied is False
        assert sub.status == SubscriptionStatus.ACTIVE
        assert sub.start_date == NOW
        assert sub.end_date == NOW + timedelta(days=30)
        assert sub.next_payment_due == NOW + timedelta(days=31)
        assert [p.transaction_hash for p in sub.payments] == ["abc123"]
        assert sub.payments[0].payment_key == "TRC20:abc123"
        assert sub.monthly_price == Decimal("100")

    def test_scenario_b_extends_from_existing_expiry(self, manager, make_payment, clock):
        first = manager.create_or_extend_subscription("user-b", make_payment("tx-1"))
        expiry = first.subscription.end_date

        clock.now = expiry - timedelta(days=5)
        second = manager.create_or_extend_subscription("user-b", make_payment("tx-2"))

        assert second.subscription.end_date == expiry + timedelta(days=30)
        assert len(second.subscription.payments) == 2

    def test_same_hash_twice_applies_once(self, manager, make_payment, clock):
        first = manager.create_or_extend_subscription("user-c", make_payment("dup"))

        clock.now = NOW + timedelta(days=1)
        second = manager.create_or_extend_subscription("user-c", make_payment("dup"))

        assert second.already_applied is True
        assert second.subscription == first.subscription

    def test_hash_match_ignores_case(self, manager, make_payment):
        manager.create_or_extend_subscription("user-c", make_payment("0xABCDEF", network=Network.ERC20))

        again = manager.create_or_extend_subscription("user-c", make_payment("0xabcdef", network=Network.ERC20))

        assert again.already_applied is True

    def test_same_hash_on_another_network_is_a_different_payment(self, manager, make_payment):
        manager.create_or_extend_subscription("user-c", make_payment("0xabc", network=Network.ERC20))

        result = manager.create_or_extend_subscription("user-c", make_payment("0xabc", network=Network.BEP20))

        assert result.already_applied is False
        assert len(result.subscription.payments) == 2

    def test_hash_owned_by_another_user_is_rejected(self, manager, make_payment, session_factory):
        manager.create_or_extend_subscription("owner", make_payment("shared"))

        with pytest.raises(PaymentAlreadyClaimed):
            manager.create_or_extend_subscription("thief", make_payment("shared"))

        assert _row(session_factory, "thief") is None

    def test_payment_on_cancelled_subscription_reactivates(self, manager, make_payment, clock):
        manager.create_or_extend_subscription("user-d", make_payment("tx-1"))
        manager.cancel_subscription("user-d")

        clock.now = NOW + timedelta(days=40)
        result = manager.create_or_extend_subscription("user-d", make_payment("tx-2"))

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.cancellation_date is None
        assert result.subscription.auto_renewal is True
        assert result.actions == ["reactivated"]

    def test_history_written_with_transition(self, manager, make_payment):
        manager.create_or_extend_subscription("user-e", make_payment("tx-1"))
        manager.create_or_extend_subscription("user-e", make_payment("tx-2"))

        history = manager.get_subscription_history("user-e")

        assert sorted(entry['action'] for entry in history) == ["created", "extended"]
        created = next(entry for entry in history if entry['action'] == "created")
        assert created['from_status'] is None
        assert created['to_status'] == "active"
        assert created['details']['payment_key'] == "TRC20:tx-1"


class TestFailureSemantics:
    def test_commit_failure_rolls_back_everything(self, manager, make_payment, session_factory):
        manager.create_or_extend_subscription("user-f", make_payment("tx-1"))
        before = _row(session_factory, "user-f")

        with patch("sqlalchemy.orm.Session.commit",
                   side_effect=OperationalError("COMMIT", {}, Exception("disk full"))):
            with pytest.raises(PersistenceError):
                manager.create_or_extend_subscription("user-f", make_payment("tx-2"))

        after = _row(session_factory, "user-f")
        assert after.end_date == before.end_date
        assert after.version == before.version
        db = session_factory()
        try:
            assert db.query(Payment).filter(Payment.user_id == "user-f").count() == 1
        finally:
            db.close()

    def test_lost_race_on_payment_key_reports_already_applied(self, manager, make_payment, session_factory):
        manager.create_or_extend_subscription("user-g", make_payment("raced"))
        real_check = manager._check_payment_key
        calls = {"n": 0}

        # First check misses (the other instance has not committed yet), the insert then collides
        def check(db, user_id, key):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return real_check(db, user_id, key)

        with patch.object(manager, "_check_payment_key", side_effect=check):
            result = manager.create_or_extend_subscription("user-g", make_payment("raced"))

        assert result.already_applied is True
        db = session_factory()
        try:
            assert db.query(Payment).count() == 1
        finally:
            db.close()

    def test_integrity_error_without_payment_is_concurrent_modification(self, manager, make_payment):
        with patch("sqlalchemy.orm.Session.commit",
                   side_effect=IntegrityError("INSERT", {}, Exception("unique user_id"))):
            with pytest.raises(ConcurrentModification):
                manager.create_or_extend_subscription("user-h", make_payment("tx-1"))

        assert manager.get_user_subscription("user-h") is None

    def test_lock_timeout_surfaces_as_persistence_error(self, manager, make_payment):
        manager.lock_manager = SubscriptionLockManager(block_seconds=0.05)
        held = threading.Event()
        release = threading.Event()

        def hold_lock():
            with manager.lock_manager.hold("user-i"):
                held.set()
                release.wait(2)

        worker = threading.Thread(target=hold_lock)
        worker.start()
        held.wait(2)
        try:
            with pytest.raises(PersistenceError):
                manager.create_or_extend_subscription("user-i", make_payment("tx-1"))
        finally:
            release.set()
            worker.join()

    def test_concurrent_duplicate_submissions_extend_once(self, manager, make_payment, session_factory):
        manager.create_or_extend_subscription("user-j", make_payment("tx-1"))
        results = []
        errors = []

        def submit():
            try:
                results.append(manager.create_or_extend_subscription("user-j", make_payment("tx-2")))
            except PersistenceError as e:
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        applied = [r for r in results if not r.already_applied]
        assert len(applied) == 1
        assert _row(session_factory, "user-j").end_date == NOW + timedelta(days=60)


class TestStatusAndSweep:
    def test_grace_window(self, manager, make_payment, clock):
        created = manager.create_or_extend_subscription("user-k", make_payment("tx-1"))
        end = created.subscription.end_date

        clock.now = end + timedelta(seconds=1)
        entitlement = manager.check_subscription_status("user-k")
        assert entitlement.status == "grace"
        assert entitlement.in_grace_period is True
        assert entitlement.is_active is False
        assert entitlement.grace_period_end == end + timedelta(days=7)
        assert entitlement.grace_period_remaining == 7

        clock.now = end + timedelta(days=7, seconds=1)
        entitlement = manager.check_subscription_status("user-k")
        assert entitlement.status == "cancelled"

    def test_get_entitlement_does_not_write(self, manager, make_payment, clock, session_factory):
        created = manager.create_or_extend_subscription("user-l", make_payment("tx-1"))

        clock.now = created.subscription.end_date + timedelta(days=1)
        entitlement = manager.get_entitlement("user-l")

        assert entitlement.status == "active"
        assert entitlement.days_remaining == 0
        assert _row(session_factory, "user-l").status == SubscriptionStatus.ACTIVE

    def test_status_without_subscription_is_inactive(self, manager):
        entitlement = manager.check_subscription_status("nobody")

        assert entitlement.status == "inactive"
        assert entitlement.days_remaining == 0

    def test_scenario_c_sweep_cancels_after_grace(self, manager, make_payment, clock, session_factory):
        created = manager.create_or_extend_subscription("user-m", make_payment("tx-1"))
        end = created.subscription.end_date
        clock.now = end + timedelta(seconds=1)
        manager.process_monthly_checks()
        grace_end = _row(session_factory, "user-m").grace_period_end

        clock.now = grace_end + timedelta(hours=1)
        report = manager.process_monthly_checks()

        row = _row(session_factory, "user-m")
        assert row.status == SubscriptionStatus.CANCELLED
        assert row.cancellation_date == grace_end + timedelta(hours=1)
        assert row.auto_renewal is False
        assert row.grace_period_end is None
        assert report.cancelled == 1

    def test_sweep_counts_and_is_idempotent(self, manager, make_payment, clock):
        manager.create_or_extend_subscription("lapsed", make_payment("tx-1"))
        clock.now = NOW + timedelta(days=20)
        manager.create_or_extend_subscription("current", make_payment("tx-2"))

        clock.now = NOW + timedelta(days=31)
        first = manager.process_monthly_checks()
        second = manager.process_monthly_checks()

        assert first.processed == 2
        assert first.expired == 1
        assert first.grace_started == 1
        assert first.cancelled == 0
        assert first.failed == 0
        assert second.expired == 0
        assert second.grace_started == 0
        assert second.cancelled == 0

    def test_sweep_retries_then_counts_failure(self, manager, make_payment, clock):
        manager.create_or_extend_subscription("flaky", make_payment("tx-1"))
        clock.now = NOW + timedelta(days=31)

        with patch.object(manager, "_advance", side_effect=PersistenceError("db down")) as advance:
            report = manager.process_monthly_checks()

        assert advance.call_count == 3
        assert report.failed == 1
        assert report.processed == 0

    def test_sweep_recovers_on_retry(self, manager, make_payment, clock):
        manager.create_or_extend_subscription("flaky", make_payment("tx-1"))
        clock.now = NOW + timedelta(days=31)
        real_advance = manager._advance
        calls = {"n": 0}

        def flaky_advance(user_id, now):
            calls["n"] += 1
            if calls["n"] == 1:
                raise PersistenceError("blip")
            return real_advance(user_id, now)

        with patch.object(manager, "_advance", side_effect=flaky_advance):
            report = manager.process_monthly_checks()

        assert calls["n"] == 2
        assert report.failed == 0
        assert report.grace_started == 1


class TestCancelAndReactivate:
    def test_cancel(self, manager, make_payment, clock):
        manager.create_or_extend_subscription("user-n", make_payment("tx-1"))
        clock.now = NOW + timedelta(days=3)

        sub = manager.cancel_subscription("user-n")

        assert sub.status == SubscriptionStatus.CANCELLED
        assert sub.cancellation_date == NOW + timedelta(days=3)
        assert sub.auto_renewal is False

    def test_cancel_twice_is_noop(self, manager, make_payment, clock):
        manager.create_or_extend_subscription("user-n", make_payment("tx-1"))
        first = manager.cancel_subscription("user-n")

        clock.now = NOW + timedelta(days=1)
        second = manager.cancel_subscription("user-n")

        assert second.cancellation_date == first.cancellation_date
        assert second.version == first.version

    def test_cancel_without_subscription(self, manager):
        with pytest.raises(SubscriptionNotFound):
            manager.cancel_subscription("ghost")

    def test_reactivate_without_subscription(self, manager, make_payment):
        with pytest.raises(SubscriptionNotFound):
            manager.reactivate_subscription("ghost", make_payment("tx-1"))

    def test_reactivate_cancelled(self, manager, make_payment, clock, session_factory):
        manager.create_or_extend_subscription("user-o", make_payment("tx-1"))
        manager.cancel_subscription("user-o")
        clock.now = NOW + timedelta(days=50)

        result = manager.reactivate_subscription("user-o", make_payment("tx-2"))

        assert result.subscription.status == SubscriptionStatus.ACTIVE
        assert result.subscription.start_date == clock.now
        assert result.subscription.end_date == clock.now + timedelta(days=30)
        db = session_factory()
        try:
            actions = [h.action for h in db.query(SubscriptionHistory).filter(
                SubscriptionHistory.user_id == "user-o").all()]
        finally:
            db.close()
        assert sorted(actions) == ["cancelled", "created", "reactivated"]


def test_stats(manager, make_payment, clock):
    manager.create_or_extend_subscription("s1", make_payment("tx-1", amount="100"))
    manager.create_or_extend_subscription("s2", make_payment("tx-2", amount="150.5"))
    manager.create_or_extend_subscription("s2", make_payment("tx-3", amount="100"))
    manager.cancel_subscription("s1")

    stats = manager.get_subscription_stats()

    assert stats['total'] == 2
    assert stats['active'] == 1
    assert stats['cancelled'] == 1
    assert stats['grace_period'] == 0
    assert stats['revenue'] == Decimal("350.5")

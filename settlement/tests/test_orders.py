"""
Unit Tests for Order Settlement

Tests cover:
1. Approval: commission, cashback, audit events, account activation
2. Idempotency (no double credit)
3. Rejection without financial effect
4. Concurrent approval by two admin sessions
5. Best-effort notifications
"""

from decimal import Decimal

import pytest

from settlement.exceptions import (
    AccountNotFoundError,
    AlreadySettledError,
    ConcurrentModificationError,
    OrderNotFoundError,
    PackageNotFoundError,
)
from settlement.models import OrderKind, OrderStatus
from settlement.orders import OrderSettlementService


def commission_events(storage):
    return list(storage.children("commissions").values())


def cashback_events(storage):
    return list(storage.children("cashbacks").values())


class TestApproveOrder:
    """Tests for the approval flow."""

    def test_approve_credits_referrer_and_buyer(self, storage, order_service, now):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        response = order_service.approve_order("o1")

        assert response.order.status == OrderStatus.COMPLETED
        assert response.order.commission_amount == Decimal("5800")
        assert response.order.cashback_amount == Decimal("1000")
        assert response.order.settled_at == now

        referrer = storage.get("users/referrer")
        assert referrer["balance"] == Decimal("5800")
        assert referrer["total_earnings"] == Decimal("5800")
        assert referrer["daily_earnings"] == Decimal("5800")

        buyer = storage.get("users/buyer")
        assert buyer["balance"] == Decimal("1000")
        assert buyer["total_earnings"] == Decimal("1000")
        assert buyer["status"] == "active"
        assert buyer["course_id"] == "pro"

    def test_approve_appends_one_event_of_each_kind(self, storage, order_service, now):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        response = order_service.approve_order("o1")

        [commission] = commission_events(storage)
        assert commission == {
            "order_id": "o1",
            "referrer_id": "referrer",
            "user_id": "buyer",
            "package_id": "pro",
            "amount": Decimal("5800"),
            "timestamp": now,
        }
        [cashback] = cashback_events(storage)
        assert cashback["user_id"] == "buyer"
        assert cashback["amount"] == Decimal("1000")
        assert response.commission_event.amount == Decimal("5800")
        assert response.cashback_event.amount == Decimal("1000")

    def test_commission_is_floored(self, storage, order_service):
        storage.put_order("o1", "buyer", "odd", referrer_id="referrer")

        response = order_service.approve_order("o1")

        assert response.order.commission_amount == Decimal("5799")
        assert response.order.cashback_amount == Decimal("999")

    def test_without_referrer_only_activates(self, storage, order_service, users_snapshot):
        storage.put_order("o1", "buyer", "pro")
        before = users_snapshot()

        response = order_service.approve_order("o1")

        assert response.order.status == OrderStatus.COMPLETED
        assert response.order.commission_amount == Decimal("0")
        assert response.order.cashback_amount == Decimal("0")
        assert response.commission_event is None
        assert commission_events(storage) == []
        assert cashback_events(storage) == []
        assert users_snapshot() == before
        assert storage.get("users/buyer/status") == "active"

    def test_deleted_referrer_is_treated_as_absent(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro", referrer_id="gone")

        response = order_service.approve_order("o1")

        assert response.order.status == OrderStatus.COMPLETED
        assert response.order.commission_amount == Decimal("0")
        assert storage.get("users/buyer/balance") == Decimal("0")

    def test_free_package_credits_nothing(self, storage, order_service):
        storage.put_order("o1", "buyer", "free", referrer_id="referrer")

        response = order_service.approve_order("o1")

        assert response.order.status == OrderStatus.COMPLETED
        assert commission_events(storage) == []
        assert storage.get("users/referrer/balance") == Decimal("0")

    def test_special_access_override_applies(self, storage, order_service):
        storage.set(
            "users/referrer/special_access",
            {"package_id": "vip", "commission_percent": Decimal("70"), "active": True},
        )
        storage.put_order("o1", "buyer", "basic", referrer_id="referrer")

        response = order_service.approve_order("o1")

        assert response.order.commission_amount == Decimal("3500")
        # cashback does not follow the override
        assert response.order.cashback_amount == Decimal("500")

    def test_upgrade_only_changes_package(self, storage, order_service):
        storage.set("users/buyer/status", "active")
        storage.set("users/buyer/course_id", "basic")
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer", kind=OrderKind.UPGRADE.value)

        order_service.approve_order("o1")

        buyer = storage.get("users/buyer")
        assert buyer["course_id"] == "pro"
        assert buyer["status"] == "active"

    def test_upgrade_detected_from_product_name(self, storage, order_service):
        storage.set("users/buyer/status", "pending")
        storage.put_order("o1", "buyer", "pro", product="Upgrade to: Pro Bundle")

        order_service.approve_order("o1")

        assert storage.get("users/buyer/status") == "pending"
        assert storage.get("users/buyer/course_id") == "pro"

    def test_unknown_package_aborts_without_writes(self, storage, order_service, users_snapshot):
        storage.put_order("o1", "buyer", "missing", referrer_id="referrer")
        before = users_snapshot()

        with pytest.raises(PackageNotFoundError):
            order_service.approve_order("o1")

        assert storage.get("orders/o1/status") == OrderStatus.PENDING_APPROVAL.value
        assert users_snapshot() == before
        assert commission_events(storage) == []

    def test_checkout_price_survives_catalog_change(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer", price=Decimal("10000"))
        storage.set("packages/pro/price", Decimal("20000"))

        response = order_service.approve_order("o1")

        assert response.order.commission_amount == Decimal("5800")
        assert response.order.cashback_amount == Decimal("1000")
        assert storage.get("users/referrer/balance") == Decimal("5800")

    def test_catalog_price_used_when_order_has_none(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer", price=Decimal("0"))
        storage.set("packages/pro/price", Decimal("20000"))

        response = order_service.approve_order("o1")

        assert response.order.commission_amount == Decimal("11600")

    def test_checkout_price_without_catalog_entry_uses_default_percent(self, storage, order_service):
        storage.put_order("o1", "buyer", "retired", referrer_id="referrer", price=Decimal("1000"))

        response = order_service.approve_order("o1")

        assert response.order.commission_amount == Decimal("580")
        assert response.order.cashback_amount == Decimal("100")
        assert storage.get("users/buyer/course_id") == "retired"

    def test_unknown_buyer_aborts(self, storage, order_service):
        storage.put_order("o1", "nobody", "pro", referrer_id="referrer")

        with pytest.raises(AccountNotFoundError):
            order_service.approve_order("o1")
        assert storage.get("users/referrer/balance") == Decimal("0")

    def test_unknown_order(self, order_service):
        with pytest.raises(OrderNotFoundError):
            order_service.approve_order("nope")


class TestNoDoubleCredit:
    """Tests that a settled order is never credited again."""

    def test_second_approval_fails_without_mutation(self, storage, order_service, users_snapshot):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")
        order_service.approve_order("o1")
        after_first = users_snapshot()

        with pytest.raises(AlreadySettledError):
            order_service.approve_order("o1")

        assert users_snapshot() == after_first
        assert len(commission_events(storage)) == 1
        assert len(cashback_events(storage)) == 1

    def test_rejected_order_cannot_be_approved(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")
        order_service.reject_order("o1")

        with pytest.raises(AlreadySettledError):
            order_service.approve_order("o1")
        assert storage.get("orders/o1/status") == OrderStatus.REJECTED.value

    def test_concurrent_approval_loser_sees_already_settled(
        self, storage, ledger, notifier, settings, clock, order_service
    ):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")
        other_session = OrderSettlementService(storage, ledger, notifier, settings, clock)
        # the other admin commits between our read and our commit
        storage.before_commit.append(lambda: other_session.approve_order("o1"))

        with pytest.raises(AlreadySettledError):
            order_service.approve_order("o1")

        assert len(commission_events(storage)) == 1
        assert storage.get("users/referrer/balance") == Decimal("5800")
        assert storage.get("users/buyer/balance") == Decimal("1000")

    def test_account_conflict_is_retried(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        def concurrent_credit():
            storage.set("users/referrer/balance", Decimal("100"))
            storage.set("users/referrer/total_earnings", Decimal("100"))

        storage.before_commit.append(concurrent_credit)

        response = order_service.approve_order("o1")

        assert response.order.status == OrderStatus.COMPLETED
        assert storage.get("users/referrer/balance") == Decimal("5900")
        assert storage.get("users/referrer/total_earnings") == Decimal("5900")
        assert len(commission_events(storage)) == 1

    def test_persistent_conflict_gives_up(self, storage, order_service, settings):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        def bump():
            storage.set("users/referrer/balance", storage.get("users/referrer/balance") + 1)

        storage.before_commit.extend([bump] * settings.cas_retries)

        with pytest.raises(ConcurrentModificationError):
            order_service.approve_order("o1")
        assert storage.get("orders/o1/status") == OrderStatus.PENDING_APPROVAL.value
        assert commission_events(storage) == []


class TestRejectOrder:
    """Tests for the rejection flow."""

    def test_rejection_has_no_financial_effect(self, storage, order_service, users_snapshot):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")
        before = users_snapshot()

        response = order_service.reject_order("o1")

        assert response.order.status == OrderStatus.REJECTED
        assert users_snapshot() == before
        assert commission_events(storage) == []
        assert cashback_events(storage) == []

    def test_first_purchase_marks_buyer_rejected(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro")

        order_service.reject_order("o1")

        buyer = storage.get("users/buyer")
        assert buyer is not None
        assert buyer["status"] == "rejected"

    def test_upgrade_rejection_keeps_account_status(self, storage, order_service):
        storage.set("users/buyer/status", "active")
        storage.put_order("o1", "buyer", "pro", kind=OrderKind.UPGRADE.value)

        order_service.reject_order("o1")

        assert storage.get("users/buyer/status") == "active"

    def test_pending_invitation_removed(self, storage, order_service):
        other = storage.put_referral("referrer", email="someone@example.com", status="pending")
        invite = storage.put_referral("referrer", email="ravi@example.com", status="pending")
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        order_service.reject_order("o1")

        referrals = storage.children("users/referrer/referrals")
        assert invite not in referrals
        assert other in referrals

    def test_second_rejection_fails(self, storage, order_service):
        storage.put_order("o1", "buyer", "pro")
        order_service.reject_order("o1")

        with pytest.raises(AlreadySettledError):
            order_service.reject_order("o1")


class TestNotifications:
    def test_buyer_notified_on_approval(self, storage, order_service, notifier):
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        order_service.approve_order("o1")

        [(user_id, subject, body)] = notifier.sent
        assert user_id == "buyer"
        assert "Activated" in subject
        assert "cashback" in body

    def test_notification_failure_does_not_roll_back(
        self, storage, ledger, failing_notifier, settings, clock
    ):
        service = OrderSettlementService(storage, ledger, failing_notifier, settings, clock)
        storage.put_order("o1", "buyer", "pro", referrer_id="referrer")

        response = service.approve_order("o1")

        assert response.order.status == OrderStatus.COMPLETED
        assert storage.get("users/referrer/balance") == Decimal("5800")

    def test_buyer_notified_on_rejection(self, storage, order_service, notifier):
        storage.put_order("o1", "buyer", "pro")

        order_service.reject_order("o1")

        assert notifier.sent[0][1] == "Your Account Request Was Not Approved"

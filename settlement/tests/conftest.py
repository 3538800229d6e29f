from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from settlement.config import Settings
from settlement.leaderboard import EarningsAggregator
from settlement.ledger import EarningsLedger
from settlement.orders import OrderSettlementService
from settlement.storage import InMemoryStorage
from settlement.targets import MonthlyTargetService
from settlement.withdrawals import WithdrawalService

IST = timezone(timedelta(hours=5, minutes=30))
# Wednesday; the week started on Sunday 2024-05-12
NOW = datetime(2024, 5, 15, 10, 0, tzinfo=IST)


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, user_id, subject, body):
        self.sent.append((user_id, subject, body))


class FailingNotifier:
    def send(self, user_id, subject, body):
        raise ConnectionError("mail relay unavailable")


class InterleavingStorage(InMemoryStorage):
    """Runs queued callbacks just before a commit, simulating another admin session."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.before_commit = []

    def commit(self, batch):
        if self.before_commit:
            self.before_commit.pop(0)()
        super().commit(batch)


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def storage():
    store = InterleavingStorage()
    store.put_package("pro", name="Pro Bundle", price=Decimal("10000"), commission_percent=Decimal("58"))
    store.put_package("odd", name="Odd Bundle", price=Decimal("9999"), commission_percent=Decimal("58"))
    store.put_package("basic", name="Basic Bundle", price=Decimal("5000"), commission_percent=Decimal("40"))
    store.put_package("free", name="Free Taster", price=Decimal("0"))
    store.put_user("referrer", name="Asha Referrer", status="active")
    store.put_user("buyer", name="Ravi Buyer", status="pending", email="ravi@example.com")
    return store


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def ledger(storage):
    return EarningsLedger(storage)


@pytest.fixture
def order_service(storage, ledger, notifier, settings, clock):
    return OrderSettlementService(storage, ledger, notifier, settings, clock)


@pytest.fixture
def withdrawal_service(storage, ledger, notifier, settings, clock):
    return WithdrawalService(storage, ledger, notifier, settings, clock)


@pytest.fixture
def aggregator(storage, settings, clock):
    return EarningsAggregator(storage, settings, clock)


@pytest.fixture
def target_service(storage, aggregator, notifier, settings, clock):
    return MonthlyTargetService(storage, aggregator, notifier, settings, clock)


@pytest.fixture
def users_snapshot(storage):
    """Money fields of every account, for before/after comparisons."""
    fields = (
        "balance",
        "total_earnings",
        "daily_earnings",
        "weekly_earnings",
        "monthly_earnings",
    )

    def snapshot():
        return {
            user_id: {f: data.get(f) for f in fields}
            for user_id, data in storage.children("users").items()
        }

    return snapshot

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog

from .exceptions import AccountNotFoundError, InsufficientFundsError
from .models import AccountBalance, UserAccount, WindowedEarnings
from .storage import InMemoryStorage, WriteBatch
from .windows import Window, current_window_sum, rollover

WINDOW_FIELDS = {
    Window.DAILY: ("daily_earnings", "last_daily_reset"),
    Window.WEEKLY: ("weekly_earnings", "last_weekly_reset"),
    Window.MONTHLY: ("monthly_earnings", "last_monthly_reset"),
}


def _amount(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class EarningsLedger:
    """Sole writer of account balances and earnings counters.

    Mutations are staged into a caller-owned ``WriteBatch`` together with
    compare-and-set expectations on every field that was read, so the caller
    commits them in the same write as the status change that caused them.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._logger = structlog.get_logger(__name__)

    def _user_path(self, user_id: str) -> str:
        return f"users/{user_id}"

    def _require_account(self, batch: WriteBatch, user_id: str) -> None:
        if batch.read(self.storage, self._user_path(user_id)) is None:
            raise AccountNotFoundError(f"Account {user_id} not found")

    def _read_field(self, batch: WriteBatch, user_id: str, field: str):
        path = f"{self._user_path(user_id)}/{field}"
        value = batch.read(self.storage, path)
        if path not in batch.updates:
            batch.expect(path, value)
        return value

    def credit(self, batch: WriteBatch, user_id: str, amount: Decimal, now: datetime) -> None:
        if amount <= 0:
            return
        self._require_account(batch, user_id)
        base = self._user_path(user_id)

        balance = _amount(self._read_field(batch, user_id, "balance"))
        total = _amount(self._read_field(batch, user_id, "total_earnings"))
        batch.update(f"{base}/balance", balance + amount)
        batch.update(f"{base}/total_earnings", total + amount)

        for window, (sum_field, reset_field) in WINDOW_FIELDS.items():
            current = _amount(self._read_field(batch, user_id, sum_field))
            last_reset = self._read_field(batch, user_id, reset_field)
            window_base, new_reset = rollover(window, current, last_reset, now)
            batch.update(f"{base}/{sum_field}", window_base + amount)
            batch.update(f"{base}/{reset_field}", new_reset)

        self._logger.debug("ledger_credit_staged", user_id=user_id, amount=str(amount))

    def debit(self, batch: WriteBatch, user_id: str, amount: Decimal) -> None:
        self._require_account(batch, user_id)
        balance = _amount(self._read_field(batch, user_id, "balance"))
        if amount > balance:
            raise InsufficientFundsError(
                f"Cannot debit {amount} from account {user_id}: balance is {balance}"
            )
        batch.update(f"{self._user_path(user_id)}/balance", balance - amount)
        self._logger.debug("ledger_debit_staged", user_id=user_id, amount=str(amount))

    def balance(self, user_id: str, batch: Optional[WriteBatch] = None) -> Decimal:
        batch = batch or WriteBatch()
        self._require_account(batch, user_id)
        return _amount(batch.read(self.storage, f"{self._user_path(user_id)}/balance"))

    def account_balance(self, user_id: str, now: datetime) -> AccountBalance:
        data = self.storage.get(self._user_path(user_id))
        if data is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        account = UserAccount(**{"id": user_id, **data})

        return AccountBalance(
            user_id=user_id,
            balance=account.balance,
            total_earnings=account.total_earnings,
            earnings=WindowedEarnings(
                daily=current_window_sum(Window.DAILY, account.daily_earnings, account.last_daily_reset, now),
                weekly=current_window_sum(Window.WEEKLY, account.weekly_earnings, account.last_weekly_reset, now),
                monthly=current_window_sum(Window.MONTHLY, account.monthly_earnings, account.last_monthly_reset, now),
            ),
        )

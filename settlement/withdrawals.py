from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

import structlog

from .config import Settings, get_settings
from .exceptions import (
    AlreadyResolvedError,
    ConcurrentModificationError,
    InsufficientFundsError,
    WithdrawalNotFoundError,
)
from .ledger import EarningsLedger
from .models import (
    Transaction,
    WithdrawalEligibility,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .notifications import LoggingNotifier, Notifier, notify_safely
from .storage import InMemoryStorage, WriteBatch, WriteConflictError
from .windows import store_clock


class WithdrawalService:
    """Resolves withdrawal requests: Pending to Completed or Rejected, once."""

    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: Optional[EarningsLedger] = None,
        notifier: Optional[Notifier] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.ledger = ledger or EarningsLedger(storage)
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or store_clock(self.settings.timezone)
        self._logger = structlog.get_logger(__name__)

    def get_withdrawal(self, request_id: str) -> WithdrawalRequest:
        data = self.storage.get(f"withdrawalRequests/{request_id}")
        if not data:
            raise WithdrawalNotFoundError(f"Withdrawal request {request_id} not found")
        return WithdrawalRequest(**{"id": request_id, **data})

    def approve_withdrawal(self, request_id: str, now: Optional[datetime] = None) -> WithdrawalResponse:
        now = now or self.clock()
        status_path = f"withdrawalRequests/{request_id}/status"

        for attempt in range(1, self.settings.cas_retries + 1):
            request = self._pending(request_id)

            batch = WriteBatch()
            batch.expect(status_path, WithdrawalStatus.PENDING.value)
            try:
                self.ledger.debit(batch, request.user_id, request.amount)
            except InsufficientFundsError:
                balance = self.ledger.balance(request.user_id)
                rejected = self._reject_for_insufficient_funds(request, now)
                raise InsufficientFundsError(
                    f"Withdrawal {request_id} of {request.amount} exceeds balance {balance}; request rejected",
                    request=rejected,
                )

            transaction = Transaction(
                product="Withdrawal",
                amount=-request.amount,
                date=now,
                status="Processed",
            )
            batch.push(self.storage, f"users/{request.user_id}/transactions", transaction.model_dump())
            batch.update(status_path, WithdrawalStatus.COMPLETED.value)
            batch.update(f"withdrawalRequests/{request_id}/resolved_at", now)

            try:
                self.storage.commit(batch)
            except WriteConflictError as exc:
                if exc.path == status_path:
                    raise AlreadyResolvedError(
                        f"Withdrawal request {request_id} was resolved by another session"
                    ) from exc
                self._logger.warning(
                    "withdrawal_conflict_retry", request_id=request_id, path=exc.path, attempt=attempt
                )
                continue
            break
        else:
            raise ConcurrentModificationError(
                f"Withdrawal request {request_id} could not be completed after "
                f"{self.settings.cas_retries} attempts"
            )

        completed = self.get_withdrawal(request_id)
        self._logger.info(
            "withdrawal_completed", request_id=request_id, user_id=completed.user_id, amount=str(completed.amount)
        )
        self._notify(completed, "has been processed.")
        return WithdrawalResponse(
            request=completed,
            transaction=transaction,
            message="Withdrawal completed successfully",
        )

    def reject_withdrawal(self, request_id: str, now: Optional[datetime] = None) -> WithdrawalResponse:
        now = now or self.clock()
        request = self._pending(request_id)
        rejected = self._commit_rejection(request, now)

        self._logger.info("withdrawal_rejected", request_id=request_id, user_id=rejected.user_id)
        self._notify(rejected, "has been rejected. Please contact support for more information.")
        return WithdrawalResponse(request=rejected, message="Withdrawal rejected")

    def check_eligibility(self, user_id: str, amount: Decimal) -> WithdrawalEligibility:
        balance = self.ledger.balance(user_id)
        pending = sum(
            (
                Decimal(str(r.get("amount", 0)))
                for r in self.storage.children("withdrawalRequests").values()
                if r.get("user_id") == user_id and r.get("status") == WithdrawalStatus.PENDING.value
            ),
            Decimal("0"),
        )
        minimum = self.settings.minimum_withdrawal_amount
        available = max(balance - pending, Decimal("0"))

        reasons = []
        if amount <= 0:
            reasons.append("Amount must be positive")
        elif amount < minimum:
            reasons.append(f"Minimum withdrawal is Rs {minimum}")
        if amount + pending > balance:
            reasons.append("Requested amount plus pending withdrawals exceeds available balance")

        return WithdrawalEligibility(
            user_id=user_id,
            amount=amount,
            eligible=not reasons,
            reasons=reasons,
            balance=balance,
            pending_amount=pending,
            available_amount=available,
            minimum_amount=minimum,
        )

    # -- internals -----------------------------------------------------------

    def _pending(self, request_id: str) -> WithdrawalRequest:
        request = self.get_withdrawal(request_id)
        if not request.can_resolve():
            raise AlreadyResolvedError(
                f"Withdrawal request {request_id} is already {request.status.value}"
            )
        return request

    def _commit_rejection(self, request: WithdrawalRequest, now: datetime) -> WithdrawalRequest:
        status_path = f"withdrawalRequests/{request.id}/status"
        batch = WriteBatch()
        batch.expect(status_path, WithdrawalStatus.PENDING.value)
        batch.update(status_path, WithdrawalStatus.REJECTED.value)
        batch.update(f"withdrawalRequests/{request.id}/resolved_at", now)
        try:
            self.storage.commit(batch)
        except WriteConflictError as exc:
            raise AlreadyResolvedError(
                f"Withdrawal request {request.id} was resolved by another session"
            ) from exc
        return self.get_withdrawal(request.id)

    def _reject_for_insufficient_funds(self, request: WithdrawalRequest, now: datetime) -> WithdrawalRequest:
        rejected = self._commit_rejection(request, now)
        self._logger.warning(
            "withdrawal_rejected_insufficient_funds",
            request_id=request.id,
            user_id=request.user_id,
            amount=str(request.amount),
        )
        self._notify(rejected, "has been rejected because your balance is insufficient.")
        return rejected

    def _notify(self, request: WithdrawalRequest, outcome: str) -> None:
        notify_safely(
            self.notifier,
            request.user_id,
            f"Your Withdrawal Request: {request.status.value}",
            f"<h1>Withdrawal Status Update</h1><p>Your withdrawal request for "
            f"<strong>Rs {request.amount}</strong> {outcome}</p>",
        )

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

import structlog

from .calculator import calculate_settlement
from .config import Settings, get_settings
from .exceptions import (
    AccountNotFoundError,
    AlreadySettledError,
    ConcurrentModificationError,
    OrderNotFoundError,
    PackageNotFoundError,
)
from .ledger import EarningsLedger
from .models import (
    CashbackEvent,
    CommissionEvent,
    Order,
    OrderStatus,
    Package,
    SettlementResponse,
    UserAccount,
    UserStatus,
)
from .notifications import LoggingNotifier, Notifier, notify_safely
from .storage import InMemoryStorage, WriteBatch, WriteConflictError
from .windows import store_clock


class OrderSettlementService:
    """Moves orders from Pending Approval to Completed or Rejected.

    Approval credits referral commission and buyer cashback through the
    ledger, appends the audit events and flips the order status in a single
    batch guarded by a compare-and-set on the status, so a commission can be
    credited at most once per order.
    """

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

    def get_order(self, order_id: str) -> Order:
        data = self.storage.get(f"orders/{order_id}")
        if not data:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return Order(**{"id": order_id, **data})

    def approve_order(self, order_id: str, now: Optional[datetime] = None) -> SettlementResponse:
        now = now or self.clock()

        for attempt in range(1, self.settings.cas_retries + 1):
            order = self.get_order(order_id)
            if not order.can_settle():
                raise AlreadySettledError(f"Order {order_id} is already {order.status.value}")

            batch, commission_event, cashback_event = self._build_approval(order, now)
            try:
                self.storage.commit(batch)
            except WriteConflictError as exc:
                if exc.path == f"orders/{order_id}/status":
                    raise AlreadySettledError(
                        f"Order {order_id} was settled by another session"
                    ) from exc
                self._logger.warning(
                    "settlement_conflict_retry", order_id=order_id, path=exc.path, attempt=attempt
                )
                continue
            break
        else:
            raise ConcurrentModificationError(
                f"Order {order_id} could not be settled after {self.settings.cas_retries} attempts"
            )

        settled = self.get_order(order_id)
        self._logger.info(
            "order_settled",
            order_id=order_id,
            referrer_id=settled.referrer_id,
            commission=str(settled.commission_amount),
            cashback=str(settled.cashback_amount),
        )
        self._notify_approved(settled)

        return SettlementResponse(
            order=settled,
            commission_event=commission_event,
            cashback_event=cashback_event,
            message="Order approved successfully",
        )

    def reject_order(self, order_id: str, now: Optional[datetime] = None) -> SettlementResponse:
        now = now or self.clock()
        order = self.get_order(order_id)
        if not order.can_settle():
            raise AlreadySettledError(f"Order {order_id} is already {order.status.value}")

        batch = WriteBatch()
        batch.expect(f"orders/{order_id}/status", OrderStatus.PENDING_APPROVAL.value)
        batch.update(f"orders/{order_id}/status", OrderStatus.REJECTED.value)
        batch.update(f"orders/{order_id}/settled_at", now)

        buyer = self.storage.get(f"users/{order.user_id}")
        if not order.is_upgrade and buyer is not None:
            batch.update(f"users/{order.user_id}/status", UserStatus.REJECTED.value)

        if order.referrer_id:
            key = self._find_referral_invite(order, buyer)
            if key:
                batch.update(f"users/{order.referrer_id}/referrals/{key}", None)

        try:
            self.storage.commit(batch)
        except WriteConflictError as exc:
            raise AlreadySettledError(f"Order {order_id} was settled by another session") from exc

        rejected = self.get_order(order_id)
        self._logger.info("order_rejected", order_id=order_id, upgrade=rejected.is_upgrade)
        self._notify_rejected(rejected)

        return SettlementResponse(order=rejected, message="Order rejected successfully")

    # -- internals -----------------------------------------------------------

    def _resolve_price(self, order: Order) -> tuple[Decimal, Package]:
        """Price recorded on the order when positive, else the catalog price."""
        data = self.storage.get(f"packages/{order.package_id}")
        package = Package(**{"id": order.package_id, **data}) if data else None

        if order.price is not None and order.price > 0:
            if package is None:
                self._logger.warning(
                    "package_missing_using_order_price", order_id=order.id, package_id=order.package_id
                )
                package = Package(id=order.package_id)
            return order.price, package

        if package is None:
            raise PackageNotFoundError(f"Package {order.package_id} not found")
        return package.price, package

    def _get_account(self, user_id: str) -> Optional[UserAccount]:
        data = self.storage.get(f"users/{user_id}")
        if data is None:
            return None
        return UserAccount(**{"id": user_id, **data})

    def _build_approval(
        self, order: Order, now: datetime
    ) -> tuple[WriteBatch, Optional[CommissionEvent], Optional[CashbackEvent]]:
        batch = WriteBatch()
        # checked first so a lost race surfaces as AlreadySettled
        batch.expect(f"orders/{order.id}/status", OrderStatus.PENDING_APPROVAL.value)

        price, package = self._resolve_price(order)
        if self._get_account(order.user_id) is None:
            raise AccountNotFoundError(f"Buyer account {order.user_id} not found")

        referrer = None
        if order.referrer_id:
            referrer = self._get_account(order.referrer_id)
            if referrer is None:
                self._logger.warning(
                    "referrer_missing", order_id=order.id, referrer_id=order.referrer_id
                )

        amounts = calculate_settlement(
            price,
            referrer,
            package,
            scope=self.settings.special_access_scope,
            default_percent=self.settings.default_commission_percent,
            cashback_percent=self.settings.cashback_percent,
        )

        commission_event = None
        cashback_event = None
        if referrer is not None and amounts.commission > 0:
            self.ledger.credit(batch, referrer.id, amounts.commission, now)
            commission_event = CommissionEvent(
                order_id=order.id,
                referrer_id=referrer.id,
                user_id=order.user_id,
                package_id=package.id,
                amount=amounts.commission,
                timestamp=now,
            )
            batch.push(self.storage, "commissions", commission_event.model_dump())
        if referrer is not None and amounts.cashback > 0:
            self.ledger.credit(batch, order.user_id, amounts.cashback, now)
            cashback_event = CashbackEvent(
                order_id=order.id,
                referrer_id=referrer.id,
                user_id=order.user_id,
                package_id=package.id,
                amount=amounts.cashback,
                timestamp=now,
            )
            batch.push(self.storage, "cashbacks", cashback_event.model_dump())

        batch.update(f"orders/{order.id}/status", OrderStatus.COMPLETED.value)
        batch.update(f"orders/{order.id}/commission_amount", amounts.commission)
        batch.update(f"orders/{order.id}/cashback_amount", amounts.cashback)
        batch.update(f"orders/{order.id}/settled_at", now)

        if order.is_upgrade:
            batch.update(f"users/{order.user_id}/course_id", order.package_id)
        else:
            batch.update(f"users/{order.user_id}/status", UserStatus.ACTIVE.value)
            batch.update(f"users/{order.user_id}/course_id", order.package_id)

        return batch, commission_event, cashback_event

    def _find_referral_invite(self, order: Order, buyer: Optional[dict]) -> Optional[str]:
        email = (buyer or {}).get("email")
        invites = self.storage.children(f"users/{order.referrer_id}/referrals")
        for key, invite in invites.items():
            if not isinstance(invite, dict):
                continue
            if invite.get("user_id") == order.user_id or (email and invite.get("email") == email):
                return key
        return None

    def _notify_approved(self, order: Order) -> None:
        if order.is_upgrade:
            subject = "Your Package Upgrade is Complete!"
            body = f"<p>Your upgrade to <strong>{order.product or order.package_id}</strong> has been approved.</p>"
        else:
            subject = "Your Account is Activated!"
            body = "<p>Your account has been approved and is now active. Please log in again to access your dashboard.</p>"
        if order.cashback_amount > 0:
            body += f"<p>A cashback of Rs {order.cashback_amount} has been credited to your account balance.</p>"
        notify_safely(self.notifier, order.user_id, subject, body)

    def _notify_rejected(self, order: Order) -> None:
        if order.is_upgrade:
            subject = "Your Upgrade Request Was Not Approved"
            body = "<h1>Upgrade Not Approved</h1><p>Your upgrade request was not approved.</p>"
        else:
            subject = "Your Account Request Was Not Approved"
            body = "<h1>Account Not Approved</h1><p>Your account request was not approved.</p>"
        notify_safely(self.notifier, order.user_id, subject, body)

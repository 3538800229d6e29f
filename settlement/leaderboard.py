"""
Read-side earnings aggregation.

The commission-event log is the authoritative source. When it is empty the
stream is re-derived from completed orders, which may disagree with what was
actually credited if percentages changed since; such results carry
``derived=True``.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Iterable, Optional

import structlog

from .calculator import calculate_commission, effective_commission_percent
from .config import Settings, get_settings
from .exceptions import AccountNotFoundError
from .models import (
    CommissionEvent,
    DailyEarnings,
    EarningsSummary,
    EarningsWindow,
    Leaderboard,
    LeaderboardEntry,
    Leaderboards,
    MonthlyTarget,
    Order,
    OrderStatus,
    Package,
    PlatformAnalytics,
    UserAccount,
    UserStatus,
    WindowedEarnings,
)
from .storage import InMemoryStorage
from .windows import Window, store_clock, window_start

CALENDAR_WINDOWS = {
    EarningsWindow.DAILY: Window.DAILY,
    EarningsWindow.WEEKLY: Window.WEEKLY,
    EarningsWindow.MONTHLY: Window.MONTHLY,
}

# soft-deleted and rejected accounts never appear on rankings or prize lists
UNRANKED_STATUSES = (UserStatus.DELETED, UserStatus.REJECTED)


class EarningsAggregator:
    def __init__(
        self,
        storage: InMemoryStorage,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.settings = settings or get_settings()
        self.clock = clock or store_clock(self.settings.timezone)
        self._logger = structlog.get_logger(__name__)

    # -- sources -------------------------------------------------------------

    def _users(self) -> dict[str, UserAccount]:
        return {
            user_id: UserAccount(**{"id": user_id, **data})
            for user_id, data in self.storage.children("users").items()
            if isinstance(data, dict)
        }

    def ranked_users(self) -> dict[str, UserAccount]:
        return {
            user_id: user
            for user_id, user in self._users().items()
            if user.name.strip() and user.status not in UNRANKED_STATUSES
        }

    def _logged_events(self) -> list[CommissionEvent]:
        # push keys sort in creation order
        raw = self.storage.children("commissions")
        return [CommissionEvent(**raw[key]) for key in sorted(raw)]

    def _derive_events(
        self, users: dict[str, UserAccount], referrer_id: Optional[str] = None
    ) -> list[CommissionEvent]:
        packages = self.storage.children("packages")
        derived = []
        for order_id, data in self.storage.children("orders").items():
            order = Order(**{"id": order_id, **data})
            if order.status != OrderStatus.COMPLETED or not order.referrer_id:
                continue
            if referrer_id is not None and order.referrer_id != referrer_id:
                continue
            referrer = users.get(order.referrer_id)
            if referrer is None or not referrer.name:
                continue

            amount = order.commission_amount
            if amount <= 0 and order.package_id in packages:
                package = Package(**{"id": order.package_id, **packages[order.package_id]})
                percent = effective_commission_percent(
                    referrer,
                    package,
                    scope=self.settings.special_access_scope,
                    default_percent=self.settings.default_commission_percent,
                )
                amount = calculate_commission(package.price, percent)
            if amount <= 0:
                continue

            derived.append(
                CommissionEvent(
                    order_id=order.id,
                    referrer_id=order.referrer_id,
                    user_id=order.user_id,
                    package_id=order.package_id,
                    amount=amount,
                    timestamp=order.settled_at or order.created_at,
                )
            )
        derived.sort(key=lambda e: e.timestamp)
        return derived

    def commission_stream(self) -> tuple[list[CommissionEvent], bool]:
        users = self.ranked_users()
        logged = self._logged_events()
        if logged:
            # drops events of deleted, rejected or nameless referrers
            return [e for e in logged if e.referrer_id in users], False
        self._logger.info("commission_stream_derived_from_orders")
        return self._derive_events(users), True

    def user_commission_events(self, user_id: str) -> tuple[list[CommissionEvent], bool]:
        events = [e for e in self._logged_events() if e.referrer_id == user_id]
        if events:
            return events, False
        return self._derive_events(self._users(), referrer_id=user_id), True

    # -- leaderboards --------------------------------------------------------

    def _ranked(self, totals: dict[str, Decimal], users: dict[str, UserAccount], limit: int) -> list[LeaderboardEntry]:
        ranked = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
        return [
            LeaderboardEntry(user_id=user_id, name=users[user_id].name, earnings=amount)
            for user_id, amount in ranked[:limit]
        ]

    def top_earners(
        self,
        window_start: Optional[datetime] = None,
        limit: Optional[int] = None,
        window: EarningsWindow = EarningsWindow.LIFETIME,
    ) -> Leaderboard:
        if limit is None:
            limit = self.settings.leaderboard_limit
        users = self.ranked_users()
        events, derived = self.commission_stream()

        totals: dict[str, Decimal] = defaultdict(Decimal)
        for event in events:
            if window_start is not None and event.timestamp < window_start:
                continue
            if event.referrer_id in users:
                totals[event.referrer_id] += event.amount

        return Leaderboard(window=window, entries=self._ranked(totals, users, limit), derived=derived)

    def lifetime_leaderboard(self, limit: Optional[int] = None) -> Leaderboard:
        if limit is None:
            limit = self.settings.leaderboard_limit
        users = self.ranked_users()
        totals = {user_id: u.total_earnings for user_id, u in users.items() if u.total_earnings > 0}
        return Leaderboard(window=EarningsWindow.LIFETIME, entries=self._ranked(totals, users, limit))

    def leaderboard(
        self, window: EarningsWindow, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> Leaderboard:
        if window == EarningsWindow.LIFETIME:
            return self.lifetime_leaderboard(limit)
        now = now or self.clock()
        start = window_start(CALENDAR_WINDOWS[window], now)
        return self.top_earners(start, limit, window=window)

    def leaderboards(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> Leaderboards:
        now = now or self.clock()
        return Leaderboards(
            daily=self.leaderboard(EarningsWindow.DAILY, now, limit),
            weekly=self.leaderboard(EarningsWindow.WEEKLY, now, limit),
            monthly=self.leaderboard(EarningsWindow.MONTHLY, now, limit),
            lifetime=self.lifetime_leaderboard(limit),
        )

    # -- dashboards ----------------------------------------------------------

    def platform_analytics(self) -> PlatformAnalytics:
        users = list(self._users().values())
        return PlatformAnalytics(
            total_users=len(users),
            active_users=sum(1 for u in users if u.status == UserStatus.ACTIVE),
            active_earners=sum(1 for u in users if u.status == UserStatus.ACTIVE and u.total_earnings > 0),
            total_earnings=sum((u.total_earnings for u in users), Decimal("0")),
            total_balance=sum((u.balance for u in users), Decimal("0")),
        )

    def monthly_totals(self, now: Optional[datetime] = None) -> dict[str, Decimal]:
        """Month-to-date commission per existing referrer."""
        now = now or self.clock()
        start = window_start(Window.MONTHLY, now)
        events, _ = self.commission_stream()
        totals: dict[str, Decimal] = defaultdict(Decimal)
        for event in events:
            if event.timestamp >= start:
                totals[event.referrer_id] += event.amount
        return dict(totals)

    def earnings_summary(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        target: Optional[MonthlyTarget] = None,
    ) -> EarningsSummary:
        now = now or self.clock()
        data = self.storage.get(f"users/{user_id}")
        if data is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        account = UserAccount(**{"id": user_id, **data})
        events, derived = self.user_commission_events(user_id)

        windowed = WindowedEarnings(
            daily=_sum_since(events, window_start(Window.DAILY, now)),
            weekly=_sum_since(events, window_start(Window.WEEKLY, now)),
            monthly=_sum_since(events, window_start(Window.MONTHLY, now)),
        )

        today = window_start(Window.DAILY, now)
        last_7_days = []
        for offset in range(6, -1, -1):
            start = today - timedelta(days=offset)
            end = start + timedelta(days=1)
            amount = sum((e.amount for e in events if start <= e.timestamp < end), Decimal("0"))
            last_7_days.append(DailyEarnings(day=start.date(), amount=amount))

        progress = 0.0
        if target is not None and target.goal_amount > 0:
            progress = min(float(windowed.monthly / target.goal_amount * 100), 100.0)

        return EarningsSummary(
            user_id=user_id,
            balance=account.balance,
            lifetime=account.total_earnings,
            earnings=windowed,
            last_7_days=last_7_days,
            monthly_target_progress=round(progress, 2),
            derived=derived,
        )


def _sum_since(events: Iterable[CommissionEvent], start: datetime) -> Decimal:
    return sum((e.amount for e in events if e.timestamp >= start), Decimal("0"))

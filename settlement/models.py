from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class UserStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    DELETED = "deleted"


class OrderStatus(str, Enum):
    PENDING_APPROVAL = "Pending Approval"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class OrderKind(str, Enum):
    PURCHASE = "purchase"
    UPGRADE = "upgrade"


class WithdrawalStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


class EarningsWindow(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    LIFETIME = "lifetime"


class SpecialAccess(BaseModel):
    package_id: Optional[str] = None
    commission_percent: Optional[Decimal] = None
    active: bool = True


class UserAccount(BaseModel):
    id: str
    name: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    status: Optional[UserStatus] = None
    course_id: Optional[str] = None
    balance: Decimal = Decimal("0")
    total_earnings: Decimal = Decimal("0")
    daily_earnings: Decimal = Decimal("0")
    weekly_earnings: Decimal = Decimal("0")
    monthly_earnings: Decimal = Decimal("0")
    last_daily_reset: Optional[datetime] = None
    last_weekly_reset: Optional[datetime] = None
    last_monthly_reset: Optional[datetime] = None
    special_access: Optional[SpecialAccess] = None

    model_config = ConfigDict(extra="ignore")


class Package(BaseModel):
    id: str
    name: str = ""
    price: Decimal = Field(default=Decimal("0"), ge=0)
    commission_percent: Optional[Decimal] = None

    model_config = ConfigDict(extra="ignore")


class Order(BaseModel):
    id: str
    user_id: str
    package_id: str
    referrer_id: Optional[str] = None
    product: str = ""
    # price recorded at checkout; the catalog price is used when unset
    price: Optional[Decimal] = None
    kind: OrderKind = OrderKind.PURCHASE
    status: OrderStatus = OrderStatus.PENDING_APPROVAL
    created_at: datetime
    commission_amount: Decimal = Decimal("0")
    cashback_amount: Decimal = Decimal("0")
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore")

    @property
    def is_upgrade(self) -> bool:
        return self.kind == OrderKind.UPGRADE or self.product.startswith("Upgrade")

    def can_settle(self) -> bool:
        return self.status == OrderStatus.PENDING_APPROVAL


class CommissionEvent(BaseModel):
    """Audit entry for a commission credited to a referrer."""

    order_id: str
    referrer_id: str
    user_id: str
    package_id: str
    amount: Decimal
    timestamp: datetime


class CashbackEvent(BaseModel):
    """Audit entry for a cashback credited to a referred buyer."""

    order_id: str
    referrer_id: str
    user_id: str
    package_id: str
    amount: Decimal
    timestamp: datetime


class WithdrawalRequest(BaseModel):
    id: str
    user_id: str
    amount: Decimal = Field(..., gt=0)
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    requested_at: datetime
    resolved_at: Optional[datetime] = None
    payment_method: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    def can_resolve(self) -> bool:
        return self.status == WithdrawalStatus.PENDING


class Transaction(BaseModel):
    product: str
    amount: Decimal
    date: datetime
    status: str


class SettlementResponse(BaseModel):
    order: Order
    commission_event: Optional[CommissionEvent] = None
    cashback_event: Optional[CashbackEvent] = None
    message: str


class WithdrawalResponse(BaseModel):
    request: WithdrawalRequest
    transaction: Optional[Transaction] = None
    message: str


class WindowedEarnings(BaseModel):
    daily: Decimal = Decimal("0")
    weekly: Decimal = Decimal("0")
    monthly: Decimal = Decimal("0")


class AccountBalance(BaseModel):
    user_id: str
    balance: Decimal
    total_earnings: Decimal
    earnings: WindowedEarnings


class DailyEarnings(BaseModel):
    day: date
    amount: Decimal


class EarningsSummary(BaseModel):
    user_id: str
    balance: Decimal
    lifetime: Decimal
    earnings: WindowedEarnings
    last_7_days: list[DailyEarnings]
    monthly_target_progress: float
    derived: bool = False


class LeaderboardEntry(BaseModel):
    user_id: str
    name: str
    earnings: Decimal


class Leaderboard(BaseModel):
    window: EarningsWindow
    entries: list[LeaderboardEntry]
    derived: bool = False


class Leaderboards(BaseModel):
    daily: Leaderboard
    weekly: Leaderboard
    monthly: Leaderboard
    lifetime: Leaderboard


class PlatformAnalytics(BaseModel):
    total_users: int
    active_users: int
    active_earners: int
    total_earnings: Decimal
    total_balance: Decimal


class WithdrawalEligibility(BaseModel):
    user_id: str
    amount: Decimal
    eligible: bool
    reasons: list[str] = Field(default_factory=list)
    balance: Decimal
    pending_amount: Decimal
    available_amount: Decimal
    minimum_amount: Decimal


class MonthlyTarget(BaseModel):
    goal_amount: Decimal = Field(..., gt=0)
    prize: str


class PrizeRecord(BaseModel):
    user_id: str
    user_name: str
    user_email: Optional[str] = None
    prize: str
    goal_amount: Decimal
    monthly_earnings: Decimal
    given_at: datetime
    month: int
    year: int


class MonthlyAchiever(BaseModel):
    user_id: str
    name: str
    email: Optional[str] = None
    monthly_earnings: Decimal
    prize_given: bool = False
    prize_given_at: Optional[datetime] = None

"""
Order Settlement and Earnings Ledger

This package provides:
- Commission and cashback arithmetic with special-access overrides
- Per-user balance and rolling daily/weekly/monthly earnings counters
- Order settlement: Pending Approval → Completed / Rejected, credited once
- Withdrawal settlement with a balance re-check at approval time
- Leaderboards and platform analytics over the commission-event log

Every settlement is committed as a single batched write guarded by a
compare-and-set on the order or request status.
"""

from .calculator import (
    CommissionSource,
    DefaultSource,
    OverrideSource,
    calculate_cashback,
    calculate_commission,
    calculate_settlement,
    effective_commission_percent,
)
from .exceptions import (
    AlreadyResolvedError,
    AlreadySettledError,
    ConcurrentModificationError,
    InsufficientFundsError,
    PackageNotFoundError,
    SettlementError,
)
from .leaderboard import EarningsAggregator
from .ledger import EarningsLedger
from .orders import OrderSettlementService
from .storage import InMemoryStorage, WriteBatch
from .withdrawals import WithdrawalService

__all__ = [
    "CommissionSource",
    "DefaultSource",
    "OverrideSource",
    "calculate_cashback",
    "calculate_commission",
    "calculate_settlement",
    "effective_commission_percent",
    "AlreadyResolvedError",
    "AlreadySettledError",
    "ConcurrentModificationError",
    "InsufficientFundsError",
    "PackageNotFoundError",
    "SettlementError",
    "EarningsAggregator",
    "EarningsLedger",
    "OrderSettlementService",
    "InMemoryStorage",
    "WriteBatch",
    "WithdrawalService",
]

"""Settlement service exceptions."""


class SettlementError(Exception):
    """Base exception for settlement and ledger operations."""


class NotFoundError(SettlementError):
    pass


class OrderNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class PackageNotFoundError(NotFoundError):
    """Raised when an order's package cannot be resolved from the catalog."""


class InvalidStateTransitionError(SettlementError):
    pass


class AlreadySettledError(InvalidStateTransitionError):
    """Raised when an order has already left the pending state."""


class AlreadyResolvedError(InvalidStateTransitionError):
    """Raised when a withdrawal request has already been completed or rejected."""


class InsufficientFundsError(SettlementError):
    """Raised when a debit exceeds the account balance.

    When raised by withdrawal approval the request has already been moved to
    Rejected; ``request`` holds it as stored.
    """

    def __init__(self, message: str, request=None):
        super().__init__(message)
        self.request = request


class ConcurrentModificationError(SettlementError):
    """Raised when a compare-and-set keeps losing after all retries."""


class PrizeError(SettlementError):
    """Raised when a monthly prize cannot be awarded."""

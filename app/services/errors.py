from __future__ import annotations


class SettlementError(RuntimeError):
    pass


class PaymentNotFoundError(SettlementError):
    pass


class WalletTransactionNotFoundError(SettlementError):
    pass


class WalletNotFoundError(SettlementError):
    pass


class TransactionNotPendingError(SettlementError):
    pass


class InsufficientBalanceError(SettlementError):
    pass


class TransientStoreError(SettlementError):
    """The store aborted the unit of work twice in a row; safe for the client to retry later."""

from app.models.audit import AdminAudit
from app.models.payment import Payment, PaymentStatus
from app.models.user import Program, Referral, ReferralStatus, User, UserRole
from app.models.wallet import (
    LedgerEntryType,
    LedgerReferenceType,
    Wallet,
    WalletLedgerEntry,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
)

__all__ = [
    "AdminAudit",
    "LedgerEntryType",
    "LedgerReferenceType",
    "Payment",
    "PaymentStatus",
    "Program",
    "Referral",
    "ReferralStatus",
    "User",
    "UserRole",
    "Wallet",
    "WalletLedgerEntry",
    "WalletTransaction",
    "WalletTransactionStatus",
    "WalletTransactionType",
]

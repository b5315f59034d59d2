from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.payment import Payment
from app.models.user import User
from app.models.wallet import WalletLedgerEntry, WalletTransaction
from app.schemas.payment import PaymentOut, PaymentProgramOut, PaymentUserOut
from app.schemas.wallet import LedgerEntryOut, WalletTransactionOut, WalletTransactionUserOut
from app.services.errors import (
    InsufficientBalanceError,
    PaymentNotFoundError,
    SettlementError,
    TransactionNotPendingError,
    TransientStoreError,
    WalletNotFoundError,
    WalletTransactionNotFoundError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_ERRORS = (PaymentNotFoundError, WalletTransactionNotFoundError, WalletNotFoundError)
_BUSINESS_RULE_ERRORS = (InsufficientBalanceError, TransactionNotPendingError)


def settlement_http_error(exc: SettlementError) -> HTTPException:
    if isinstance(exc, _NOT_FOUND_ERRORS):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, _BUSINESS_RULE_ERRORS):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, TransientStoreError):
        logger.error("Settlement aborted after retry: %s", exc.__cause__)
        return HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": "1"})
    logger.error("Unmapped settlement error: %r", exc)
    return HTTPException(status_code=500, detail="Internal server error")


async def get_user_or_404(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def to_payment_out(payment: Payment) -> PaymentOut:
    user = payment.user
    program = payment.program
    return PaymentOut(
        id=payment.id,
        user_id=payment.user_id,
        program_id=payment.program_id,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        admin_notes=payment.admin_notes,
        receipt_url=payment.receipt_url,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
        processed_at=payment.processed_at,
        user=PaymentUserOut(
            id=user.id,
            first_name=user.first_name,
            last_name=user.last_name,
            email=user.email,
            username=user.username,
            telegram_id=user.telegram_id,
        ),
        program=PaymentProgramOut(
            id=program.id,
            name=program.name,
            description=program.description,
            category=program.category,
            price=program.price,
            duration=program.duration,
        ),
    )


def to_wallet_transaction_out(tx: WalletTransaction, user: User | None = None) -> WalletTransactionOut:
    return WalletTransactionOut(
        id=tx.id,
        user_id=tx.user_id,
        type=tx.type,
        amount=tx.amount,
        status=tx.status,
        receipt_url=tx.receipt_url,
        card_number=tx.card_number,
        card_holder_name=tx.card_holder_name,
        admin_notes=tx.admin_notes,
        processed_by=tx.processed_by,
        processed_at=tx.processed_at,
        created_at=tx.created_at,
        user=(
            WalletTransactionUserOut(
                id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
            )
            if user is not None
            else None
        ),
    )


def to_ledger_entry_out(row: WalletLedgerEntry) -> LedgerEntryOut:
    return LedgerEntryOut(
        id=row.id,
        wallet_id=row.wallet_id,
        amount=row.amount,
        type=row.type,
        description=row.description,
        reference_id=row.reference_id,
        reference_type=row.reference_type,
        created_at=row.created_at,
    )

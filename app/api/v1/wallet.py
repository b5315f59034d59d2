from __future__ import annotations

import logging
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import get_user_or_404, to_ledger_entry_out, to_wallet_transaction_out
from app.core.config import settings
from app.db.session import get_db
from app.models.wallet import (
    LedgerEntryType,
    Wallet,
    WalletLedgerEntry,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
)
from app.schemas.wallet import (
    LedgerPageOut,
    WalletOut,
    WalletOverviewOut,
    WalletSummaryOut,
    WalletTransactionCreateIn,
    WalletTransactionOut,
)
from app.services.auth import AuthUser, get_current_user

router = APIRouter(prefix="/wallet", tags=["wallet"])
logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


async def _pending_withdrawals(db: AsyncSession, user_id) -> Decimal:
    total = (
        await db.execute(
            select(func.coalesce(func.sum(WalletTransaction.amount), 0)).where(
                WalletTransaction.user_id == user_id,
                WalletTransaction.type == WalletTransactionType.WITHDRAWAL,
                WalletTransaction.status == WalletTransactionStatus.PENDING,
            )
        )
    ).scalar_one()
    return Decimal(str(total))


async def _ledger_sum(db: AsyncSession, wallet_id, entry_type: str) -> Decimal:
    total = (
        await db.execute(
            select(func.coalesce(func.sum(WalletLedgerEntry.amount), 0)).where(
                WalletLedgerEntry.wallet_id == wallet_id,
                WalletLedgerEntry.type == entry_type,
            )
        )
    ).scalar_one()
    return Decimal(str(total))


@router.get("", response_model=WalletOverviewOut)
async def get_my_wallet(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    type: Literal["CREDIT", "DEBIT"] | None = Query(default=None),
    actor: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WalletOverviewOut:
    wallet = (await db.execute(select(Wallet).where(Wallet.user_id == actor.user_id))).scalar_one_or_none()
    pending = await _pending_withdrawals(db, actor.user_id)

    if wallet is None:
        # No wallet row until the first credit lands.
        return WalletOverviewOut(
            wallet=WalletOut(user_id=actor.user_id, balance=_ZERO, currency=settings.default_currency),
            transactions=[],
            summary=WalletSummaryOut(
                total_credits=_ZERO,
                total_debits=_ZERO,
                pending_withdrawals=pending,
                available_balance=_ZERO,
            ),
            pagination=LedgerPageOut(total=0, limit=limit, offset=offset, has_more=False),
        )

    filters = [WalletLedgerEntry.wallet_id == wallet.id]
    if type:
        filters.append(WalletLedgerEntry.type == type)

    total = (await db.execute(select(func.count(WalletLedgerEntry.id)).where(*filters))).scalar_one()
    rows = (
        await db.execute(
            select(WalletLedgerEntry)
            .where(*filters)
            .order_by(desc(WalletLedgerEntry.created_at))
            .offset(offset)
            .limit(limit)
        )
    ).scalars().all()

    return WalletOverviewOut(
        wallet=WalletOut(id=wallet.id, user_id=wallet.user_id, balance=wallet.balance, currency=wallet.currency),
        transactions=[to_ledger_entry_out(row) for row in rows],
        summary=WalletSummaryOut(
            total_credits=await _ledger_sum(db, wallet.id, LedgerEntryType.CREDIT),
            total_debits=await _ledger_sum(db, wallet.id, LedgerEntryType.DEBIT),
            pending_withdrawals=pending,
            available_balance=max(wallet.balance - pending, _ZERO),
        ),
        pagination=LedgerPageOut(total=total, limit=limit, offset=offset, has_more=offset + len(rows) < total),
    )


@router.post("/transactions", response_model=WalletTransactionOut, status_code=status.HTTP_201_CREATED)
async def create_wallet_transaction(
    payload: WalletTransactionCreateIn,
    actor: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> WalletTransactionOut:
    user = await get_user_or_404(db, actor.user_id)

    if payload.type == WalletTransactionType.WITHDRAWAL:
        if payload.amount < settings.min_withdrawal_amount:
            raise HTTPException(
                status_code=400,
                detail=f"Minimum withdrawal amount is {settings.min_withdrawal_amount}",
            )
        wallet = (await db.execute(select(Wallet).where(Wallet.user_id == user.id))).scalar_one_or_none()
        if wallet is None:
            raise HTTPException(status_code=400, detail="Wallet not found")
        available = wallet.balance - await _pending_withdrawals(db, user.id)
        if available < payload.amount:
            raise HTTPException(status_code=400, detail="Insufficient wallet balance")

    tx = WalletTransaction(
        user_id=user.id,
        type=payload.type,
        amount=payload.amount,
        status=WalletTransactionStatus.PENDING,
        receipt_url=payload.receipt_url if payload.type == WalletTransactionType.DEPOSIT else None,
        card_number=payload.card_number if payload.type == WalletTransactionType.WITHDRAWAL else None,
        card_holder_name=payload.card_holder_name if payload.type == WalletTransactionType.WITHDRAWAL else None,
    )
    db.add(tx)
    await db.commit()
    await db.refresh(tx)
    logger.info("User %s requested %s of %s", user.id, tx.type, tx.amount)
    return to_wallet_transaction_out(tx, user)


@router.get("/transactions", response_model=list[WalletTransactionOut])
async def list_my_wallet_transactions(
    status: Literal["PENDING", "APPROVED", "REJECTED"] | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    actor: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[WalletTransactionOut]:
    stmt = (
        select(WalletTransaction)
        .where(WalletTransaction.user_id == actor.user_id)
        .order_by(desc(WalletTransaction.created_at))
        .limit(limit)
    )
    if status:
        stmt = stmt.where(WalletTransaction.status == status)
    rows = (await db.execute(stmt)).scalars().all()
    return [to_wallet_transaction_out(tx) for tx in rows]

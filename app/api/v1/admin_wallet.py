from __future__ import annotations

import logging
import uuid
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.api.v1.deps import get_user_or_404, settlement_http_error, to_wallet_transaction_out
from app.db.session import get_db
from app.models.wallet import WalletTransaction
from app.schemas.wallet import WalletDecisionIn, WalletReconciliationOut, WalletTransactionOut
from app.services.auth import AuthUser, require_admin
from app.services.errors import SettlementError
from app.services.settlement import reconcile_wallet, settle_wallet_transaction

router = APIRouter(prefix="/admin", tags=["admin-wallet"])
logger = logging.getLogger(__name__)


@router.get("/wallet-transactions", response_model=list[WalletTransactionOut])
async def list_wallet_transactions(
    status: Literal["PENDING", "APPROVED", "REJECTED"] | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> list[WalletTransactionOut]:
    stmt = (
        select(WalletTransaction)
        .options(selectinload(WalletTransaction.user))
        .order_by(WalletTransaction.created_at.desc())
        .limit(limit)
    )
    if status:
        stmt = stmt.where(WalletTransaction.status == status)
    rows = (await db.execute(stmt)).scalars().all()
    return [to_wallet_transaction_out(tx, tx.user) for tx in rows]


@router.put("/wallet-transactions/{transaction_id}", response_model=WalletTransactionOut)
async def decide_wallet_transaction(
    transaction_id: uuid.UUID,
    payload: WalletDecisionIn,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> WalletTransactionOut:
    try:
        tx = await settle_wallet_transaction(
            db,
            transaction_id,
            payload.action,
            payload.admin_notes,
            admin_id=admin.user_id,
        )
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    user = await get_user_or_404(db, tx.user_id)
    return to_wallet_transaction_out(tx, user)


@router.get("/wallets/{wallet_id}/reconciliation", response_model=WalletReconciliationOut)
async def wallet_reconciliation(
    wallet_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> WalletReconciliationOut:
    try:
        rec = await reconcile_wallet(db, wallet_id)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    if not rec.is_balanced:
        logger.warning("Wallet %s is out of balance by %s", rec.wallet_id, rec.difference)
    return WalletReconciliationOut(
        wallet_id=rec.wallet_id,
        balance=rec.balance,
        ledger_total=rec.ledger_total,
        difference=rec.difference,
        is_balanced=rec.is_balanced,
    )

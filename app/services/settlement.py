"""Admin settlement of payments and wallet requests.

Every public coroutine here runs as one unit of work on the given session:
the target record, wallet balance, ledger entry and audit row commit
together or not at all. Wallet balances are only ever changed through
``credit_wallet``/``debit_wallet``, and each change is paired with a ledger
entry.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, TypeVar

from prometheus_client import Counter
from sqlalchemy import case, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.core.config import settings
from app.models.audit import AdminAudit
from app.models.common import to_money, utcnow
from app.models.payment import Payment, PaymentStatus
from app.models.wallet import (
    LedgerEntryType,
    LedgerReferenceType,
    Wallet,
    WalletLedgerEntry,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
)
from app.services.errors import (
    InsufficientBalanceError,
    PaymentNotFoundError,
    TransactionNotPendingError,
    TransientStoreError,
    WalletNotFoundError,
    WalletTransactionNotFoundError,
)
from app.services.referrals import calculate_referral_bonus, find_completed_referral, is_bonus_eligible

logger = logging.getLogger(__name__)

T = TypeVar("T")

SETTLEMENT_DECISIONS = Counter(
    "settlement_decisions_total",
    "Admin settlement decisions by target kind and outcome",
    ["kind", "outcome"],
)
REFERRAL_BONUSES_POSTED = Counter("referral_bonuses_posted_total", "Referral bonuses credited to referrer wallets")

CANCELLED_BY_ADMIN_NOTE = "Payment cancelled by admin"
WALLET_ACTIONS = ("approve", "reject")
_RETRYABLE_STORE_ERRORS = (OperationalError, IntegrityError)


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass(frozen=True, slots=True)
class PaymentDecision:
    """Partial update of a payment. ``UNSET`` leaves a field untouched; ``None`` clears it."""

    status: str = UNSET
    admin_notes: str | None = UNSET
    amount: Decimal = UNSET
    receipt_url: str | None = UNSET


@dataclass(slots=True)
class PaymentDeletion:
    deleted: bool
    payment: Payment | None = None


@dataclass(slots=True)
class WalletReconciliation:
    wallet_id: uuid.UUID
    balance: Decimal
    ledger_total: Decimal

    @property
    def difference(self) -> Decimal:
        return self.balance - self.ledger_total

    @property
    def is_balanced(self) -> bool:
        return self.difference == 0


def apply_payment_decision(payment: Payment, decision: PaymentDecision) -> None:
    if decision.status is not UNSET:
        payment.status = decision.status
    if decision.admin_notes is not UNSET:
        payment.admin_notes = decision.admin_notes
    if decision.amount is not UNSET:
        payment.amount = decision.amount
    if decision.receipt_url is not UNSET:
        payment.receipt_url = decision.receipt_url


async def run_in_transaction(
    db: AsyncSession,
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Run ``operation(db, ...)`` atomically, retrying once if the store aborts it."""
    attempt = 0
    while True:
        attempt += 1
        try:
            async with db.begin():
                return await operation(db, *args, **kwargs)
        except _RETRYABLE_STORE_ERRORS as exc:
            if attempt >= 2:
                raise TransientStoreError("The store rejected the settlement twice") from exc
            logger.warning(
                "Store aborted %s (%s); retrying once",
                getattr(operation, "__name__", "transaction"),
                exc.__class__.__name__,
            )


def _dialect_insert(db: AsyncSession):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return pg_insert
    if name == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Wallet upsert is not supported on {name}")


async def _wallet_for_user(db: AsyncSession, user_id: uuid.UUID) -> Wallet | None:
    return (
        await db.execute(
            select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def credit_wallet(db: AsyncSession, *, user_id: uuid.UUID, amount: Decimal) -> Wallet:
    """Increment the user's wallet, creating it with ``amount`` if it does not exist yet."""
    now = utcnow()
    insert = _dialect_insert(db)
    stmt = insert(Wallet).values(
        id=uuid.uuid4(),
        user_id=user_id,
        balance=amount,
        currency=settings.default_currency,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Wallet.user_id],
        set_={"balance": Wallet.balance + stmt.excluded.balance, "updated_at": now},
    )
    await db.execute(stmt)
    wallet = await _wallet_for_user(db, user_id)
    if wallet is None:
        raise WalletNotFoundError(f"Wallet for user {user_id} vanished after upsert")
    return wallet


async def debit_wallet(db: AsyncSession, *, user_id: uuid.UUID, amount: Decimal) -> Wallet:
    """Decrement the user's wallet only if the balance covers ``amount``."""
    result = await db.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance >= amount)
        .values(balance=Wallet.balance - amount, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InsufficientBalanceError("Insufficient wallet balance")
    wallet = await _wallet_for_user(db, user_id)
    if wallet is None:
        raise WalletNotFoundError(f"Wallet for user {user_id} not found")
    return wallet


async def append_ledger_entry(
    db: AsyncSession,
    *,
    wallet: Wallet,
    amount: Decimal,
    entry_type: str,
    description: str,
    reference_id: str,
    reference_type: str,
) -> WalletLedgerEntry:
    row = WalletLedgerEntry(
        wallet_id=wallet.id,
        amount=amount,
        type=entry_type,
        description=description[:255],
        reference_id=reference_id,
        reference_type=reference_type,
    )
    db.add(row)
    await db.flush()
    return row


async def _bonus_already_posted(db: AsyncSession, payment_id: uuid.UUID) -> bool:
    existing = (
        await db.execute(
            select(WalletLedgerEntry.id)
            .where(
                WalletLedgerEntry.reference_type == LedgerReferenceType.PAYMENT,
                WalletLedgerEntry.reference_id == str(payment_id),
                WalletLedgerEntry.type == LedgerEntryType.CREDIT,
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    return existing is not None


async def _post_referral_bonus(db: AsyncSession, payment: Payment) -> WalletLedgerEntry | None:
    referral = await find_completed_referral(db, payment.user_id)
    if referral is None:
        return None
    # A payment that was approved, rejected and approved again pays out once.
    if await _bonus_already_posted(db, payment.id):
        logger.info("Referral bonus for payment %s already posted; skipping", payment.id)
        return None
    bonus = calculate_referral_bonus(payment.amount)
    if bonus <= 0:
        return None

    wallet = await credit_wallet(db, user_id=referral.referrer_id, amount=bonus)
    entry = await append_ledger_entry(
        db,
        wallet=wallet,
        amount=bonus,
        entry_type=LedgerEntryType.CREDIT,
        description=f"Referral bonus for {payment.user.display_name}",
        reference_id=str(payment.id),
        reference_type=LedgerReferenceType.PAYMENT,
    )
    REFERRAL_BONUSES_POSTED.inc()
    logger.info(
        "Posted referral bonus %s to user %s for payment %s",
        bonus,
        referral.referrer_id,
        payment.id,
    )
    return entry


def _locked_payments_stmt(*payment_ids: uuid.UUID):
    return (
        select(Payment)
        .where(Payment.id.in_(payment_ids))
        .options(selectinload(Payment.user), selectinload(Payment.program))
        .order_by(Payment.created_at.asc())
        .with_for_update(of=Payment)
        .execution_options(populate_existing=True)
    )


async def _lock_payment(db: AsyncSession, payment_id: uuid.UUID) -> Payment:
    payment = (await db.execute(_locked_payments_stmt(payment_id))).scalar_one_or_none()
    if payment is None:
        raise PaymentNotFoundError(f"Payment {payment_id} not found")
    return payment


def _audit(
    db: AsyncSession,
    *,
    admin_id: uuid.UUID | None,
    action: str,
    target: str,
    target_id: uuid.UUID,
    details: dict[str, Any],
) -> None:
    db.add(AdminAudit(admin_id=admin_id, action=action, target=target, target_id=str(target_id), details=details))


async def _apply_decision(
    db: AsyncSession,
    payment: Payment,
    decision: PaymentDecision,
    *,
    admin_id: uuid.UUID | None,
) -> Payment:
    prior_status = payment.status
    apply_payment_decision(payment, decision)
    payment.processed_at = utcnow()
    await db.flush()

    bonus_entry = None
    if is_bonus_eligible(prior_status, payment.status):
        bonus_entry = await _post_referral_bonus(db, payment)

    _audit(
        db,
        admin_id=admin_id,
        action=f"PAYMENT_{payment.status}",
        target="payment",
        target_id=payment.id,
        details={
            "prior_status": prior_status,
            "status": payment.status,
            "amount": str(payment.amount),
            "referral_bonus": str(bonus_entry.amount) if bonus_entry is not None else None,
        },
    )
    return payment


async def _settle_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    decision: PaymentDecision,
    admin_id: uuid.UUID | None,
) -> Payment:
    payment = await _lock_payment(db, payment_id)
    return await _apply_decision(db, payment, decision, admin_id=admin_id)


async def settle_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    decision: PaymentDecision,
    *,
    admin_id: uuid.UUID | None = None,
) -> Payment:
    try:
        payment = await run_in_transaction(db, _settle_payment, payment_id, decision, admin_id)
    except Exception as exc:
        SETTLEMENT_DECISIONS.labels(kind="payment", outcome=exc.__class__.__name__).inc()
        raise
    SETTLEMENT_DECISIONS.labels(kind="payment", outcome=payment.status).inc()
    logger.info("Payment %s settled as %s", payment.id, payment.status)
    return payment


async def _delete_payment(db: AsyncSession, payment_id: uuid.UUID, admin_id: uuid.UUID | None) -> PaymentDeletion:
    payment = await _lock_payment(db, payment_id)
    if payment.status == PaymentStatus.PENDING:
        await db.delete(payment)
        _audit(db, admin_id=admin_id, action="PAYMENT_DELETED", target="payment", target_id=payment_id, details={})
        return PaymentDeletion(deleted=True)

    prior_status = payment.status
    payment.status = PaymentStatus.REJECTED
    payment.admin_notes = CANCELLED_BY_ADMIN_NOTE
    payment.processed_at = utcnow()
    _audit(
        db,
        admin_id=admin_id,
        action="PAYMENT_CANCELLED",
        target="payment",
        target_id=payment_id,
        details={"prior_status": prior_status},
    )
    return PaymentDeletion(deleted=False, payment=payment)


async def delete_payment(
    db: AsyncSession,
    payment_id: uuid.UUID,
    *,
    admin_id: uuid.UUID | None = None,
) -> PaymentDeletion:
    """Hard-delete a pending payment; processed payments are cancelled instead so their history survives."""
    result = await run_in_transaction(db, _delete_payment, payment_id, admin_id)
    outcome = "deleted" if result.deleted else "cancelled"
    SETTLEMENT_DECISIONS.labels(kind="payment_delete", outcome=outcome).inc()
    logger.info("Payment %s %s by admin", payment_id, outcome)
    return result


async def _bulk_settle_payments(
    db: AsyncSession,
    payment_ids: Sequence[uuid.UUID],
    decision: PaymentDecision,
    admin_id: uuid.UUID | None,
) -> list[Payment]:
    wanted = list(dict.fromkeys(payment_ids))
    payments = list((await db.execute(_locked_payments_stmt(*wanted))).scalars().all())
    if not payments:
        raise PaymentNotFoundError("No payments found to update")

    found = {p.id for p in payments}
    missing = [str(pid) for pid in wanted if pid not in found]
    if missing:
        logger.warning("Bulk settlement skipped %d unknown payment id(s): %s", len(missing), ", ".join(missing))

    for payment in payments:
        await _apply_decision(db, payment, decision, admin_id=admin_id)
    return payments


async def bulk_settle_payments(
    db: AsyncSession,
    payment_ids: Sequence[uuid.UUID],
    status: str,
    admin_notes: str | None = UNSET,
    *,
    admin_id: uuid.UUID | None = None,
) -> list[Payment]:
    """Apply one decision to many payments in a single transaction.

    Ids that do not match a payment are skipped (nothing is written for them);
    ``PaymentNotFoundError`` is raised only when none match.
    """
    decision = PaymentDecision(status=status, admin_notes=admin_notes)
    payments = await run_in_transaction(db, _bulk_settle_payments, payment_ids, decision, admin_id)
    SETTLEMENT_DECISIONS.labels(kind="payment_bulk", outcome=status).inc(len(payments))
    logger.info("Bulk settled %d payment(s) as %s", len(payments), status)
    return payments


async def _settle_wallet_transaction(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    action: str,
    admin_notes: str | None,
    admin_id: uuid.UUID | None,
) -> WalletTransaction:
    tx = (
        await db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.id == transaction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if tx is None:
        raise WalletTransactionNotFoundError(f"Wallet transaction {transaction_id} not found")
    if tx.status != WalletTransactionStatus.PENDING:
        raise TransactionNotPendingError("Transaction already processed")

    if action == "approve":
        if tx.type == WalletTransactionType.DEPOSIT:
            wallet = await credit_wallet(db, user_id=tx.user_id, amount=tx.amount)
            entry_type = LedgerEntryType.CREDIT
            description = "DEPOSIT - Deposit approved"
        else:
            wallet = await debit_wallet(db, user_id=tx.user_id, amount=tx.amount)
            entry_type = LedgerEntryType.DEBIT
            description = "WITHDRAWAL - Withdrawal approved"
        await append_ledger_entry(
            db,
            wallet=wallet,
            amount=tx.amount,
            entry_type=entry_type,
            description=description,
            reference_id=str(tx.id),
            reference_type=LedgerReferenceType.WALLET_TRANSACTION,
        )
        tx.status = WalletTransactionStatus.APPROVED
    else:
        tx.status = WalletTransactionStatus.REJECTED

    tx.admin_notes = admin_notes
    tx.processed_by = admin_id
    tx.processed_at = utcnow()
    _audit(
        db,
        admin_id=admin_id,
        action=f"WALLET_TRANSACTION_{action.upper()}",
        target="wallet_transaction",
        target_id=tx.id,
        details={
            "transaction_type": tx.type,
            "amount": str(tx.amount),
            "user_id": str(tx.user_id),
            "admin_notes": admin_notes,
        },
    )
    await db.flush()
    return tx


async def settle_wallet_transaction(
    db: AsyncSession,
    transaction_id: uuid.UUID,
    action: str,
    admin_notes: str | None = None,
    *,
    admin_id: uuid.UUID | None = None,
) -> WalletTransaction:
    """Approve or reject a pending deposit/withdrawal.

    An approval that would overdraw the wallet raises
    ``InsufficientBalanceError`` and leaves the request PENDING.
    """
    if action not in WALLET_ACTIONS:
        raise ValueError(f"Unknown wallet action: {action}")
    try:
        tx = await run_in_transaction(db, _settle_wallet_transaction, transaction_id, action, admin_notes, admin_id)
    except Exception as exc:
        SETTLEMENT_DECISIONS.labels(kind="wallet_transaction", outcome=exc.__class__.__name__).inc()
        raise
    SETTLEMENT_DECISIONS.labels(kind="wallet_transaction", outcome=tx.status).inc()
    logger.info("Wallet transaction %s (%s %s) settled as %s", tx.id, tx.type, tx.amount, tx.status)
    return tx


def _ledger_total_stmt():
    return func.coalesce(
        func.sum(
            case(
                (WalletLedgerEntry.type == LedgerEntryType.CREDIT, WalletLedgerEntry.amount),
                else_=-WalletLedgerEntry.amount,
            )
        ),
        0,
    )


async def reconcile_wallet(db: AsyncSession, wallet_id: uuid.UUID) -> WalletReconciliation:
    wallet = (await db.execute(select(Wallet).where(Wallet.id == wallet_id))).scalar_one_or_none()
    if wallet is None:
        raise WalletNotFoundError(f"Wallet {wallet_id} not found")
    total = (
        await db.execute(select(_ledger_total_stmt()).where(WalletLedgerEntry.wallet_id == wallet_id))
    ).scalar_one()
    return WalletReconciliation(wallet_id=wallet.id, balance=to_money(wallet.balance), ledger_total=to_money(total))


async def find_unbalanced_wallets(db: AsyncSession) -> list[WalletReconciliation]:
    totals = (
        select(WalletLedgerEntry.wallet_id.label("wallet_id"), _ledger_total_stmt().label("total"))
        .group_by(WalletLedgerEntry.wallet_id)
        .subquery()
    )
    rows = (
        await db.execute(
            select(Wallet.id, Wallet.balance, totals.c.total).outerjoin(totals, totals.c.wallet_id == Wallet.id)
        )
    ).all()
    out = []
    for wallet_id, balance, total in rows:
        rec = WalletReconciliation(wallet_id=wallet_id, balance=to_money(balance), ledger_total=to_money(total))
        if not rec.is_balanced:
            out.append(rec)
    return out

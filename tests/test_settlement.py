import asyncio
import uuid
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from app.models import (
    AdminAudit,
    LedgerEntryType,
    LedgerReferenceType,
    Payment,
    PaymentStatus,
    Referral,
    ReferralStatus,
    Wallet,
    WalletLedgerEntry,
    WalletTransaction,
    WalletTransactionStatus,
    WalletTransactionType,
)
from app.services import settlement
from app.services.errors import (
    InsufficientBalanceError,
    PaymentNotFoundError,
    TransactionNotPendingError,
    TransientStoreError,
    WalletNotFoundError,
    WalletTransactionNotFoundError,
)
from app.services.settlement import (
    CANCELLED_BY_ADMIN_NOTE,
    PaymentDecision,
    bulk_settle_payments,
    delete_payment,
    find_unbalanced_wallets,
    reconcile_wallet,
    settle_payment,
    settle_wallet_transaction,
)

APPROVE = PaymentDecision(status=PaymentStatus.APPROVED)
REJECT = PaymentDecision(status=PaymentStatus.REJECTED)


async def _ledger_for(fetch, user_id):
    return await fetch(
        select(WalletLedgerEntry).join(Wallet, Wallet.id == WalletLedgerEntry.wallet_id).where(Wallet.user_id == user_id)
    )


async def _approve(session_factory, payment_id, decision=APPROVE, admin_id=None):
    async with session_factory() as db:
        return await settle_payment(db, payment_id, decision, admin_id=admin_id)


async def test_approval_credits_referrer_with_bonus(world, session_factory, fetch, wallet_of) -> None:
    payment = await _approve(session_factory, world.payment_id, admin_id=world.admin_id)

    assert payment.status == PaymentStatus.APPROVED
    assert payment.processed_at is not None

    wallet = await wallet_of(world.referrer_id)
    assert wallet.balance == Decimal("10.00")

    entries = await _ledger_for(fetch, world.referrer_id)
    assert len(entries) == 1
    assert entries[0].type == LedgerEntryType.CREDIT
    assert entries[0].amount == Decimal("10.00")
    assert entries[0].reference_id == str(world.payment_id)
    assert entries[0].reference_type == LedgerReferenceType.PAYMENT
    assert entries[0].description == "Referral bonus for Max"

    audits = await fetch(select(AdminAudit).where(AdminAudit.target_id == str(world.payment_id)))
    assert [a.action for a in audits] == ["PAYMENT_APPROVED"]
    assert audits[0].details["referral_bonus"] == "10.00"


async def test_reapproval_does_not_pay_twice(world, session_factory, fetch, wallet_of) -> None:
    await _approve(session_factory, world.payment_id)
    await _approve(session_factory, world.payment_id, PaymentDecision(status=PaymentStatus.APPROVED, admin_notes="ok"))

    assert (await wallet_of(world.referrer_id)).balance == Decimal("10.00")
    assert len(await _ledger_for(fetch, world.referrer_id)) == 1


async def test_approve_reject_approve_pays_once(world, session_factory, fetch, wallet_of) -> None:
    await _approve(session_factory, world.payment_id)
    await _approve(session_factory, world.payment_id, REJECT)
    await _approve(session_factory, world.payment_id)

    assert (await wallet_of(world.referrer_id)).balance == Decimal("10.00")
    assert len(await _ledger_for(fetch, world.referrer_id)) == 1


async def test_concurrent_approvals_post_one_bonus(world, session_factory, fetch, wallet_of) -> None:
    results = await asyncio.gather(
        _approve(session_factory, world.payment_id),
        _approve(session_factory, world.payment_id),
    )

    assert all(p.status == PaymentStatus.APPROVED for p in results)
    assert (await wallet_of(world.referrer_id)).balance == Decimal("10.00")
    assert len(await _ledger_for(fetch, world.referrer_id)) == 1


async def test_rejection_posts_nothing(world, session_factory, wallet_of) -> None:
    payment = await _approve(session_factory, world.payment_id, REJECT)

    assert payment.status == PaymentStatus.REJECTED
    assert await wallet_of(world.referrer_id) is None


async def test_no_bonus_without_completed_referral(world, session_factory, wallet_of) -> None:
    async with session_factory() as db:
        referral = (await db.execute(select(Referral))).scalar_one()
        referral.status = ReferralStatus.PENDING
        await db.commit()

    await _approve(session_factory, world.payment_id)

    assert await wallet_of(world.referrer_id) is None


async def test_partial_update_keeps_unsent_fields(world, session_factory) -> None:
    payment = await _approve(session_factory, world.payment_id, PaymentDecision(admin_notes="checked receipt"))

    assert payment.status == PaymentStatus.PENDING
    assert payment.admin_notes == "checked receipt"
    assert payment.amount == Decimal("100.00")
    assert payment.receipt_url == "https://receipts.example.com/1.png"


async def test_bonus_uses_updated_amount(world, session_factory, wallet_of) -> None:
    await _approve(
        session_factory,
        world.payment_id,
        PaymentDecision(status=PaymentStatus.APPROVED, amount=Decimal("250.00")),
    )

    assert (await wallet_of(world.referrer_id)).balance == Decimal("25.00")


async def test_failure_mid_settlement_rolls_back_everything(world, session_factory, fetch, wallet_of, monkeypatch) -> None:
    async def _boom(*args, **kwargs):
        raise RuntimeError("ledger write failed")

    monkeypatch.setattr(settlement, "append_ledger_entry", _boom)

    with pytest.raises(RuntimeError):
        await _approve(session_factory, world.payment_id)

    payment = (await fetch(select(Payment).where(Payment.id == world.payment_id)))[0]
    assert payment.status == PaymentStatus.PENDING
    assert payment.processed_at is None
    assert await wallet_of(world.referrer_id) is None
    assert await fetch(select(AdminAudit)) == []


async def test_store_failure_is_retried_once(world, session_factory, monkeypatch) -> None:
    calls = []
    original = settlement._lock_payment

    async def _flaky(db, payment_id):
        calls.append(payment_id)
        if len(calls) == 1:
            raise OperationalError("SELECT", {}, Exception("database is locked"))
        return await original(db, payment_id)

    monkeypatch.setattr(settlement, "_lock_payment", _flaky)

    payment = await _approve(session_factory, world.payment_id)

    assert len(calls) == 2
    assert payment.status == PaymentStatus.APPROVED


async def test_second_store_failure_raises_transient_error(world, session_factory, fetch, monkeypatch) -> None:
    calls = []

    async def _always_locked(db, payment_id):
        calls.append(payment_id)
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(settlement, "_lock_payment", _always_locked)

    with pytest.raises(TransientStoreError):
        await _approve(session_factory, world.payment_id)

    assert len(calls) == 2
    payment = (await fetch(select(Payment).where(Payment.id == world.payment_id)))[0]
    assert payment.status == PaymentStatus.PENDING


async def test_unknown_payment_raises_not_found(world, session_factory) -> None:
    with pytest.raises(PaymentNotFoundError):
        await _approve(session_factory, uuid.uuid4())


async def test_delete_pending_payment_removes_it(world, session_factory, fetch) -> None:
    async with session_factory() as db:
        result = await delete_payment(db, world.payment_id, admin_id=world.admin_id)

    assert result.deleted
    assert result.payment is None
    assert await fetch(select(Payment).where(Payment.id == world.payment_id)) == []


async def test_delete_processed_payment_cancels_it(world, session_factory, wallet_of) -> None:
    await _approve(session_factory, world.payment_id)

    async with session_factory() as db:
        result = await delete_payment(db, world.payment_id, admin_id=world.admin_id)

    assert not result.deleted
    assert result.payment.status == PaymentStatus.REJECTED
    assert result.payment.admin_notes == CANCELLED_BY_ADMIN_NOTE
    # the bonus already credited stays on the books
    assert (await wallet_of(world.referrer_id)).balance == Decimal("10.00")


async def test_bulk_settlement_skips_unknown_ids(world, session_factory, seed, wallet_of) -> None:
    second = Payment(
        user_id=world.member_id,
        program_id=world.program_id,
        amount=Decimal("50.00"),
        status=PaymentStatus.PENDING,
    )
    await seed(second)

    async with session_factory() as db:
        payments = await bulk_settle_payments(
            db,
            [world.payment_id, uuid.uuid4(), second.id],
            PaymentStatus.APPROVED,
            "batch",
            admin_id=world.admin_id,
        )

    assert {p.id for p in payments} == {world.payment_id, second.id}
    assert all(p.status == PaymentStatus.APPROVED and p.admin_notes == "batch" for p in payments)
    assert (await wallet_of(world.referrer_id)).balance == Decimal("15.00")


async def test_bulk_settlement_with_no_matches_raises(world, session_factory) -> None:
    async with session_factory() as db:
        with pytest.raises(PaymentNotFoundError):
            await bulk_settle_payments(db, [uuid.uuid4()], PaymentStatus.APPROVED)


async def _request(seed, user_id, tx_type, amount) -> uuid.UUID:
    tx = WalletTransaction(user_id=user_id, type=tx_type, amount=amount, status=WalletTransactionStatus.PENDING)
    await seed(tx)
    return tx.id


async def test_withdrawal_larger_than_balance_is_refused(world, session_factory, seed, fetch, funded_wallet, wallet_of) -> None:
    await funded_wallet(world.member_id, Decimal("300.00"))
    tx_id = await _request(seed, world.member_id, WalletTransactionType.WITHDRAWAL, Decimal("500.00"))

    async with session_factory() as db:
        with pytest.raises(InsufficientBalanceError):
            await settle_wallet_transaction(db, tx_id, "approve", admin_id=world.admin_id)

    assert (await wallet_of(world.member_id)).balance == Decimal("300.00")
    tx = (await fetch(select(WalletTransaction).where(WalletTransaction.id == tx_id)))[0]
    assert tx.status == WalletTransactionStatus.PENDING
    assert tx.processed_at is None
    debits = [e for e in await _ledger_for(fetch, world.member_id) if e.type == LedgerEntryType.DEBIT]
    assert debits == []


async def test_withdrawal_within_balance_debits_wallet(world, session_factory, seed, fetch, funded_wallet, wallet_of) -> None:
    wallet_id = await funded_wallet(world.member_id, Decimal("300.00"))
    tx_id = await _request(seed, world.member_id, WalletTransactionType.WITHDRAWAL, Decimal("120.00"))

    async with session_factory() as db:
        tx = await settle_wallet_transaction(db, tx_id, "approve", "paid out", admin_id=world.admin_id)

    assert tx.status == WalletTransactionStatus.APPROVED
    assert tx.processed_by == world.admin_id
    assert tx.admin_notes == "paid out"
    assert (await wallet_of(world.member_id)).balance == Decimal("180.00")

    async with session_factory() as db:
        rec = await reconcile_wallet(db, wallet_id)
    assert rec.is_balanced
    assert rec.ledger_total == Decimal("180.00")


async def test_concurrent_withdrawals_cannot_overdraw(world, session_factory, seed, funded_wallet, wallet_of) -> None:
    await funded_wallet(world.member_id, Decimal("100.00"))
    tx_ids = [
        await _request(seed, world.member_id, WalletTransactionType.WITHDRAWAL, Decimal("60.00")) for _ in range(3)
    ]

    async def _decide(tx_id):
        async with session_factory() as db:
            return await settle_wallet_transaction(db, tx_id, "approve", admin_id=world.admin_id)

    results = await asyncio.gather(*(_decide(tx_id) for tx_id in tx_ids), return_exceptions=True)

    approved = [r for r in results if isinstance(r, WalletTransaction)]
    refused = [r for r in results if isinstance(r, InsufficientBalanceError)]
    assert len(approved) == 1
    assert len(refused) == 2
    assert (await wallet_of(world.member_id)).balance == Decimal("40.00")
    async with session_factory() as db:
        assert await find_unbalanced_wallets(db) == []


async def test_deposit_approval_creates_wallet(world, session_factory, seed, fetch, wallet_of) -> None:
    tx_id = await _request(seed, world.member_id, WalletTransactionType.DEPOSIT, Decimal("50.00"))

    async with session_factory() as db:
        await settle_wallet_transaction(db, tx_id, "approve", admin_id=world.admin_id)

    wallet = await wallet_of(world.member_id)
    assert wallet.balance == Decimal("50.00")
    entries = await _ledger_for(fetch, world.member_id)
    assert [(e.type, e.amount, e.reference_id) for e in entries] == [
        (LedgerEntryType.CREDIT, Decimal("50.00"), str(tx_id))
    ]
    assert entries[0].description == "DEPOSIT - Deposit approved"


async def test_rejected_request_leaves_balance_alone(world, session_factory, seed, funded_wallet, wallet_of) -> None:
    await funded_wallet(world.member_id, Decimal("30.00"))
    tx_id = await _request(seed, world.member_id, WalletTransactionType.WITHDRAWAL, Decimal("20.00"))

    async with session_factory() as db:
        tx = await settle_wallet_transaction(db, tx_id, "reject", "card mismatch", admin_id=world.admin_id)

    assert tx.status == WalletTransactionStatus.REJECTED
    assert (await wallet_of(world.member_id)).balance == Decimal("30.00")


async def test_processed_request_cannot_be_decided_again(world, session_factory, seed) -> None:
    tx_id = await _request(seed, world.member_id, WalletTransactionType.DEPOSIT, Decimal("5.00"))

    async with session_factory() as db:
        await settle_wallet_transaction(db, tx_id, "reject", admin_id=world.admin_id)
    async with session_factory() as db:
        with pytest.raises(TransactionNotPendingError):
            await settle_wallet_transaction(db, tx_id, "approve", admin_id=world.admin_id)


async def test_unknown_wallet_request_and_action(world, session_factory) -> None:
    async with session_factory() as db:
        with pytest.raises(WalletTransactionNotFoundError):
            await settle_wallet_transaction(db, uuid.uuid4(), "approve")
        with pytest.raises(ValueError):
            await settle_wallet_transaction(db, uuid.uuid4(), "refund")


async def test_every_wallet_reconciles_after_mixed_activity(world, session_factory, seed, funded_wallet) -> None:
    await funded_wallet(world.member_id, Decimal("40.00"))
    deposit = await _request(seed, world.member_id, WalletTransactionType.DEPOSIT, Decimal("60.00"))
    withdrawal = await _request(seed, world.member_id, WalletTransactionType.WITHDRAWAL, Decimal("75.00"))

    await _approve(session_factory, world.payment_id)
    async with session_factory() as db:
        await settle_wallet_transaction(db, deposit, "approve")
    async with session_factory() as db:
        await settle_wallet_transaction(db, withdrawal, "approve")

    async with session_factory() as db:
        assert await find_unbalanced_wallets(db) == []


async def test_drifted_wallet_is_reported(world, session_factory, seed) -> None:
    wallet = Wallet(user_id=world.referrer_id, balance=Decimal("20.00"))
    await seed(wallet)

    async with session_factory() as db:
        unbalanced = await find_unbalanced_wallets(db)
        rec = await reconcile_wallet(db, wallet.id)

    assert [r.wallet_id for r in unbalanced] == [wallet.id]
    assert rec.difference == Decimal("20.00")
    assert not rec.is_balanced


async def test_reconcile_unknown_wallet(world, session_factory) -> None:
    async with session_factory() as db:
        with pytest.raises(WalletNotFoundError):
            await reconcile_wallet(db, uuid.uuid4())

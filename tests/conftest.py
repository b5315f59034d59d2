from __future__ import annotations

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-bytes-for-hs256")
os.environ["RATE_LIMIT_PER_MINUTE"] = "0"

import uuid
from decimal import Decimal
from types import SimpleNamespace

import httpx
import jwt
import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.db.base import Base
from app.db.session import build_engine, get_db
from app.models import (
    LedgerEntryType,
    Payment,
    PaymentStatus,
    Program,
    Referral,
    ReferralStatus,
    User,
    UserRole,
    Wallet,
    WalletLedgerEntry,
)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
def seed(session_factory):
    async def _seed(*rows) -> None:
        async with session_factory() as db:
            db.add_all(rows)
            await db.commit()

    return _seed


@pytest.fixture
def fetch(session_factory):
    """Run a query in a fresh session so no transaction outlives the check."""

    async def _fetch(stmt):
        async with session_factory() as db:
            return (await db.execute(stmt)).scalars().all()

    return _fetch


@pytest.fixture
async def world(seed) -> SimpleNamespace:
    admin = User(email="admin@example.com", first_name="Ada", role=UserRole.ADMIN)
    referrer = User(email="ref@example.com", first_name="Rita", last_name="Referrer")
    member = User(
        email="member@example.com",
        first_name="Max",
        last_name="Member",
        username="maxm",
        telegram_id="@maxm",
    )
    program = Program(name="Strength Basics", category="strength", price=Decimal("100.00"), duration=30)
    await seed(admin, referrer, member, program)

    referral = Referral(referrer_id=referrer.id, referred_user_id=member.id, status=ReferralStatus.COMPLETED)
    payment = Payment(
        user_id=member.id,
        program_id=program.id,
        amount=Decimal("100.00"),
        currency="USD",
        status=PaymentStatus.PENDING,
        receipt_url="https://receipts.example.com/1.png",
    )
    await seed(referral, payment)

    return SimpleNamespace(
        admin_id=admin.id,
        referrer_id=referrer.id,
        member_id=member.id,
        program_id=program.id,
        payment_id=payment.id,
    )


@pytest.fixture
def funded_wallet(seed):
    """Give a user a wallet whose balance is backed by a matching ledger credit."""

    async def _fund(user_id: uuid.UUID, amount: Decimal) -> uuid.UUID:
        wallet = Wallet(user_id=user_id, balance=amount, currency="USD")
        await seed(wallet)
        await seed(
            WalletLedgerEntry(
                wallet_id=wallet.id,
                amount=amount,
                type=LedgerEntryType.CREDIT,
                description="Opening balance",
            )
        )
        return wallet.id

    return _fund


@pytest.fixture
def wallet_of(fetch):
    async def _wallet_of(user_id: uuid.UUID) -> Wallet | None:
        rows = await fetch(select(Wallet).where(Wallet.user_id == user_id))
        return rows[0] if rows else None

    return _wallet_of


def make_token(user_id: uuid.UUID, role: str = UserRole.USER, email: str = "user@example.com") -> str:
    return jwt.encode(
        {"sub": str(user_id), "role": role, "email": email},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )


@pytest.fixture
def auth_headers():
    def _headers(user_id: uuid.UUID, role: str = UserRole.USER) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _headers


@pytest.fixture
async def client(session_factory):
    from app.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
        yield http
    app.dependency_overrides.clear()

from __future__ import annotations

import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.common import to_money
from app.models.payment import PaymentStatus
from app.models.user import Referral, ReferralStatus

REFERRAL_BONUS_RATE = Decimal("0.10")


def calculate_referral_bonus(payment_amount: Decimal | int | str) -> Decimal:
    """Referrer's share of an approved payment, rounded half-up to cents."""
    amount = Decimal(str(payment_amount))
    if amount < 0:
        raise ValueError("payment amount must not be negative")
    return to_money(amount * REFERRAL_BONUS_RATE)


def is_bonus_eligible(prior_status: str, new_status: str) -> bool:
    return new_status == PaymentStatus.APPROVED and prior_status != PaymentStatus.APPROVED


async def find_completed_referral(db: AsyncSession, referred_user_id: uuid.UUID) -> Referral | None:
    return (
        await db.execute(
            select(Referral)
            .where(
                Referral.referred_user_id == referred_user_id,
                Referral.status == ReferralStatus.COMPLETED,
            )
            .limit(1)
        )
    ).scalar_one_or_none()

from __future__ import annotations

import math

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.api.v1.deps import get_user_or_404, to_payment_out
from app.db.session import get_db
from app.models.payment import Payment, PaymentStatus
from app.models.user import Program
from app.schemas.common import PaginationOut
from app.schemas.payment import PaymentCreateIn, PaymentListOut, PaymentOut, PaymentStatusLiteral
from app.services.auth import AuthUser, get_current_user

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: PaymentCreateIn,
    actor: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentOut:
    user = await get_user_or_404(db, actor.user_id)
    program = await db.get(Program, payload.program_id)
    if program is None or not program.is_active:
        raise HTTPException(status_code=404, detail="Program not found or inactive")

    payment = Payment(
        user_id=user.id,
        program_id=program.id,
        amount=payload.amount,
        currency=payload.currency,
        status=PaymentStatus.PENDING,
        receipt_url=payload.receipt_url,
        admin_notes=(payload.notes or "").strip() or None,
    )
    db.add(payment)
    await db.commit()

    row = (
        await db.execute(
            select(Payment)
            .where(Payment.id == payment.id)
            .options(selectinload(Payment.user), selectinload(Payment.program))
            .execution_options(populate_existing=True)
        )
    ).scalar_one()
    return to_payment_out(row)


@router.get("", response_model=PaymentListOut)
async def list_my_payments(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: PaymentStatusLiteral | None = Query(default=None),
    actor: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> PaymentListOut:
    filters = [Payment.user_id == actor.user_id]
    if status:
        filters.append(Payment.status == status)

    total = (await db.execute(select(func.count(Payment.id)).where(*filters))).scalar_one()
    rows = (
        await db.execute(
            select(Payment)
            .where(*filters)
            .options(selectinload(Payment.user), selectinload(Payment.program))
            .order_by(desc(Payment.created_at))
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()
    return PaymentListOut(
        payments=[to_payment_out(row) for row in rows],
        pagination=PaginationOut(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
    )

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.api.v1.deps import settlement_http_error, to_payment_out
from app.db.session import get_db
from app.models.common import utcnow
from app.models.payment import Payment, PaymentStatus
from app.schemas.common import PaginationOut
from app.schemas.payment import (
    ExportStatusLiteral,
    PaymentBulkUpdateIn,
    PaymentBulkUpdateOut,
    PaymentDeleteOut,
    PaymentExportIn,
    PaymentExportOut,
    PaymentListOut,
    PaymentOut,
    PaymentStatusLiteral,
    PaymentSummaryOut,
    PaymentUpdateIn,
)
from app.services.auth import AuthUser, require_admin
from app.services.errors import SettlementError
from app.services.exports import (
    STANDARD_HEADERS,
    custom_headers,
    custom_row,
    export_filename,
    query_payments_for_export,
    render_csv,
    standard_row,
)
from app.services.settlement import UNSET, bulk_settle_payments, delete_payment, settle_payment

router = APIRouter(prefix="/admin/payments", tags=["admin-payments"])
logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS = {
    "createdAt": Payment.created_at,
    "updatedAt": Payment.updated_at,
    "processedAt": Payment.processed_at,
    "amount": Payment.amount,
    "status": Payment.status,
}


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache",
        },
    )


async def _payment_summary(db: AsyncSession) -> PaymentSummaryOut:
    rows = (
        await db.execute(
            select(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0)).group_by(
                Payment.status
            )
        )
    ).all()
    counts = {status: int(count) for status, count, _ in rows}
    sums = {status: Decimal(str(total)) for status, _, total in rows}
    return PaymentSummaryOut(
        total=sum(counts.values()),
        pending=counts.get(PaymentStatus.PENDING, 0),
        approved=counts.get(PaymentStatus.APPROVED, 0),
        rejected=counts.get(PaymentStatus.REJECTED, 0),
        total_amount=sum(sums.values(), Decimal("0")),
        pending_amount=sums.get(PaymentStatus.PENDING, Decimal("0")),
        approved_amount=sums.get(PaymentStatus.APPROVED, Decimal("0")),
    )


@router.get("", response_model=PaymentListOut)
async def list_payments(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=200),
    status: PaymentStatusLiteral | None = Query(default=None),
    program_id: uuid.UUID | None = Query(default=None, alias="programId"),
    user_id: uuid.UUID | None = Query(default=None, alias="userId"),
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PaymentListOut:
    column = _SORTABLE_COLUMNS.get(sort_by)
    if column is None:
        raise HTTPException(status_code=400, detail=f"sortBy must be one of {', '.join(_SORTABLE_COLUMNS)}")

    filters = []
    if status:
        filters.append(Payment.status == status)
    if program_id:
        filters.append(Payment.program_id == program_id)
    if user_id:
        filters.append(Payment.user_id == user_id)

    total = (await db.execute(select(func.count(Payment.id)).where(*filters))).scalar_one()
    rows = (
        await db.execute(
            select(Payment)
            .where(*filters)
            .options(selectinload(Payment.user), selectinload(Payment.program))
            .order_by(desc(column) if sort_order == "desc" else asc(column))
            .offset((page - 1) * limit)
            .limit(limit)
        )
    ).scalars().all()

    return PaymentListOut(
        payments=[to_payment_out(row) for row in rows],
        pagination=PaginationOut(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        summary=await _payment_summary(db),
    )


@router.put("", response_model=PaymentBulkUpdateOut)
async def bulk_update_payments(
    payload: PaymentBulkUpdateIn,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PaymentBulkUpdateOut:
    admin_notes = payload.admin_notes if "admin_notes" in payload.model_fields_set else UNSET
    try:
        payments = await bulk_settle_payments(
            db,
            payload.payment_ids,
            payload.status,
            admin_notes,
            admin_id=admin.user_id,
        )
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    return PaymentBulkUpdateOut(
        message=f"Successfully updated {len(payments)} payments",
        count=len(payments),
        updated_payments=[to_payment_out(p) for p in payments],
    )


@router.get("/export")
async def export_payments(
    status: ExportStatusLiteral | None = Query(default=None),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    format: Literal["csv", "json"] = Query(default="csv"),
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payments = await query_payments_for_export(db, status=status, start_date=start_date, end_date=end_date)
    logger.info("Admin %s exported %d payment(s) as %s", admin.user_id, len(payments), format)

    if format == "json":
        return PaymentExportOut(
            payments=[to_payment_out(p) for p in payments],
            exported_at=utcnow(),
            total_records=len(payments),
        )

    content = render_csv(STANDARD_HEADERS, [standard_row(p) for p in payments])
    return _csv_response(content, export_filename())


@router.post("/export")
async def export_payments_custom(
    payload: PaymentExportIn,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payments = await query_payments_for_export(
        db,
        status=payload.status,
        start_date=payload.start_date,
        end_date=payload.end_date,
        payment_ids=payload.payment_ids,
    )

    if payload.format == "json":
        return PaymentExportOut(
            payments=[to_payment_out(p) for p in payments],
            exported_at=utcnow(),
            total_records=len(payments),
            filters={
                "status": payload.status,
                "startDate": payload.start_date.isoformat() if payload.start_date else None,
                "endDate": payload.end_date.isoformat() if payload.end_date else None,
            },
        )

    options = {
        "include_user_details": payload.include_user_details,
        "include_program_details": payload.include_program_details,
    }
    content = render_csv(custom_headers(**options), [custom_row(p, **options) for p in payments])
    return _csv_response(content, export_filename("payments_custom_export"))


@router.get("/{payment_id}", response_model=PaymentOut)
async def get_payment(
    payment_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PaymentOut:
    payment = (
        await db.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .options(selectinload(Payment.user), selectinload(Payment.program))
        )
    ).scalar_one_or_none()
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return to_payment_out(payment)


@router.put("/{payment_id}", response_model=PaymentOut)
async def update_payment(
    payment_id: uuid.UUID,
    payload: PaymentUpdateIn,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PaymentOut:
    try:
        payment = await settle_payment(db, payment_id, payload.to_decision(), admin_id=admin.user_id)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc
    return to_payment_out(payment)


@router.delete("/{payment_id}", response_model=PaymentDeleteOut)
async def remove_payment(
    payment_id: uuid.UUID,
    admin: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> PaymentDeleteOut:
    try:
        result = await delete_payment(db, payment_id, admin_id=admin.user_id)
    except SettlementError as exc:
        raise settlement_http_error(exc) from exc

    if result.deleted:
        return PaymentDeleteOut(message="Payment deleted successfully")
    return PaymentDeleteOut(message="Payment cancelled successfully", payment=to_payment_out(result.payment))

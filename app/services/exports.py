from __future__ import annotations

import csv
import io
import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.models.common import utcnow
from app.models.payment import Payment

MISSING = "N/A"

STANDARD_HEADERS = [
    "Payment ID",
    "User Name",
    "User Email",
    "Username",
    "Telegram Username",
    "Program Name",
    "Program Category",
    "Amount",
    "Currency",
    "Status",
    "Receipt URL",
    "Admin Notes",
    "Created At",
    "Updated At",
    "Processed At",
]

_BASE_HEADERS = ["Payment ID", "Amount", "Currency", "Status", "Created At"]
_USER_HEADERS = ["User Name", "User Email", "Username", "Telegram Username"]
_PROGRAM_HEADERS = ["Program Name", "Program Category", "Program Duration"]
_TRAILING_HEADERS = ["Receipt URL", "Admin Notes", "Updated At", "Processed At"]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _full_name(payment: Payment) -> str | None:
    name = f"{payment.user.first_name or ''} {payment.user.last_name or ''}".strip()
    return name or None


def _cell(value: Any) -> str:
    if value is None or value == "":
        return MISSING
    return str(value)


def standard_row(payment: Payment) -> list[str]:
    return [
        _cell(v)
        for v in (
            payment.id,
            _full_name(payment),
            payment.user.email,
            payment.user.username,
            payment.user.telegram_id,
            payment.program.name,
            payment.program.category,
            payment.amount,
            payment.currency,
            payment.status,
            payment.receipt_url,
            payment.admin_notes,
            _iso(payment.created_at),
            _iso(payment.updated_at),
            _iso(payment.processed_at),
        )
    ]


def custom_headers(*, include_user_details: bool, include_program_details: bool) -> list[str]:
    headers = list(_BASE_HEADERS)
    if include_user_details:
        headers += _USER_HEADERS
    if include_program_details:
        headers += _PROGRAM_HEADERS
    return headers + _TRAILING_HEADERS


def custom_row(payment: Payment, *, include_user_details: bool, include_program_details: bool) -> list[str]:
    values: list[Any] = [payment.id, payment.amount, payment.currency, payment.status, _iso(payment.created_at)]
    if include_user_details:
        values += [_full_name(payment), payment.user.email, payment.user.username, payment.user.telegram_id]
    if include_program_details:
        duration = f"{payment.program.duration} days" if payment.program.duration else None
        values += [payment.program.name, payment.program.category, duration]
    values += [payment.receipt_url, payment.admin_notes, _iso(payment.updated_at), _iso(payment.processed_at)]
    return [_cell(v) for v in values]


def render_csv(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Quote a value only when it holds a comma, quote or newline; embedded quotes are doubled."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(headers)
    writer.writerows(rows)
    return buffer.getvalue().rstrip("\n")


def export_filename(prefix: str = "payments_export") -> str:
    return f"{prefix}_{utcnow().strftime('%Y-%m-%d')}.csv"


async def query_payments_for_export(
    db: AsyncSession,
    *,
    status: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    payment_ids: Sequence[uuid.UUID] | None = None,
) -> list[Payment]:
    stmt = (
        select(Payment)
        .options(selectinload(Payment.user), selectinload(Payment.program))
        .order_by(Payment.created_at.desc())
    )
    if payment_ids:
        stmt = stmt.where(Payment.id.in_(list(payment_ids)))
    if status and status != "all":
        stmt = stmt.where(Payment.status == status)
    if start_date:
        stmt = stmt.where(Payment.created_at >= start_date)
    if end_date:
        stmt = stmt.where(Payment.created_at <= end_date)
    return list((await db.execute(stmt)).scalars().all())

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import Field, field_validator, model_validator

from app.schemas.common import CamelModel, HttpUrlStr, PaginationOut
from app.services.settlement import UNSET, PaymentDecision

PaymentStatusLiteral = Literal["PENDING", "APPROVED", "REJECTED"]
ExportStatusLiteral = Literal["PENDING", "APPROVED", "REJECTED", "all"]


class PaymentUserOut(CamelModel):
    id: uuid.UUID
    first_name: str | None = None
    last_name: str | None = None
    email: str
    username: str | None = None
    telegram_id: str | None = None


class PaymentProgramOut(CamelModel):
    id: uuid.UUID
    name: str
    description: str | None = None
    category: str | None = None
    price: Decimal
    duration: int | None = None


class PaymentOut(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    program_id: uuid.UUID
    amount: Decimal
    currency: str
    status: str
    admin_notes: str | None = None
    receipt_url: str | None = None
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None
    user: PaymentUserOut | None = None
    program: PaymentProgramOut | None = None


class PaymentUpdateIn(CamelModel):
    status: PaymentStatusLiteral | None = None
    admin_notes: str | None = Field(default=None, max_length=4000)
    amount: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    receipt_url: HttpUrlStr | None = None

    @model_validator(mode="after")
    def _reject_null_required_fields(self) -> PaymentUpdateIn:
        for name in ("status", "amount", "receipt_url"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def to_decision(self) -> PaymentDecision:
        sent = self.model_fields_set
        return PaymentDecision(
            status=self.status if "status" in sent else UNSET,
            admin_notes=self.admin_notes if "admin_notes" in sent else UNSET,
            amount=self.amount if "amount" in sent else UNSET,
            receipt_url=self.receipt_url if "receipt_url" in sent else UNSET,
        )


class PaymentBulkUpdateIn(CamelModel):
    payment_ids: list[uuid.UUID] = Field(max_length=500)
    status: PaymentStatusLiteral
    admin_notes: str | None = Field(default=None, max_length=4000)


class PaymentBulkUpdateOut(CamelModel):
    message: str
    count: int
    updated_payments: list[PaymentOut]


class PaymentDeleteOut(CamelModel):
    message: str
    payment: PaymentOut | None = None


class PaymentSummaryOut(CamelModel):
    total: int = 0
    pending: int = 0
    approved: int = 0
    rejected: int = 0
    total_amount: Decimal = Decimal("0")
    pending_amount: Decimal = Decimal("0")
    approved_amount: Decimal = Decimal("0")


class PaymentListOut(CamelModel):
    payments: list[PaymentOut]
    pagination: PaginationOut
    summary: PaymentSummaryOut | None = None


class PaymentCreateIn(CamelModel):
    program_id: uuid.UUID
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    receipt_url: HttpUrlStr | None = None
    notes: str | None = Field(default=None, max_length=4000)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class PaymentExportIn(CamelModel):
    payment_ids: list[uuid.UUID] | None = None
    status: ExportStatusLiteral | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    format: Literal["csv", "json"] = "csv"
    include_user_details: bool = True
    include_program_details: bool = True


class PaymentExportOut(CamelModel):
    payments: list[PaymentOut]
    exported_at: datetime
    total_records: int
    filters: dict[str, Any] | None = None

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field, field_validator, model_validator

from app.schemas.common import CamelModel, HttpUrlStr


class WalletTransactionCreateIn(CamelModel):
    type: Literal["DEPOSIT", "WITHDRAWAL"]
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    receipt_url: HttpUrlStr | None = None
    card_number: str | None = Field(default=None, min_length=8, max_length=32)
    card_holder_name: str | None = Field(default=None, min_length=1, max_length=255)

    @model_validator(mode="after")
    def _require_type_fields(self) -> WalletTransactionCreateIn:
        if self.type == "DEPOSIT" and not self.receipt_url:
            raise ValueError("Receipt URL is required for deposits")
        if self.type == "WITHDRAWAL" and not (self.card_number and self.card_holder_name):
            raise ValueError("Card number and holder name are required for withdrawals")
        return self


class WalletDecisionIn(CamelModel):
    action: Literal["approve", "reject"]
    admin_notes: str | None = Field(default=None, max_length=4000)

    @field_validator("action", mode="before")
    @classmethod
    def _lower_action(cls, value: object) -> object:
        return value.strip().lower() if isinstance(value, str) else value


class WalletTransactionUserOut(CamelModel):
    id: uuid.UUID
    email: str
    first_name: str | None = None
    last_name: str | None = None


class WalletTransactionOut(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    amount: Decimal
    status: str
    receipt_url: str | None = None
    card_number: str | None = None
    card_holder_name: str | None = None
    admin_notes: str | None = None
    processed_by: uuid.UUID | None = None
    processed_at: datetime | None = None
    created_at: datetime
    user: WalletTransactionUserOut | None = None


class WalletOut(CamelModel):
    id: uuid.UUID | None = None
    user_id: uuid.UUID
    balance: Decimal
    currency: str


class LedgerEntryOut(CamelModel):
    id: uuid.UUID
    wallet_id: uuid.UUID
    amount: Decimal
    type: str
    description: str
    reference_id: str | None = None
    reference_type: str | None = None
    created_at: datetime


class WalletSummaryOut(CamelModel):
    total_credits: Decimal
    total_debits: Decimal
    pending_withdrawals: Decimal
    available_balance: Decimal


class LedgerPageOut(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class WalletOverviewOut(CamelModel):
    wallet: WalletOut
    transactions: list[LedgerEntryOut]
    summary: WalletSummaryOut
    pagination: LedgerPageOut


class WalletReconciliationOut(CamelModel):
    wallet_id: uuid.UUID
    balance: Decimal
    ledger_total: Decimal
    difference: Decimal
    is_balanced: bool

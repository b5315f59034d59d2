"""settlement schema

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-19
"""

from alembic import op

from app.db.base import Base
from app.models import AdminAudit, Payment, Program, Referral, User, Wallet, WalletLedgerEntry, WalletTransaction

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_TABLES = [
    User.__table__,
    Program.__table__,
    Referral.__table__,
    Payment.__table__,
    Wallet.__table__,
    WalletLedgerEntry.__table__,
    WalletTransaction.__table__,
    AdminAudit.__table__,
]


def upgrade() -> None:
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind, tables=_TABLES)


def downgrade() -> None:
    bind = op.get_bind()
    Base.metadata.drop_all(bind=bind, tables=_TABLES)

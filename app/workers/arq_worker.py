from __future__ import annotations

import logging

from arq.connections import RedisSettings
from arq.cron import cron

from app.core.config import settings
from app.db.session import SessionLocal
from app.services.settlement import find_unbalanced_wallets

logger = logging.getLogger(__name__)


async def reconcile_wallets_job(ctx) -> dict:
    async with SessionLocal() as db:
        unbalanced = await find_unbalanced_wallets(db)
    for rec in unbalanced:
        logger.warning(
            "Wallet %s balance %s does not match ledger total %s (difference %s)",
            rec.wallet_id,
            rec.balance,
            rec.ledger_total,
            rec.difference,
        )
    if not unbalanced:
        logger.info("All wallets reconcile with their ledgers")
    return {"unbalanced_wallets": [str(rec.wallet_id) for rec in unbalanced]}


def _reconcile_minutes() -> set[int]:
    step = min(max(int(settings.reconcile_interval_minutes or 0), 1), 60)
    return set(range(0, 60, step))


class WorkerSettings:
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    functions = [reconcile_wallets_job]
    cron_jobs = [cron(reconcile_wallets_job, minute=_reconcile_minutes())]

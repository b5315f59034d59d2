from fastapi import APIRouter

from app.api.v1.admin_payments import router as admin_payments_router
from app.api.v1.admin_wallet import router as admin_wallet_router
from app.api.v1.payments import router as payments_router
from app.api.v1.wallet import router as wallet_router

api_router = APIRouter()
api_router.include_router(admin_payments_router)
api_router.include_router(admin_wallet_router)
api_router.include_router(payments_router)
api_router.include_router(wallet_router)

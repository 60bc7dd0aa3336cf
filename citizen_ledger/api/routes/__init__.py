"""
API Routes
"""
from fastapi import APIRouter

from citizen_ledger.api.webhooks.payment_gateway import router as payment_gateway_router

router = APIRouter()

router.include_router(
    payment_gateway_router,
    prefix="/payments/gateway",
    tags=["payments"],
)

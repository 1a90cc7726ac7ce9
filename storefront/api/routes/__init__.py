"""
API Routes
"""
from fastapi import APIRouter

from storefront.api.routes.admin import router as admin_router
from storefront.api.webhooks.mercadolibre import router as mercadolibre_router
from storefront.api.webhooks.mercadopago import router as mercadopago_router

router = APIRouter()

router.include_router(admin_router, prefix="/admin", tags=["admin"])
router.include_router(mercadolibre_router, prefix="/mercadolibre", tags=["webhooks"])
router.include_router(mercadopago_router, prefix="/mercadopago", tags=["webhooks"])


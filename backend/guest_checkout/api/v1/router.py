"""API v1 router aggregator.

All v1 endpoint routers are included here.
"""

from fastapi import APIRouter

from guest_checkout.api.v1 import admin_ajax, orders

router = APIRouter()

# =============================================================================
# Admin
# =============================================================================

router.include_router(admin_ajax.router, prefix="/admin", tags=["admin"])
router.include_router(orders.router, prefix="/orders", tags=["orders"])

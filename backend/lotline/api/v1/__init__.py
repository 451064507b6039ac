"""
API v1 Router - Lotline
"""
from fastapi import APIRouter
from lotline.api.v1.endpoints import lots

router = APIRouter()

# Lot identity & traceability
router.include_router(
    lots.router,
    prefix="/lots",
    tags=["lots"]
)

from fastapi import APIRouter

from app.api.presale_endpoints.referrals import router as referrals_router
from app.api.presale_endpoints.tokens import router as tokens_router

router = APIRouter()

router.include_router(tokens_router)
router.include_router(referrals_router)

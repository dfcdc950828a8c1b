"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from referral_engine.api.referrals import router as referrals_router
from referral_engine.api.admin_referrals import router as admin_referrals_router
from referral_engine.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(referrals_router)
api_router.include_router(admin_referrals_router)
api_router.include_router(health_router)

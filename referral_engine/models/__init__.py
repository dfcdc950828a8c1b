"""
Database models - import all models here so Alembic can discover them.
"""
from referral_engine.models.partner import Partner
from referral_engine.models.referral_code import ReferralCode
from referral_engine.models.click import Click
from referral_engine.models.conversion import Conversion
from referral_engine.models.payout_batch import PayoutBatch

__all__ = [
    "Partner",
    "ReferralCode",
    "Click",
    "Conversion",
    "PayoutBatch",
]

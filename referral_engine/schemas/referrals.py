"""
Request schemas for the referral endpoints.

Public payloads keep the field names the web client sends; presence checks
happen in the handlers so a missing field is a 400 in the usual error shape.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class UtmParams(BaseModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    content: Optional[str] = None
    term: Optional[str] = None


class TrackRequest(BaseModel):
    """Click on a referral link, posted by the landing page."""
    code: Optional[str] = None
    utmParams: Optional[UtmParams] = None


class ConvertRequest(BaseModel):
    """Business event to credit: signup, subscription or upgrade."""
    userId: Optional[str] = None
    conversionType: Optional[str] = None
    subscriptionTier: Optional[str] = None
    subscriptionId: Optional[str] = None
    trackingId: Optional[str] = None


# === ADMIN ===

class PartnerCreate(BaseModel):
    user_id: str
    contact_email: str
    business_name: str
    partner_type: Optional[str] = None
    social_media: Optional[list[str]] = None
    commission_rate: Optional[int] = Field(default=None, ge=0)
    subscription_commission_type: Optional[str] = None
    subscription_commission_rate: Optional[int] = Field(default=None, ge=0)
    payout_method: Optional[str] = None
    payout_details: Optional[dict] = None
    default_code: Optional[str] = None


class PartnerUpdate(BaseModel):
    status: Optional[str] = None
    partner_type: Optional[str] = None
    business_name: Optional[str] = None
    social_media: Optional[list[str]] = None
    commission_rate: Optional[int] = Field(default=None, ge=0)
    subscription_commission_type: Optional[str] = None
    subscription_commission_rate: Optional[int] = Field(default=None, ge=0)
    payout_method: Optional[str] = None
    payout_details: Optional[dict] = None


class CodeCreate(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    max_uses: Optional[int] = Field(default=None, ge=1)
    expires_at: Optional[datetime] = None


class CodeStatusUpdate(BaseModel):
    status: str


class ApproveRequest(BaseModel):
    conversion_ids: list[str]


class AutoApproveRequest(BaseModel):
    days_old: Optional[int] = Field(default=None, ge=0)


class CancelCommissionRequest(BaseModel):
    reason: Optional[str] = None


class CommissionStatusOverride(BaseModel):
    status: str
    notes: Optional[str] = None


class PayoutCreate(BaseModel):
    partner_id: str
    scheduled_for: Optional[datetime] = None


class PayoutComplete(BaseModel):
    transaction_id: str


class PayoutFail(BaseModel):
    reason: str

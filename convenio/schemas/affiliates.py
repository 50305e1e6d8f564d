"""Affiliate tracking schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from convenio.schemas.common import Money


class TrackRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=32)
    visitor_identifier: str
    user_agent: str | None = None
    referrer_url: str | None = None
    landing_page: str | None = None


class TrackResponse(BaseModel):
    referral_id: int
    created: bool


class LinkRequest(BaseModel):
    user_id: int
    visitor_identifier: str


class LinkResponse(BaseModel):
    linked: bool
    affiliate_id: int | None = None


class ConvertRequest(BaseModel):
    user_id: int


class ConvertResponse(BaseModel):
    converted: int


class ReferralRead(BaseModel):
    id: int
    affiliate_id: int
    affiliate_name: str | None = None
    visitor_identifier: str
    user_id: int | None
    user_name: str | None = None
    status: str
    converted: bool
    converted_at: datetime | None
    created_at: datetime


class ReferralStats(BaseModel):
    total_clicks: int
    total_registrations: int
    total_conversions: int
    conversion_rate: Money


class MyReferralsResponse(BaseModel):
    referrals: list[ReferralRead]
    stats: ReferralStats


class AffiliateSummary(BaseModel):
    affiliate_id: int
    affiliate_name: str | None
    stats: ReferralStats


class AllReferralsResponse(BaseModel):
    referrals: list[ReferralRead]
    stats: ReferralStats
    by_affiliate: list[AffiliateSummary]


class VisitorCheckResponse(BaseModel):
    exists: bool
    affiliate_id: int | None = None
    linked: bool = False

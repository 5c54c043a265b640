from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .enums import DiscountType, PaymentType, PayoutStatus, ReviewStatus, UserRole


######### Users #########

class UserCreate(BaseModel):
    email: EmailStr
    password: str
    password_confirm: str
    name: str
    full_name: Optional[str] = None
    phone: Optional[str] = None

    @field_validator('name')
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = (v or '').strip()
        if not v:
            raise ValueError('name must not be empty')
        return v


class TokenOut(BaseModel):
    access_token: str
    token_type: str = 'bearer'


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None
    organizer_name: Optional[str] = None
    bio: Optional[str] = None
    photo_url: Optional[str] = None


class RoleUpdate(BaseModel):
    role: str

    @field_validator('role', mode='before')
    @classmethod
    def _normalize_role(cls, v):
        return UserRole.normalize(v).value if v else v


######### Listings #########

class TicketDefinition(BaseModel):
    name: str
    price: float = 0
    quantity: int = 0


class ListingSave(BaseModel):
    status: str = 'draft'
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    date: Optional[str] = None
    end_date: Optional[str] = None
    venue: Optional[str] = None
    location: Optional[str] = None
    image_url: Optional[str] = None
    tickets: Optional[List[TicketDefinition]] = None
    free_merch: Optional[str] = None
    booking_fee: Optional[float] = None
    itinerary: Optional[List[Dict[str, Any]]] = None
    destination: Optional[str] = None
    age_restriction: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str


######### Promocodes / campaigns #########

class PromocodeCreate(BaseModel):
    code: str
    discount_type: DiscountType = DiscountType.percentage
    discount_value: float
    usage_limit: int = 0
    expires_at: Optional[datetime] = None
    listing_type: Optional[str] = 'all'
    listing_id: Optional[str] = None
    listing_name: Optional[str] = None
    user_id: Optional[str] = None
    influencer_id: Optional[str] = None
    commission_type: Optional[DiscountType] = None
    commission_value: Optional[float] = None

    @field_validator('discount_type', 'commission_type', mode='before')
    @classmethod
    def _normalize_discount(cls, v):
        return DiscountType.normalize(v)


class PromocodeUpdate(BaseModel):
    discount_value: Optional[float] = None
    usage_limit: Optional[int] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None
    listing_name: Optional[str] = None


class CampaignResponse(BaseModel):
    accept: bool


class PromocodeValidate(BaseModel):
    code: str
    listing_id: Optional[str] = None


class TrackingLinkCreate(BaseModel):
    name: Optional[str] = None
    listing_id: Optional[str] = None
    listing_type: Optional[str] = None


######### Invitations #########

class InvitationCreate(BaseModel):
    role: str
    email: Optional[EmailStr] = None
    event_id: Optional[str] = None
    send_email: bool = False


######### Checkout #########

class TicketSelection(BaseModel):
    name: str
    quantity: int = Field(1, ge=0)


class OrderCreate(BaseModel):
    listing_type: str
    listing_id: str
    tickets: List[TicketSelection]
    payment_type: PaymentType = PaymentType.full
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    phone_number: Optional[str] = None
    promocode: Optional[str] = None
    channel: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None

    @field_validator('payment_type', mode='before')
    @classmethod
    def _normalize_payment_type(cls, v):
        return PaymentType.normalize(v) or PaymentType.full


class FeedbackIn(BaseModel):
    rating: int
    reason: Optional[str] = None
    order_id: Optional[str] = None


class TrackEventIn(BaseModel):
    action: str
    listing_id: Optional[str] = None


######### Merchandise #########

class ProductSave(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ''
    price: float = Field(..., gt=0)
    discount_price: Optional[float] = Field(None, gt=0)
    image_urls: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    discount_price: Optional[float] = Field(None, gt=0)
    image_urls: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)


class MerchItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class MerchOrderCreate(BaseModel):
    user_name: str
    user_email: EmailStr
    phone_number: str
    items: List[MerchItem] = Field(..., min_length=1)


class MerchPickup(BaseModel):
    confirmation_code: str


######### Verification #########

class TicketScan(BaseModel):
    ticket_id: Optional[str] = None
    event_id: str


class VerifierAssign(BaseModel):
    username: str
    event_id: str


######### Payouts #########

class PayoutRequestIn(BaseModel):
    amount: float


class PayoutDecision(BaseModel):
    status: PayoutStatus
    amount_disbursed: Optional[float] = None
    rejection_reason: Optional[str] = None

    @field_validator('status', mode='before')
    @classmethod
    def _normalize_status(cls, v):
        return PayoutStatus.normalize(v)


######### Partner requests / advertising #########

class PartnerRequestIn(BaseModel):
    role: str

    @field_validator('role', mode='before')
    @classmethod
    def _normalize_role(cls, v):
        return UserRole.normalize(v).value if v else v


class AdSubmissionIn(BaseModel):
    campaign_name: str = Field(..., min_length=1, max_length=120)
    image_urls: List[str] = Field(..., min_length=1)
    cta_text: str = Field(..., min_length=1, max_length=40)
    cta_link: str
    priority: int = Field(1, ge=1, le=10)
    duration: str = '7d'
    is_adult_content: bool = False


class ReviewDecision(BaseModel):
    status: ReviewStatus

    @field_validator('status', mode='before')
    @classmethod
    def _normalize_status(cls, v):
        return ReviewStatus.normalize(v)


######### Admin #########

class SiteSettingsUpdate(BaseModel):
    platform_fee: Optional[float] = None
    processing_fee: Optional[float] = None
    processing_fee_payer: Optional[str] = None
    influencer_cut: Optional[float] = None


class AssistantQuestion(BaseModel):
    question: str

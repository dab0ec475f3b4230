from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field

ProviderKind = Literal["company", "mechanic"]
ApprovalStatus = Literal["pending", "approved", "rejected"]
OrderStatus = Literal["pending", "confirmed", "in_progress", "completed", "cancelled", "rejected"]
QuoteStatus = Literal["pending", "accepted", "rejected"]
PaymentStatus = Literal["unpaid", "paid"]
RecipientType = Literal["customer", "provider"]
AccountRole = Literal["customer", "provider", "admin"]


class Coordinate(BaseModel):
    latitude: float
    longitude: float


class Provider(BaseModel):
    id: str
    owner_user_id: str
    name: str
    kind: ProviderKind
    city: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    service_prices: Dict[str, int] = Field(default_factory=dict)
    approval_status: ApprovalStatus = "pending"
    rating: float = 0.0
    review_count: int = 0
    created_at: str
    updated_at: str


class ProviderMatch(BaseModel):
    provider: Provider
    distance_km: float
    price: Optional[int] = None


class OrderLocation(BaseModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: str
    city: str


class Order(BaseModel):
    id: str
    customer_id: str
    service_type: str
    location: OrderLocation
    scheduled_date: str
    scheduled_time: str
    vehicle_description: str
    special_instructions: str = ""
    invited_provider_ids: list[str] = Field(default_factory=list)
    status: OrderStatus
    selected_provider_id: Optional[str] = None
    total_amount: int = 0
    payment_status: PaymentStatus = "unpaid"
    payment_id: Optional[str] = None
    version: int = 1
    created_at: str
    updated_at: str


class Quote(BaseModel):
    id: str
    order_id: str
    provider_id: str
    quoted_price: int
    estimated_duration_minutes: int
    notes: str = ""
    status: QuoteStatus
    created_at: str
    decided_at: Optional[str] = None


class OrderStatusChange(BaseModel):
    id: str
    order_id: str
    actor_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class Feedback(BaseModel):
    order_id: str
    customer_id: str
    provider_id: str
    rating: int = Field(ge=1, le=5)
    comment: str = ""
    created_at: str


class NotificationRecord(BaseModel):
    id: str
    recipient_type: RecipientType
    recipient_id: str
    title: str
    message: str
    related_order_id: Optional[str] = None
    is_read: bool = False
    created_at: str


class PriceBreakdown(BaseModel):
    base_price: int
    discount: int
    subtotal: int
    taxes: int
    total: int
    promo_code: Optional[str] = None


class Account(BaseModel):
    id: str
    email: str
    full_name: str
    phone: str = ""
    role: AccountRole
    email_confirmed: bool = False
    created_at: str


class ProviderRegisterRequest(BaseModel):
    name: str
    kind: ProviderKind = "company"
    city: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    service_prices: Dict[str, int] = Field(default_factory=dict)


class ServicePriceRequest(BaseModel):
    price: int


class LocationUpdateRequest(BaseModel):
    latitude: float
    longitude: float


class ApprovalDecisionRequest(BaseModel):
    decision: Literal["approved", "rejected"]


class OrderCreateRequest(BaseModel):
    service_type: str
    location: OrderLocation
    scheduled_date: str
    scheduled_time: str
    vehicle_description: str
    special_instructions: str = ""
    invited_provider_ids: list[str] = Field(default_factory=list)


class QuoteSubmitRequest(BaseModel):
    provider_id: str
    quoted_price: int
    estimated_duration_minutes: int
    notes: str = ""


class OrderCancelRequest(BaseModel):
    reason: str = ""


class OrderDeclineRequest(BaseModel):
    provider_id: Optional[str] = None
    reason: str = ""


class PaymentRecordRequest(BaseModel):
    payment_id: str


class FeedbackRequest(BaseModel):
    rating: int = Field(ge=1, le=5)
    comment: str = ""


class SignUpRequest(BaseModel):
    email: str
    password: str
    full_name: str
    phone: str = ""
    role: Literal["customer", "provider"] = "customer"


class SignUpResponse(BaseModel):
    account: Account
    confirmation_required: bool = False
    access_token: Optional[str] = None
    token_type: Literal["bearer"] = "bearer"
    expires_at: Optional[str] = None


class ConfirmEmailRequest(BaseModel):
    token: str


class AuthLoginRequest(BaseModel):
    email: str
    password: str


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: AccountRole
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: AccountRole
    account: Optional[Account] = None


class PasswordResetRequest(BaseModel):
    email: str


class PasswordResetConfirmRequest(BaseModel):
    token: str
    new_password: str


class DeviceTokenRegisterRequest(BaseModel):
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class AdminStats(BaseModel):
    providers_by_status: Dict[str, int]
    orders_by_status: Dict[str, int]
    completed_revenue: int
    paid_orders: int

"""
Pydantic schemas for request/response validation in the Storefront service.

These schemas define the structure of data for API requests and responses.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from decimal import Decimal
from pydantic import BaseModel, EmailStr, Field


class OrderItemCreate(BaseModel):
    """Schema for an order line item at checkout."""
    product_id: int = Field(..., description="Product ID from the catalog")
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    price: Decimal = Field(..., ge=0, description="Price per unit")


class OrderItem(BaseModel):
    """Schema for a persisted order line item."""
    id: int
    product_id: int
    quantity: int
    price: Decimal
    total: Decimal

    class Config:
        from_attributes = True


class OrderCreate(BaseModel):
    """Schema for creating a new order."""
    user_id: int
    user_email: Optional[EmailStr] = None
    items: List[OrderItemCreate] = Field(default_factory=list, description="Order line items")
    total_amount: Decimal = Field(..., ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    payment_method: str = Field(default="online", pattern="^(cod|online)$")
    user_notes: Optional[str] = None


class OrderUpdate(BaseModel):
    """Schema for a partial order update. All fields are optional."""
    status: Optional[str] = None
    payment_status: Optional[str] = Field(default=None, pattern="^(pending|paid)$")
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    admin_notes: Optional[str] = None
    user_notes: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    send_notification: bool = False


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (int): Order's unique identifier
        order_number (str): Display reference
        status (str): Lifecycle status
        payment_status (str): pending or paid
        items (List[OrderItem]): Order line items
        created_at (datetime): When the order was created
    """
    id: int
    order_number: str
    user_id: int
    user_email: Optional[str] = None
    status: str
    payment_status: str
    payment_method: str
    total_amount: Decimal
    delivery_fee: Decimal
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    shipping_address: Optional[Dict[str, Any]] = None
    user_notes: Optional[str] = None
    admin_notes: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (int): Order identifier
        event_type (str): Type of event (created, status_changed, updated, payment_verified)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (int): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    id: int
    order_id: int
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentReminderRequest(BaseModel):
    order_id: int


class PaymentReminderResponse(BaseModel):
    success: bool
    payment_link: str
    time_remaining: int = Field(..., description="Minutes left in the payment window")


class ExpiredOrdersResponse(BaseModel):
    cancelled_order_ids: List[int]


class GatewayOrderCreate(BaseModel):
    """Schema for opening a gateway payment for an existing order."""
    order_id: int
    currency: str = "INR"


class GatewayOrder(BaseModel):
    id: str
    amount: int = Field(..., description="Amount in minor units (paise)")
    currency: str
    receipt: Optional[str] = None


class PaymentVerifyRequest(BaseModel):
    """Checkout callback payload delivered by the payment gateway."""
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentVerifyResponse(BaseModel):
    success: bool = True
    order_id: int
    payment_id: str
    already_verified: bool = False
    message: str = "Payment verified successfully"


class LoyaltySummary(BaseModel):
    points: int
    tier: str
    tier_progress: float
    next_tier_points: int
    lifetime_points: int
    redeemable_points: int


class LoyaltyTransaction(BaseModel):
    id: int
    user_id: int
    type: str
    points: int
    description: Optional[str] = None
    order_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LoyaltyReward(BaseModel):
    id: int
    name: str
    type: str
    value: Decimal
    points_required: int

    class Config:
        from_attributes = True


class RedeemRequest(BaseModel):
    user_id: int
    reward_id: int


class RedeemResponse(BaseModel):
    success: bool = True
    message: str
    points_remaining: int
    coupon_code: Optional[str] = None


class StockAdjustment(BaseModel):
    """Schema for a manual stock movement entered from the back office."""
    type: str = Field(default="adjustment", pattern="^(in|out|adjustment)$")
    quantity: int = Field(..., ge=0)
    reason: Optional[str] = None


class StockMovement(BaseModel):
    id: int
    product_id: int
    type: str
    quantity: int
    reason: Optional[str] = None
    order_id: Optional[int] = None
    created_by: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ProductStock(BaseModel):
    id: int
    name: str
    sku: str
    stock_quantity: int

    class Config:
        from_attributes = True


class ProductSummary(BaseModel):
    id: int
    name: str
    category: Optional[str] = None
    price: Decimal
    image_url: Optional[str] = None

    class Config:
        from_attributes = True


class TrendingProduct(ProductSummary):
    view_count: int
    unique_viewers: int
    trend_score: float

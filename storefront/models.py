"""
SQLAlchemy ORM models for the Storefront service.

Defines the database schema for products, orders, inventory movements and
the loyalty program.
"""
from datetime import datetime
from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base, JSONType


class Product(Base):
    """
    Product model representing a sellable catalog item.

    Attributes:
        id (int): Primary key
        name (str): Display name
        sku (str): Stock Keeping Unit (unique)
        category (str): Catalog category (women, kids, ...)
        price (Decimal): Current selling price
        stock_quantity (int): Units on hand, never negative
        image_url (str): Primary product image
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    sku = Column(String, unique=True, index=True, nullable=False)
    category = Column(String, nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    stock_quantity = Column(Integer, nullable=False, default=0)
    image_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Order(Base):
    """
    Order model representing a customer checkout.

    ``status`` and ``payment_status`` are independent axes: an order can be
    ``confirmed`` while still awaiting cash-on-delivery payment.

    Attributes:
        id (int): Primary key
        order_number (str): Human readable order reference (ORD-YYYYMMDD-XXXXXX)
        user_id (int): ID of the user who placed the order
        status (str): Lifecycle state (pending, confirmed, processing, shipped, delivered, cancelled)
        payment_status (str): pending or paid
        payment_method (str): cod or online
        total_amount (Decimal): Amount charged, delivery fee included
        shipping_address (dict): Address snapshot taken at checkout
        inventory_adjusted_at (datetime): Set while this order holds decremented stock
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    user_email = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    payment_status = Column(String, nullable=False, default="pending")
    payment_method = Column(String, nullable=False, default="online")
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    delivery_fee = Column(Numeric(10, 2), nullable=False, default=0)
    razorpay_order_id = Column(String, unique=True, index=True, nullable=True)
    razorpay_payment_id = Column(String, nullable=True)
    razorpay_signature = Column(String, nullable=True)
    tracking_number = Column(String, nullable=True)
    tracking_url = Column(String, nullable=True)
    shipping_address = Column(JSONType, nullable=True, default=dict)
    user_notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    inventory_adjusted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    """Order line item; price and total are captured at order time."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (int): Foreign key to the order
        event_type (str): Type of event (e.g., "created", "status_changed", "payment_verified")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (int): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class StockMovement(Base):
    """
    Append-only log of stock changes.

    ``type`` is one of in, out, adjustment (manual admin entries) or
    order_confirmed, order_cancelled (order-driven adjustments).
    """
    __tablename__ = "stock_movements"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    reason = Column(String, nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LoyaltyAccount(Base):
    """
    Running loyalty balance for one user.

    Attributes:
        current_points (int): Redeemable balance
        total_earned (int): Lifetime points earned, never decreases
        tier (str): Bronze, Silver, Gold or Platinum, derived from total_earned
    """
    __tablename__ = "loyalty_points"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, unique=True, index=True, nullable=False)
    current_points = Column(Integer, nullable=False, default=0)
    total_earned = Column(Integer, nullable=False, default=0)
    tier = Column(String, nullable=False, default="Bronze")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LoyaltyTransaction(Base):
    """
    Append-only loyalty ledger entry.

    At most one ``earned`` entry exists per order, which makes awarding
    points for an order safe to retry.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        UniqueConstraint("order_id", "type", name="uq_loyalty_transactions_order_type"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    type = Column(String, nullable=False)
    points = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class LoyaltyReward(Base):
    """Reward catalog entry that can be bought with loyalty points."""
    __tablename__ = "loyalty_rewards"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="discount")
    value = Column(Numeric(10, 2), nullable=False, default=0)
    points_required = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class UserCoupon(Base):
    """Discount coupon issued from a loyalty redemption."""
    __tablename__ = "user_coupons"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    code = Column(String, unique=True, nullable=False)
    discount_percentage = Column(Numeric(5, 2), nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ProductView(Base):
    """A single product page view, used to rank trending products."""
    __tablename__ = "product_views"

    id = Column(Integer, primary_key=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True)
    session_id = Column(String, nullable=True)
    viewed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

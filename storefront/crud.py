"""
Database operations for the Storefront service.

Order mutations run as one unit of work: the status change, stock
adjustment, loyalty ledger entry and timeline events are flushed in a single
session and committed together, or rolled back together.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
import logging
import math
import uuid
from sqlalchemy import String, cast, distinct, func
from sqlalchemy.orm import Session
from . import config, inventory, loyalty, models, payments, schemas, transitions, validators

# Set up logging
logger = logging.getLogger(__name__)

TRENDING_PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30}

# Outcomes of a payment confirmation
PAYMENT_VERIFIED = "verified"
PAYMENT_ALREADY_VERIFIED = "already_verified"
PAYMENT_ON_CANCELLED_ORDER = "cancelled"


class OrderNotFound(Exception):
    pass


class OrderValidationError(Exception):
    pass


class InvalidTransition(OrderValidationError):
    pass


class PaymentWindowExpired(OrderValidationError):
    pass


class SignatureMismatch(OrderValidationError):
    pass


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_for_update(db: Session, order_id: int) -> Optional[models.Order]:
    """Like ``get_order`` but row-locked and refreshed from the database."""
    return db.query(models.Order).filter(
        models.Order.id == order_id
    ).with_for_update().populate_existing().first()


def get_order_by_gateway_id(db: Session, gateway_order_id: str) -> Optional[models.Order]:
    """Row-locked lookup by the payment gateway's order id."""
    return db.query(models.Order).filter(
        models.Order.razorpay_order_id == gateway_order_id
    ).with_for_update().populate_existing().first()


def get_orders(db: Session, skip: int = 0, limit: int = 100, user_id: Optional[int] = None) -> List[models.Order]:
    """
    Retrieve a list of orders with pagination, newest first.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        user_id: Restrict to one customer's orders (optional)

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).offset(skip).limit(limit).all()


def get_order_events(db: Session, order_id: int) -> List[models.OrderEvent]:
    return db.query(models.OrderEvent).filter(
        models.OrderEvent.order_id == order_id
    ).order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc()).all()


def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_products_by_ids(db: Session, product_ids: List[int]) -> List[models.Product]:
    if not product_ids:
        return []
    return db.query(models.Product).filter(models.Product.id.in_(product_ids)).all()


def log_order_event(
    db: Session,
    order_id: int,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: int = None
) -> None:
    """
    Add an order event to the timeline. The caller commits.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "updated")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    db.add(models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    ))


# ---------------------------------------------------------------------------
# Order creation and transitions
# ---------------------------------------------------------------------------

def generate_order_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.utcnow()
    return f"ORD-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def validate_order_data(db: Session, order: schemas.OrderCreate) -> Tuple[bool, str]:
    """
    Validate checkout data against business rules and the catalog.

    Args:
        db: Database session
        order: Order data to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    is_valid, error = validators.validate_order_items(order.items)
    if not is_valid:
        return False, error

    is_valid, error = validators.validate_order_total(order.items, order.delivery_fee, order.total_amount)
    if not is_valid:
        return False, error

    product_ids = [item.product_id for item in order.items]
    found = {product.id for product in get_products_by_ids(db, product_ids)}
    for product_id in product_ids:
        if product_id not in found:
            return False, f"Product with ID {product_id} does not exist"

    return True, ""


def create_order(db: Session, order: schemas.OrderCreate, actor_id: Optional[int] = None) -> models.Order:
    """
    Create a pending order with its line items.

    NOTE: This function assumes validation has already been performed.
    Use validate_order_data() before calling this function. Stock is not
    touched until the order is confirmed.

    Args:
        db: Database session
        order: Order data to create
        actor_id: User placing the order (optional)

    Returns:
        Created Order object
    """
    try:
        db_order = models.Order(
            order_number=generate_order_number(),
            user_id=order.user_id,
            user_email=order.user_email,
            status=transitions.PENDING,
            payment_status="pending",
            payment_method=order.payment_method,
            total_amount=order.total_amount,
            delivery_fee=order.delivery_fee,
            shipping_address=order.shipping_address,
            user_notes=order.user_notes
        )
        db.add(db_order)
        db.flush()

        for item in order.items:
            db.add(models.OrderItem(
                order_id=db_order.id,
                product_id=item.product_id,
                quantity=item.quantity,
                price=item.price,
                total=Decimal(str(item.price)) * item.quantity
            ))

        log_order_event(
            db=db,
            order_id=db_order.id,
            event_type="created",
            description=f"Order created with status '{transitions.PENDING}'",
            new_value=transitions.PENDING,
            user_id=actor_id
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    logger.info(f"Order {db_order.order_number} created for user {db_order.user_id}")
    return db_order


def _award_loyalty(db: Session, order: models.Order) -> bool:
    """Award points inside a savepoint; a failure is logged and never fails the order."""
    try:
        with db.begin_nested():
            points = loyalty.award_points_for_order(db, order)
        return points > 0
    except Exception as e:
        logger.error(f"Failed to award loyalty points for order {order.id}: {e}")
        return False


def transition_order(
    db: Session,
    order: models.Order,
    new_status: str,
    actor_id: Optional[int] = None,
    reason: Optional[str] = None
) -> List[str]:
    """
    Move an order to ``new_status`` and apply the side effects the
    transition table attaches to the move. The caller commits.

    Args:
        db: Database session
        order: Order to transition (should be row-locked)
        new_status: Target status
        actor_id: User who triggered the change (optional)
        reason: Extra context for the timeline (optional)

    Returns:
        Side effects that actually changed state

    Raises:
        InvalidTransition: if the table forbids the move
    """
    old_status = order.status
    is_valid, error = validators.validate_order_status_transition(old_status, new_status)
    if not is_valid:
        raise InvalidTransition(error)

    _, side_effects = transitions.get_transition(old_status, new_status)
    if old_status == new_status:
        return []

    order.status = new_status
    db.flush()

    applied = []
    for effect in side_effects:
        if effect == transitions.DECREMENT_STOCK:
            changed = inventory.adjust_for_order(db, order, inventory.DECREMENT, actor_id)
        elif effect == transitions.RESTORE_STOCK:
            changed = inventory.adjust_for_order(db, order, inventory.RESTORE, actor_id)
        elif effect == transitions.AWARD_LOYALTY:
            changed = _award_loyalty(db, order)
        else:
            changed = False
        if changed:
            applied.append(effect)

    description = f"Status changed from '{old_status}' to '{new_status}'"
    if reason:
        description += f" ({reason})"
    log_order_event(
        db=db,
        order_id=order.id,
        event_type="status_changed",
        description=description,
        old_value=old_status,
        new_value=new_status,
        user_id=actor_id
    )
    db.flush()
    logger.info(f"Order {order.id}: {old_status} -> {new_status}, side effects: {applied or 'none'}")
    return applied


def update_order(
    db: Session,
    order_id: int,
    order: schemas.OrderUpdate,
    actor_id: Optional[int] = None
) -> Tuple[models.Order, str]:
    """
    Apply a partial update to an order.

    All guards run before anything is written, so a rejected update leaves
    the order unchanged.

    Args:
        db: Database session
        order_id: ID of the order to update
        order: Updated order data (only provided fields will be updated)
        actor_id: User making the change (optional)

    Returns:
        Tuple of (updated order, status before the update)

    Raises:
        OrderNotFound: if the order does not exist
        OrderValidationError: if the update breaks a business rule
    """
    db_order = get_order_for_update(db, order_id)
    if db_order is None:
        db.rollback()
        raise OrderNotFound("Order not found")

    update_data = order.model_dump(exclude_unset=True)
    update_data.pop("send_notification", None)
    if not update_data:
        db.rollback()
        raise OrderValidationError("No valid fields to update")

    old_status = db_order.status
    new_status = update_data.pop("status", None) or old_status
    tracking_number = update_data.get("tracking_number", db_order.tracking_number)

    is_valid, error = validators.validate_tracking(new_status, tracking_number)
    if not is_valid:
        db.rollback()
        raise OrderValidationError(error)

    is_valid, error = validators.validate_order_status_transition(old_status, new_status)
    if not is_valid:
        db.rollback()
        raise InvalidTransition(error)

    try:
        for key, value in update_data.items():
            setattr(db_order, key, value)

        if new_status != old_status:
            transition_order(db, db_order, new_status, actor_id=actor_id)

        if update_data:
            log_order_event(
                db=db,
                order_id=db_order.id,
                event_type="updated",
                description=f"Order details updated: {', '.join(sorted(update_data))}",
                user_id=actor_id
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    return db_order, old_status


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def attach_gateway_order(db: Session, order: models.Order, gateway_order_id: str) -> models.Order:
    """
    Store the gateway order id used to correlate the payment callback.

    The first gateway order stored for an order is kept; a later id (from a
    concurrent checkout) is discarded so no issued gateway order is orphaned.

    Returns:
        The order, carrying the gateway order id callbacks must use
    """
    try:
        order = get_order_for_update(db, order.id)
        if order.razorpay_order_id:
            logger.warning(
                f"Order {order.id} already has gateway order {order.razorpay_order_id}; "
                f"discarding {gateway_order_id}"
            )
            db.rollback()
            return order
        order.razorpay_order_id = gateway_order_id
        log_order_event(
            db=db,
            order_id=order.id,
            event_type="payment_initiated",
            description=f"Gateway order {gateway_order_id} created",
            new_value=gateway_order_id
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(order)
    return order


def confirm_payment(
    db: Session,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: str
) -> Tuple[models.Order, str]:
    """
    Verify a gateway callback and confirm the matching order.

    The order is looked up by the gateway order id, never by a client
    supplied internal id. Repeating a verified callback is a no-op.

    Args:
        db: Database session
        gateway_order_id: Gateway order id from the callback
        gateway_payment_id: Gateway payment id from the callback
        signature: Hex HMAC-SHA256 signature from the callback

    Returns:
        Tuple of (order, outcome) where outcome is PAYMENT_VERIFIED,
        PAYMENT_ALREADY_VERIFIED or PAYMENT_ON_CANCELLED_ORDER

    Raises:
        SignatureMismatch: if the signature does not match
        OrderValidationError: if the order was already paid by another payment
        OrderNotFound: if no order carries the gateway order id
    """
    if not payments.verify_signature(gateway_order_id, gateway_payment_id, signature, config.RAZORPAY_KEY_SECRET):
        logger.warning(f"Invalid payment signature for gateway order {gateway_order_id}")
        raise SignatureMismatch("Invalid payment signature")

    db_order = get_order_by_gateway_id(db, gateway_order_id)
    if db_order is None:
        db.rollback()
        raise OrderNotFound("Order not found")

    if db_order.payment_status == "paid":
        db.rollback()
        if db_order.razorpay_payment_id == gateway_payment_id:
            logger.info(f"Payment {gateway_payment_id} already verified for order {db_order.id}")
            return db_order, PAYMENT_ALREADY_VERIFIED
        raise OrderValidationError("Order already paid with a different payment")

    try:
        db_order.payment_status = "paid"
        db_order.razorpay_payment_id = gateway_payment_id
        db_order.razorpay_signature = signature
        log_order_event(
            db=db,
            order_id=db_order.id,
            event_type="payment_verified",
            description=f"Payment {gateway_payment_id} verified",
            old_value="pending",
            new_value="paid"
        )

        outcome = PAYMENT_VERIFIED
        if db_order.status == transitions.CANCELLED:
            # Money arrived after the window closed: keep the record for a refund
            outcome = PAYMENT_ON_CANCELLED_ORDER
            logger.warning(f"Payment {gateway_payment_id} received for cancelled order {db_order.id}")
        elif db_order.status == transitions.PENDING:
            transition_order(db, db_order, transitions.CONFIRMED, reason="payment verified")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(db_order)
    return db_order, outcome


# ---------------------------------------------------------------------------
# Payment window
# ---------------------------------------------------------------------------

def payment_deadline(order: models.Order) -> datetime:
    return order.created_at + timedelta(minutes=config.PAYMENT_WINDOW_MINUTES)


def is_awaiting_online_payment(order: models.Order) -> bool:
    return (
        order.payment_method == "online"
        and order.payment_status == "pending"
        and order.status == transitions.PENDING
    )


def minutes_remaining(order: models.Order, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    seconds = (payment_deadline(order) - now).total_seconds()
    return max(0, math.ceil(seconds / 60))


def expire_if_unpaid(db: Session, order_id: int, now: Optional[datetime] = None) -> bool:
    """
    Cancel an online order whose payment window has elapsed.

    Args:
        db: Database session
        order_id: Order to check
        now: Clock override (optional)

    Returns:
        True if the order was cancelled by this call
    """
    now = now or datetime.utcnow()
    db_order = get_order_for_update(db, order_id)
    if db_order is None or not is_awaiting_online_payment(db_order) or now <= payment_deadline(db_order):
        db.rollback()
        return False

    try:
        transition_order(db, db_order, transitions.CANCELLED, reason="payment window expired")
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Order {order_id} cancelled: payment window of {config.PAYMENT_WINDOW_MINUTES} minutes elapsed")
    return True


def sweep_expired_orders(db: Session, now: Optional[datetime] = None) -> List[int]:
    """
    Cancel every online order still unpaid past its payment window.

    Returns:
        IDs of the orders cancelled
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=config.PAYMENT_WINDOW_MINUTES)
    candidates = db.query(models.Order.id).filter(
        models.Order.status == transitions.PENDING,
        models.Order.payment_status == "pending",
        models.Order.payment_method == "online",
        models.Order.created_at < cutoff
    ).all()

    cancelled = []
    for (order_id,) in candidates:
        if expire_if_unpaid(db, order_id, now=now):
            cancelled.append(order_id)
    return cancelled


def prepare_payment_reminder(db: Session, order_id: int, now: Optional[datetime] = None) -> Tuple[models.Order, str, int]:
    """
    Re-issue a payment link while the window is open, or cancel the order.

    Args:
        db: Database session
        order_id: Order awaiting payment
        now: Clock override (optional)

    Returns:
        Tuple of (order, payment_link, minutes_remaining)

    Raises:
        OrderNotFound: if the order is absent or already paid
        PaymentWindowExpired: if the window elapsed (the order is cancelled)
        OrderValidationError: if the order is not an online payment
    """
    now = now or datetime.utcnow()
    db_order = get_order(db, order_id)
    if db_order is None or db_order.payment_status != "pending":
        raise OrderNotFound("Order not found or already paid")
    if db_order.payment_method != "online":
        raise OrderValidationError("Payment reminders only apply to online payments")

    if db_order.status == transitions.CANCELLED:
        raise PaymentWindowExpired("Payment window expired. Order has been cancelled.")
    if now > payment_deadline(db_order):
        expire_if_unpaid(db, order_id, now=now)
        raise PaymentWindowExpired("Payment window expired. Order has been cancelled.")

    link = f"{config.PUBLIC_BASE_URL}/checkout?order_id={db_order.id}&retry=true"
    return db_order, link, minutes_remaining(db_order, now)


# ---------------------------------------------------------------------------
# Inventory administration
# ---------------------------------------------------------------------------

def adjust_stock(
    db: Session,
    product_id: int,
    adjustment: schemas.StockAdjustment,
    actor_id: Optional[int] = None
) -> Optional[models.Product]:
    """
    Apply a manual stock movement.

    Returns:
        Updated Product or None if not found
    """
    product = db.query(models.Product).filter(
        models.Product.id == product_id
    ).with_for_update().populate_existing().first()
    if product is None:
        db.rollback()
        return None

    try:
        inventory.apply_manual_movement(
            db, product, adjustment.type, adjustment.quantity, adjustment.reason, actor_id
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(product)
    return product


def get_stock_movements(db: Session, product_id: Optional[int] = None, limit: int = 100) -> List[models.StockMovement]:
    query = db.query(models.StockMovement)
    if product_id is not None:
        query = query.filter(models.StockMovement.product_id == product_id)
    return query.order_by(models.StockMovement.created_at.desc(), models.StockMovement.id.desc()).limit(limit).all()


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------

def get_loyalty_summary(db: Session, user_id: int) -> dict:
    """Loyalty summary for a user, opening an empty account on first read."""
    try:
        account = loyalty.get_or_create_account(db, user_id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return loyalty.summarize(account)


def get_active_rewards(db: Session) -> List[models.LoyaltyReward]:
    return db.query(models.LoyaltyReward).filter(
        models.LoyaltyReward.is_active.is_(True)
    ).order_by(models.LoyaltyReward.points_required).all()


def redeem_loyalty_reward(db: Session, user_id: int, reward_id: int) -> Tuple[models.LoyaltyReward, models.LoyaltyAccount, Optional[models.UserCoupon]]:
    """
    Redeem a reward for a user.

    Returns:
        Tuple of (reward, account, coupon or None)

    Raises:
        LookupError: if the reward does not exist or is inactive
        loyalty.InsufficientPoints: if the balance is too low
    """
    reward = db.query(models.LoyaltyReward).filter(
        models.LoyaltyReward.id == reward_id,
        models.LoyaltyReward.is_active.is_(True)
    ).first()
    if reward is None:
        raise LookupError("Reward not found")

    try:
        account, coupon = loyalty.redeem_reward(db, user_id, reward)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return reward, account, coupon


# ---------------------------------------------------------------------------
# Product views
# ---------------------------------------------------------------------------

def record_product_view(db: Session, product_id: int, user_id: Optional[int] = None, session_id: Optional[str] = None) -> None:
    try:
        db.add(models.ProductView(product_id=product_id, user_id=user_id, session_id=session_id))
        db.commit()
    except Exception:
        db.rollback()
        raise


def get_trending_products(db: Session, period: str = "weekly", limit: int = 10) -> List[dict]:
    """
    Rank products by recent views.

    ``trend_score = view_count * 0.7 + unique_viewers * 0.3`` over the period.

    Args:
        db: Database session
        period: daily, weekly or monthly
        limit: Maximum number of products

    Returns:
        JSON-serializable list of product dicts, best first
    """
    days = TRENDING_PERIOD_DAYS.get(period, 7)
    start = datetime.utcnow() - timedelta(days=days)
    viewer = func.coalesce(cast(models.ProductView.user_id, String), models.ProductView.session_id)

    rows = db.query(
        models.Product,
        func.count(models.ProductView.id).label("view_count"),
        func.count(distinct(viewer)).label("unique_viewers")
    ).join(
        models.ProductView, models.ProductView.product_id == models.Product.id
    ).filter(
        models.ProductView.viewed_at >= start
    ).group_by(models.Product.id).all()

    trending = []
    for product, view_count, unique_viewers in rows:
        trending.append({
            "id": product.id,
            "name": product.name,
            "category": product.category,
            "price": str(product.price),
            "image_url": product.image_url,
            "view_count": int(view_count),
            "unique_viewers": int(unique_viewers),
            "trend_score": round(view_count * 0.7 + unique_viewers * 0.3, 2),
        })
    trending.sort(key=lambda p: (-p["trend_score"], p["id"]))
    return trending[:limit]

"""
Storefront Service API

This module implements the FastAPI application for the storefront order
lifecycle: checkout, admin order management, payment gateway integration,
inventory administration, the loyalty program and product view analytics.

Every order mutation runs as a single database unit of work (see ``crud``);
customer notifications are dispatched after the commit as background tasks.

Endpoints:
    GET /healthz: Health check endpoint for orchestration systems
    POST /orders: Create a pending order
    GET /orders: List orders (own orders, admins see all)
    GET /orders/{order_id}: Get a single order
    PATCH /orders/{order_id}: Partial update through the transition table (admin)
    GET /orders/{order_id}/timeline: Order event timeline
    POST /orders/payment-reminder: Re-issue a payment link or expire the order
    POST /orders/expire-unpaid: Cancel all orders past their payment window (admin)
    GET /config/razorpay: Public gateway configuration for the checkout page
    POST /payments/create-order: Open a gateway payment for an order
    POST /payments/verify: Verify a gateway callback and confirm the order
    GET /loyalty/rewards: Active reward catalog
    GET /loyalty/{user_id}: Loyalty summary
    GET /loyalty/{user_id}/transactions: Loyalty ledger
    POST /loyalty/redeem: Redeem a reward
    POST /admin/inventory/{product_id}/adjust: Manual stock movement (admin)
    GET /admin/stock-movements: Stock movement log (admin)
    POST /products/{product_id}/view: Record a product view
    GET /products/trending: Trending products
    GET /recently-viewed: Current user's recently viewed products

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "storefront-service"
"""
from contextlib import asynccontextmanager
from typing import List, Optional
import logging
import httpx
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, status
from sqlalchemy.orm import Session

from . import auth, cache, config, crud, loyalty, models, notifications, payments, schemas, transitions
from .clients import razorpay_client
from .database import engine, get_db

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    models.Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="storefront-service", lifespan=lifespan)


def _get_order_or_404(db: Session, order_id: int, current_user: auth.CurrentUser, action: str) -> models.Order:
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    auth.ensure_owner_or_admin(current_user, db_order.user_id, action)
    return db_order


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the storefront service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@app.post("/orders", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Create a new pending order (authenticated users can create their own, admins any).

    Stock is not reserved at checkout; it is decremented when the order is
    confirmed.

    Args:
        order: Order data including line items
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Created order object

    Raises:
        HTTPException: 403 if ordering on behalf of another user
        HTTPException: 400 if validation fails
        HTTPException: 500 if the order cannot be stored
    """
    auth.ensure_owner_or_admin(current_user, order.user_id, "create orders for other users")

    is_valid, error_message = crud.validate_order_data(db, order)
    if not is_valid:
        raise HTTPException(status_code=400, detail=error_message)

    try:
        return crud.create_order(db=db, order=order, actor_id=current_user.id)
    except Exception:
        logger.exception("Failed to create order")
        raise HTTPException(status_code=500, detail="Failed to create order")


@app.get("/orders", response_model=List[schemas.Order])
def list_orders(
    skip: int = 0,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders with pagination (authenticated users see their own, admins see all).

    Args:
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        List of order objects, newest first
    """
    user_id = None if current_user.is_admin else current_user.id
    return crud.get_orders(db, skip=skip, limit=limit, user_id=user_id)


@app.post("/orders/payment-reminder", response_model=schemas.PaymentReminderResponse)
def send_payment_reminder(
    payload: schemas.PaymentReminderRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Re-issue the payment link for an unpaid online order.

    If the payment window has elapsed the order is cancelled instead.

    Args:
        payload: Order to remind about
        background_tasks: Background task queue (injected)
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Payment link and minutes left in the window

    Raises:
        HTTPException: 404 if the order is absent or already paid
        HTTPException: 400 if the window expired or the order is not an online payment
    """
    db_order = crud.get_order(db, order_id=payload.order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found or already paid")
    auth.ensure_owner_or_admin(current_user, db_order.user_id, "access this order")

    try:
        db_order, payment_link, time_remaining = crud.prepare_payment_reminder(db, payload.order_id)
    except crud.OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.OrderValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Failed to process payment reminder for order {payload.order_id}")
        raise HTTPException(status_code=500, detail="Failed to send payment reminder")

    background_tasks.add_task(
        notifications.dispatch,
        notifications.PAYMENT_REMINDER,
        notifications.order_payload(db_order, payment_link=payment_link, time_remaining=time_remaining)
    )
    return schemas.PaymentReminderResponse(success=True, payment_link=payment_link, time_remaining=time_remaining)


@app.post("/orders/expire-unpaid", response_model=schemas.ExpiredOrdersResponse)
def expire_unpaid_orders(
    db: Session = Depends(get_db),
    admin_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Cancel every online order still unpaid past its payment window (admin only).

    Returns:
        IDs of the cancelled orders
    """
    try:
        cancelled = crud.sweep_expired_orders(db)
    except Exception:
        logger.exception("Failed to expire unpaid orders")
        raise HTTPException(status_code=500, detail="Failed to expire unpaid orders")
    logger.info(f"Payment window sweep cancelled {len(cancelled)} orders")
    return schemas.ExpiredOrdersResponse(cancelled_order_ids=cancelled)


@app.get("/orders/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Retrieve a single order by ID (owner or admin).

    An online order still unpaid past its payment window is cancelled
    before it is returned.

    Args:
        order_id: ID of the order to retrieve
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Order object

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = _get_order_or_404(db, order_id, current_user, "view this order")

    if crud.is_awaiting_online_payment(db_order):
        try:
            crud.expire_if_unpaid(db, order_id)
        except Exception:
            logger.exception(f"Failed to expire order {order_id}")
        db_order = crud.get_order(db, order_id=order_id)
    return db_order


@app.patch("/orders/{order_id}", response_model=schemas.Order)
def update_order(
    order_id: int,
    order: schemas.OrderUpdate,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    admin_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Partially update an order (admin only).

    Status changes go through the transition table, which applies the
    stock and loyalty side effects in the same transaction.

    Args:
        order_id: ID of the order to update
        order: Fields to change
        background_tasks: Background task queue (injected)
        db: Database session (injected)
        admin_user: Current admin user (injected)

    Returns:
        Updated order object

    Raises:
        HTTPException: 404 if order not found
        HTTPException: 400 if the update breaks a business rule
        HTTPException: 500 if the update cannot be stored
    """
    try:
        db_order, old_status = crud.update_order(db, order_id=order_id, order=order, actor_id=admin_user.id)
    except crud.OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.OrderValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Failed to update order {order_id}")
        raise HTTPException(status_code=500, detail="Failed to update order")

    if db_order.status != old_status and (order.send_notification or db_order.status == transitions.CONFIRMED):
        background_tasks.add_task(
            notifications.dispatch,
            notifications.ORDER_STATUS_UPDATE,
            notifications.order_payload(db_order)
        )
    return db_order


@app.get("/orders/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the event timeline for an order (owner or admin).

    Args:
        order_id: Order identifier
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        List of order events, oldest first

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    _get_order_or_404(db, order_id, current_user, "view this order")
    return crud.get_order_events(db, order_id)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@app.get("/config/razorpay", response_model=dict)
def razorpay_config():
    """Public gateway settings for the checkout page. Never exposes the secret."""
    return {
        "enabled": bool(config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET),
        "key_id": config.RAZORPAY_KEY_ID or None,
    }


@app.post("/payments/create-order", response_model=schemas.GatewayOrder)
async def create_payment_order(
    payload: schemas.GatewayOrderCreate,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Open a gateway payment for an order awaiting payment.

    Args:
        payload: Order and currency to charge
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Gateway order with the amount in minor units

    Raises:
        HTTPException: 404 if order not found
        HTTPException: 400 if the order is not awaiting payment or the amount is invalid
        HTTPException: 500 if the gateway is not configured
        HTTPException: 502 if the gateway call fails
    """
    db_order = _get_order_or_404(db, payload.order_id, current_user, "pay for this order")
    if db_order.status != transitions.PENDING or db_order.payment_status != "pending":
        raise HTTPException(status_code=400, detail="Order is not awaiting payment")

    amount = payments.to_minor_units(db_order.total_amount)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Invalid amount")

    # A checkout retry reuses the open gateway order so earlier callbacks still match
    if db_order.razorpay_order_id:
        return schemas.GatewayOrder(
            id=db_order.razorpay_order_id,
            amount=amount,
            currency=payload.currency,
            receipt=db_order.order_number
        )

    try:
        gateway_order = await razorpay_client.create_gateway_order(
            amount, currency=payload.currency, receipt=db_order.order_number
        )
    except razorpay_client.GatewayNotConfigured:
        logger.error("Payment order requested but Razorpay keys are not configured")
        raise HTTPException(status_code=500, detail="Razorpay not configured")
    except httpx.HTTPError as e:
        logger.error(f"Razorpay order creation failed for order {db_order.id}: {e}")
        raise HTTPException(status_code=502, detail="Payment gateway error")

    try:
        db_order = crud.attach_gateway_order(db, db_order, gateway_order["id"])
    except Exception:
        logger.exception(f"Failed to store gateway order for order {db_order.id}")
        raise HTTPException(status_code=500, detail="Failed to create payment order")

    return schemas.GatewayOrder(
        id=db_order.razorpay_order_id,
        amount=gateway_order.get("amount", amount),
        currency=gateway_order.get("currency", payload.currency),
        receipt=gateway_order.get("receipt", db_order.order_number)
    )


@app.post("/payments/verify", response_model=schemas.PaymentVerifyResponse)
def verify_payment(
    payload: schemas.PaymentVerifyRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """
    Verify a gateway checkout callback and confirm the order.

    The HMAC signature is the credential, so this endpoint takes no bearer
    token. Repeating a verified callback returns 200 without side effects.

    Args:
        payload: Gateway order id, payment id and signature
        background_tasks: Background task queue (injected)
        db: Database session (injected)

    Returns:
        Verification result with the internal order id

    Raises:
        HTTPException: 400 on signature mismatch or conflicting payment
        HTTPException: 404 if no order matches the gateway order id
        HTTPException: 500 if the gateway is not configured or the update fails
    """
    if not config.RAZORPAY_KEY_SECRET:
        logger.error("Payment verification attempted but Razorpay secret is not configured")
        raise HTTPException(status_code=500, detail="Razorpay not configured")

    try:
        db_order, outcome = crud.confirm_payment(
            db,
            payload.razorpay_order_id,
            payload.razorpay_payment_id,
            payload.razorpay_signature
        )
    except crud.OrderNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except crud.OrderValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Payment verification failed for gateway order {payload.razorpay_order_id}")
        raise HTTPException(status_code=500, detail="Payment verification failed")

    if outcome == crud.PAYMENT_ON_CANCELLED_ORDER:
        raise HTTPException(
            status_code=400,
            detail="Order was cancelled before payment completed; payment recorded for refund"
        )

    if outcome == crud.PAYMENT_ALREADY_VERIFIED:
        return schemas.PaymentVerifyResponse(
            order_id=db_order.id,
            payment_id=payload.razorpay_payment_id,
            already_verified=True,
            message="Payment already verified"
        )

    background_tasks.add_task(
        notifications.dispatch,
        notifications.PAYMENT_CONFIRMATION,
        notifications.order_payload(db_order)
    )
    return schemas.PaymentVerifyResponse(order_id=db_order.id, payment_id=payload.razorpay_payment_id)


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------

@app.get("/loyalty/rewards", response_model=List[schemas.LoyaltyReward])
def list_rewards(db: Session = Depends(get_db)):
    """List the active reward catalog, cheapest first."""
    return crud.get_active_rewards(db)


@app.get("/loyalty/{user_id}", response_model=schemas.LoyaltySummary)
def get_loyalty(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a user's loyalty summary (owner or admin).

    An empty Bronze account is opened on first read.

    Args:
        user_id: Account owner
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Points, tier and progress to the next tier
    """
    auth.ensure_owner_or_admin(current_user, user_id, "view this loyalty account")
    try:
        return crud.get_loyalty_summary(db, user_id)
    except Exception:
        logger.exception(f"Failed to load loyalty account for user {user_id}")
        raise HTTPException(status_code=500, detail="Failed to fetch loyalty data")


@app.get("/loyalty/{user_id}/transactions", response_model=List[schemas.LoyaltyTransaction])
def get_loyalty_transactions(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Loyalty ledger for a user, newest first (owner or admin)."""
    auth.ensure_owner_or_admin(current_user, user_id, "view this loyalty account")
    return loyalty.get_transactions(db, user_id)


@app.post("/loyalty/redeem", response_model=schemas.RedeemResponse)
def redeem_reward(
    payload: schemas.RedeemRequest,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Spend loyalty points on a reward (owner or admin).

    Args:
        payload: User and reward
        db: Database session (injected)
        current_user: Current authenticated user (injected)

    Returns:
        Remaining balance and the issued coupon code, if any

    Raises:
        HTTPException: 404 if the reward does not exist
        HTTPException: 400 if the balance is too low
    """
    auth.ensure_owner_or_admin(current_user, payload.user_id, "redeem rewards for this user")
    try:
        reward, account, coupon = crud.redeem_loyalty_reward(db, payload.user_id, payload.reward_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except loyalty.InsufficientPoints as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        logger.exception(f"Failed to redeem reward {payload.reward_id} for user {payload.user_id}")
        raise HTTPException(status_code=500, detail="Failed to redeem reward")

    return schemas.RedeemResponse(
        message=f"Successfully redeemed {reward.name}",
        points_remaining=account.current_points,
        coupon_code=coupon.code if coupon else None
    )


# ---------------------------------------------------------------------------
# Inventory administration
# ---------------------------------------------------------------------------

@app.post("/admin/inventory/{product_id}/adjust", response_model=schemas.ProductStock)
def adjust_inventory(
    product_id: int,
    adjustment: schemas.StockAdjustment,
    db: Session = Depends(get_db),
    admin_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Record a manual stock movement (admin only).

    Args:
        product_id: Product to adjust
        adjustment: Movement type, quantity and reason
        db: Database session (injected)
        admin_user: Current admin user (injected)

    Returns:
        Product with its new stock level

    Raises:
        HTTPException: 404 if the product does not exist
    """
    try:
        product = crud.adjust_stock(db, product_id, adjustment, actor_id=admin_user.id)
    except Exception:
        logger.exception(f"Failed to adjust stock for product {product_id}")
        raise HTTPException(status_code=500, detail="Failed to adjust inventory")
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.get("/admin/stock-movements", response_model=List[schemas.StockMovement])
def list_stock_movements(
    product_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    admin_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """Stock movement log, newest first (admin only)."""
    return crud.get_stock_movements(db, product_id=product_id, limit=limit)


# ---------------------------------------------------------------------------
# Product views
# ---------------------------------------------------------------------------

@app.post("/products/{product_id}/view", response_model=dict)
def record_product_view(
    product_id: int,
    session_id: Optional[str] = None,
    db: Session = Depends(get_db),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user)
):
    """
    Record a product page view.

    Updates the view counter and the viewer's recently viewed list, and
    invalidates the cached trending lists.

    Args:
        product_id: Viewed product
        session_id: Anonymous visitor session (optional)
        db: Database session (injected)
        current_user: Viewer, if signed in (injected)

    Returns:
        dict with the running view count (None when the cache is down)

    Raises:
        HTTPException: 404 if the product does not exist
    """
    if crud.get_product(db, product_id) is None:
        raise HTTPException(status_code=404, detail="Product not found")

    user_id = current_user.id if current_user else None
    try:
        crud.record_product_view(db, product_id, user_id=user_id, session_id=session_id)
    except Exception:
        logger.exception(f"Failed to record view for product {product_id}")
        raise HTTPException(status_code=500, detail="Failed to record product view")

    view_count = cache.increment(cache.product_views_key(product_id))
    if user_id is not None:
        cache.push_recently_viewed(user_id, product_id)
    cache.delete_pattern("analytics:trending:*")
    return {"success": True, "view_count": view_count}


@app.get("/products/trending", response_model=List[schemas.TrendingProduct])
def trending_products(
    period: str = Query("weekly", pattern="^(daily|weekly|monthly)$"),
    limit: int = Query(10, ge=1, le=50),
    db: Session = Depends(get_db)
):
    """
    Products ranked by recent views, cached for five minutes.

    Args:
        period: daily, weekly or monthly
        limit: Maximum number of products
        db: Database session (injected)

    Returns:
        List of trending products, best first
    """
    cache_key = cache.trending_key(period, limit)
    cached = cache.get_cache(cache_key)
    if cached is not None:
        return cached

    products = crud.get_trending_products(db, period=period, limit=limit)
    cache.set_cache(cache_key, products, cache.TRENDING_CACHE_TTL)
    return products


@app.get("/recently-viewed", response_model=List[schemas.ProductSummary])
def recently_viewed(
    limit: int = Query(10, ge=1, le=cache.RECENTLY_VIEWED_MAX),
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """Current user's recently viewed products, most recent first."""
    product_ids = cache.get_recently_viewed(current_user.id)[:limit]
    products = {product.id: product for product in crud.get_products_by_ids(db, product_ids)}
    return [products[pid] for pid in product_ids if pid in products]

"""
Stock adjustment for order transitions and back-office movements.

Order-driven adjustments are idempotent per order and direction: the
``inventory_adjusted_at`` marker on the order records that its line items are
currently held out of stock. Nothing here commits; callers own the unit of work.
"""
from datetime import datetime
from typing import Optional
import logging
from sqlalchemy import case
from sqlalchemy.orm import Session
from . import models

logger = logging.getLogger(__name__)

DECREMENT = "decrement"
RESTORE = "restore"


def _floored_decrement(quantity: int):
    """SQL expression for ``GREATEST(0, stock_quantity - quantity)``."""
    remaining = models.Product.stock_quantity - quantity
    return case((remaining < 0, 0), else_=remaining)


def adjust_for_order(
    db: Session,
    order: models.Order,
    direction: str,
    actor_id: Optional[int] = None
) -> bool:
    """
    Apply ``stock_quantity -= quantity`` (floored at zero) or ``+= quantity``
    for every line item of an order.

    Each row is changed with a single UPDATE expression so concurrent
    adjustments never read-modify-write a stale counter.

    Args:
        db: Database session
        order: Order whose line items are adjusted
        direction: DECREMENT or RESTORE
        actor_id: User who triggered the adjustment (optional)

    Returns:
        True if stock was adjusted, False if the order was already in the
        requested state (repeat call)
    """
    if direction == DECREMENT and order.inventory_adjusted_at is not None:
        logger.info(f"Stock already decremented for order {order.id}; skipping")
        return False
    if direction == RESTORE and order.inventory_adjusted_at is None:
        logger.info(f"No decremented stock to restore for order {order.id}; skipping")
        return False

    for item in order.items:
        if direction == DECREMENT:
            new_value = _floored_decrement(item.quantity)
            movement_type = "order_confirmed"
        else:
            new_value = models.Product.stock_quantity + item.quantity
            movement_type = "order_cancelled"

        db.query(models.Product).filter(models.Product.id == item.product_id).update(
            {models.Product.stock_quantity: new_value, models.Product.updated_at: datetime.utcnow()},
            synchronize_session=False
        )
        db.add(models.StockMovement(
            product_id=item.product_id,
            type=movement_type,
            quantity=item.quantity,
            reason=f"Order {order.order_number}",
            order_id=order.id,
            created_by=actor_id
        ))
        verb = "Deducted" if direction == DECREMENT else "Restored"
        logger.info(f"{verb} {item.quantity} units of product {item.product_id} for order {order.id}")

    order.inventory_adjusted_at = datetime.utcnow() if direction == DECREMENT else None
    db.flush()
    return True


def apply_manual_movement(
    db: Session,
    product: models.Product,
    movement_type: str,
    quantity: int,
    reason: Optional[str] = None,
    actor_id: Optional[int] = None
) -> models.StockMovement:
    """
    Record a back-office stock movement.

    ``in`` adds units, ``out`` removes units (floored at zero) and
    ``adjustment`` sets the absolute on-hand count.

    Args:
        db: Database session
        product: Product to adjust (should be loaded with a row lock)
        movement_type: in, out or adjustment
        quantity: Units moved, or the new absolute count for adjustment
        reason: Free-text reason (optional)
        actor_id: Admin entering the movement (optional)

    Returns:
        The StockMovement row that was added
    """
    current = product.stock_quantity or 0
    if movement_type == "in":
        product.stock_quantity = current + quantity
    elif movement_type == "out":
        product.stock_quantity = max(0, current - quantity)
    else:
        product.stock_quantity = quantity

    movement = models.StockMovement(
        product_id=product.id,
        type=movement_type,
        quantity=quantity,
        reason=reason or "manual adjustment",
        created_by=actor_id
    )
    db.add(movement)
    db.flush()
    logger.info(f"Stock for product {product.id}: {current} -> {product.stock_quantity} ({movement_type})")
    return movement

"""
Business validation utilities for the Storefront service.

Provides validation beyond schema validation. Every helper returns a
``(is_valid, error_message)`` tuple; route handlers turn failures into 400s.
"""
from typing import List, Tuple
from decimal import Decimal
from . import schemas, transitions


def validate_order_items(items: List[schemas.OrderItemCreate]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > 100:
        return False, "Order cannot contain more than 100 items"

    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Order contains duplicate products"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > 10000:
            return False, f"Item {item.product_id}: quantity exceeds maximum (10000)"

        if item.price < 0:
            return False, f"Item {item.product_id}: price cannot be negative"

    return True, ""


def validate_order_total(
    items: List[schemas.OrderItemCreate],
    delivery_fee: Decimal,
    claimed_total: Decimal
) -> Tuple[bool, str]:
    """
    Validate that the order total matches the line items plus delivery fee.

    Args:
        items: List of order items
        delivery_fee: Delivery fee charged on the order
        claimed_total: The total claimed by the client

    Returns:
        Tuple of (is_valid, error_message)
    """
    calculated_total = sum(
        (Decimal(str(item.price)) * item.quantity for item in items),
        Decimal("0")
    ) + Decimal(str(delivery_fee))

    # Allow small rounding differences (up to 0.01)
    if abs(calculated_total - claimed_total) > Decimal("0.01"):
        return False, f"Order total mismatch: calculated {calculated_total}, claimed {claimed_total}"

    return True, ""


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed by the transition table.

    Args:
        old_status: Current order status
        new_status: New order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    if old_status not in transitions.ORDER_STATUSES:
        return False, f"Unknown status: {old_status}"

    if new_status not in transitions.ORDER_STATUSES:
        return False, f"Unknown status: {new_status}"

    allowed, _ = transitions.get_transition(old_status, new_status)
    if not allowed:
        return False, f"Invalid status transition: {old_status} -> {new_status}"

    return True, ""


def validate_tracking(new_status: str, tracking_number: str) -> Tuple[bool, str]:
    """
    A shipped order must carry a non-empty tracking number.

    Args:
        new_status: Status the order is moving to (or staying in)
        tracking_number: Tracking number the order will hold after the update

    Returns:
        Tuple of (is_valid, error_message)
    """
    if new_status == transitions.SHIPPED and not (tracking_number or "").strip():
        return False, "Tracking number is required to mark order as shipped"
    return True, ""

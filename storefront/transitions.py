"""
Order lifecycle transition table.

Every status change goes through ``get_transition``: it decides whether the
move is legal and which side effects it carries, so call sites never
re-derive the inventory or loyalty coupling themselves.
"""
from typing import Dict, List, Tuple

PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"

ORDER_STATUSES = (PENDING, CONFIRMED, PROCESSING, SHIPPED, DELIVERED, CANCELLED)
TERMINAL_STATUSES = (DELIVERED, CANCELLED)

# Side effect identifiers
DECREMENT_STOCK = "decrement_stock"
RESTORE_STOCK = "restore_stock"
AWARD_LOYALTY = "award_loyalty"

ALLOWED_TRANSITIONS: Dict[str, List[str]] = {
    PENDING: [CONFIRMED, CANCELLED],
    CONFIRMED: [PROCESSING, SHIPPED, CANCELLED],
    PROCESSING: [SHIPPED, CANCELLED],
    SHIPPED: [DELIVERED],
    DELIVERED: [],
    CANCELLED: [],
}

SIDE_EFFECTS: Dict[Tuple[str, str], List[str]] = {
    (PENDING, CONFIRMED): [DECREMENT_STOCK, AWARD_LOYALTY],
    (CONFIRMED, CANCELLED): [RESTORE_STOCK],
    (PROCESSING, CANCELLED): [RESTORE_STOCK],
}


def is_allowed(old_status: str, new_status: str) -> bool:
    """Return True if ``old_status -> new_status`` is a legal move."""
    return new_status in ALLOWED_TRANSITIONS.get(old_status, [])


def get_transition(old_status: str, new_status: str) -> Tuple[bool, List[str]]:
    """
    Look up a status change in the transition table.

    A same-status move is allowed and carries no side effects.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (allowed, side_effects)
    """
    if old_status == new_status:
        return True, []
    if not is_allowed(old_status, new_status):
        return False, []
    return True, list(SIDE_EFFECTS.get((old_status, new_status), []))

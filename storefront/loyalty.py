"""
Loyalty program: points awards, tiers and reward redemption.

The balance on ``LoyaltyAccount`` is written in the same unit of work as the
ledger row that explains it, and awards are keyed by order id so a retried
payment confirmation never pays out twice.
"""
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple
import logging
import uuid
from sqlalchemy.orm import Session
from . import config, models

logger = logging.getLogger(__name__)

# Lower bound of lifetime points for each tier, highest first
TIER_THRESHOLDS = [
    ("Platinum", 5000),
    ("Gold", 2500),
    ("Silver", 1000),
    ("Bronze", 0),
]

COUPON_VALIDITY_DAYS = 30
TRANSACTION_HISTORY_LIMIT = 50


class InsufficientPoints(Exception):
    pass


def tier_for(total_earned: int) -> str:
    for tier, threshold in TIER_THRESHOLDS:
        if total_earned >= threshold:
            return tier
    return "Bronze"


def points_for_amount(amount) -> int:
    """
    Points earned for an order amount, rounded half up.

    Example:
        points_for_amount(Decimal("2000")) -> 40
    """
    rate = Decimal(str(config.LOYALTY_EARN_RATE))
    points = (Decimal(str(amount)) * rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(points)


def get_account(db: Session, user_id: int, lock: bool = False) -> Optional[models.LoyaltyAccount]:
    query = db.query(models.LoyaltyAccount).filter(models.LoyaltyAccount.user_id == user_id)
    if lock:
        query = query.with_for_update().populate_existing()
    return query.first()


def get_or_create_account(db: Session, user_id: int, lock: bool = False) -> models.LoyaltyAccount:
    """
    Fetch a user's loyalty account, adding an empty Bronze one if missing.

    Args:
        db: Database session
        user_id: Account owner
        lock: Take a row lock for a balance update

    Returns:
        LoyaltyAccount
    """
    account = get_account(db, user_id, lock=lock)
    if account is None:
        account = models.LoyaltyAccount(user_id=user_id, current_points=0, total_earned=0, tier="Bronze")
        db.add(account)
        db.flush()
    return account


def has_award_for_order(db: Session, order_id: int) -> bool:
    return db.query(models.LoyaltyTransaction).filter(
        models.LoyaltyTransaction.order_id == order_id,
        models.LoyaltyTransaction.type == "earned"
    ).first() is not None


def award_points_for_order(db: Session, order: models.Order) -> int:
    """
    Award points for a confirmed order.

    Adds ``round(total_amount * rate)`` to the user's balance and lifetime
    total, recomputes the tier and appends an ``earned`` ledger entry.

    Args:
        db: Database session
        order: Confirmed order

    Returns:
        Points awarded; 0 when the amount earns nothing or the order was
        already rewarded
    """
    points = points_for_amount(order.total_amount)
    if points <= 0:
        return 0

    if has_award_for_order(db, order.id):
        logger.info(f"Loyalty points already awarded for order {order.id}")
        return 0

    account = get_or_create_account(db, order.user_id, lock=True)
    account.current_points = (account.current_points or 0) + points
    account.total_earned = (account.total_earned or 0) + points
    account.tier = tier_for(account.total_earned)

    db.add(models.LoyaltyTransaction(
        user_id=order.user_id,
        type="earned",
        points=points,
        description=f"Points earned from order #{order.order_number}",
        order_id=order.id
    ))
    db.flush()

    logger.info(f"Awarded {points} loyalty points to user {order.user_id} for order {order.order_number}")
    return points


def redeem_reward(
    db: Session,
    user_id: int,
    reward: models.LoyaltyReward
) -> Tuple[models.LoyaltyAccount, Optional[models.UserCoupon]]:
    """
    Spend points on a reward.

    Args:
        db: Database session
        user_id: Redeeming user
        reward: Reward being bought

    Returns:
        Tuple of (updated account, issued coupon or None)

    Raises:
        InsufficientPoints: if the balance does not cover the reward
    """
    account = get_account(db, user_id, lock=True)
    if account is None or account.current_points < reward.points_required:
        raise InsufficientPoints("Insufficient points")

    account.current_points -= reward.points_required
    db.add(models.LoyaltyTransaction(
        user_id=user_id,
        type="redeemed",
        points=-reward.points_required,
        description=f"Redeemed: {reward.name}"
    ))

    coupon = None
    if reward.type == "discount":
        coupon = models.UserCoupon(
            user_id=user_id,
            code=f"LOYALTY{uuid.uuid4().hex[:10].upper()}",
            discount_percentage=reward.value,
            expires_at=datetime.utcnow() + timedelta(days=COUPON_VALIDITY_DAYS)
        )
        db.add(coupon)

    db.flush()
    logger.info(f"User {user_id} redeemed reward {reward.id} for {reward.points_required} points")
    return account, coupon


def summarize(account: models.LoyaltyAccount) -> dict:
    """
    Build the customer-facing loyalty summary with progress to the next tier.

    Args:
        account: Loyalty account

    Returns:
        dict with points, tier, tier_progress (0-100), next_tier_points,
        lifetime_points and redeemable_points
    """
    lifetime = account.total_earned or 0
    tier = tier_for(lifetime)
    thresholds = dict(TIER_THRESHOLDS)
    ordered = [name for name, _ in reversed(TIER_THRESHOLDS)]
    index = ordered.index(tier)

    if tier == "Platinum":
        progress = 100.0
        next_tier_points = 0
    else:
        current_floor = thresholds[tier]
        next_floor = thresholds[ordered[index + 1]]
        progress = (lifetime - current_floor) / (next_floor - current_floor) * 100
        next_tier_points = next_floor - lifetime

    return {
        "points": account.current_points or 0,
        "tier": tier,
        "tier_progress": max(0.0, min(100.0, round(progress, 2))),
        "next_tier_points": max(0, next_tier_points),
        "lifetime_points": lifetime,
        "redeemable_points": account.current_points or 0,
    }


def get_transactions(db: Session, user_id: int, limit: int = TRANSACTION_HISTORY_LIMIT) -> List[models.LoyaltyTransaction]:
    return db.query(models.LoyaltyTransaction).filter(
        models.LoyaltyTransaction.user_id == user_id
    ).order_by(models.LoyaltyTransaction.created_at.desc(), models.LoyaltyTransaction.id.desc()).limit(limit).all()

"""
Coupon validation, consumption and expiry, plus coupon management.

validate() only quotes a discount; mark_used() consumes the coupon and is
called inside the order-creation transaction so both commit together.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, Optional

from sqlalchemy import update, or_, and_
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import AlreadyUsed, CouponNotFound, CouponSoldOut, OutOfWindow, ValidationError
from models.coupon import (
    Coupon,
    UserCoupon,
    TYPE_FLAT_OFF,
    TYPE_PERCENTAGE,
    COUPON_LISTED,
    COUPON_UNLISTED,
    USER_COUPON_UNUSED,
    USER_COUPON_USED,
    USER_COUPON_EXPIRED,
)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return naive_utc(datetime.now(timezone.utc))


def naive_utc(dt: datetime) -> datetime:
    # Postgres hands back aware datetimes, SQLite naive ones
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


@dataclass(slots=True)
class CouponQuote:
    discount: Decimal
    valid: bool = True
    user_coupon_id: Optional[int] = None


def compute_discount(coupon: Coupon, subtotal: Decimal) -> Decimal:
    subtotal = Decimal(str(subtotal))
    amount = Decimal(str(coupon.amount))
    if coupon.type == TYPE_FLAT_OFF:
        if subtotal >= Decimal(str(coupon.threshold)):
            return min(amount, subtotal).quantize(CENTS)
        return ZERO
    if coupon.type == TYPE_PERCENTAGE:
        return (subtotal * (Decimal("1") - amount)).quantize(CENTS, rounding=ROUND_HALF_UP)
    raise ValidationError(f"Unknown coupon type: {coupon.type}")


def in_window(coupon: Coupon, now: datetime) -> bool:
    return naive_utc(coupon.start_time) <= now <= naive_utc(coupon.end_time)


def validate(
    db: Session,
    user_coupon_id: Optional[int],
    user_id: int,
    subtotal,
    now: Optional[datetime] = None,
) -> CouponQuote:
    if not user_coupon_id:
        return CouponQuote(discount=ZERO)

    uc = (
        db.query(UserCoupon)
        .filter(UserCoupon.id == user_coupon_id, UserCoupon.user_id == user_id)
        .first()
    )
    if not uc or not uc.coupon:
        raise CouponNotFound()
    if uc.status != USER_COUPON_UNUSED:
        raise AlreadyUsed()
    now = naive_utc(now or utcnow())
    if not in_window(uc.coupon, now):
        raise OutOfWindow()

    discount = compute_discount(uc.coupon, Decimal(str(subtotal)))
    logger.info(f"[coupons.validate] user={user_id} coupon={user_coupon_id} subtotal={subtotal} discount={discount}")
    return CouponQuote(discount=discount, valid=True, user_coupon_id=uc.id)


def mark_used(db: Session, user_coupon_id: int, now: Optional[datetime] = None) -> None:
    result = db.execute(
        update(UserCoupon)
        .where(UserCoupon.id == user_coupon_id, UserCoupon.status == USER_COUPON_UNUSED)
        .values(status=USER_COUPON_USED, used_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise AlreadyUsed()


def receive(db: Session, user_id: int, coupon_id: int, now: Optional[datetime] = None) -> UserCoupon:
    """Claim a coupon for a user. Repeat claims are allowed while quantity lasts."""
    coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
    if not coupon or coupon.status != COUPON_LISTED:
        raise CouponNotFound()
    now = naive_utc(now or utcnow())
    if not in_window(coupon, now):
        raise OutOfWindow()

    result = db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            or_(Coupon.total == 0, Coupon.received < Coupon.total),
        )
        .values(received=Coupon.received + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise CouponSoldOut()

    uc = UserCoupon(user_id=user_id, coupon_id=coupon_id, status=USER_COUPON_UNUSED)
    db.add(uc)
    db.commit()
    db.refresh(uc)
    logger.info(f"[coupons.receive] user={user_id} coupon={coupon_id} -> user_coupon={uc.id}")
    return uc


def available(db: Session, user_id: int, now: Optional[datetime] = None) -> list[UserCoupon]:
    now = naive_utc(now or utcnow())
    return (
        db.query(UserCoupon)
        .join(Coupon, Coupon.id == UserCoupon.coupon_id)
        .filter(
            UserCoupon.user_id == user_id,
            UserCoupon.status == USER_COUPON_UNUSED,
            Coupon.start_time <= now,
            Coupon.end_time >= now,
        )
        .order_by(UserCoupon.id.desc())
        .all()
    )


def expire_overdue(db: Session, now: Optional[datetime] = None) -> int:
    """Mark unused user coupons whose coupon window has closed as expired."""
    now = naive_utc(now or utcnow())
    overdue_ids = [
        row[0]
        for row in db.query(UserCoupon.id)
        .join(Coupon, Coupon.id == UserCoupon.coupon_id)
        .filter(and_(UserCoupon.status == USER_COUPON_UNUSED, Coupon.end_time < now))
        .all()
    ]
    if not overdue_ids:
        return 0
    result = db.execute(
        update(UserCoupon)
        .where(UserCoupon.id.in_(overdue_ids), UserCoupon.status == USER_COUPON_UNUSED)
        .values(status=USER_COUPON_EXPIRED, expired_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(f"[coupons.expire] expired {result.rowcount} user coupons")
    return result.rowcount


# ---- coupon management ----

def _decimal(value, field: str) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENTS)
    except Exception:
        raise ValidationError(f"Invalid {field}: {value!r}")


def _check_terms(coupon: Coupon) -> None:
    if coupon.type not in (TYPE_FLAT_OFF, TYPE_PERCENTAGE):
        raise ValidationError(f"Unknown coupon type: {coupon.type}")
    amount = Decimal(str(coupon.amount))
    threshold = Decimal(str(coupon.threshold))
    if coupon.type == TYPE_PERCENTAGE and not (ZERO < amount <= Decimal("1")):
        raise ValidationError("Percentage coupons need a rate in (0, 1], e.g. 0.90")
    if coupon.type == TYPE_FLAT_OFF and amount <= ZERO:
        raise ValidationError("Flat-off coupons need a positive amount")
    if threshold < ZERO:
        raise ValidationError("Threshold must not be negative")
    if naive_utc(coupon.start_time) >= naive_utc(coupon.end_time):
        raise ValidationError("Coupon must start before it ends")
    if coupon.total < 0:
        raise ValidationError("Total must not be negative (0 means unlimited)")
    if coupon.total and coupon.total < (coupon.received or 0):
        raise ValidationError("Total cannot drop below the number already received")


def get_coupon(db: Session, coupon_id: int) -> Coupon:
    coupon = db.query(Coupon).filter(Coupon.id == coupon_id).first()
    if not coupon:
        raise CouponNotFound()
    return coupon


def create_coupon(
    db: Session,
    name: str,
    type: str,
    amount,
    start_time: datetime,
    end_time: datetime,
    threshold=0,
    total: int = 0,
    description: Optional[str] = None,
) -> Coupon:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Coupon name is required")
    coupon = Coupon(
        name=name,
        type=type,
        amount=_decimal(amount, "amount"),
        threshold=_decimal(threshold or 0, "threshold"),
        start_time=naive_utc(start_time),
        end_time=naive_utc(end_time),
        total=total,
        received=0,
        status=COUPON_LISTED,
        description=description,
    )
    _check_terms(coupon)
    db.add(coupon)
    db.commit()
    db.refresh(coupon)
    logger.info(f"[coupons.create] coupon={coupon.id} type={coupon.type} amount={coupon.amount} total={total}")
    return coupon


def update_coupon(db: Session, coupon_id: int, changes: Mapping[str, Any]) -> Coupon:
    """Edit terms of a coupon. Already claimed user coupons see the new terms at checkout."""
    coupon = get_coupon(db, coupon_id)
    changes = {k: v for k, v in changes.items() if v is not None}
    try:
        for key in ("name", "type", "description", "total"):
            if key in changes:
                setattr(coupon, key, changes[key])
        for key in ("amount", "threshold"):
            if key in changes:
                setattr(coupon, key, _decimal(changes[key], key))
        for key in ("start_time", "end_time"):
            if key in changes:
                setattr(coupon, key, naive_utc(changes[key]))
        if "status" in changes:
            if changes["status"] not in (COUPON_LISTED, COUPON_UNLISTED):
                raise ValidationError(f"Unknown status: {changes['status']}")
            coupon.status = changes["status"]
        if not (coupon.name or "").strip():
            raise ValidationError("Coupon name is required")
        _check_terms(coupon)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(coupon)
    logger.info(f"[coupons.update] coupon={coupon.id} fields={sorted(changes)}")
    return coupon


def unlist_coupon(db: Session, coupon_id: int) -> Coupon:
    """Stops new claims. Coupons users already hold stay usable inside their window."""
    coupon = get_coupon(db, coupon_id)
    coupon.status = COUPON_UNLISTED
    db.commit()
    db.refresh(coupon)
    logger.info(f"[coupons.unlist] coupon={coupon.id}")
    return coupon


def list_coupons(db: Session, listed_only: bool = False) -> list[Coupon]:
    q = db.query(Coupon)
    if listed_only:
        q = q.filter(Coupon.status == COUPON_LISTED)
    return q.order_by(Coupon.id.desc()).all()


def list_user_coupons(db: Session, user_id: int, status: Optional[str] = None) -> list[UserCoupon]:
    q = db.query(UserCoupon).filter(UserCoupon.user_id == user_id)
    if status:
        if status not in (USER_COUPON_UNUSED, USER_COUPON_USED, USER_COUPON_EXPIRED):
            raise ValidationError(f"Unknown status: {status}")
        q = q.filter(UserCoupon.status == status)
    return q.order_by(UserCoupon.id.desc()).all()


def unlist_expired(db: Session, now: Optional[datetime] = None) -> int:
    """Take coupons whose window has closed off the listing."""
    now = naive_utc(now or utcnow())
    result = db.execute(
        update(Coupon)
        .where(Coupon.status == COUPON_LISTED, Coupon.end_time < now)
        .values(status=COUPON_UNLISTED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount:
        logger.info(f"[coupons.unlist] unlisted {result.rowcount} expired coupons")
    return result.rowcount

from sqlalchemy import Column, String, DateTime, Integer, Numeric, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base

TYPE_FLAT_OFF = "flat_off"      # amount off once subtotal reaches threshold
TYPE_PERCENTAGE = "percentage"  # amount is the rate paid, e.g. 0.90

COUPON_LISTED = "listed"
COUPON_UNLISTED = "unlisted"

USER_COUPON_UNUSED = "unused"
USER_COUPON_USED = "used"
USER_COUPON_EXPIRED = "expired"


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    type = Column(String(20), nullable=False, default=TYPE_FLAT_OFF)
    threshold = Column(Numeric(10, 2), nullable=False, default=0)
    amount = Column(Numeric(10, 2), nullable=False, default=0)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)

    total = Column(Integer, nullable=False, default=0)  # 0 = unlimited
    received = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=COUPON_LISTED)
    description = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "threshold": str(self.threshold),
            "amount": str(self.amount),
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "total": self.total,
            "received": self.received,
            "status": self.status,
            "description": self.description,
        }


class UserCoupon(Base):
    """A coupon claimed by a user. Status only moves unused -> used or unused -> expired."""
    __tablename__ = "user_coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)

    status = Column(String(20), nullable=False, default=USER_COUPON_UNUSED, index=True)
    used_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    coupon = relationship("Coupon")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "couponId": self.coupon_id,
            "status": self.status,
            "usedAt": self.used_at.isoformat() if self.used_at else None,
            "expiredAt": self.expired_at.isoformat() if self.expired_at else None,
            "coupon": self.coupon.to_dict() if self.coupon else None,
        }

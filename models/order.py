"""
Order models
- orders: one checkout, walks pending -> delivering -> delivered -> completed (or cancelled)
- order_items: one blind box unit per row, price snapshotted at creation
"""
from sqlalchemy import Column, String, DateTime, Integer, Numeric, Boolean, ForeignKey
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base

STATUS_PENDING = "pending"
STATUS_DELIVERING = "delivering"
STATUS_DELIVERED = "delivered"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"

PAY_BALANCE = "balance"
PAY_GATEWAY = "gateway"
PAY_METHODS = (PAY_BALANCE, PAY_GATEWAY)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    address_id = Column(Integer, nullable=True)

    total_amount = Column(Numeric(10, 2), nullable=False)
    discount_amount = Column(Numeric(10, 2), nullable=False, default=0)

    status = Column(String(20), nullable=False, default=STATUS_PENDING, index=True)
    pay_method = Column(String(20), nullable=False, default=PAY_BALANCE)  # balance, gateway
    pay_time = Column(DateTime(timezone=True), nullable=True)
    cancelled = Column(Boolean, nullable=False, default=False)

    # Local trade reference sent to the gateway (set once) and the gateway's own id
    out_trade_no = Column(String(64), unique=True, index=True, nullable=True)
    trade_no = Column(String(64), nullable=True)

    user_coupon_id = Column(Integer, ForeignKey("user_coupons.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")

    def to_dict(self, with_items: bool = False):
        out = {
            "id": self.id,
            "userId": self.user_id,
            "addressId": self.address_id,
            "totalAmount": str(self.total_amount),
            "discountAmount": str(self.discount_amount),
            "status": self.status,
            "payMethod": self.pay_method,
            "payTime": self.pay_time.isoformat() if self.pay_time else None,
            "cancelled": bool(self.cancelled),
            "outTradeNo": self.out_trade_no,
            "userCouponId": self.user_coupon_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
        if with_items:
            out["items"] = [i.to_dict() for i in self.items]
        return out


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    blind_box_id = Column(Integer, ForeignKey("blind_boxes.id"), nullable=False, index=True)

    price = Column(Numeric(10, 2), nullable=False)  # snapshot at purchase time

    # Assigned prize, null until the box is opened
    item_id = Column(Integer, ForeignKey("box_items.id"), nullable=True)
    is_opened = Column(Boolean, nullable=False, default=False)
    opened_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    order = relationship("Order", back_populates="items")
    item = relationship("BoxItem")

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.order_id,
            "blindBoxId": self.blind_box_id,
            "price": str(self.price),
            "itemId": self.item_id,
            "isOpened": bool(self.is_opened),
            "openedAt": self.opened_at.isoformat() if self.opened_at else None,
        }

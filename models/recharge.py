from sqlalchemy import Column, String, DateTime, Integer, Numeric, ForeignKey
from sqlalchemy.sql import func
from core.database import Base

RECHARGE_PENDING = "pending"
RECHARGE_SUCCESS = "success"


class Recharge(Base):
    """
    Balance top-up paid through the gateway.
    Credited exactly once when the gateway notification arrives.
    """
    __tablename__ = "recharges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    status = Column(String(20), nullable=False, default=RECHARGE_PENDING)  # pending, success

    out_trade_no = Column(String(64), unique=True, index=True, nullable=False)
    trade_no = Column(String(64), nullable=True)
    pay_time = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": str(self.amount),
            "status": self.status,
            "outTradeNo": self.out_trade_no,
            "tradeNo": self.trade_no,
            "payTime": self.pay_time.isoformat() if self.pay_time else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

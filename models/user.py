"""
User model
Balance is only ever changed through services.balance (debit/credit)
"""
from sqlalchemy import Column, String, DateTime, Integer, Numeric, CheckConstraint
from sqlalchemy.sql import func
from core.database import Base


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(64), unique=True, index=True, nullable=False)
    nickname = Column(String(64), nullable=True)

    balance = Column(Numeric(10, 2), nullable=False, default=0)
    role = Column(String(20), nullable=False, default="customer")  # customer, seller, admin

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "nickname": self.nickname,
            "balance": str(self.balance) if self.balance is not None else "0.00",
            "role": self.role,
        }

"""
Blind box SKU and its prize table
- blind_boxes: purchasable randomized-prize units
- box_items: prizes with their draw probability
"""
from sqlalchemy import Column, String, Text, DateTime, Integer, Numeric, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from core.database import Base

STATUS_LISTED = "listed"
STATUS_UNLISTED = "unlisted"

RARITY_COMMON = 1
RARITY_RARE = 2
RARITY_HIDDEN = 3


class BlindBox(Base):
    __tablename__ = "blind_boxes"
    __table_args__ = (
        CheckConstraint("stock >= 0", name="ck_blind_boxes_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    cover_image = Column(String(255), nullable=True)

    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=STATUS_LISTED, index=True)  # listed, unlisted
    seller_id = Column(Integer, nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    items = relationship("BoxItem", back_populates="blind_box", order_by="BoxItem.id")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "coverImage": self.cover_image,
            "price": str(self.price),
            "stock": self.stock,
            "status": self.status,
            "sellerId": self.seller_id,
        }


class BoxItem(Base):
    """One prize of a blind box. Probabilities of a box should sum to 1 (checked at draw time)."""
    __tablename__ = "box_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    blind_box_id = Column(Integer, ForeignKey("blind_boxes.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    image = Column(String(255), nullable=True)
    rarity = Column(Integer, nullable=False, default=RARITY_COMMON)  # 1 common, 2 rare, 3 hidden
    probability = Column(Numeric(4, 3), nullable=False)

    blind_box = relationship("BlindBox", back_populates="items")

    def to_dict(self):
        return {
            "id": self.id,
            "blindBoxId": self.blind_box_id,
            "name": self.name,
            "image": self.image,
            "rarity": self.rarity,
            "probability": str(self.probability),
        }

"""
Coupon Management Router
Create, edit, unlist and list coupons that users can claim.
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.database import get_db
from models.coupon import TYPE_FLAT_OFF
from services import coupons as coupon_service

router = APIRouter(prefix="/api/coupon", tags=["coupon-admin"])


class CouponIn(BaseModel):
    name: str
    type: str = TYPE_FLAT_OFF
    amount: str
    threshold: str = "0"
    start_time: datetime
    end_time: datetime
    total: int = Field(default=0, ge=0)
    description: Optional[str] = None


class CouponUpdateIn(BaseModel):
    name: Optional[str] = None
    type: Optional[str] = None
    amount: Optional[str] = None
    threshold: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    total: Optional[int] = Field(default=None, ge=0)
    status: Optional[str] = None
    description: Optional[str] = None


@router.get("")
async def list_coupons(listed_only: bool = Query(False), db: Session = Depends(get_db)):
    rows = coupon_service.list_coupons(db, listed_only=listed_only)
    return {"ok": True, "coupons": [c.to_dict() for c in rows]}


@router.post("")
async def create_coupon(data: CouponIn, db: Session = Depends(get_db)):
    coupon = coupon_service.create_coupon(db, **data.model_dump())
    return {"ok": True, "coupon": coupon.to_dict()}


@router.patch("/{coupon_id}")
async def update_coupon(coupon_id: int, data: CouponUpdateIn, db: Session = Depends(get_db)):
    coupon = coupon_service.update_coupon(db, coupon_id, data.model_dump(exclude_unset=True))
    return {"ok": True, "coupon": coupon.to_dict()}


@router.post("/{coupon_id}/unlist")
async def unlist_coupon(coupon_id: int, db: Session = Depends(get_db)):
    coupon = coupon_service.unlist_coupon(db, coupon_id)
    return {"ok": True, "coupon": coupon.to_dict()}

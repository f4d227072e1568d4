"""
User Coupon Router
Claim coupons and list the ones currently usable at checkout.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.database import get_db
from services import coupons as coupon_service

router = APIRouter(prefix="/api/user-coupon", tags=["coupons"])


class ReceiveIn(BaseModel):
    user_id: int
    coupon_id: int


@router.get("/coupons")
async def listed_coupons(db: Session = Depends(get_db)):
    rows = coupon_service.list_coupons(db, listed_only=True)
    return {"ok": True, "coupons": [c.to_dict() for c in rows]}


@router.post("/receive")
async def receive_coupon(data: ReceiveIn, db: Session = Depends(get_db)):
    uc = coupon_service.receive(db, data.user_id, data.coupon_id)
    return {"ok": True, "userCoupon": uc.to_dict()}


@router.get("/available")
async def available_coupons(user_id: int = Query(...), db: Session = Depends(get_db)):
    rows = coupon_service.available(db, user_id)
    return {"ok": True, "userCoupons": [uc.to_dict() for uc in rows]}


@router.get("/list")
async def user_coupons(user_id: int = Query(...), status: Optional[str] = Query(None), db: Session = Depends(get_db)):
    """Every coupon the user holds, optionally filtered by unused/used/expired."""
    rows = coupon_service.list_user_coupons(db, user_id, status)
    return {"ok": True, "userCoupons": [uc.to_dict() for uc in rows]}

"""
Order Router
Create, pay, confirm, cancel, query orders and open purchased blind boxes.
Callers identify themselves with user_id; session handling lives upstream.
"""
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.database import get_db
from jobs.order_timers import OrderTimers, get_timers
from models.order import PAY_BALANCE
from routers.deps import get_gateway
from services.orders import OrderLine, OrderService
from utils.gateway import GatewayClient

router = APIRouter(prefix="/api/pay/order", tags=["orders"])


# ============ Pydantic Models ============

class OrderLineIn(BaseModel):
    blind_box_id: int
    quantity: int = Field(default=1, ge=1)


class CreateOrderIn(BaseModel):
    user_id: int
    address_id: Optional[int] = None
    items: List[OrderLineIn]
    total_amount: str
    discount_amount: str = "0"
    pay_method: str = PAY_BALANCE
    user_coupon_id: Optional[int] = None


class OrderActionIn(BaseModel):
    user_id: int


class OpenItemIn(BaseModel):
    user_id: int
    order_item_id: int


def _service(db: Session, timers: OrderTimers, gateway: Optional[GatewayClient] = None) -> OrderService:
    return OrderService(db, timers=timers, gateway=gateway)


# ============ Endpoints ============

@router.post("/create")
async def create_order(
    data: CreateOrderIn,
    db: Session = Depends(get_db),
    timers: OrderTimers = Depends(get_timers),
):
    order = _service(db, timers).create(
        user_id=data.user_id,
        address_id=data.address_id,
        items=[OrderLine(blind_box_id=i.blind_box_id, quantity=i.quantity) for i in data.items],
        total_amount=data.total_amount,
        discount_amount=data.discount_amount,
        pay_method=data.pay_method,
        user_coupon_id=data.user_coupon_id,
    )
    return {"ok": True, "order": order.to_dict(with_items=True)}


@router.get("/list")
async def list_orders(user_id: int = Query(...), db: Session = Depends(get_db)):
    orders = OrderService(db).list_for_user(user_id)
    return {"ok": True, "orders": [o.to_dict(with_items=True) for o in orders]}


@router.get("/completed")
async def completed_orders(user_id: int = Query(...), db: Session = Depends(get_db)):
    """Completed orders with their items, i.e. boxes the user can open."""
    orders = OrderService(db).completed_with_items(user_id)
    return {"ok": True, "orders": [o.to_dict(with_items=True) for o in orders]}


@router.get("/{order_id}")
async def get_order(order_id: int, user_id: Optional[int] = Query(None), db: Session = Depends(get_db)):
    order = OrderService(db).get(order_id, user_id)
    return {"ok": True, "order": order.to_dict(with_items=True)}


@router.post("/{order_id}/pay")
async def pay_order(
    order_id: int,
    data: OrderActionIn,
    db: Session = Depends(get_db),
    timers: OrderTimers = Depends(get_timers),
    gateway: GatewayClient = Depends(get_gateway),
):
    result = await _service(db, timers, gateway).pay(order_id, data.user_id)
    return {"ok": True, **result}


@router.post("/{order_id}/confirm")
async def confirm_order(order_id: int, data: OrderActionIn, db: Session = Depends(get_db)):
    order = OrderService(db).confirm(order_id, data.user_id)
    return {"ok": True, "order": order.to_dict()}


@router.post("/{order_id}/cancel")
async def cancel_order(order_id: int, data: OrderActionIn, db: Session = Depends(get_db)):
    order = OrderService(db).cancel(order_id, data.user_id)
    return {"ok": True, "order": order.to_dict()}


@router.post("/open")
async def open_blind_box(data: OpenItemIn, db: Session = Depends(get_db)):
    order_item, prize = OrderService(db).open_item(data.order_item_id, data.user_id)
    return {"ok": True, "orderItem": order_item.to_dict(), "item": prize.to_dict()}

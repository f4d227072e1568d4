"""
Payment Router
Gateway notification webhook plus balance recharge endpoints.
"""
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.config import logger
from core.database import get_db
from core.errors import BlindBoxError, PayloadParseError
from jobs.order_timers import OrderTimers, get_timers
from routers.deps import get_gateway
from services import recharge as recharge_service
from services.reconciler import ACK, NACK, handle_notify
from utils.gateway import GatewayClient

router = APIRouter(prefix="/api/pay", tags=["pay"])


class RechargeIn(BaseModel):
    user_id: int
    amount: str


@router.post("/notify")
async def gateway_notify(
    request: Request,
    db: Session = Depends(get_db),
    timers: OrderTimers = Depends(get_timers),
    gateway: GatewayClient = Depends(get_gateway),
):
    """Gateway callback. The gateway retries until it reads 'success'."""
    raw = await request.body()
    try:
        ack = handle_notify(db, raw, headers=dict(request.headers), gateway=gateway, timers=timers)
    except PayloadParseError as ex:
        logger.warning(f"[pay.notify] unparseable payload: {ex}")
        return PlainTextResponse(NACK)
    except BlindBoxError as ex:
        # Nothing a redelivery could fix; acknowledge so the gateway stops retrying
        logger.error(f"[pay.notify] notification rejected ({ex.code}): {ex}")
        return PlainTextResponse(ACK)
    return PlainTextResponse(ack)


@router.post("/recharge")
async def create_recharge(
    data: RechargeIn,
    db: Session = Depends(get_db),
    gateway: GatewayClient = Depends(get_gateway),
):
    record, pay_url = await recharge_service.create_recharge(db, data.user_id, data.amount, gateway)
    return {"ok": True, "recharge": record.to_dict(), "pay_url": pay_url}


@router.get("/records")
async def recharge_records(user_id: int = Query(...), db: Session = Depends(get_db)):
    records = recharge_service.list_recharges(db, user_id)
    return {"ok": True, "records": [r.to_dict() for r in records]}

"""
Gateway notification reconciler.

Turns an asynchronous "payment succeeded" callback into exactly one state
change: an order moves pending -> delivering, or a recharge is credited.
Redeliveries and late callbacks for already-settled references are
acknowledged without side effects.
"""
import json
from typing import Any, Mapping, Optional, Union
from urllib.parse import parse_qsl

from pydantic import BaseModel, ConfigDict, ValidationError as PydanticValidationError
from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import BlindBoxError, MissingReference, OrderNotFound, OutOfStock, PayloadParseError, RechargeNotFound
from models.order import Order, STATUS_PENDING
from models.recharge import Recharge, RECHARGE_PENDING, RECHARGE_SUCCESS
from services import balance
from services.coupons import utcnow
from services.orders import OrderService, Timers

ACK = "success"
NACK = "fail"
SUCCESS_STATUSES = {"TRADE_SUCCESS", "TRADE_FINISHED"}
RECHARGE_TRADE_PREFIX = "CZ"


class GatewayNotification(BaseModel):
    model_config = ConfigDict(extra="allow")

    out_trade_no: Optional[str] = None
    trade_no: Optional[str] = None
    trade_status: Optional[str] = None
    total_amount: Optional[str] = None
    sign: Optional[str] = None
    sign_type: Optional[str] = None


def _decode(raw: Union[bytes, str]) -> str:
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise PayloadParseError("Notification body is not valid UTF-8")
    return raw


def _scalars(data: Mapping[str, Any]) -> dict:
    out = {}
    for k, v in data.items():
        if v is None:
            continue
        if isinstance(v, (str, int, float, bool)):
            out[str(k)] = str(v)
        else:
            out[str(k)] = v
    return out


def parse_notification(raw: Union[bytes, str, Mapping[str, Any]]) -> tuple[GatewayNotification, dict]:
    """
    Accepts a form-encoded body, a JSON object, or an already-parsed mapping.
    Returns the typed notification plus the flat params used for signing.
    """
    if isinstance(raw, Mapping):
        data = dict(raw)
    else:
        text = _decode(raw).strip()
        if not text:
            raise PayloadParseError("Empty notification body")
        data = None
        if "&" in text and not text.startswith("{"):
            data = dict(parse_qsl(text, keep_blank_values=True))
        else:
            try:
                parsed = json.loads(text)
                if isinstance(parsed, dict):
                    data = parsed
            except ValueError:
                if "=" in text:
                    data = dict(parse_qsl(text, keep_blank_values=True))
        if data is None:
            raise PayloadParseError()

    # Some gateways wrap the payment object under "data"
    if not data.get("out_trade_no") and isinstance(data.get("data"), dict):
        data = data["data"]

    params = _scalars(data)
    try:
        note = GatewayNotification(**params)
    except PydanticValidationError as ex:
        raise PayloadParseError(f"Notification fields have unexpected types: {ex.error_count()} error(s)")
    return note, params


class Reconciler:
    def __init__(self, db: Session, gateway=None, timers: Optional[Timers] = None):
        self.db = db
        self.gateway = gateway
        self.timers = timers

    def handle(
        self,
        raw: Union[bytes, str, Mapping[str, Any]],
        headers: Optional[Mapping[str, str]] = None,
    ) -> str:
        note, params = parse_notification(raw)
        ref = (note.out_trade_no or "").strip()
        if not ref:
            raise MissingReference()

        status = (note.trade_status or "").upper()
        if status not in SUCCESS_STATUSES:
            logger.info(f"[pay.notify] ref={ref} status={status or 'missing'}; nothing to apply")
            return ACK

        self._check_signature(ref, params, raw, headers)

        if ref.startswith(RECHARGE_TRADE_PREFIX):
            return self._apply_recharge(ref, note)
        return self._apply_order(ref, note)

    def _check_signature(self, ref: str, params: dict, raw: Any, headers: Optional[Mapping[str, str]]) -> None:
        # Best effort: an unverifiable callback is still applied, but loudly
        if self.gateway is None:
            return
        raw_body = raw if isinstance(raw, bytes) else (raw.encode("utf-8") if isinstance(raw, str) else b"")
        try:
            verified = self.gateway.verify_signature(params, raw_body, headers)
        except Exception as ex:
            logger.warning(f"[pay.notify] signature check errored for ref={ref}: {ex}")
            return
        if not verified:
            logger.warning(f"[pay.notify] signature not verified for ref={ref}; applying anyway")

    def _check_amount(self, order: Order, note: GatewayNotification) -> None:
        # Informational only; the reference decides which order is settled
        if not note.total_amount:
            return
        try:
            notified = balance.to_amount(note.total_amount)
        except BlindBoxError:
            logger.warning(f"[pay.notify] unreadable amount {note.total_amount!r} for order={order.id}")
            return
        if balance.to_amount(order.total_amount) != notified:
            logger.warning(
                f"[pay.notify] amount differs for order={order.id}: "
                f"order {order.total_amount} vs notified {note.total_amount}"
            )

    def _apply_order(self, ref: str, note: GatewayNotification) -> str:
        order = self.db.query(Order).filter(Order.out_trade_no == ref).first()
        if not order:
            raise OrderNotFound(f"No order for out_trade_no {ref}")

        if order.cancelled:
            logger.error(
                f"[pay.notify] payment received for cancelled order={order.id} ref={ref} "
                f"trade_no={note.trade_no}; needs manual refund"
            )
            return ACK
        if order.status != STATUS_PENDING:
            logger.info(f"[pay.notify] order={order.id} already {order.status}; duplicate notification")
            return ACK

        self._check_amount(order, note)

        service = OrderService(self.db, timers=self.timers)
        try:
            settled = service.mark_paid_by_gateway(order, note.trade_no)
        except OutOfStock as ex:
            # Money is already taken by the gateway; the order stays pending and the cancel timer closes it
            logger.error(
                f"[pay.notify] payment received for order={order.id} ref={ref} trade_no={note.trade_no} "
                f"but stock ran out ({ex}); needs manual refund"
            )
            raise
        if settled:
            logger.info(f"[pay.notify] order={order.id} paid via gateway trade_no={note.trade_no}")
        else:
            logger.info(f"[pay.notify] order={order.id} settled concurrently; duplicate notification")
        return ACK

    def _apply_recharge(self, ref: str, note: GatewayNotification) -> str:
        record = self.db.query(Recharge).filter(Recharge.out_trade_no == ref).first()
        if not record:
            raise RechargeNotFound(f"No recharge for out_trade_no {ref}")
        if record.status == RECHARGE_SUCCESS:
            logger.info(f"[pay.notify] recharge={record.id} already credited; duplicate notification")
            return ACK

        try:
            result = self.db.execute(
                update(Recharge)
                .where(Recharge.id == record.id, Recharge.status == RECHARGE_PENDING)
                .values(status=RECHARGE_SUCCESS, trade_no=note.trade_no, pay_time=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                logger.info(f"[pay.notify] recharge={record.id} credited concurrently; duplicate notification")
                return ACK
            balance.credit(self.db, record.user_id, record.amount)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"[pay.notify] recharge={record.id} credited user={record.user_id} amount={record.amount}")
        return ACK


def handle_notify(
    db: Session,
    raw: Union[bytes, str, Mapping[str, Any]],
    headers: Optional[Mapping[str, str]] = None,
    gateway=None,
    timers: Optional[Timers] = None,
) -> str:
    return Reconciler(db, gateway=gateway, timers=timers).handle(raw, headers)

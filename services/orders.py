"""
Order state machine.

    pending -> delivering -> delivered -> completed
    pending -> cancelled

Every transition is one UPDATE guarded on the expected prior status, so two
racing triggers (a user confirm and a stale timer, two duplicate callbacks)
cannot both win. Stock and balance are only touched through the ledgers.
"""
import secrets
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import logger, ORDER_CANCEL_DELAY_SEC, ORDER_AUTO_DELIVER_DELAY_SEC
from core.errors import (
    AlreadyCancelled,
    AlreadyOpened,
    AmountMismatch,
    InvalidState,
    NotYetDelivered,
    OrderItemNotFound,
    OrderNotFound,
    PermissionDenied,
    SkuNotFound,
    UserNotFound,
    ValidationError,
)
from models.blindbox import BlindBox, BoxItem, STATUS_LISTED
from models.order import (
    Order,
    OrderItem,
    PAY_BALANCE,
    PAY_GATEWAY,
    PAY_METHODS,
    STATUS_PENDING,
    STATUS_DELIVERING,
    STATUS_DELIVERED,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
)
from models.user import User
from services import balance, coupons, inventory
from services.coupons import naive_utc, utcnow
from services.probability import PrizeDrawer

CENTS = Decimal("0.01")
ORDER_TRADE_PREFIX = "BB"


class Timers(Protocol):
    def schedule_cancel(self, order_id: int) -> None: ...

    def schedule_auto_deliver(self, order_id: int) -> None: ...


class PaymentLinks(Protocol):
    async def create_payment_link(self, order_ref: str, amount: Decimal) -> str: ...


@dataclass(slots=True)
class OrderLine:
    blind_box_id: int
    quantity: int = 1


def new_trade_no(prefix: str) -> str:
    return f"{prefix}{int(time.time() * 1000)}{secrets.randbelow(10000):04d}"


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENTS)
    except Exception:
        raise ValidationError(f"Invalid amount: {value!r}")


def _as_line(raw: Any) -> OrderLine:
    if isinstance(raw, OrderLine):
        line = raw
    elif isinstance(raw, dict):
        line = OrderLine(blind_box_id=raw.get("blind_box_id"), quantity=raw.get("quantity", 1))
    else:
        line = OrderLine(blind_box_id=getattr(raw, "blind_box_id", None), quantity=getattr(raw, "quantity", 1))
    if not line.blind_box_id:
        raise ValidationError("Each order item needs a blind_box_id")
    if not isinstance(line.quantity, int) or line.quantity < 1:
        raise ValidationError("Order item quantity must be a positive integer")
    return line


class OrderService:
    def __init__(
        self,
        db: Session,
        timers: Optional[Timers] = None,
        draw_prize: Optional[Callable[[int], BoxItem]] = None,
        gateway: Optional[PaymentLinks] = None,
    ):
        self.db = db
        self.timers = timers
        self.draw_prize = draw_prize or PrizeDrawer(db).draw_prize
        self.gateway = gateway

    # ---- helpers ----

    def _get_order(self, order_id: int) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).first()
        if not order:
            raise OrderNotFound()
        return order

    def _transition(self, order_id: int, expected: str, new: str, **values) -> bool:
        """Move order_id from expected to new in one guarded UPDATE. False when the guard failed."""
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == expected,
                Order.cancelled == False,  # noqa: E712
            )
            .values(status=new, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _reserve_stock(self, order_id: int) -> None:
        item_boxes = [
            row[0]
            for row in self.db.query(OrderItem.blind_box_id)
            .filter(OrderItem.order_id == order_id)
            .order_by(OrderItem.id.asc())
            .all()
        ]
        for box_id in item_boxes:
            inventory.reserve(self.db, box_id, 1)

    def _schedule(self, kind: str, order_id: int) -> None:
        if self.timers is None:
            logger.info(f"[orders.timers] no scheduler attached; {kind} timer for order={order_id} skipped")
            return
        if kind == "cancel":
            self.timers.schedule_cancel(order_id)
        else:
            self.timers.schedule_auto_deliver(order_id)

    # ---- creation ----

    def create(
        self,
        user_id: int,
        address_id: Optional[int],
        items: Iterable[Any],
        total_amount: Any,
        discount_amount: Any = 0,
        pay_method: str = PAY_BALANCE,
        user_coupon_id: Optional[int] = None,
    ) -> Order:
        lines = [_as_line(i) for i in (items or [])]
        if not lines:
            raise ValidationError("Order items must not be empty")
        if pay_method not in PAY_METHODS:
            raise ValidationError(f"Unsupported pay method: {pay_method}")
        total = _money(total_amount)
        discount = _money(discount_amount or 0)
        if total < 0 or discount < 0:
            raise ValidationError("Amounts must not be negative")
        if not self.db.query(User.id).filter(User.id == user_id).first():
            raise UserNotFound()

        # Price snapshot from the catalogue, never from the client
        wanted = Counter()
        for line in lines:
            wanted[line.blind_box_id] += line.quantity
        boxes = {
            b.id: b
            for b in self.db.query(BlindBox)
            .filter(BlindBox.id.in_(list(wanted)), BlindBox.status == STATUS_LISTED)
            .all()
        }
        missing = [box_id for box_id in wanted if box_id not in boxes]
        if missing:
            raise SkuNotFound(f"Blind box not found or not listed: {missing}")
        subtotal = sum(
            (_money(boxes[line.blind_box_id].price) * line.quantity for line in lines),
            Decimal("0.00"),
        )

        quote = coupons.validate(self.db, user_coupon_id, user_id, subtotal)
        if quote.discount != discount:
            raise AmountMismatch(f"Discount mismatch: declared {discount}, coupon gives {quote.discount}")
        if subtotal - discount != total:
            raise AmountMismatch(f"Amount mismatch: items {subtotal} - discount {discount} != declared {total}")

        try:
            order = Order(
                user_id=user_id,
                address_id=address_id,
                total_amount=total,
                discount_amount=discount,
                status=STATUS_PENDING,
                pay_method=pay_method,
                cancelled=False,
                user_coupon_id=quote.user_coupon_id,
                created_at=utcnow(),
            )
            self.db.add(order)
            self.db.flush()
            for line in lines:
                for _ in range(line.quantity):
                    self.db.add(
                        OrderItem(
                            order_id=order.id,
                            blind_box_id=line.blind_box_id,
                            price=_money(boxes[line.blind_box_id].price),
                            is_opened=False,
                        )
                    )
            if quote.user_coupon_id:
                coupons.mark_used(self.db, quote.user_coupon_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(order)
        logger.info(
            f"[orders.create] order={order.id} user={user_id} items={sum(wanted.values())} "
            f"total={total} discount={discount} pay={pay_method}"
        )
        self._schedule("cancel", order.id)
        return order

    # ---- payment ----

    def _check_payable(self, order: Order, user_id: Optional[int]) -> None:
        if user_id is not None and order.user_id != user_id:
            raise PermissionDenied()
        if order.cancelled or order.status == STATUS_CANCELLED:
            raise AlreadyCancelled()
        if order.status != STATUS_PENDING:
            raise InvalidState()

    def _settle(self, order: Order, debit_balance: bool, trade_no: Optional[str] = None) -> bool:
        """
        pending -> delivering with stock (and optionally balance) in one transaction.
        Returns False when another caller already moved the order on.
        """
        values = {"pay_time": utcnow()}
        if trade_no:
            values["trade_no"] = trade_no
        try:
            if not self._transition(order.id, STATUS_PENDING, STATUS_DELIVERING, **values):
                self.db.rollback()
                return False
            if debit_balance:
                balance.debit(self.db, order.user_id, order.total_amount)
            self._reserve_stock(order.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self._schedule("deliver", order.id)
        return True

    def pay_with_balance(self, order_id: int, user_id: Optional[int] = None) -> Order:
        order = self._get_order(order_id)
        self._check_payable(order, user_id)
        if order.pay_method != PAY_BALANCE:
            raise ValidationError("Order is not a balance order")
        if not self._settle(order, debit_balance=True):
            raise InvalidState()
        self.db.refresh(order)
        logger.info(f"[orders.pay] order={order.id} paid from balance amount={order.total_amount}")
        return order

    async def start_gateway_payment(self, order_id: int, user_id: Optional[int] = None) -> dict:
        order = self._get_order(order_id)
        self._check_payable(order, user_id)
        if order.pay_method != PAY_GATEWAY:
            raise ValidationError("Order is not a gateway order")
        if self.gateway is None:
            raise ValidationError("No payment gateway configured")

        ref = order.out_trade_no
        if not ref:
            ref = new_trade_no(ORDER_TRADE_PREFIX)
            result = self.db.execute(
                update(Order)
                .where(Order.id == order.id, Order.out_trade_no.is_(None))
                .values(out_trade_no=ref)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            if result.rowcount != 1:
                # A concurrent request issued the reference first; reuse it
                self.db.refresh(order)
                ref = order.out_trade_no
        pay_url = await self.gateway.create_payment_link(ref, order.total_amount)
        logger.info(f"[orders.pay] order={order.id} gateway link issued ref={ref}")
        return {"pay_method": PAY_GATEWAY, "out_trade_no": ref, "pay_url": pay_url}

    async def pay(self, order_id: int, user_id: Optional[int] = None) -> dict:
        order = self._get_order(order_id)
        if order.pay_method == PAY_GATEWAY:
            return await self.start_gateway_payment(order_id, user_id)
        paid = self.pay_with_balance(order_id, user_id)
        return {"pay_method": PAY_BALANCE, "order": paid.to_dict()}

    def mark_paid_by_gateway(self, order: Order, trade_no: Optional[str]) -> bool:
        """Settlement for a reconciled gateway payment; stock only, the balance is untouched."""
        return self._settle(order, debit_balance=False, trade_no=trade_no)

    # ---- delivery / confirmation / cancellation ----

    def confirm(self, order_id: int, user_id: Optional[int] = None) -> Order:
        order = self._get_order(order_id)
        if user_id is not None and order.user_id != user_id:
            raise PermissionDenied()
        if order.status != STATUS_DELIVERED:
            raise NotYetDelivered()
        if not self._transition(order.id, STATUS_DELIVERED, STATUS_COMPLETED):
            self.db.rollback()
            raise NotYetDelivered()
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"[orders.confirm] order={order.id} completed")
        return order

    def cancel(self, order_id: int, user_id: Optional[int] = None) -> Order:
        order = self._get_order(order_id)
        if user_id is not None and order.user_id != user_id:
            raise PermissionDenied()
        if order.cancelled or order.status == STATUS_CANCELLED:
            raise AlreadyCancelled()
        if order.status != STATUS_PENDING:
            raise InvalidState()
        if not self._transition(order.id, STATUS_PENDING, STATUS_CANCELLED, cancelled=True):
            self.db.rollback()
            raise InvalidState()
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"[orders.cancel] order={order.id} cancelled by user")
        return order

    def cancel_if_unpaid(self, order_id: int) -> bool:
        """Cancel timer body. A stale timer is a no-op."""
        changed = self._transition(order_id, STATUS_PENDING, STATUS_CANCELLED, cancelled=True)
        self.db.commit()
        if changed:
            logger.info(f"[orders.timer] order={order_id} cancelled after payment timeout")
        else:
            logger.info(f"[orders.timer] order={order_id} no longer pending; cancel skipped")
        return changed

    def deliver_if_paid(self, order_id: int) -> bool:
        """Auto-deliver timer body. A stale timer is a no-op."""
        changed = self._transition(order_id, STATUS_DELIVERING, STATUS_DELIVERED)
        self.db.commit()
        if changed:
            logger.info(f"[orders.timer] order={order_id} delivered")
        else:
            logger.info(f"[orders.timer] order={order_id} not delivering; deliver skipped")
        return changed

    def sweep_overdue(
        self,
        now: Optional[datetime] = None,
        cancel_delay: int = ORDER_CANCEL_DELAY_SEC,
        deliver_delay: int = ORDER_AUTO_DELIVER_DELAY_SEC,
    ) -> tuple[int, int]:
        """Apply transitions whose in-memory timers were lost (e.g. across a restart)."""
        now = naive_utc(now or utcnow())
        stale_pending = [
            row[0]
            for row in self.db.query(Order.id)
            .filter(
                Order.status == STATUS_PENDING,
                Order.cancelled == False,  # noqa: E712
                Order.created_at <= now - timedelta(seconds=cancel_delay),
            )
            .all()
        ]
        stale_delivering = [
            row[0]
            for row in self.db.query(Order.id)
            .filter(
                Order.status == STATUS_DELIVERING,
                Order.pay_time <= now - timedelta(seconds=deliver_delay),
            )
            .all()
        ]
        cancelled = sum(1 for oid in stale_pending if self.cancel_if_unpaid(oid))
        delivered = sum(1 for oid in stale_delivering if self.deliver_if_paid(oid))
        if cancelled or delivered:
            logger.info(f"[orders.sweep] cancelled={cancelled} delivered={delivered}")
        return cancelled, delivered

    # ---- prize opening ----

    def open_item(self, order_item_id: int, user_id: int) -> tuple[OrderItem, BoxItem]:
        order_item = self.db.query(OrderItem).filter(OrderItem.id == order_item_id).first()
        if not order_item:
            raise OrderItemNotFound()
        order = self.db.query(Order).filter(Order.id == order_item.order_id).first()
        if not order:
            raise OrderNotFound()
        if order.user_id != user_id:
            raise PermissionDenied()
        if order.status != STATUS_COMPLETED:
            raise InvalidState("Order not completed; blind box cannot be opened yet")
        if order_item.is_opened:
            raise AlreadyOpened()

        prize = self.draw_prize(order_item.blind_box_id)
        result = self.db.execute(
            update(OrderItem)
            .where(OrderItem.id == order_item.id, OrderItem.is_opened == False)  # noqa: E712
            .values(item_id=prize.id, is_opened=True, opened_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise AlreadyOpened()
        self.db.commit()
        self.db.refresh(order_item)
        logger.info(f"[orders.open] item={order_item.id} order={order.id} prize={prize.id}")
        return order_item, prize

    # ---- queries ----

    def get(self, order_id: int, user_id: Optional[int] = None) -> Order:
        order = self._get_order(order_id)
        if user_id is not None and order.user_id != user_id:
            raise PermissionDenied()
        return order

    def list_for_user(self, user_id: int) -> list[Order]:
        return (
            self.db.query(Order)
            .filter(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

    def completed_with_items(self, user_id: int) -> list[Order]:
        return (
            self.db.query(Order)
            .filter(Order.user_id == user_id, Order.status == STATUS_COMPLETED)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .all()
        )

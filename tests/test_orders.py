from datetime import timedelta
from decimal import Decimal

import pytest

from core.errors import (
    AlreadyCancelled,
    AlreadyOpened,
    AlreadyUsed,
    AmountMismatch,
    InsufficientFunds,
    InvalidState,
    NotYetDelivered,
    OrderItemNotFound,
    OrderNotFound,
    OutOfStock,
    PermissionDenied,
    SkuNotFound,
    ValidationError,
)
from models.blindbox import BlindBox
from models.coupon import UserCoupon
from models.order import Order, OrderItem
from services import balance
from services.coupons import utcnow
from services.orders import OrderLine, OrderService
from services.probability import PrizeDrawer
from tests.conftest import sequence_rng


def _service(db, timers, rng=None, gateway=None):
    draw_prize = PrizeDrawer(db, rng=rng).draw_prize if rng else None
    return OrderService(db, timers=timers, draw_prize=draw_prize, gateway=gateway)


def _status(db, order_id):
    db.expire_all()
    return db.query(Order).filter(Order.id == order_id).one().status


def _stock(db, box_id):
    db.expire_all()
    return db.query(BlindBox).filter(BlindBox.id == box_id).one().stock


def _paid_order(db, timers, user_id=1, box_id=1, quantity=1):
    svc = _service(db, timers)
    price = db.query(BlindBox).filter(BlindBox.id == box_id).one().price
    order = svc.create(user_id, None, [OrderLine(box_id, quantity)], Decimal(str(price)) * quantity)
    svc.pay_with_balance(order.id)
    return order.id


# ---- create ----

def test_create_snapshots_prices_and_schedules_cancel(seed, timers):
    order = _service(seed, timers).create(1, 7, [OrderLine(1, 2)], "200.00")
    assert order.status == "pending"
    assert order.total_amount == Decimal("200.00")
    assert [i.price for i in order.items] == [Decimal("100.00"), Decimal("100.00")]
    assert all(not i.is_opened for i in order.items)
    assert timers.cancels == [order.id]
    # Creation touches neither stock nor balance
    assert _stock(seed, 1) == 10
    assert balance.get_balance(seed, 1) == Decimal("1000.00")


def test_create_rejects_mismatched_total(seed, timers):
    with pytest.raises(AmountMismatch):
        _service(seed, timers).create(1, None, [OrderLine(1)], "90.00")
    assert seed.query(Order).count() == 0
    assert timers.cancels == []


def test_create_with_coupon_marks_it_used(seed, timers):
    order = _service(seed, timers).create(1, None, [OrderLine(1)], "90.00", "10.00", user_coupon_id=1)
    assert order.discount_amount == Decimal("10.00")
    assert order.user_coupon_id == 1
    seed.expire_all()
    assert seed.query(UserCoupon).filter(UserCoupon.id == 1).one().status == "used"


def test_create_discount_must_match_coupon(seed, timers):
    with pytest.raises(AmountMismatch):
        _service(seed, timers).create(1, None, [OrderLine(1)], "80.00", "20.00", user_coupon_id=1)
    with pytest.raises(AmountMismatch):
        _service(seed, timers).create(1, None, [OrderLine(1)], "90.00", "10.00")
    seed.expire_all()
    assert seed.query(UserCoupon).filter(UserCoupon.id == 1).one().status == "unused"


def test_coupon_cannot_be_used_twice(seed, timers):
    svc = _service(seed, timers)
    svc.create(1, None, [OrderLine(1)], "90.00", "10.00", user_coupon_id=1)
    with pytest.raises(AlreadyUsed):
        svc.create(1, None, [OrderLine(1)], "90.00", "10.00", user_coupon_id=1)


def test_create_validation(seed, timers):
    svc = _service(seed, timers)
    with pytest.raises(ValidationError):
        svc.create(1, None, [], "0.00")
    with pytest.raises(ValidationError):
        svc.create(1, None, [OrderLine(1)], "100.00", pay_method="cash")
    with pytest.raises(SkuNotFound):
        svc.create(1, None, [OrderLine(3)], "30.00")  # unlisted
    with pytest.raises(SkuNotFound):
        svc.create(1, None, [OrderLine(999)], "30.00")


# ---- pay ----

def test_balance_pay_moves_to_delivering(seed, timers):
    svc = _service(seed, timers)
    order = svc.create(1, None, [OrderLine(1, 2)], "200.00")
    paid = svc.pay_with_balance(order.id)
    assert paid.status == "delivering"
    assert paid.pay_time is not None
    assert balance.get_balance(seed, 1) == Decimal("800.00")
    assert _stock(seed, 1) == 8
    assert timers.delivers == [order.id]


def test_pay_insufficient_funds_changes_nothing(seed, timers):
    svc = _service(seed, timers)
    order = svc.create(2, None, [OrderLine(1)], "100.00")
    with pytest.raises(InsufficientFunds):
        svc.pay_with_balance(order.id)
    assert _status(seed, order.id) == "pending"
    assert _stock(seed, 1) == 10
    assert balance.get_balance(seed, 2) == Decimal("50.00")
    assert timers.delivers == []


def test_pay_out_of_stock_rolls_back_debit(seed, timers):
    svc = _service(seed, timers)
    order = svc.create(1, None, [OrderLine(2, 2)], "100.00")
    with pytest.raises(OutOfStock):
        svc.pay_with_balance(order.id)
    assert _status(seed, order.id) == "pending"
    assert balance.get_balance(seed, 1) == Decimal("1000.00")
    assert _stock(seed, 2) == 1


def test_pay_twice_is_invalid_state(seed, timers):
    order_id = _paid_order(seed, timers)
    with pytest.raises(InvalidState):
        _service(seed, timers).pay_with_balance(order_id)
    assert balance.get_balance(seed, 1) == Decimal("900.00")


def test_pay_unknown_and_cancelled(seed, timers):
    svc = _service(seed, timers)
    with pytest.raises(OrderNotFound):
        svc.pay_with_balance(999)
    order = svc.create(1, None, [OrderLine(1)], "100.00")
    svc.cancel(order.id, 1)
    with pytest.raises(AlreadyCancelled):
        svc.pay_with_balance(order.id)


@pytest.mark.asyncio
async def test_gateway_pay_issues_reference_once(seed, timers, gateway):
    svc = _service(seed, timers, gateway=gateway)
    order = svc.create(1, None, [OrderLine(1)], "100.00", pay_method="gateway")
    first = await svc.pay(order.id, 1)
    second = await svc.pay(order.id, 1)
    assert first["out_trade_no"].startswith("BB")
    assert first["out_trade_no"] == second["out_trade_no"]
    assert first["pay_url"].endswith(first["out_trade_no"])
    assert gateway.links[0] == (first["out_trade_no"], Decimal("100.00"))
    assert _status(seed, order.id) == "pending"
    assert balance.get_balance(seed, 1) == Decimal("1000.00")


@pytest.mark.asyncio
async def test_pay_dispatches_balance_orders(seed, timers, gateway):
    svc = _service(seed, timers, gateway=gateway)
    order = svc.create(1, None, [OrderLine(1)], "100.00")
    result = await svc.pay(order.id, 1)
    assert result["pay_method"] == "balance"
    assert result["order"]["status"] == "delivering"
    assert gateway.links == []


# ---- timers ----

def test_cancel_timer_is_noop_after_payment(seed, timers):
    order_id = _paid_order(seed, timers)
    assert _service(seed, timers).cancel_if_unpaid(order_id) is False
    assert _status(seed, order_id) == "delivering"


def test_cancel_timer_cancels_unpaid(seed, timers):
    svc = _service(seed, timers)
    order = svc.create(1, None, [OrderLine(1)], "100.00")
    assert svc.cancel_if_unpaid(order.id) is True
    seed.expire_all()
    order = svc.get(order.id)
    assert order.status == "cancelled"
    assert order.cancelled is True
    assert svc.cancel_if_unpaid(order.id) is False


def test_deliver_timer_then_confirm(seed, timers):
    order_id = _paid_order(seed, timers)
    svc = _service(seed, timers)
    with pytest.raises(NotYetDelivered):
        svc.confirm(order_id)
    assert svc.deliver_if_paid(order_id) is True
    assert svc.deliver_if_paid(order_id) is False
    assert svc.confirm(order_id, 1).status == "completed"
    with pytest.raises(NotYetDelivered):
        svc.confirm(order_id, 1)


def test_confirm_by_other_user_denied(seed, timers):
    order_id = _paid_order(seed, timers)
    svc = _service(seed, timers)
    svc.deliver_if_paid(order_id)
    with pytest.raises(PermissionDenied):
        svc.confirm(order_id, 2)


def test_cancel_only_pending(seed, timers):
    order_id = _paid_order(seed, timers)
    svc = _service(seed, timers)
    with pytest.raises(InvalidState):
        svc.cancel(order_id, 1)
    order = svc.create(1, None, [OrderLine(1)], "100.00")
    with pytest.raises(PermissionDenied):
        svc.cancel(order.id, 2)
    svc.cancel(order.id, 1)
    with pytest.raises(AlreadyCancelled):
        svc.cancel(order.id, 1)


def test_sweep_overdue_applies_lost_timers(seed, timers):
    svc = _service(seed, timers)
    stale = svc.create(1, None, [OrderLine(1)], "100.00")
    fresh = svc.create(1, None, [OrderLine(1)], "100.00")
    paid_id = _paid_order(seed, timers)
    seed.query(Order).filter(Order.id == stale.id).update(
        {"created_at": utcnow() - timedelta(seconds=700)}
    )
    seed.query(Order).filter(Order.id == paid_id).update(
        {"pay_time": utcnow() - timedelta(seconds=60)}
    )
    seed.commit()

    assert svc.sweep_overdue() == (1, 1)
    assert _status(seed, stale.id) == "cancelled"
    assert _status(seed, fresh.id) == "pending"
    assert _status(seed, paid_id) == "delivered"
    assert svc.sweep_overdue() == (0, 0)


# ---- open ----

def _completed_order(db, timers, quantity=1):
    order_id = _paid_order(db, timers, quantity=quantity)
    svc = _service(db, timers)
    svc.deliver_if_paid(order_id)
    svc.confirm(order_id, 1)
    return svc.get(order_id)


def test_open_item_assigns_prize_once(seed, timers):
    order = _completed_order(seed, timers)
    item_id = order.items[0].id
    svc = _service(seed, timers, rng=sequence_rng(0.96))
    order_item, prize = svc.open_item(item_id, 1)
    assert prize.id == 13
    assert order_item.item_id == 13
    assert order_item.is_opened is True
    assert order_item.opened_at is not None
    with pytest.raises(AlreadyOpened):
        svc.open_item(item_id, 1)

    seed.expire_all()
    stored = seed.query(OrderItem).filter(OrderItem.id == item_id).one()
    assert stored.item_id == 13
    assert stored.is_opened is True


def test_open_item_guards(seed, timers):
    svc = _service(seed, timers)
    with pytest.raises(OrderItemNotFound):
        svc.open_item(999, 1)
    order_id = _paid_order(seed, timers)
    item_id = svc.get(order_id).items[0].id
    with pytest.raises(InvalidState):
        svc.open_item(item_id, 1)
    with pytest.raises(PermissionDenied):
        svc.open_item(item_id, 2)


def test_queries(seed, timers):
    completed = _completed_order(seed, timers, quantity=2)
    svc = _service(seed, timers)
    pending = svc.create(1, None, [OrderLine(1)], "100.00")
    assert [o.id for o in svc.list_for_user(1)] == [pending.id, completed.id]
    done = svc.completed_with_items(1)
    assert [o.id for o in done] == [completed.id]
    assert len(done[0].items) == 2
    assert svc.list_for_user(2) == []
    with pytest.raises(PermissionDenied):
        svc.get(completed.id, 2)

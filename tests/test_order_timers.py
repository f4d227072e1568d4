from datetime import timedelta
from decimal import Decimal

import pytest

from jobs.order_timers import OrderTimers
from models.coupon import Coupon
from models.order import Order
from services.coupons import utcnow
from services.orders import OrderLine, OrderService


@pytest.fixture
def order_timers(session_factory):
    t = OrderTimers(session_factory=session_factory, cancel_delay=600, deliver_delay=30)
    # Jobs land in the job store but never fire
    t.scheduler.start(paused=True)
    yield t
    t.shutdown()


def _status(db, order_id):
    db.expire_all()
    return db.query(Order).filter(Order.id == order_id).one().status


def test_jobs_are_keyed_by_order(seed, order_timers):
    order_timers.schedule_cancel(5)
    order_timers.schedule_cancel(5)
    order_timers.schedule_auto_deliver(5)
    ids = sorted(job.id for job in order_timers.scheduler.get_jobs())
    assert ids == ["order_cancel_5", "order_deliver_5"]


def test_create_and_pay_schedule_through_scheduler(seed, order_timers):
    svc = OrderService(seed, timers=order_timers)
    order = svc.create(1, None, [OrderLine(1)], Decimal("100.00"))
    job = order_timers.scheduler.get_job(f"order_cancel_{order.id}")
    assert job is not None
    assert job.args == (order.id,)
    svc.pay_with_balance(order.id)
    assert order_timers.scheduler.get_job(f"order_deliver_{order.id}") is not None


def test_job_bodies_use_their_own_session(seed, order_timers):
    svc = OrderService(seed, timers=order_timers)
    unpaid = svc.create(1, None, [OrderLine(1)], Decimal("100.00"))
    paid = svc.create(1, None, [OrderLine(1)], Decimal("100.00"))
    svc.pay_with_balance(paid.id)

    assert order_timers.run_cancel(unpaid.id) is True
    assert order_timers.run_cancel(paid.id) is False
    assert order_timers.run_deliver(paid.id) is True
    assert order_timers.run_deliver(unpaid.id) is False
    assert _status(seed, unpaid.id) == "cancelled"
    assert _status(seed, paid.id) == "delivered"


def test_sweep_and_coupon_expiry_jobs(seed, order_timers):
    svc = OrderService(seed, timers=order_timers)
    order = svc.create(1, None, [OrderLine(1)], Decimal("100.00"))
    seed.query(Order).filter(Order.id == order.id).update(
        {"created_at": utcnow() - timedelta(minutes=30)}
    )
    seed.commit()
    assert order_timers.run_sweep() == (1, 0)
    assert _status(seed, order.id) == "cancelled"
    assert order_timers.run_coupon_expiry() == 1
    seed.expire_all()
    assert seed.query(Coupon).filter(Coupon.id == 3).one().status == "unlisted"

"""
Delayed order transitions on an in-process APScheduler.

Each order gets at most one pending job per kind (job ids are keyed by order
id and replace_existing). Jobs open their own session and re-check state when
they fire, so a timer for an order that has moved on does nothing. Jobs live
in memory only; the interval sweep picks up whatever a restart dropped.
"""
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from core.config import (
    logger,
    ORDER_CANCEL_DELAY_SEC,
    ORDER_AUTO_DELIVER_DELAY_SEC,
    ORDER_SWEEP_INTERVAL_SEC,
    COUPON_EXPIRE_INTERVAL_SEC,
)
from core.database import SessionLocal
from services import coupons
from services.orders import OrderService


class OrderTimers:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        scheduler: Optional[BackgroundScheduler] = None,
        cancel_delay: int = ORDER_CANCEL_DELAY_SEC,
        deliver_delay: int = ORDER_AUTO_DELIVER_DELAY_SEC,
    ):
        self.session_factory = session_factory
        self.cancel_delay = cancel_delay
        self.deliver_delay = deliver_delay
        self.scheduler = scheduler or BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 300},
            timezone="UTC",
        )

    # ---- scheduling ----

    def _at(self, seconds: int) -> datetime:
        return datetime.now(timezone.utc) + timedelta(seconds=seconds)

    def schedule_cancel(self, order_id: int) -> None:
        self.scheduler.add_job(
            self.run_cancel,
            "date",
            run_date=self._at(self.cancel_delay),
            args=[order_id],
            id=f"order_cancel_{order_id}",
            replace_existing=True,
        )
        logger.info(f"[timers] cancel scheduled for order={order_id} in {self.cancel_delay}s")

    def schedule_auto_deliver(self, order_id: int) -> None:
        self.scheduler.add_job(
            self.run_deliver,
            "date",
            run_date=self._at(self.deliver_delay),
            args=[order_id],
            id=f"order_deliver_{order_id}",
            replace_existing=True,
        )
        logger.info(f"[timers] auto-deliver scheduled for order={order_id} in {self.deliver_delay}s")

    # ---- job bodies ----

    def run_cancel(self, order_id: int) -> bool:
        db = self.session_factory()
        try:
            return OrderService(db, timers=self).cancel_if_unpaid(order_id)
        except Exception as ex:
            db.rollback()
            logger.exception(f"[timers] cancel job failed for order={order_id}: {ex}")
            return False
        finally:
            db.close()

    def run_deliver(self, order_id: int) -> bool:
        db = self.session_factory()
        try:
            return OrderService(db, timers=self).deliver_if_paid(order_id)
        except Exception as ex:
            db.rollback()
            logger.exception(f"[timers] deliver job failed for order={order_id}: {ex}")
            return False
        finally:
            db.close()

    def run_sweep(self) -> tuple[int, int]:
        db = self.session_factory()
        try:
            return OrderService(db, timers=self).sweep_overdue(
                cancel_delay=self.cancel_delay, deliver_delay=self.deliver_delay
            )
        except Exception as ex:
            db.rollback()
            logger.exception(f"[timers] order sweep failed: {ex}")
            return 0, 0
        finally:
            db.close()

    def run_coupon_expiry(self) -> int:
        db = self.session_factory()
        try:
            expired = coupons.expire_overdue(db)
            coupons.unlist_expired(db)
            return expired
        except Exception as ex:
            db.rollback()
            logger.exception(f"[timers] coupon expiry failed: {ex}")
            return 0
        finally:
            db.close()

    # ---- lifecycle ----

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(seconds=ORDER_SWEEP_INTERVAL_SEC),
            id="order_sweep",
            name="Overdue Order Sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.run_coupon_expiry,
            trigger=IntervalTrigger(seconds=COUPON_EXPIRE_INTERVAL_SEC),
            id="coupon_expiry",
            name="User Coupon Expiry",
            replace_existing=True,
        )
        self.scheduler.start()
        # Close the gap left by timers lost on the previous shutdown
        cancelled, delivered = self.run_sweep()
        logger.info(f"[timers] scheduler started; startup sweep cancelled={cancelled} delivered={delivered}")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[timers] scheduler stopped")


order_timers = OrderTimers()


def get_timers() -> OrderTimers:
    return order_timers

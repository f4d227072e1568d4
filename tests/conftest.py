"""Pytest fixtures: a throwaway SQLite file per test, seeded users, boxes and coupons."""
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from core.database import build_engine, init_db
from models.blindbox import BlindBox, BoxItem, RARITY_COMMON, RARITY_RARE, RARITY_HIDDEN
from models.coupon import Coupon, UserCoupon, TYPE_FLAT_OFF, TYPE_PERCENTAGE
from models.user import User
from services.coupons import utcnow


class FakeTimers:
    """Records scheduled jobs instead of running them."""

    def __init__(self):
        self.cancels = []
        self.delivers = []

    def schedule_cancel(self, order_id):
        self.cancels.append(order_id)

    def schedule_auto_deliver(self, order_id):
        self.delivers.append(order_id)


class FakeGateway:
    def __init__(self, verified=True):
        self.verified = verified
        self.links = []
        self.verify_calls = 0

    async def create_payment_link(self, order_ref, amount, callback_url=None, subject=None):
        self.links.append((order_ref, Decimal(str(amount))))
        return f"https://pay.test/checkout/{order_ref}"

    def verify_signature(self, params, raw_body=b"", headers=None):
        self.verify_calls += 1
        return self.verified


def sequence_rng(*values):
    """Random source returning the given values in order, then repeating the last."""
    values = list(values)

    def _next():
        if len(values) > 1:
            return values.pop(0)
        return values[0]

    return _next


@pytest.fixture
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'blindbox_test.db'}")
    init_db(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def seed(db):
    """
    users:  1 rich (1000.00), 2 poor (50.00), 3 empty (0.00)
    boxes:  1 price 100 stock 10, 2 price 50 stock 1, 3 unlisted, 4 broken table
    coupons: flat 10 off over 50, 90% rate, expired flat
    """
    now = utcnow()
    db.add_all([
        User(id=1, username="alice", balance=Decimal("1000.00")),
        User(id=2, username="bob", balance=Decimal("50.00")),
        User(id=3, username="carol", balance=Decimal("0.00")),
    ])
    db.add_all([
        BlindBox(id=1, name="Forest Friends", price=Decimal("100.00"), stock=10, status="listed"),
        BlindBox(id=2, name="Last One", price=Decimal("50.00"), stock=1, status="listed"),
        BlindBox(id=3, name="Draft Series", price=Decimal("30.00"), stock=5, status="unlisted"),
        BlindBox(id=4, name="Misconfigured", price=Decimal("20.00"), stock=5, status="listed"),
    ])
    db.flush()
    db.add_all([
        BoxItem(id=11, blind_box_id=1, name="Fox", rarity=RARITY_COMMON, probability=Decimal("0.700")),
        BoxItem(id=12, blind_box_id=1, name="Owl", rarity=RARITY_RARE, probability=Decimal("0.250")),
        BoxItem(id=13, blind_box_id=1, name="Golden Stag", rarity=RARITY_HIDDEN, probability=Decimal("0.050")),
        BoxItem(id=21, blind_box_id=2, name="Only Prize", rarity=RARITY_COMMON, probability=Decimal("1.000")),
        BoxItem(id=31, blind_box_id=3, name="Draft", rarity=RARITY_COMMON, probability=Decimal("1.000")),
        BoxItem(id=41, blind_box_id=4, name="Half", rarity=RARITY_COMMON, probability=Decimal("0.500")),
        BoxItem(id=42, blind_box_id=4, name="Quarter", rarity=RARITY_RARE, probability=Decimal("0.250")),
    ])
    db.add_all([
        Coupon(id=1, name="10 off 50", type=TYPE_FLAT_OFF, threshold=Decimal("50.00"), amount=Decimal("10.00"),
               start_time=now - timedelta(days=1), end_time=now + timedelta(days=1), total=0),
        Coupon(id=2, name="10% off", type=TYPE_PERCENTAGE, threshold=Decimal("0.00"), amount=Decimal("0.90"),
               start_time=now - timedelta(days=1), end_time=now + timedelta(days=1), total=2),
        Coupon(id=3, name="Old promo", type=TYPE_FLAT_OFF, threshold=Decimal("0.00"), amount=Decimal("5.00"),
               start_time=now - timedelta(days=10), end_time=now - timedelta(days=1), total=0),
    ])
    db.flush()
    db.add_all([
        UserCoupon(id=1, user_id=1, coupon_id=1, status="unused"),
        UserCoupon(id=2, user_id=1, coupon_id=2, status="unused"),
        UserCoupon(id=3, user_id=1, coupon_id=3, status="unused"),
        UserCoupon(id=4, user_id=2, coupon_id=1, status="unused"),
    ])
    db.commit()
    return db

"""Balance top-ups paid through the gateway; crediting happens in services.reconciler."""
from typing import Optional

from sqlalchemy.orm import Session

from core.config import logger
from core.errors import UserNotFound, ValidationError
from models.recharge import Recharge, RECHARGE_PENDING
from models.user import User
from services.balance import to_amount
from services.orders import PaymentLinks, new_trade_no
from services.reconciler import RECHARGE_TRADE_PREFIX


async def create_recharge(db: Session, user_id: int, amount, gateway: Optional[PaymentLinks]) -> tuple[Recharge, str]:
    amt = to_amount(amount)
    if amt <= 0:
        raise ValidationError("Recharge amount must be positive")
    if gateway is None:
        raise ValidationError("No payment gateway configured")
    if not db.query(User.id).filter(User.id == user_id).first():
        raise UserNotFound()

    record = Recharge(
        user_id=user_id,
        amount=amt,
        status=RECHARGE_PENDING,
        out_trade_no=new_trade_no(RECHARGE_TRADE_PREFIX),
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    logger.info(f"[recharge] created id={record.id} user={user_id} amount={amt} ref={record.out_trade_no}")

    pay_url = await gateway.create_payment_link(record.out_trade_no, amt, subject="Balance Recharge")
    return record, pay_url


def list_recharges(db: Session, user_id: int) -> list[Recharge]:
    return (
        db.query(Recharge)
        .filter(Recharge.user_id == user_id)
        .order_by(Recharge.created_at.desc(), Recharge.id.desc())
        .all()
    )

"""
Balance ledger: the only writer of User.balance.

Both operations are one guarded UPDATE; the caller commits or rolls back.
"""
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import InsufficientFunds, UserNotFound, ValidationError
from models.user import User

CENTS = Decimal("0.01")


def to_amount(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENTS)
    except Exception:
        raise ValidationError(f"Invalid amount: {value!r}")


def debit(db: Session, user_id: int, amount) -> None:
    amt = to_amount(amount)
    if amt < 0:
        raise ValidationError("Debit amount must not be negative")
    result = db.execute(
        update(User)
        .where(User.id == user_id, User.balance >= amt)
        .values(balance=User.balance - amt)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.info(f"[balance] debited user={user_id} amount={amt}")
        return
    if not db.query(User.id).filter(User.id == user_id).first():
        raise UserNotFound()
    raise InsufficientFunds(f"Insufficient balance for user {user_id}: need {amt}")


def credit(db: Session, user_id: int, amount) -> None:
    amt = to_amount(amount)
    if amt < 0:
        raise ValidationError("Credit amount must not be negative")
    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values(balance=User.balance + amt)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise UserNotFound()
    logger.info(f"[balance] credited user={user_id} amount={amt}")


def get_balance(db: Session, user_id: int) -> Decimal:
    row = db.query(User.balance).filter(User.id == user_id).first()
    if not row:
        raise UserNotFound()
    return Decimal(str(row[0])).quantize(CENTS)

"""
Inventory ledger: per-SKU stock, changed only through single conditional updates.

Callers own the transaction; nothing here commits.
"""
from sqlalchemy import update
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import OutOfStock, SkuNotFound, ValidationError
from models.blindbox import BlindBox


def _check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")


def reserve(db: Session, sku_id: int, quantity: int = 1) -> None:
    _check_quantity(quantity)
    result = db.execute(
        update(BlindBox)
        .where(BlindBox.id == sku_id, BlindBox.stock >= quantity)
        .values(stock=BlindBox.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.info(f"[inventory] reserved box={sku_id} qty={quantity}")
        return
    exists = db.query(BlindBox.id).filter(BlindBox.id == sku_id).first()
    if not exists:
        raise SkuNotFound()
    raise OutOfStock(f"Out of stock for blind box {sku_id}")


def set_stock(db: Session, sku_id: int, stock: int) -> None:
    """Seller restock/correction: absolute value, never negative."""
    if not isinstance(stock, int) or isinstance(stock, bool) or stock < 0:
        raise ValidationError("stock must be a non-negative integer")
    result = db.execute(
        update(BlindBox)
        .where(BlindBox.id == sku_id)
        .values(stock=stock)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise SkuNotFound()
    logger.info(f"[inventory] stock set box={sku_id} stock={stock}")


def release(db: Session, sku_id: int, quantity: int = 1) -> None:
    _check_quantity(quantity)
    result = db.execute(
        update(BlindBox)
        .where(BlindBox.id == sku_id)
        .values(stock=BlindBox.stock + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise SkuNotFound()
    logger.info(f"[inventory] released box={sku_id} qty={quantity}")

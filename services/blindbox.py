"""
Blind box catalogue operations: prize table management, listing and the
direct (orderless) draw paid from balance.
"""
import random
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional

from sqlalchemy.orm import Session

from core.config import logger
from core.errors import SkuNotFound, ValidationError
from models.blindbox import BlindBox, BoxItem, STATUS_LISTED, STATUS_UNLISTED, RARITY_COMMON
from services import balance, inventory
from services.probability import PrizeDrawer, RandomSource, validate


@dataclass(slots=True)
class DrawResult:
    blind_box: BlindBox
    prizes: list = field(default_factory=list)
    cost: Decimal = Decimal("0.00")
    balance: Decimal = Decimal("0.00")

    def to_dict(self):
        return {
            "blindBox": self.blind_box.to_dict(),
            "items": [p.to_dict() for p in self.prizes],
            "cost": str(self.cost),
            "balance": str(self.balance),
        }


def get_box(db: Session, sku_id: int, listed_only: bool = False) -> BlindBox:
    q = db.query(BlindBox).filter(BlindBox.id == sku_id)
    if listed_only:
        q = q.filter(BlindBox.status == STATUS_LISTED)
    box = q.first()
    if not box:
        raise SkuNotFound()
    return box


def list_boxes(db: Session, listed_only: bool = True) -> list[BlindBox]:
    q = db.query(BlindBox)
    if listed_only:
        q = q.filter(BlindBox.status == STATUS_LISTED)
    return q.order_by(BlindBox.id.desc()).all()


def _clean_name(name: Any) -> str:
    name = (name or "").strip()
    if not name or len(name) > 100:
        raise ValidationError("Name is required (max 100 characters)")
    return name


def _clean_price(price: Any) -> Decimal:
    amt = balance.to_amount(price)
    if amt <= 0:
        raise ValidationError("Price must be positive")
    return amt


def create_box(
    db: Session,
    name: str,
    price: Any,
    stock: int = 0,
    description: Optional[str] = None,
    cover_image: Optional[str] = None,
    seller_id: Optional[int] = None,
) -> BlindBox:
    """New boxes start unlisted; list them once the prize table is in place."""
    if not isinstance(stock, int) or isinstance(stock, bool) or stock < 0:
        raise ValidationError("stock must be a non-negative integer")
    box = BlindBox(
        name=_clean_name(name),
        price=_clean_price(price),
        stock=stock,
        description=description,
        cover_image=cover_image,
        seller_id=seller_id,
        status=STATUS_UNLISTED,
    )
    db.add(box)
    db.commit()
    db.refresh(box)
    logger.info(f"[blindbox.create] box={box.id} seller={seller_id} price={box.price} stock={stock}")
    return box


def update_box(db: Session, sku_id: int, changes: Mapping[str, Any]) -> BlindBox:
    """Partial update of name, description, cover_image, price and stock. Unknown keys are ignored."""
    box = get_box(db, sku_id)
    try:
        if "name" in changes:
            box.name = _clean_name(changes["name"])
        if "description" in changes:
            box.description = changes["description"]
        if "cover_image" in changes:
            box.cover_image = changes["cover_image"]
        if "price" in changes:
            # Existing orders keep their snapshotted price
            box.price = _clean_price(changes["price"])
        if "stock" in changes:
            inventory.set_stock(db, box.id, changes["stock"])
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(box)
    logger.info(f"[blindbox.update] box={box.id} fields={sorted(k for k in changes)}")
    return box


def draw_blind_box(
    db: Session,
    user_id: int,
    sku_id: int,
    quantity: int = 1,
    rng: RandomSource = random.random,
) -> DrawResult:
    if not isinstance(quantity, int) or quantity < 1:
        raise ValidationError("quantity must be at least 1")
    box = get_box(db, sku_id, listed_only=True)

    drawer = PrizeDrawer(db, rng)
    # Checked before any ledger is touched
    validate(drawer.load_items(sku_id))

    cost = (Decimal(str(box.price)) * quantity).quantize(balance.CENTS)
    try:
        inventory.reserve(db, sku_id, quantity)
        balance.debit(db, user_id, cost)
        db.commit()
    except Exception:
        db.rollback()
        raise

    prizes = drawer.draw_many(sku_id, quantity)
    db.refresh(box)
    remaining = balance.get_balance(db, user_id)
    logger.info(f"[blindbox.draw] user={user_id} box={sku_id} qty={quantity} cost={cost} balance={remaining}")
    return DrawResult(blind_box=box, prizes=prizes, cost=cost, balance=remaining)


def replace_items(db: Session, sku_id: int, items: Iterable[Mapping[str, Any]]) -> list[BoxItem]:
    """Swap the whole prize table of a box. The new table must already sum to 1."""
    box = get_box(db, sku_id)
    new_items = [
        BoxItem(
            blind_box_id=box.id,
            name=(i.get("name") or "").strip(),
            image=i.get("image"),
            rarity=int(i.get("rarity") or RARITY_COMMON),
            probability=Decimal(str(i.get("probability", 0))),
        )
        for i in items
    ]
    if any(not it.name for it in new_items):
        raise ValidationError("Every prize needs a name")
    if any(it.probability < 0 or it.probability > 1 for it in new_items):
        raise ValidationError("Probabilities must be between 0 and 1")
    validate(new_items)

    try:
        db.query(BoxItem).filter(BoxItem.blind_box_id == box.id).delete(synchronize_session=False)
        db.add_all(new_items)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"[blindbox.items] box={box.id} prize table replaced ({len(new_items)} items)")
    return PrizeDrawer(db).load_items(box.id)


def set_status(db: Session, sku_id: int, status: str) -> BlindBox:
    if status not in (STATUS_LISTED, STATUS_UNLISTED):
        raise ValidationError(f"Unknown status: {status}")
    box = get_box(db, sku_id)
    if status == STATUS_LISTED:
        validate(PrizeDrawer(db).load_items(box.id))
    box.status = status
    db.commit()
    db.refresh(box)
    logger.info(f"[blindbox.status] box={box.id} -> {status}")
    return box

"""
Probability table for one blind box: validation and weighted sampling.

Draws are independent per unit (no sampling without replacement). The random
source is injectable so tests can feed a fixed sequence.
"""
import random
from decimal import Decimal
from typing import Callable, Sequence, Protocol

from sqlalchemy.orm import Session

from core.config import PROBABILITY_EPSILON, logger
from core.errors import ConfigurationError
from models.blindbox import BoxItem

RandomSource = Callable[[], float]


class _Weighted(Protocol):
    probability: Decimal


def probability_sum(items: Sequence[_Weighted]) -> float:
    return float(sum(Decimal(str(i.probability)) for i in items))


def validate(items: Sequence[_Weighted], epsilon: float = PROBABILITY_EPSILON) -> None:
    if not items:
        raise ConfigurationError("Blind box has no prize items configured")
    total = probability_sum(items)
    if abs(total - 1.0) > epsilon:
        raise ConfigurationError(f"Prize probabilities must sum to 1 (got {total:.4f})")


def draw(items: Sequence[_Weighted], rng: RandomSource = random.random):
    """Pick one item: first whose cumulative probability reaches r, else the last item."""
    r = rng()
    cumulative = 0.0
    for item in items:
        cumulative += float(item.probability)
        if r <= cumulative:
            return item
    # Float drift left r above the final cumulative value
    return items[-1]


class PrizeDrawer:
    """
    DrawPrize(sku_id) capability handed to the order service so it never
    depends on the rest of the blind box service.
    """

    def __init__(self, db: Session, rng: RandomSource = random.random):
        self.db = db
        self.rng = rng

    def load_items(self, blind_box_id: int) -> list[BoxItem]:
        return (
            self.db.query(BoxItem)
            .filter(BoxItem.blind_box_id == blind_box_id)
            .order_by(BoxItem.id.asc())
            .all()
        )

    def draw_many(self, blind_box_id: int, quantity: int) -> list[BoxItem]:
        items = self.load_items(blind_box_id)
        validate(items)
        drawn = [draw(items, self.rng) for _ in range(quantity)]
        logger.info(f"[draw] box={blind_box_id} qty={quantity} -> {[d.id for d in drawn]}")
        return drawn

    def draw_prize(self, blind_box_id: int) -> BoxItem:
        return self.draw_many(blind_box_id, 1)[0]

    __call__ = draw_prize

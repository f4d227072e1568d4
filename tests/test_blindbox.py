from decimal import Decimal

import pytest

from core.errors import ConfigurationError, InsufficientFunds, OutOfStock, SkuNotFound, ValidationError
from models.blindbox import BlindBox
from models.order import OrderItem
from services import balance
from services.blindbox import create_box, draw_blind_box, replace_items, set_status, update_box
from services.orders import OrderLine, OrderService
from services.probability import PrizeDrawer
from tests.conftest import sequence_rng


def _stock(db, box_id):
    db.expire_all()
    return db.query(BlindBox).filter(BlindBox.id == box_id).one().stock


def test_draw_debits_and_returns_one_prize_per_unit(seed):
    result = draw_blind_box(seed, 1, 1, 3, rng=sequence_rng(0.1, 0.8, 0.99))
    assert [p.id for p in result.prizes] == [11, 12, 13]
    assert result.cost == Decimal("300.00")
    assert result.balance == Decimal("700.00")
    assert _stock(seed, 1) == 7


def test_draw_insufficient_balance_reserves_nothing(seed):
    with pytest.raises(InsufficientFunds):
        draw_blind_box(seed, 2, 1, 1)
    assert _stock(seed, 1) == 10
    assert balance.get_balance(seed, 2) == Decimal("50.00")


def test_draw_out_of_stock(seed):
    with pytest.raises(OutOfStock):
        draw_blind_box(seed, 1, 2, 2)
    assert balance.get_balance(seed, 1) == Decimal("1000.00")


def test_draw_rejects_unlisted_and_broken_boxes(seed):
    with pytest.raises(SkuNotFound):
        draw_blind_box(seed, 1, 3, 1)
    with pytest.raises(ConfigurationError):
        draw_blind_box(seed, 1, 4, 1)
    with pytest.raises(ValidationError):
        draw_blind_box(seed, 1, 1, 0)
    # Nothing was charged for the broken table
    assert _stock(seed, 4) == 5
    assert balance.get_balance(seed, 1) == Decimal("1000.00")


def test_replace_items_requires_valid_table(seed):
    items = replace_items(seed, 4, [
        {"name": "Half", "probability": "0.5"},
        {"name": "Other Half", "probability": "0.5", "rarity": 2},
    ])
    assert [i.name for i in items] == ["Half", "Other Half"]
    assert len(PrizeDrawer(seed).load_items(4)) == 2
    with pytest.raises(ConfigurationError):
        replace_items(seed, 4, [{"name": "Lonely", "probability": "0.4"}])
    with pytest.raises(ValidationError):
        replace_items(seed, 4, [{"name": "", "probability": "1"}])
    # Failed replacements keep the previous table
    assert len(PrizeDrawer(seed).load_items(4)) == 2


def test_listing_requires_valid_table(seed):
    set_status(seed, 1, "unlisted")
    assert set_status(seed, 1, "listed").status == "listed"
    set_status(seed, 4, "unlisted")
    with pytest.raises(ConfigurationError):
        set_status(seed, 4, "listed")
    with pytest.raises(ValidationError):
        set_status(seed, 1, "archived")


def test_create_box_starts_unlisted(seed):
    box = create_box(seed, " Ocean Pals ", "59.9", stock=20, seller_id=7)
    assert box.name == "Ocean Pals"
    assert box.price == Decimal("59.90")
    assert box.stock == 20
    assert box.status == "unlisted"
    # No prize table yet
    with pytest.raises(ConfigurationError):
        set_status(seed, box.id, "listed")

    with pytest.raises(ValidationError):
        create_box(seed, "Free", "0")
    with pytest.raises(ValidationError):
        create_box(seed, "Negative", "10", stock=-1)
    with pytest.raises(ValidationError):
        create_box(seed, "", "10")
    with pytest.raises(ValidationError):
        create_box(seed, "Priceless", "abc")


def test_update_box_changes_price_and_stock(seed):
    order = OrderService(seed).create(1, None, [OrderLine(1)], Decimal("100.00"))

    box = update_box(seed, 1, {"price": "120", "stock": 3, "description": "Restocked"})
    assert box.price == Decimal("120.00")
    assert box.stock == 3
    assert box.description == "Restocked"
    assert box.name == "Forest Friends"

    # Orders placed earlier keep their price snapshot
    seed.expire_all()
    assert seed.query(OrderItem).filter(OrderItem.order_id == order.id).one().price == Decimal("100.00")


def test_update_box_rejects_bad_values(seed):
    with pytest.raises(ValidationError):
        update_box(seed, 1, {"stock": -5})
    with pytest.raises(ValidationError):
        update_box(seed, 1, {"price": "-1", "stock": 4})
    with pytest.raises(SkuNotFound):
        update_box(seed, 999, {"stock": 1})
    # Failed edits leave the row as it was
    assert _stock(seed, 1) == 10
    seed.expire_all()
    assert seed.query(BlindBox).filter(BlindBox.id == 1).one().price == Decimal("100.00")

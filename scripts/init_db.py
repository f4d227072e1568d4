"""
Initialize the database schema
Creates all tables defined in models; pass --seed to add a demo blind box
"""
import sys
import os
from decimal import Decimal

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.database import SessionLocal, engine, init_db
from models.blindbox import BlindBox, BoxItem, RARITY_COMMON, RARITY_RARE, RARITY_HIDDEN
from models.user import User


def seed_demo():
    db = SessionLocal()
    try:
        if db.query(BlindBox).first():
            print("Demo data already present, skipping seed")
            return
        db.add(User(username="demo", nickname="Demo Buyer", balance=Decimal("500.00")))
        box = BlindBox(name="Starter Series", price=Decimal("59.00"), stock=100)
        db.add(box)
        db.flush()
        db.add_all([
            BoxItem(blind_box_id=box.id, name="Classic Figure", rarity=RARITY_COMMON, probability=Decimal("0.700")),
            BoxItem(blind_box_id=box.id, name="Rare Figure", rarity=RARITY_RARE, probability=Decimal("0.250")),
            BoxItem(blind_box_id=box.id, name="Hidden Figure", rarity=RARITY_HIDDEN, probability=Decimal("0.050")),
        ])
        db.commit()
        print(f"✓ Seeded demo user and blind box #{box.id}")
    finally:
        db.close()


def init_database():
    """Create all tables in the database"""
    print(f"Creating tables on {engine.url.render_as_string(hide_password=True)}...")

    try:
        init_db()
        print("✓ Tables created successfully!")
        print("\nCreated tables:")
        print("  - users")
        print("  - blind_boxes")
        print("  - box_items")
        print("  - coupons")
        print("  - user_coupons")
        print("  - orders")
        print("  - order_items")
        print("  - recharges")
    except Exception as e:
        print(f"✗ Error creating tables: {e}")
        sys.exit(1)


if __name__ == "__main__":
    init_database()
    if "--seed" in sys.argv[1:]:
        seed_demo()

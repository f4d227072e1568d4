"""
Blind Box Router
Catalogue listing, prize table management and direct draws paid from balance.
"""
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from core.database import get_db
from models.blindbox import RARITY_COMMON
from services import blindbox as blindbox_service
from services.probability import PrizeDrawer

router = APIRouter(prefix="/api/blindbox", tags=["blindbox"])


class PrizeIn(BaseModel):
    name: str
    image: Optional[str] = None
    rarity: int = RARITY_COMMON
    probability: str


class PrizeTableIn(BaseModel):
    items: List[PrizeIn]


class StatusIn(BaseModel):
    status: str


class BlindBoxIn(BaseModel):
    name: str
    price: str
    stock: int = Field(default=0, ge=0)
    description: Optional[str] = None
    cover_image: Optional[str] = None
    seller_id: Optional[int] = None


class BlindBoxUpdateIn(BaseModel):
    name: Optional[str] = None
    price: Optional[str] = None
    stock: Optional[int] = Field(default=None, ge=0)
    description: Optional[str] = None
    cover_image: Optional[str] = None


class DrawIn(BaseModel):
    user_id: int
    quantity: int = Field(default=1, ge=1)


@router.get("")
async def list_blind_boxes(include_unlisted: bool = Query(False), db: Session = Depends(get_db)):
    boxes = blindbox_service.list_boxes(db, listed_only=not include_unlisted)
    return {"ok": True, "blindBoxes": [b.to_dict() for b in boxes]}


@router.get("/{box_id}")
async def get_blind_box(box_id: int, db: Session = Depends(get_db)):
    box = blindbox_service.get_box(db, box_id)
    items = PrizeDrawer(db).load_items(box_id)
    return {"ok": True, "blindBox": box.to_dict(), "items": [i.to_dict() for i in items]}


@router.put("/{box_id}/items")
async def replace_prize_table(box_id: int, data: PrizeTableIn, db: Session = Depends(get_db)):
    items = blindbox_service.replace_items(db, box_id, [i.model_dump() for i in data.items])
    return {"ok": True, "items": [i.to_dict() for i in items]}


@router.post("/{box_id}/status")
async def set_blind_box_status(box_id: int, data: StatusIn, db: Session = Depends(get_db)):
    box = blindbox_service.set_status(db, box_id, data.status)
    return {"ok": True, "blindBox": box.to_dict()}


@router.post("/{box_id}/draw")
async def draw_blind_box(box_id: int, data: DrawIn, db: Session = Depends(get_db)):
    result = blindbox_service.draw_blind_box(db, data.user_id, box_id, data.quantity)
    return {"ok": True, **result.to_dict()}


@router.post("")
async def create_blind_box(data: BlindBoxIn, db: Session = Depends(get_db)):
    box = blindbox_service.create_box(
        db,
        name=data.name,
        price=data.price,
        stock=data.stock,
        description=data.description,
        cover_image=data.cover_image,
        seller_id=data.seller_id,
    )
    return {"ok": True, "blindBox": box.to_dict()}


@router.patch("/{box_id}")
async def update_blind_box(box_id: int, data: BlindBoxUpdateIn, db: Session = Depends(get_db)):
    box = blindbox_service.update_box(db, box_id, data.model_dump(exclude_unset=True))
    return {"ok": True, "blindBox": box.to_dict()}

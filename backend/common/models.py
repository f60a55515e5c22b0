from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# --- Models ---

class StateBlob(Base):
    """Named JSON blob (bridge mapping, learned categories)."""
    __tablename__ = "state_blobs"

    name = Column(String, primary_key=True)
    value_json = Column(Text, nullable=False, default="{}")
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

class ShoppingList(Base):
    __tablename__ = "shopping_lists"

    ref = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    metadata_json = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

class ShoppingListItem(Base):
    __tablename__ = "shopping_list_items"

    list_ref = Column(String, ForeignKey("shopping_lists.ref", ondelete="CASCADE"), primary_key=True)
    item_id = Column(String, primary_key=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(Text, nullable=False)
    checked = Column(Boolean, nullable=False, default=False)
    category = Column(String, nullable=True)
    quantity_json = Column(JSONType, nullable=True)
    per_unit_json = Column(JSONType, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("idx_shopping_list_items_list_position", "list_ref", "position"),
    )


async def init_models(engine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

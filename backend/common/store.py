import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, func, select

from common.models import ShoppingList, ShoppingListItem
from common.schemas import Amount, ListItem, ListPatch

logger = logging.getLogger(__name__)


class MessageStore:
    """Owner of the internal list messages the bridge reconciles against."""

    async def get_items_by_reference(self, ref: str) -> Optional[List[ListItem]]:
        raise NotImplementedError

    async def apply_patch(self, ref: str, patch: ListPatch) -> None:
        raise NotImplementedError

    async def create_list(self, ref: str, metadata: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def remove_list(self, ref: str) -> None:
        raise NotImplementedError

    async def get_list_metadata(self, ref: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError


def _amount_to_json(amount: Optional[Amount]) -> Optional[Dict[str, Any]]:
    return amount.model_dump() if amount is not None else None


def _amount_from_json(raw: Any) -> Optional[Amount]:
    if not isinstance(raw, dict):
        return None
    try:
        return Amount.model_validate(raw)
    except ValueError:
        return None


def _row_to_item(row: ShoppingListItem) -> ListItem:
    return ListItem(
        id=row.item_id,
        name=row.name,
        checked=bool(row.checked),
        category=row.category,
        quantity=_amount_from_json(row.quantity_json),
        per_unit=_amount_from_json(row.per_unit_json),
    )


def _copy_item_to_row(item: ListItem, row: ShoppingListItem) -> None:
    row.name = item.name
    row.checked = item.checked
    row.category = item.category
    row.quantity_json = _amount_to_json(item.quantity)
    row.per_unit_json = _amount_to_json(item.per_unit)


class SqlMessageStore(MessageStore):
    def __init__(self, session_factory: Callable[[], Any]):
        self.session_factory = session_factory

    async def get_items_by_reference(self, ref: str) -> Optional[List[ListItem]]:
        """Returns the items of a list in position order, or None when the list does not exist."""
        async with self.session_factory() as db:
            lst = await db.get(ShoppingList, ref)
            if lst is None:
                return None
            stmt = (
                select(ShoppingListItem)
                .where(ShoppingListItem.list_ref == ref)
                .order_by(ShoppingListItem.position.asc(), ShoppingListItem.item_id.asc())
            )
            rows = (await db.execute(stmt)).scalars().all()
            return [_row_to_item(row) for row in rows]

    async def apply_patch(self, ref: str, patch: ListPatch) -> None:
        if patch.is_empty():
            return
        async with self.session_factory() as db:
            lst = await db.get(ShoppingList, ref)
            if lst is None:
                logger.warning(f"Ignoring patch for unknown list {ref}")
                return
            if patch.delete_items:
                await db.execute(
                    delete(ShoppingListItem).where(
                        ShoppingListItem.list_ref == ref,
                        ShoppingListItem.item_id.in_(patch.delete_items),
                    )
                )
            max_stmt = select(func.max(ShoppingListItem.position)).where(ShoppingListItem.list_ref == ref)
            next_position = ((await db.execute(max_stmt)).scalar() or 0) + 1
            for item_id, item in patch.set_items.items():
                row = await db.get(ShoppingListItem, (ref, item_id))
                if row is None:
                    row = ShoppingListItem(list_ref=ref, item_id=item_id, position=next_position)
                    next_position += 1
                    db.add(row)
                _copy_item_to_row(item, row)
            await db.commit()

    async def create_list(self, ref: str, metadata: Dict[str, Any]) -> None:
        """Creates the list, or refreshes title/metadata of an existing one."""
        async with self.session_factory() as db:
            lst = await db.get(ShoppingList, ref)
            title = str(metadata.get("title") or "")
            if lst is None:
                db.add(ShoppingList(ref=ref, title=title, metadata_json=dict(metadata)))
            elif lst.title != title or (lst.metadata_json or {}) != metadata:
                lst.title = title
                lst.metadata_json = dict(metadata)
            else:
                return
            await db.commit()

    async def remove_list(self, ref: str) -> None:
        async with self.session_factory() as db:
            await db.execute(delete(ShoppingListItem).where(ShoppingListItem.list_ref == ref))
            await db.execute(delete(ShoppingList).where(ShoppingList.ref == ref))
            await db.commit()

    async def get_list_metadata(self, ref: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            lst = await db.get(ShoppingList, ref)
            if lst is None:
                return None
            return dict(lst.metadata_json or {})

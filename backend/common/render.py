from typing import Optional

from common.parser import PROVISIONAL_MARKER
from common.schemas import Amount, ListItem


def format_number(val: float) -> str:
    if float(val).is_integer():
        return str(int(val))
    return f"{val:g}"


def format_amount(amount: Amount) -> str:
    unit = (amount.unit or "").strip()
    text = format_number(amount.val)
    return f"{text} {unit}" if unit else text


def _shown_quantity(item: ListItem) -> Optional[Amount]:
    q = item.quantity
    if q is None or not q.val or q.val <= 0:
        return None
    # a single piece is implied
    if q.val <= 1 and (q.unit or "").strip() == "pcs":
        return None
    return q


def _shown_per_unit(item: ListItem) -> Optional[Amount]:
    p = item.per_unit
    if p is None or not p.val or p.val <= 0 or not (p.unit or "").strip():
        return None
    return p


def render_item_value(item: ListItem) -> str:
    """Render an item in the grammar the parser reads back, e.g. `~Lilith Ghee - 6 pcs 500 g`.

    Returns an empty string for items without a name.
    """
    name = (item.name or "").strip()
    if not name:
        return ""
    parts = [format_amount(a) for a in (_shown_quantity(item), _shown_per_unit(item)) if a is not None]
    if not parts:
        return f"{PROVISIONAL_MARKER}{name}"
    return f"{PROVISIONAL_MARKER}{name} - {' '.join(parts)}"


def is_provisional_value(value: str) -> bool:
    return (value or "").strip().startswith(PROVISIONAL_MARKER)

from typing import Dict, Iterable, List

from common.schemas import ListItem


def find_expired_checked(
    items: Iterable[ListItem],
    checked_at: Dict[str, int],
    now_ms: int,
    keep_ms: int,
) -> List[str]:
    """Ids of checked items whose first-seen checked time is at least `keep_ms` old.

    Updates `checked_at` in place: checked items seen for the first time (or with an
    unusable timestamp) are stamped with `now_ms`, unchecked items are cleared.
    A non-positive `keep_ms` disables expiry.
    """
    expired: List[str] = []
    for item in items:
        if not item.checked:
            checked_at.pop(item.id, None)
            continue
        first_seen = checked_at.get(item.id)
        if not isinstance(first_seen, int) or first_seen <= 0:
            checked_at[item.id] = now_ms
            continue
        if keep_ms > 0 and now_ms - first_seen >= keep_ms:
            expired.append(item.id)
    return expired

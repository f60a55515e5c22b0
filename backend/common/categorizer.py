import logging
import re
import time
import unicodedata
from typing import Any, Callable, Dict, List

from pydantic import ValidationError

from common.persistence import StateBlobStore
from common.schemas import BridgeOptions, CategoryRecord, ListItem, ListPatch
from common.store import MessageStore

logger = logging.getLogger(__name__)

CATEGORIES_BLOB_NAME = "categories"

_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
_WS_RE = re.compile(r"\s+")


def normalize_item_key(name: Any) -> str:
    """`"Crème fraîche!"` -> `"creme fraiche"`"""
    text = unicodedata.normalize("NFD", str(name or "").strip().lower())
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = text.replace("ß", "ss")
    text = _NON_ALNUM_RE.sub(" ", text)
    return _WS_RE.sub(" ", text).strip()


def category_signature(categories: List[str]) -> str:
    return "|".join(c.strip().lower() for c in categories if c and c.strip())


class ShoppingCategorizer:
    """Assigns categories to list items, remembering what the classifier said per item name."""

    def __init__(
        self,
        blobs: StateBlobStore,
        classifier: Any,
        options: BridgeOptions,
        clock: Callable[[], float] = time.time,
        blob_name: str = CATEGORIES_BLOB_NAME,
    ):
        self.blobs = blobs
        self.classifier = classifier
        self.options = options
        self.clock = clock
        self.blob_name = blob_name
        self.record = CategoryRecord()

    async def load(self) -> None:
        raw = await self.blobs.read_json(self.blob_name)
        if not raw:
            self.record = CategoryRecord()
            return
        try:
            self.record = CategoryRecord.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding invalid categories record")
            self.record = CategoryRecord()

    async def save(self) -> None:
        await self.blobs.write_json(self.blob_name, self.record.model_dump())

    def ensure_context(self) -> bool:
        """Reset learned categories when the configured category list changed."""
        signature = category_signature(self.options.categories)
        if self.record.signature == signature:
            return False
        self.record = CategoryRecord(signature=signature, learned={})
        return True

    def _threshold(self) -> float:
        return max(0.0, min(1.0, self.options.ai_min_confidence_pct / 100.0))

    async def categorize(self, store: MessageStore, ref: str) -> bool:
        """Run one categorization round for the list. Returns True when more items remain."""
        items = await store.get_items_by_reference(ref)
        if items is None:
            return False

        allowed = list(self.options.categories)
        if not self.options.ai_enhancement or not allowed:
            cleared = {
                it.id: it.model_copy(update={"category": None}) for it in items if it.category
            }
            if cleared:
                await store.apply_patch(ref, ListPatch(set_items=cleared))
            return False

        if self.classifier is None or not self.classifier.is_available():
            return False

        if self.ensure_context():
            await self.save()
        fallback = allowed[-1]
        learned = self.record.learned

        patch: Dict[str, ListItem] = {}
        to_classify: List[Dict[str, Any]] = []
        for it in items:
            name = (it.name or "").strip()
            key = normalize_item_key(name)
            if not key:
                continue
            current = (it.category or "").strip()
            learned_cat = (learned.get(key) or {}).get("category")
            if isinstance(learned_cat, str) and learned_cat in allowed:
                if current != learned_cat:
                    patch[it.id] = it.model_copy(update={"category": learned_cat})
                continue
            if current not in allowed:
                to_classify.append({"item": it, "key": key, "name": name})

        if patch:
            await store.apply_patch(ref, ListPatch(set_items=patch))
        if not to_classify:
            return False

        batch = to_classify[: self.options.categorize_batch_size]
        results = await self.classifier.categorize_items(
            allowed,
            fallback,
            [{"key": b["key"], "text": b["name"]} for b in batch],
        )
        if results is None:
            return False

        by_key = {r["key"]: r for r in results}
        threshold = self._threshold()
        now_ms = int(self.clock() * 1000)
        assigned: Dict[str, str] = {}
        changed = False
        for b in batch:
            result = by_key.get(b["key"]) or {}
            category = result.get("category")
            confidence = result.get("confidence", 0.0)
            if category not in allowed or confidence < threshold:
                category = fallback
            prev = learned.get(b["key"]) or {}
            if prev.get("category") != category or prev.get("confidence") != confidence:
                learned[b["key"]] = {"category": category, "confidence": confidence, "updatedAt": now_ms}
                changed = True
            assigned[b["item"].id] = category

        # the list may have changed while the classifier was running
        current = await store.get_items_by_reference(ref) or []
        patch = {
            it.id: it.model_copy(update={"category": assigned[it.id]})
            for it in current
            if it.id in assigned and it.category != assigned[it.id]
        }
        if patch:
            await store.apply_patch(ref, ListPatch(set_items=patch))
        if changed:
            await self.save()
        logger.info(f"Categorized {len(batch)} item(s), {len(to_classify) - len(batch)} remaining")
        return len(to_classify) > len(batch)

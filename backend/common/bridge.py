import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from common.alexa import AlexaListIds
from common.categorizer import ShoppingCategorizer
from common.errors import SnapshotError, TransportError
from common.mapping import MappingStore
from common.parser import get_parser
from common.persistence import StateBlobStore
from common.render import is_provisional_value, render_item_value
from common.retention import find_expired_checked
from common.schemas import (
    BridgeOptions, CategoryRecord, ExternalItem, ListItem, ListPatch, SyncStatusResponse
)
from common.store import MessageStore

logger = logging.getLogger(__name__)

MESSAGE_REF_PREFIX = "shopping_bridge"
MAX_CREATE_TRIES = 2


def build_message_ref(instance_id: str, json_state_id: str) -> str:
    return f"{MESSAGE_REF_PREFIX}.{instance_id}.{json_state_id}"


def build_blob_namespace(instance_id: str) -> str:
    return f"{MESSAGE_REF_PREFIX}.{instance_id}"


def parse_snapshot(raw: Any) -> List[ExternalItem]:
    """Parse the external list JSON into items, rejecting the whole payload on any malformed entry."""
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise SnapshotError("snapshot is empty")
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise SnapshotError(f"snapshot is not valid JSON: {e}") from e
    if not isinstance(raw, list):
        raise SnapshotError(f"snapshot is a {type(raw).__name__}, expected a list")
    items: List[ExternalItem] = []
    seen: Set[str] = set()
    for entry in raw:
        try:
            item = ExternalItem.model_validate(entry)
        except ValidationError as e:
            raise SnapshotError(f"snapshot contains an invalid item: {e.error_count()} error(s)") from e
        if item.id in seen:
            logger.warning(f"Duplicate external item {item.id} in snapshot, keeping the first")
            continue
        seen.add(item.id)
        items.append(item)
    return items


def snapshot_fingerprint(raw: Any) -> str:
    text = raw if isinstance(raw, str) else json.dumps(raw, sort_keys=True, ensure_ascii=False)
    return hashlib.sha1(text.encode("utf-8")).hexdigest()


@dataclass
class BridgeState:
    """Mutable in-memory state of a running bridge. Persisted state lives in the mapping."""

    running: bool = False
    last_fingerprint: Optional[str] = None
    last_external: Dict[str, ExternalItem] = field(default_factory=dict)
    last_msg_internal_ids: Set[str] = field(default_factory=set)
    consecutive_empty: int = 0
    # external id -> {"value"|"completed"|"delete": epoch seconds of our last write}
    last_writes: Dict[str, Dict[str, float]] = field(default_factory=dict)
    deleted_external: Set[str] = field(default_factory=set)
    # internal id -> rendered value whose create was given up on
    abandoned_creates: Dict[str, str] = field(default_factory=dict)
    categorize_due_at: Optional[float] = None
    next_full_sync_at: Optional[float] = None
    enforce_at: Dict[str, float] = field(default_factory=dict)

    def clear_transient(self) -> None:
        self.last_fingerprint = None
        self.last_external = {}
        self.last_msg_internal_ids = set()
        self.consecutive_empty = 0
        self.last_writes = {}
        self.deleted_external = set()
        self.abandoned_creates = {}
        self.categorize_due_at = None
        self.next_full_sync_at = None
        self.enforce_at = {}


class ShoppingListBridge:
    """Keeps an external shopping list and an internal list message in sync.

    The internal list is authoritative for item content; the external side may
    only check items off, add new items and delete items. Every entry point is
    expected to be awaited to completion before the next one starts.
    """

    def __init__(
        self,
        store: MessageStore,
        blobs: StateBlobStore,
        transport: Any,
        options: BridgeOptions,
        classifier: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.transport = transport
        self.options = options
        self.clock = clock
        self.ids = AlexaListIds(options.json_state_id, options.create_command_suffix)
        self.mapping = MappingStore(blobs)
        self.categorizer = ShoppingCategorizer(blobs, classifier, options, clock=clock)
        self.parser = get_parser(options.locale)
        self.state = BridgeState()

    @property
    def default_message_ref(self) -> str:
        return build_message_ref(self.options.instance_id, self.options.json_state_id)

    @property
    def message_ref(self) -> str:
        return self.mapping.record.message_ref or self.default_message_ref

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    # --- lifecycle ---

    async def start(self) -> None:
        if self.state.running:
            return
        self.state.running = True
        await self.mapping.load()
        await self.categorizer.load()
        self.categorizer.ensure_context()
        await self.ensure_list()
        await self.mapping.save()
        await self.categorizer.save()
        logger.info(f"Bridge started for {self.ids.json} -> {self.message_ref}")
        await self.full_sync()

    def stop(self) -> None:
        """Stop reacting to triggers. Persisted mapping is left untouched."""
        self.state.running = False
        self.state.clear_transient()
        logger.info(f"Bridge stopped for {self.ids.json}")

    async def ensure_list(self) -> None:
        """Create the list message if missing and follow a changed message ref or JSON state id."""
        ref = self.default_message_ref
        metadata = {
            "title": self.options.list_title,
            "kind": "shoppinglist",
            "location": self.options.list_location,
            "origin": {"system": self.ids.system, "id": self.ids.json},
        }
        record = self.mapping.record
        old_ref = record.message_ref
        list_changed = bool(record.json_state_id) and record.json_state_id != self.ids.json

        if old_ref and old_ref != ref:
            items = await self.store.get_items_by_reference(old_ref)
            await self.store.create_list(ref, metadata)
            if items:
                await self.store.apply_patch(ref, ListPatch(set_items={it.id: it for it in items}))
            await self.store.remove_list(old_ref)
            logger.info(f"Moved list {old_ref} -> {ref} ({len(items or [])} item(s))")
            if list_changed:
                logger.info(f"External list changed to {self.ids.json}, starting with an empty mapping")
                self.mapping.reset(ref, self.ids.json)
                running = self.state.running
                self.state.clear_transient()
                self.state.running = running
                self.categorizer.record = CategoryRecord()
                self.categorizer.ensure_context()
                return

        await self.store.create_list(ref, metadata)
        record = self.mapping.record
        record.message_ref = ref
        record.json_state_id = self.ids.json

    # --- conflict window ---

    def _record_write(self, external_id: str, key: str) -> None:
        self.state.last_writes.setdefault(external_id, {})[key] = self.clock()

    def _is_recent_write(self, external_id: str, key: str) -> bool:
        at = self.state.last_writes.get(external_id, {}).get(key)
        if at is None or self.options.conflict_window_seconds <= 0:
            return False
        return self.clock() - at <= self.options.conflict_window_seconds

    def _schedule_enforce(self, external_id: str) -> None:
        if self.options.conflict_window_seconds <= 0:
            return
        self.state.enforce_at[external_id] = self.clock() + self.options.conflict_window_seconds

    def _forget_external(self, external_id: str) -> None:
        self.state.last_external.pop(external_id, None)
        self.state.enforce_at.pop(external_id, None)

    async def _delete_external(self, external_id: str) -> None:
        self._record_write(external_id, "delete")
        if await self.transport.write_command(self.ids.item_delete(external_id), True):
            self.state.deleted_external.add(external_id)

    async def _write_item(self, external_id: str, item: ListItem, value: str) -> int:
        """Push value/completed of a mapped item where they differ from the last snapshot."""
        writes = 0
        ext = self.state.last_external.get(external_id)
        if ext is None or ext.value != value:
            self._record_write(external_id, "value")
            await self.transport.write_command(self.ids.item_value(external_id), value)
            writes += 1
        if ext is None or ext.completed != item.checked:
            self._record_write(external_id, "completed")
            await self.transport.write_command(self.ids.item_completed(external_id), item.checked)
            writes += 1
        return writes

    async def _connection_ok(self) -> bool:
        healthy = await self.transport.read_connection_health(self.ids.system)
        if healthy is False:
            logger.info(f"{self.ids.connection} reports disconnected, skipping pass")
            return False
        return True

    # --- external -> internal ---

    def _item_from_external(self, internal_id: str, ext: ExternalItem) -> ListItem:
        name = ext.value
        quantity = per_unit = None
        if self.options.parse_item_text:
            try:
                parsed = self.parser.parse(ext.value)
            except Exception as e:
                logger.warning(f"Could not parse {ext.value!r}, keeping the raw text: {e}")
                parsed = None
            if parsed is not None:
                name = parsed.name or ext.value
                quantity = parsed.quantity
                per_unit = parsed.per_unit
        return ListItem(id=internal_id, name=name, checked=ext.completed, quantity=quantity, per_unit=per_unit)

    async def sync_from_external(self, raw: Any) -> bool:
        """Apply an external snapshot to the internal list. Returns False when the pass was skipped."""
        if not self.state.running:
            return False
        if not await self._connection_ok() or not self.state.running:
            return False
        try:
            external_items = parse_snapshot(raw)
        except SnapshotError as e:
            logger.warning(f"Ignoring snapshot of {self.ids.json}: {e}")
            return False

        ref = self.message_ref
        internal_items = await self.store.get_items_by_reference(ref)
        if not self.state.running:
            return False
        if internal_items is None:
            logger.warning(f"List {ref} does not exist, skipping pass")
            return False

        fingerprint = snapshot_fingerprint(raw)
        if fingerprint == self.state.last_fingerprint:
            logger.debug(f"Snapshot of {self.ids.json} unchanged since last pass")
        self.state.last_fingerprint = fingerprint

        mapped_external = self.mapping.mapped_external_ids()
        if not external_items and mapped_external:
            self.state.consecutive_empty += 1
            if self.state.consecutive_empty < self.options.empty_snapshot_threshold:
                logger.info(
                    f"Empty snapshot with {len(mapped_external)} mapped item(s) "
                    f"({self.state.consecutive_empty}/{self.options.empty_snapshot_threshold}), not deleting yet"
                )
                return False
            logger.info(f"{self.state.consecutive_empty} consecutive empty snapshots, removing mapped items")
        self.state.consecutive_empty = 0

        saved_record = self.mapping.record.model_copy(deep=True)
        saved_external = dict(self.state.last_external)
        saved_deleted = set(self.state.deleted_external)
        try:
            return await self._apply_external_items(ref, external_items, internal_items)
        except Exception:
            # a failed pass must not leave mappings for items that never reached the list
            self.mapping.record = saved_record
            self.state.last_external = saved_external
            self.state.deleted_external = saved_deleted
            logger.warning(f"Sync from {self.ids.json} failed, mapping changes rolled back")
            raise

    async def _apply_external_items(
        self, ref: str, external_items: List[ExternalItem], internal_items: List[ListItem]
    ) -> bool:
        mapped_external = self.mapping.mapped_external_ids()
        now_ms = self._now_ms()
        by_internal = {it.id: it for it in internal_items}
        current_ids = {ext.id for ext in external_items}
        self.state.deleted_external &= current_ids
        set_items: Dict[str, ListItem] = {}
        delete_items: List[str] = []

        for external_id in sorted(mapped_external - current_ids):
            internal_id = self.mapping.remove_by_external_id(external_id)
            if internal_id is not None and internal_id in by_internal:
                delete_items.append(internal_id)
            self._forget_external(external_id)
            self.state.last_writes.pop(external_id, None)

        adopted: Set[str] = set()
        for ext in external_items:
            if ext.id in self.state.deleted_external:
                continue
            internal_id = self.mapping.get_internal_for_external(ext.id)
            newly_mapped = False
            if internal_id is None:
                internal_id = self.mapping.adopt_pending_create(ext.value, ext.id)
                if internal_id is not None:
                    adopted.add(internal_id)
                    logger.info(f"Confirmed creation of {internal_id} as external {ext.id}")
            if internal_id is None:
                if is_provisional_value(ext.value):
                    logger.info(f"Deleting provisional external item {ext.id} ({ext.value!r})")
                    await self._delete_external(ext.id)
                    continue
                internal_id = f"a:{ext.id}"
                self.mapping.upsert_mapping(internal_id, ext.id)
                newly_mapped = True

            self.state.last_external[ext.id] = ext
            desired = by_internal.get(internal_id)
            if desired is None:
                if newly_mapped:
                    set_items[internal_id] = self._item_from_external(internal_id, ext)
                    if ext.completed:
                        self.mapping.mark_checked(internal_id, now_ms)
                continue

            checked = desired.checked
            if desired.checked != ext.completed:
                if internal_id in adopted or self._is_recent_write(ext.id, "completed"):
                    self._schedule_enforce(ext.id)
                else:
                    checked = ext.completed
                    set_items[internal_id] = desired.model_copy(update={"checked": checked})
            if checked:
                self.mapping.mark_checked(internal_id, now_ms)
            else:
                self.mapping.clear_checked(internal_id)

        retried = expired = 0
        for internal_id, pending in list(self.mapping.record.pending_creates.items()):
            if internal_id in adopted:
                continue
            if internal_id not in by_internal:
                self.mapping.drop_pending_create(internal_id)
                continue
            pending.misses += 1
            if pending.misses < self.options.pending_max_misses:
                continue
            if pending.tries < MAX_CREATE_TRIES:
                pending.tries += 1
                pending.misses = 0
                retried += 1
                logger.info(f"Re-issuing create for {internal_id} ({pending.expected_value!r})")
                await self.transport.write_command(self.ids.create, pending.expected_value)
            else:
                self.mapping.drop_pending_create(internal_id)
                self.state.abandoned_creates[internal_id] = pending.expected_value
                expired += 1
                logger.warning(f"Giving up on creating {internal_id} ({pending.expected_value!r})")

        if not self.state.running:
            return False
        patch = ListPatch(set_items=set_items, delete_items=delete_items)
        if not patch.is_empty():
            await self.store.apply_patch(ref, patch)
        await self.mapping.save()
        self.schedule_categorize()
        logger.info(
            f"Synced from {self.ids.json}: {len(external_items)} external, {len(set_items)} set, "
            f"{len(delete_items)} deleted, {len(adopted)} adopted, {retried} retried, {expired} expired"
        )
        return True

    # --- internal -> external ---

    async def sync_to_external(self, items: Optional[List[ListItem]] = None) -> bool:
        """Push the internal list to the external one. Returns False when the pass was skipped."""
        if not self.state.running:
            return False
        if not await self._connection_ok() or not self.state.running:
            return False
        if items is None:
            items = await self.store.get_items_by_reference(self.message_ref)
            if not self.state.running:
                return False
            if items is None:
                logger.warning(f"List {self.message_ref} does not exist, skipping pass")
                return False

        current_ids = {it.id for it in items}
        removed = (self.state.last_msg_internal_ids - current_ids) | (
            self.mapping.mapped_internal_ids() - current_ids
        )
        self.state.last_msg_internal_ids = current_ids

        deletes = creates = writes = 0
        for internal_id in sorted(removed):
            self.state.abandoned_creates.pop(internal_id, None)
            external_id = self.mapping.remove_by_internal_id(internal_id)
            if external_id is None:
                continue
            await self._delete_external(external_id)
            self._forget_external(external_id)
            deletes += 1
        for internal_id in list(self.mapping.record.pending_creates):
            if internal_id not in current_ids:
                self.mapping.drop_pending_create(internal_id)

        for it in items:
            value = render_item_value(it)
            if not value:
                continue
            external_id = self.mapping.get_external_for_internal(it.id)
            if external_id is None:
                pending = self.mapping.get_pending_create(it.id)
                if pending is not None and pending.expected_value == value:
                    continue
                if self.state.abandoned_creates.get(it.id) == value:
                    continue
                self.state.abandoned_creates.pop(it.id, None)
                self.mapping.record_pending_create(it.id, value)
                await self.transport.write_command(self.ids.create, value)
                creates += 1
                continue
            if external_id in self.state.enforce_at:
                continue
            if it.checked:
                self.mapping.mark_checked(it.id, self._now_ms())
            else:
                self.mapping.clear_checked(it.id)
            writes += await self._write_item(external_id, it, value)

        await self.mapping.save()
        self.schedule_categorize()
        if deletes or creates or writes:
            logger.info(f"Synced to {self.ids.json}: {deletes} deleted, {creates} created, {writes} write(s)")
        return True

    async def _enforce_one(self, external_id: str) -> None:
        """Re-assert the internal state of one item after a conflicting external change."""
        internal_id = self.mapping.get_internal_for_external(external_id)
        if internal_id is None:
            return
        items = await self.store.get_items_by_reference(self.message_ref)
        if not self.state.running or not items:
            return
        item = next((it for it in items if it.id == internal_id), None)
        if item is None:
            return
        await self._write_item(external_id, item, render_item_value(item))

    # --- retention ---

    async def prune_completed(self) -> List[str]:
        """Delete items that have been checked for longer than the retention window."""
        if not self.state.running:
            return []
        keep_ms = int(self.options.keep_completed_seconds * 1000)
        if keep_ms <= 0:
            return []
        ref = self.message_ref
        items = await self.store.get_items_by_reference(ref)
        if not self.state.running or not items:
            return []
        expired = find_expired_checked(items, self.mapping.record.checked_at, self._now_ms(), keep_ms)
        if expired:
            for internal_id in expired:
                external_id = self.mapping.remove_by_internal_id(internal_id)
                if external_id is not None:
                    await self._delete_external(external_id)
                    self._forget_external(external_id)
            await self.store.apply_patch(ref, ListPatch(delete_items=expired))
            self.state.last_msg_internal_ids -= set(expired)
            logger.info(f"Pruned {len(expired)} completed item(s) from {ref}")
        await self.mapping.save()
        return expired

    # --- triggers ---

    async def full_sync(self) -> None:
        if not self.state.running:
            return
        await self.ensure_list()
        try:
            raw = await self.transport.read_snapshot(self.ids.json)
        except TransportError as e:
            logger.warning(f"Snapshot read failed: {e}")
            raw = None
        if not self.state.running:
            return
        await self.sync_from_external(raw)
        await self.prune_completed()
        await self.sync_to_external()
        if self.options.full_sync_interval_seconds > 0:
            self.state.next_full_sync_at = self.clock() + self.options.full_sync_interval_seconds

    async def on_snapshot_changed(self, state_id: Optional[str] = None, raw: Any = None) -> bool:
        if not self.state.running:
            return False
        if state_id and state_id != self.ids.json:
            logger.debug(f"Ignoring change of unrelated state {state_id}")
            return False
        if raw is None:
            try:
                raw = await self.transport.read_snapshot(self.ids.json)
            except TransportError as e:
                logger.warning(f"Snapshot read failed: {e}")
                return False
        return await self.sync_from_external(raw)

    async def on_message_updated(self, ref: Optional[str] = None, items: Optional[List[ListItem]] = None) -> bool:
        if not self.state.running:
            return False
        if ref and ref != self.message_ref:
            return False
        return await self.sync_to_external(items)

    # --- categorizer ---

    def schedule_categorize(self) -> None:
        if not self.state.running:
            return
        self.state.categorize_due_at = self.clock() + self.options.categorize_debounce_seconds

    async def categorize_now(self) -> None:
        if not self.state.running:
            return
        if await self.categorizer.categorize(self.store, self.message_ref):
            self.schedule_categorize()

    async def run_due_timers(self) -> None:
        """Fire the debounce, enforcement and full-sync timers that are due."""
        if not self.state.running:
            return
        now = self.clock()
        if self.state.categorize_due_at is not None and now >= self.state.categorize_due_at:
            self.state.categorize_due_at = None
            try:
                await self.categorize_now()
            except Exception as e:
                logger.warning(f"categorize failed: {e}")
        for external_id, due in list(self.state.enforce_at.items()):
            if now < due:
                continue
            self.state.enforce_at.pop(external_id, None)
            try:
                await self._enforce_one(external_id)
            except Exception as e:
                logger.warning(f"enforce failed for {external_id}: {e}")
        if self.state.next_full_sync_at is not None and now >= self.state.next_full_sync_at:
            self.state.next_full_sync_at = None
            try:
                await self.full_sync()
            except Exception as e:
                logger.warning(f"full sync failed: {e}")

    def status(self) -> SyncStatusResponse:
        return status_from_record(self.mapping, self.ids.json)


def status_from_record(mapping: MappingStore, json_state_id: str) -> SyncStatusResponse:
    record = mapping.record
    return SyncStatusResponse(
        message_ref=record.message_ref,
        json_state_id=record.json_state_id or json_state_id,
        mapped_items=len(record.local_to_external),
        pending_creates=len(record.pending_creates),
        checked_items=len(record.checked_at),
    )

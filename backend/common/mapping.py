import logging
from typing import Dict, Optional

from pydantic import ValidationError

from common.persistence import StateBlobStore
from common.schemas import MAPPING_SCHEMA_VERSION, MappingRecord, PendingCreate

logger = logging.getLogger(__name__)

MAPPING_BLOB_NAME = "mapping"


class MappingStore:
    """Bidirectional internal <-> external id map with a pending-create ledger.

    `local_to_external` and `external_to_local` are kept as exact inverses, and an
    internal id is never both mapped and pending at the same time.
    """

    def __init__(self, blobs: StateBlobStore, blob_name: str = MAPPING_BLOB_NAME):
        self.blobs = blobs
        self.blob_name = blob_name
        self.record = MappingRecord()

    async def load(self) -> bool:
        """Load the persisted record; returns False when starting from an empty mapping."""
        raw = await self.blobs.read_json(self.blob_name)
        if not raw:
            self.record = MappingRecord()
            return False
        if raw.get("version") != MAPPING_SCHEMA_VERSION:
            logger.info(
                "Discarding mapping with schema version %s (expected %s)",
                raw.get("version"),
                MAPPING_SCHEMA_VERSION,
            )
            self.record = MappingRecord()
            return False
        try:
            self.record = MappingRecord.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding invalid mapping record: %s", e.error_count())
            self.record = MappingRecord()
            return False
        self._repair_symmetry()
        return True

    async def save(self) -> None:
        await self.blobs.write_json(self.blob_name, self.record.model_dump(by_alias=True))

    def _repair_symmetry(self) -> None:
        l2e: Dict[str, str] = {}
        e2l: Dict[str, str] = {}
        for internal_id, external_id in self.record.local_to_external.items():
            if self.record.external_to_local.get(external_id) != internal_id or external_id in e2l:
                continue
            l2e[internal_id] = external_id
            e2l[external_id] = internal_id
        if len(l2e) != len(self.record.local_to_external) or len(e2l) != len(self.record.external_to_local):
            logger.warning("Dropped asymmetric mapping entries while loading")
        self.record.local_to_external = l2e
        self.record.external_to_local = e2l
        for internal_id in list(self.record.pending_creates):
            if internal_id in l2e:
                del self.record.pending_creates[internal_id]

    def reset(self, message_ref: str = "", json_state_id: str = "") -> None:
        self.record = MappingRecord(message_ref=message_ref, json_state_id=json_state_id)

    # --- lookups ---

    def get_internal_for_external(self, external_id: str) -> Optional[str]:
        return self.record.external_to_local.get(external_id)

    def get_external_for_internal(self, internal_id: str) -> Optional[str]:
        return self.record.local_to_external.get(internal_id)

    def mapped_external_ids(self) -> set:
        return set(self.record.external_to_local)

    def mapped_internal_ids(self) -> set:
        return set(self.record.local_to_external)

    # --- mutations ---

    def upsert_mapping(self, internal_id: str, external_id: str) -> None:
        old_external = self.record.local_to_external.get(internal_id)
        if old_external is not None and old_external != external_id:
            self.record.external_to_local.pop(old_external, None)
        old_internal = self.record.external_to_local.get(external_id)
        if old_internal is not None and old_internal != internal_id:
            self.record.local_to_external.pop(old_internal, None)
        self.record.local_to_external[internal_id] = external_id
        self.record.external_to_local[external_id] = internal_id
        self.record.pending_creates.pop(internal_id, None)

    def remove_by_external_id(self, external_id: str) -> Optional[str]:
        internal_id = self.record.external_to_local.pop(external_id, None)
        if internal_id is not None:
            self.record.local_to_external.pop(internal_id, None)
            self.record.checked_at.pop(internal_id, None)
        return internal_id

    def remove_by_internal_id(self, internal_id: str) -> Optional[str]:
        external_id = self.record.local_to_external.pop(internal_id, None)
        if external_id is not None:
            self.record.external_to_local.pop(external_id, None)
        self.record.checked_at.pop(internal_id, None)
        return external_id

    def adopt_pending_create(self, raw_value: str, external_id: str) -> Optional[str]:
        """Match an unseen external item to a pending creation by exact value."""
        if external_id in self.record.external_to_local:
            return None
        value = (raw_value or "").strip()
        if not value:
            return None
        for internal_id, pending in self.record.pending_creates.items():
            if pending.expected_value == value:
                self.upsert_mapping(internal_id, external_id)
                return internal_id
        return None

    def record_pending_create(self, internal_id: str, expected_value: str, tries: int = 1) -> PendingCreate:
        pending = PendingCreate(expected_value=expected_value, misses=0, tries=tries)
        self.record.pending_creates[internal_id] = pending
        return pending

    def get_pending_create(self, internal_id: str) -> Optional[PendingCreate]:
        return self.record.pending_creates.get(internal_id)

    def drop_pending_create(self, internal_id: str) -> Optional[PendingCreate]:
        return self.record.pending_creates.pop(internal_id, None)

    def mark_checked(self, internal_id: str, now_ms: int) -> None:
        if internal_id not in self.record.checked_at:
            self.record.checked_at[internal_id] = now_ms

    def clear_checked(self, internal_id: str) -> None:
        self.record.checked_at.pop(internal_id, None)

    def is_consistent(self) -> bool:
        for external_id, internal_id in self.record.external_to_local.items():
            if self.record.local_to_external.get(internal_id) != external_id:
                return False
        if len(self.record.external_to_local) != len(self.record.local_to_external):
            return False
        return not (set(self.record.pending_creates) & set(self.record.local_to_external))

from typing import Optional, Dict, Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAPPING_SCHEMA_VERSION = 4


class Amount(BaseModel):
    val: float
    unit: str


class ListItem(BaseModel):
    """Line item of the internal shopping list message."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    checked: bool = False
    category: Optional[str] = None
    quantity: Optional[Amount] = None
    per_unit: Optional[Amount] = Field(None, alias="perUnit")


class ListPatch(BaseModel):
    """Diff applied to a list message. `set_items` entries replace the stored item."""

    set_items: Dict[str, ListItem] = Field(default_factory=dict)
    delete_items: List[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.set_items and not self.delete_items


class ExternalItem(BaseModel):
    """Item as it appears in the external list JSON snapshot."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    value: str = ""
    completed: bool = False
    created_at: Optional[int] = Field(None, alias="createdDateTime")
    updated_at: Optional[int] = Field(None, alias="updatedDateTime")

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("id")
    @classmethod
    def _require_id(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("external item id must not be empty")
        return v

    @field_validator("value", mode="before")
    @classmethod
    def _normalize_value(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("completed", mode="before")
    @classmethod
    def _normalize_completed(cls, v: Any) -> Any:
        return False if v is None else v


class PendingCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    expected_value: str = Field(alias="expectedValue")
    misses: int = 0
    tries: int = 1


class MappingRecord(BaseModel):
    """Persisted identity mapping between internal and external item ids."""

    model_config = ConfigDict(populate_by_name=True)

    version: int = MAPPING_SCHEMA_VERSION
    message_ref: str = Field("", alias="messageRef")
    json_state_id: str = Field("", alias="jsonStateId")
    local_to_external: Dict[str, str] = Field(default_factory=dict, alias="localToExternal")
    external_to_local: Dict[str, str] = Field(default_factory=dict, alias="externalToLocal")
    pending_creates: Dict[str, PendingCreate] = Field(default_factory=dict, alias="pendingCreates")
    checked_at: Dict[str, int] = Field(default_factory=dict, alias="checkedAt")


class CategoryRecord(BaseModel):
    signature: str = ""
    learned: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class BridgeOptions(BaseModel):
    """Resolved options the host hands to the bridge."""

    json_state_id: str = "alexa2.0.Lists.SHOP.json"
    create_command_suffix: str = "#New"
    instance_id: str = "0"
    list_title: str = "Alexa shopping list"
    list_location: str = "Supermarket"
    locale: str = "en"
    full_sync_interval_seconds: float = 60 * 60
    conflict_window_seconds: float = 5.0
    keep_completed_seconds: float = 12 * 60 * 60
    parse_item_text: bool = True
    pending_max_misses: int = Field(30, ge=1)
    empty_snapshot_threshold: int = Field(3, ge=1)
    ai_enhancement: bool = True
    categories: List[str] = Field(default_factory=list)
    ai_min_confidence_pct: int = Field(80, ge=0, le=100)
    categorize_batch_size: int = Field(25, ge=1)
    categorize_debounce_seconds: float = 0.6

    @classmethod
    def from_settings(cls, settings: Any) -> "BridgeOptions":
        return cls(
            json_state_id=settings.JSON_STATE_ID,
            create_command_suffix=settings.CREATE_COMMAND_SUFFIX,
            instance_id=settings.BRIDGE_INSTANCE_ID,
            list_title=settings.LIST_TITLE,
            list_location=settings.LIST_LOCATION,
            locale=settings.LOCALE,
            full_sync_interval_seconds=settings.FULL_SYNC_INTERVAL_SECONDS,
            conflict_window_seconds=settings.CONFLICT_WINDOW_SECONDS,
            keep_completed_seconds=settings.KEEP_COMPLETED_SECONDS,
            parse_item_text=settings.PARSE_ITEM_TEXT,
            pending_max_misses=settings.PENDING_MAX_MISSES,
            empty_snapshot_threshold=settings.EMPTY_SNAPSHOT_THRESHOLD,
            ai_enhancement=settings.AI_ENHANCEMENT,
            categories=settings.categories,
            ai_min_confidence_pct=settings.AI_MIN_CONFIDENCE_PCT,
            categorize_batch_size=settings.CATEGORIZE_BATCH_SIZE,
            categorize_debounce_seconds=settings.CATEGORIZE_DEBOUNCE_SECONDS,
        )


class SyncTriggerResponse(BaseModel):
    status: str
    job_id: str
    enqueued: bool = True


class SyncStatusResponse(BaseModel):
    message_ref: str
    json_state_id: str
    mapped_items: int
    pending_creates: int
    checked_items: int

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    DATABASE_URL: str
    REDIS_URL: str
    APP_AUTH_BEARER_TOKENS: str  # Comma-separated
    SYNC_QUEUE: str = "shopping_sync_queue"
    WORKER_POLL_TIMEOUT_SECONDS: int = 1

    # External list transport (ioBroker simple-api style)
    ALEXA_API_BASE: str = "http://localhost:8087"
    ALEXA_API_TOKEN: Optional[str] = None
    ALEXA_TIMEOUT_SECONDS: float = 15.0

    # Bridge
    JSON_STATE_ID: str = "alexa2.0.Lists.SHOP.json"
    CREATE_COMMAND_SUFFIX: str = "#New"
    BRIDGE_INSTANCE_ID: str = "0"
    LIST_TITLE: str = "Alexa shopping list"
    LIST_LOCATION: str = "Supermarket"
    LOCALE: str = "en"
    FULL_SYNC_INTERVAL_SECONDS: int = 60 * 60
    CONFLICT_WINDOW_SECONDS: float = 5.0
    KEEP_COMPLETED_SECONDS: int = 12 * 60 * 60
    PARSE_ITEM_TEXT: bool = True
    PENDING_MAX_MISSES: int = 30
    EMPTY_SNAPSHOT_THRESHOLD: int = 3

    # Categorizer
    AI_ENHANCEMENT: bool = True
    CATEGORIES_CSV: str = "Produce,Bakery,Dairy,Meat,Frozen,Pantry,Drinks,Household,Hygiene,Other"
    AI_MIN_CONFIDENCE_PCT: int = 80
    CATEGORIZE_BATCH_SIZE: int = 25
    CATEGORIZE_DEBOUNCE_SECONDS: float = 0.6

    # Provider
    LLM_API_KEY: Optional[str] = None
    LLM_API_BASE_URL: str = ""
    LLM_TIMEOUT_SECONDS: int = 30
    LLM_MAX_RETRIES: int = 2
    LLM_RETRY_BACKOFF_SECONDS: float = 1.0
    LLM_MODEL_CATEGORIZE: str = "grok-3-mini"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def auth_tokens(self) -> List[str]:
        return [t.strip() for t in self.APP_AUTH_BEARER_TOKENS.split(",") if t.strip()]

    @property
    def categories(self) -> List[str]:
        seen = set()
        unique = []
        for raw in self.CATEGORIES_CSV.split(","):
            name = raw.strip()
            if not name or name in seen:
                continue
            seen.add(name)
            unique.append(name)
        return unique

    @property
    def llm_enabled(self) -> bool:
        return bool(self.AI_ENHANCEMENT and self.LLM_API_KEY and self.LLM_API_BASE_URL.strip())

settings = Settings()

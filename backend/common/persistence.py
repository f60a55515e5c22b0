import json
import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from common.models import StateBlob

logger = logging.getLogger(__name__)


class StateBlobStore:
    """Reads and writes named JSON objects."""

    async def read_json(self, name: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def write_json(self, name: str, value: Dict[str, Any]) -> None:
        raise NotImplementedError


class SqlStateBlobStore(StateBlobStore):
    def __init__(self, session_factory: Callable[[], Any], namespace: str = ""):
        self.session_factory = session_factory
        self.namespace = namespace

    def _key(self, name: str) -> str:
        return f"{self.namespace}.{name}" if self.namespace else name

    async def read_json(self, name: str) -> Optional[Dict[str, Any]]:
        """Returns None when the blob is absent, unreadable or not a JSON object."""
        try:
            async with self.session_factory() as db:
                stmt = select(StateBlob).where(StateBlob.name == self._key(name))
                row = (await db.execute(stmt)).scalar_one_or_none()
                raw = row.value_json if row is not None else None
        except SQLAlchemyError as e:
            logger.warning(f"Failed to read state blob {self._key(name)}: {e}")
            return None
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning(f"State blob {self._key(name)} is not valid JSON, ignoring")
            return None
        return parsed if isinstance(parsed, dict) else None

    async def write_json(self, name: str, value: Dict[str, Any]) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        async with self.session_factory() as db:
            row = await db.get(StateBlob, self._key(name))
            if row is None:
                db.add(StateBlob(name=self._key(name), value_json=payload))
            else:
                row.value_json = payload
            await db.commit()

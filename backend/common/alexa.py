import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from common.config import settings
from common.errors import TransportError

logger = logging.getLogger(__name__)


def derive_base_id(json_state_id: str) -> str:
    state_id = (json_state_id or "").strip()
    return state_id[: -len(".json")] if state_id.endswith(".json") else state_id


def derive_system_id(json_state_id: str) -> str:
    """`alexa2.0.Lists.SHOP.json` -> `alexa2.0`"""
    parts = [p for p in (json_state_id or "").strip().split(".") if p]
    return ".".join(parts[:2]) or "alexa2"


class AlexaListIds:
    """Command/state ids of one external list, derived from its JSON state id."""

    def __init__(self, json_state_id: str, create_suffix: str = "#New"):
        self.json = (json_state_id or "").strip()
        self.base = derive_base_id(self.json)
        self.system = derive_system_id(self.json)
        self.create = f"{self.base}.{create_suffix}"
        self.connection = f"{self.system}.info.connection"

    def item_value(self, external_id: str) -> str:
        return f"{self.base}.items.{external_id}.value"

    def item_completed(self, external_id: str) -> str:
        return f"{self.base}.items.{external_id}.completed"

    def item_delete(self, external_id: str) -> str:
        return f"{self.base}.items.{external_id}.#delete"


def _encode_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class AlexaListAdapter:
    """Talks to the state REST endpoint (ioBroker simple-api style) that exposes the external list."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url if base_url is not None else settings.ALEXA_API_BASE).rstrip("/")
        self.token = token if token is not None else settings.ALEXA_API_TOKEN
        self.timeout = timeout if timeout is not None else settings.ALEXA_TIMEOUT_SECONDS

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def get_state(self, state_id: str) -> Any:
        """Returns the `val` of a state, or None when the state does not exist."""
        url = f"{self.base_url}/get/{quote(state_id, safe='')}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.get(url, headers=self._get_headers())
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            body = resp.json()
            if isinstance(body, dict):
                return body.get("val")
            return None

    async def read_snapshot(self, state_id: str) -> Any:
        try:
            return await self.get_state(state_id)
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(f"Failed to read {state_id}: {e}") from e

    async def write_command(self, command_id: str, value: Any) -> bool:
        """Fire-and-forget write; failures are logged and reported as False."""
        url = f"{self.base_url}/set/{quote(command_id, safe='')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(url, headers=self._get_headers(), params={"value": _encode_value(value)})
                resp.raise_for_status()
                return True
        except httpx.HTTPError as e:
            logger.warning(f"Write to {command_id} failed: {e}")
            return False

    async def read_connection_health(self, system_id: str) -> Optional[bool]:
        """True/False when the adapter reports its connection state, None when unknown."""
        try:
            val = await self.get_state(f"{system_id}.info.connection")
        except (httpx.HTTPError, ValueError) as e:
            logger.info(f"Connection state of {system_id} unavailable: {e}")
            return None
        if isinstance(val, bool):
            return val
        if isinstance(val, str) and val.strip().lower() in {"true", "false"}:
            return val.strip().lower() == "true"
        return None


alexa_adapter = AlexaListAdapter()

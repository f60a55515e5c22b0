import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from common.config import settings

logger = logging.getLogger(__name__)

CATEGORIZE_PROMPT = (
    "Operation: categorize.shoppinglist.\n"
    "Categorize shopping list items into exactly one of the allowed categories.\n"
    'Return JSON: {"results":[{"key":"...","category":"...","confidence":0.0}]}.\n'
    "category must be one of allowedCategories. confidence is 0..1."
)

JSON_ONLY_INSTRUCTION = "Return only valid JSON. Do not include markdown fences."

_RETRYABLE = (httpx.RequestError, httpx.HTTPStatusError, ValueError)


class LLMAdapter:
    """OpenAI-compatible chat completion client used for shopping item categorization."""

    @staticmethod
    def _normalize_category_result(candidate: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(candidate, dict):
            return None
        key = candidate.get("key")
        if not isinstance(key, str) or not key:
            return None
        category = candidate.get("category")
        confidence = candidate.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            confidence = 0.0
        return {
            "key": key,
            "category": category.strip() if isinstance(category, str) else "",
            "confidence": float(confidence),
        }

    def is_available(self) -> bool:
        return settings.llm_enabled

    def _completions_url(self) -> str:
        base = settings.LLM_API_BASE_URL.strip().rstrip("/")
        if not base:
            raise RuntimeError("LLM_API_BASE_URL is not configured")
        return f"{base}/chat/completions"

    def _request_body(self, model: str, prompt: str, user_text: str) -> Dict[str, Any]:
        system_messages = [JSON_ONLY_INSTRUCTION, prompt]
        messages = [{"role": "system", "content": content} for content in system_messages]
        messages.append({"role": "user", "content": user_text})
        return {
            "model": model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": messages,
        }

    async def _post_completion(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a completion request, retrying transport and status errors with exponential backoff."""
        url = self._completions_url()
        headers = {
            "Authorization": f"Bearer {settings.LLM_API_KEY}",
            "Content-Type": "application/json",
        }
        attempts = max(0, settings.LLM_MAX_RETRIES) + 1
        attempt = 0
        while True:
            try:
                async with httpx.AsyncClient(timeout=settings.LLM_TIMEOUT_SECONDS) as client:
                    response = await client.post(url, headers=headers, json=body)
                    response.raise_for_status()
                    payload = response.json()
            except _RETRYABLE as exc:
                attempt += 1
                if attempt >= attempts:
                    raise
                backoff = max(0.0, settings.LLM_RETRY_BACKOFF_SECONDS) * (2 ** (attempt - 1))
                logger.info("Provider call failed (%s), retry %s/%s", type(exc).__name__, attempt, attempts - 1)
                if backoff > 0:
                    await asyncio.sleep(backoff)
                continue
            if not isinstance(payload, dict):
                raise ValueError("Provider response is not a JSON object")
            return payload

    @staticmethod
    def _decode_completion(payload: Dict[str, Any]) -> Dict[str, Any]:
        """Pull the JSON object out of the first choice of a completion response."""
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise ValueError("Provider response missing choices")
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise ValueError("Provider message is invalid")
        content = message.get("content")
        # some providers return content as a list of text parts
        if isinstance(content, list):
            texts = [part.get("text") for part in content if isinstance(part, dict)]
            content = "\n".join(t for t in texts if isinstance(t, str)).strip()
        if isinstance(content, dict):
            return content
        if not isinstance(content, str):
            raise ValueError("Provider content is not JSON")
        decoded = json.loads(content)
        if not isinstance(decoded, dict):
            raise ValueError("Parsed provider content is not an object")
        return decoded

    async def categorize_items(
        self,
        allowed: List[str],
        fallback: str,
        items: List[Dict[str, str]],
    ) -> Optional[List[Dict[str, Any]]]:
        """Classify `{key, text}` items into one of `allowed`.

        Returns the normalized `{key, category, confidence}` results, or None when
        the provider is not configured or the call failed.
        """
        if not self.is_available():
            return None
        user_text = json.dumps(
            {"allowedCategories": allowed, "fallbackCategory": fallback, "items": items},
            ensure_ascii=False,
        )
        body = self._request_body(settings.LLM_MODEL_CATEGORIZE, CATEGORIZE_PROMPT, user_text)
        try:
            raw = self._decode_completion(await self._post_completion(body))
        except Exception as exc:
            logger.warning("categorize_items skipped: %s", type(exc).__name__)
            return None
        results = raw.get("results")
        if not isinstance(results, list):
            return []
        normalized = []
        for candidate in results:
            item = self._normalize_category_result(candidate)
            if item is not None:
                normalized.append(item)
        return normalized


adapter = LLMAdapter()

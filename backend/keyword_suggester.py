"""
Keyword suggestion adapter for the Generative Language text endpoint.

One call per user request: no retry or backoff beyond the single fallback
from Bearer auth to the `?key=` query parameter that the API accepts.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from errors import SuggestionApiError

logger = logging.getLogger(__name__)

_SPLIT_PATTERN = re.compile(r"[\n,]+")


def build_prompt(topic: str) -> str:
    return (
        "Generate 8-12 concise YouTube search keywords (comma-separated) for the "
        f'topic: "{topic}". Output only the keywords separated by commas, no extra '
        "commentary."
    )


def extract_text(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates")
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        first = candidates[0]
        for field in ("content", "output"):
            value = first.get(field)
            if isinstance(value, str) and value.strip():
                return value
    output_text = payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text
    if payload.get("result") is not None:
        return json.dumps(payload["result"])
    return None


def split_keywords(text: str, limit: int = 12) -> List[str]:
    """Split on commas/newlines, keep first occurrences, cap at `limit`."""
    seen: Dict[str, None] = {}
    for item in _SPLIT_PATTERN.split(text):
        keyword = item.strip()
        if keyword and keyword not in seen:
            seen[keyword] = None
    return list(seen)[: max(0, limit)]


class KeywordSuggestionClient:
    def __init__(
        self,
        *,
        api_base: str,
        timeout_seconds: float = 20.0,
        limit: int = 12,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_base = api_base
        self._timeout = httpx.Timeout(timeout_seconds)
        self._limit = limit
        self._transport = transport

    async def suggest(self, topic: str, credential: Optional[str]) -> List[str]:
        topic_value = (topic or "").strip()
        if not topic_value:
            raise SuggestionApiError("No topic provided")
        if not credential:
            raise SuggestionApiError(
                "No API key configured. Add your Gemini API key first."
            )

        body = {
            "prompt": {"text": build_prompt(topic_value)},
            "temperature": 0.7,
            "maxOutputTokens": 128,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.post(
                    self._api_base,
                    json=body,
                    headers={"Authorization": f"Bearer {credential}"},
                )
                if not response.is_success:
                    logger.debug(
                        "Bearer auth rejected with %s; retrying with key parameter",
                        response.status_code,
                    )
                    response = await client.post(
                        self._api_base, json=body, params={"key": credential}
                    )
                if not response.is_success:
                    raise SuggestionApiError(
                        f"API error: {response.status_code}",
                        status_code=response.status_code,
                    )
                payload = response.json()
        except httpx.HTTPError as exc:
            raise SuggestionApiError(f"API request failed: {exc}") from exc
        except ValueError as exc:
            raise SuggestionApiError("Could not parse response") from exc

        text = extract_text(payload)
        if not text:
            raise SuggestionApiError("Could not parse response")
        return split_keywords(text, self._limit)

import json
import logging
from typing import Any

import httpx

from app.core.config import settings
from app.services.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class LLMClient:
    """Chat-completions client that always asks for a single JSON object."""

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        model: str,
        http_client: httpx.Client,
        timeout: float | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS
        self._http = http_client

    @property
    def enabled(self) -> bool:
        return bool(self.api_key and self.base_url)

    def complete_json(
        self, *, system_prompt: str, user_prompt: str, temperature: float
    ) -> dict[str, Any]:
        if not self.enabled:
            raise ExternalServiceError("llm", "Text generation service is not configured")

        payload = {
            "model": self.model,
            "temperature": temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "response_format": {"type": "json_object"},
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = self._http.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            logger.exception("Text generation request failed")
            raise ExternalServiceError("llm", "Text generation service unavailable") from exc

        if response.is_error:
            logger.error("Text generation service returned status %s", response.status_code)
            raise ExternalServiceError("llm", "Text generation service error")

        try:
            body = response.json()
            content = body["choices"][0]["message"]["content"]
            if isinstance(content, list):
                content = "".join(
                    item.get("text", "") if isinstance(item, dict) else str(item)
                    for item in content
                )
            parsed = json.loads(content)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            logger.warning("Unparseable text generation response: %s", exc)
            raise ExternalServiceError("llm", "Text generation returned invalid JSON") from exc

        if not isinstance(parsed, dict):
            raise ExternalServiceError("llm", "Text generation response is not a JSON object")
        return parsed


def build_llm_client(http_client: httpx.Client) -> LLMClient:
    return LLMClient(
        api_key=settings.LLM_API_KEY,
        base_url=settings.LLM_BASE_URL,
        model=settings.LLM_MODEL,
        http_client=http_client,
    )

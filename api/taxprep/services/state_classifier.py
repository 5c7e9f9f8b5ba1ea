"""
OpenAI-compatible chat completion client used as the last state-detection tier.
"""
import json
import logging
from typing import Any

import httpx

from taxprep.core.config import settings
from taxprep.core.errors import StateDetectionError

log = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a US tax document analyst. You identify which US state a tax document "
    "belongs to. Answer only with the requested JSON object."
)


class ChatStateClassifier:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.state_classifier_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.state_classifier_api_key
        self.model = model or settings.state_classifier_model
        self.timeout = timeout or settings.state_classifier_timeout_seconds
        self._transport = transport

    async def classify(self, prompt: str) -> dict[str, Any]:
        if not self.api_key:
            raise StateDetectionError("State detection classifier is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0.1,
            "max_tokens": 1000,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            log.error("State classifier request failed: %s", e)
            raise StateDetectionError(f"State detection request failed: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
            answer = json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as e:
            raise StateDetectionError(f"State detection response could not be parsed: {e}") from e
        if not isinstance(answer, dict):
            raise StateDetectionError("State detection response was not a JSON object")
        return answer

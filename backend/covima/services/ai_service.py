# /covima/services/ai_service.py

import json
import logging
from typing import Any, Dict, Optional

from openai import AsyncOpenAI

from covima.config.settings import settings
from covima.utils.circuit_breaker import CircuitBreaker
from covima.utils.exceptions import ClassifierError
from covima.utils.metrics import ai_requests_counter

# This service encapsulates the calls to the OpenAI chat API. Every call asks
# for a strict JSON object and is made exactly once: callers fall back locally
# instead of waiting on retries.

logger = logging.getLogger(__name__)


class AIService:
    def __init__(self, api_key: Optional[str], model: str):
        self.model = model
        if api_key:
            self.openai_client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=15.0)
        else:
            self.openai_client = None
        self.circuit_breaker = CircuitBreaker("openai", failure_threshold=3, timeout=60)

    @property
    def enabled(self) -> bool:
        return self.openai_client is not None

    async def _create_completion(self, system_prompt: str, user_message: str, max_tokens: int, temperature: float):
        return await self.openai_client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
            max_tokens=max_tokens,
        )

    async def complete_json(
        self,
        system_prompt: str,
        user_message: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Sends one prompt and parses the JSON object the model returns.

        Raises:
            ClassifierError: no client configured, call failed, open circuit,
                empty output or output that is not a JSON object
        """
        if not self.enabled:
            raise ClassifierError("OpenAI client is not configured")

        try:
            response = await self.circuit_breaker.call(
                self._create_completion,
                system_prompt,
                user_message,
                max_tokens or settings.openai_max_tokens,
                settings.openai_temperature if temperature is None else temperature,
            )
        except Exception as e:
            ai_requests_counter.labels(model=self.model, status="error").inc()
            raise ClassifierError(f"OpenAI call failed: {type(e).__name__}: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            ai_requests_counter.labels(model=self.model, status="empty").inc()
            raise ClassifierError("Empty response from OpenAI")

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            ai_requests_counter.labels(model=self.model, status="malformed").inc()
            raise ClassifierError("OpenAI returned malformed JSON") from e

        if not isinstance(parsed, dict):
            ai_requests_counter.labels(model=self.model, status="malformed").inc()
            raise ClassifierError("OpenAI returned a non-object JSON value")

        ai_requests_counter.labels(model=self.model, status="success").inc()
        return parsed


# Globally accessible instance
ai_service = AIService(settings.openai_api_key, settings.openai_model)

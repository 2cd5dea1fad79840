"""OpenAI text-generation provider."""

import logging
import time
from typing import Any

from openai import OpenAI, OpenAIError

from gradetags.exceptions import TextGenerationError
from gradetags.taxonomy.providers.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI provider using the OpenAI Python SDK.

    Uses JSON mode via the response_format parameter.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        timeout: float = 45.0,
    ):
        """Initialize the OpenAI provider.

        Args:
            api_key: OpenAI API key
            model: Model to use (default: gpt-4o-mini)
            timeout: Soft timeout per request in seconds
        """
        if not api_key:
            raise ValueError("OpenAI API key is required")

        # SDK retries would multiply the soft timeout; failed jobs retry on the next sweep
        self.client = OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self._model = model
        logger.info(f"Initialized OpenAI provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "openai"

    @property
    def model_name(self) -> str:
        return self._model

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 2000,
        temperature: float = 0.2,
        json_mode: bool = True,
    ) -> LLMResponse:
        start_time = time.time()

        request_params: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            request_params["response_format"] = {"type": "json_object"}

        try:
            response = self.client.chat.completions.create(**request_params)
        except OpenAIError as e:
            raise TextGenerationError(self.provider_name, str(e)) from e
        duration_ms = (time.time() - start_time) * 1000

        if not response.choices:
            raise TextGenerationError(self.provider_name, "response has no choices")

        content = response.choices[0].message.content or ""

        usage = response.usage
        prompt_tokens = usage.prompt_tokens if usage else 0
        completion_tokens = usage.completion_tokens if usage else 0
        total_tokens = usage.total_tokens if usage else 0

        return LLMResponse(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
            finish_reason=response.choices[0].finish_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )

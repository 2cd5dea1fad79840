"""Anthropic text-generation provider."""

import logging
import time
from typing import Any

from anthropic import Anthropic, AnthropicError

from gradetags.exceptions import TextGenerationError
from gradetags.taxonomy.providers.base import LLMProvider, LLMResponse

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = (
    "\n\nIMPORTANT: You must respond with valid JSON only. "
    "No markdown code blocks, no explanations, no additional text. "
    "Return ONLY the raw JSON object."
)


class AnthropicProvider(LLMProvider):
    """Anthropic provider using the Anthropic Python SDK.

    JSON output is requested through system prompt instructions; the caller
    still parses the reply defensively.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-5-20250514",
        timeout: float = 45.0,
    ):
        if not api_key:
            raise ValueError("Anthropic API key is required")

        self.client = Anthropic(api_key=api_key, timeout=timeout, max_retries=0)
        self._model = model
        logger.info(f"Initialized Anthropic provider with model: {model}")

    @property
    def provider_name(self) -> str:
        return "anthropic"

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
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system_prompt + (JSON_INSTRUCTION if json_mode else ""),
            "messages": [{"role": "user", "content": user_prompt}],
        }

        try:
            response = self.client.messages.create(**request_params)
        except AnthropicError as e:
            raise TextGenerationError(self.provider_name, str(e)) from e
        duration_ms = (time.time() - start_time) * 1000

        return self._build_response(response, duration_ms)

    def _build_response(self, response: Any, duration_ms: float) -> LLMResponse:
        """Build LLMResponse from an Anthropic API response."""
        content = ""
        for block in response.content:
            if hasattr(block, "text"):
                content += block.text

        usage = response.usage
        prompt_tokens = usage.input_tokens if usage else 0
        completion_tokens = usage.output_tokens if usage else 0

        return LLMResponse(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            finish_reason=response.stop_reason or "unknown",
            model=response.model,
            duration_ms=duration_ms,
            raw_response=response,
        )

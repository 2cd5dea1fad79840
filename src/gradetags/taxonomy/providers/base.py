"""Base protocol and types for text-generation providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass
class LLMResponse:
    """Standardized response from text-generation providers.

    Attributes:
        content: The generated text (expected to contain one JSON object)
        prompt_tokens: Number of tokens in the prompt
        completion_tokens: Number of tokens in the completion
        total_tokens: Total tokens used
        finish_reason: Why generation stopped (stop, length, error, etc.)
        model: The actual model used (may differ from requested)
        duration_ms: Time taken for the API call in milliseconds
        raw_response: Provider-specific raw response for debugging
    """

    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    finish_reason: str
    model: str
    duration_ms: float
    raw_response: Any = None


class LLMProvider(ABC):
    """Abstract base class for text-generation providers.

    The capability is prompt in, free text out. Implementations must:
    - construct their SDK client with the configured soft timeout
    - re-raise SDK and transport errors as ``TextGenerationError``
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'openai', 'anthropic')."""
        ...

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Return the model identifier being used."""
        ...

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 2000,
        temperature: float = 0.2,
        json_mode: bool = True,
    ) -> LLMResponse:
        """Generate a completion.

        Args:
            system_prompt: System message setting the context
            user_prompt: User message with the actual request
            max_tokens: Maximum tokens in the response
            temperature: Sampling temperature (0.0-1.0)
            json_mode: Ask the provider to answer with a bare JSON object

        Returns:
            LLMResponse with the completion and metadata

        Raises:
            TextGenerationError: On SDK, transport or timeout errors
        """
        ...

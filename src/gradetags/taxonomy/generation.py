"""
One text-generation round trip: prompt out, validated JSON object back.
"""

import logging
from typing import Optional, Type, TypeVar

from pydantic import BaseModel

from gradetags.exceptions import ModelOutputError, TextGenerationError
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.llm_logger import llm_logger
from gradetags.taxonomy.normalize import extract_json_object
from gradetags.taxonomy.prompts import SYSTEM_PROMPT
from gradetags.taxonomy.providers.base import LLMProvider, LLMResponse
from gradetags.taxonomy.schemas import parse_reply

logger = logging.getLogger(__name__)

ReplyT = TypeVar("ReplyT", bound=BaseModel)


def request_reply(
    provider: Optional[LLMProvider],
    config: PipelineConfig,
    prompt: str,
    reply_model: Type[ReplyT],
    job: str,
    scope: str,
) -> tuple[ReplyT, LLMResponse]:
    """
    Send ``prompt`` and parse the reply into ``reply_model``.

    Args:
        provider: Text-generation provider (None when not configured)
        config: Pipeline limits (token budget, temperature)
        prompt: User prompt
        reply_model: Expected top-level shape
        job: Job name for logging
        scope: Owner/assignment identifiers for logging

    Returns:
        Tuple of (validated reply, raw provider response)

    Raises:
        TextGenerationError: No provider, transport failure or timeout
        ModelOutputError: Empty reply, no JSON object, or wrong shape
    """
    if provider is None:
        raise TextGenerationError("unconfigured", "no text-generation provider configured")

    request_id = llm_logger.log_request(
        job=job,
        scope=scope,
        model=provider.model_name,
        prompt=prompt,
        max_tokens=config.llm_max_tokens,
        temperature=config.llm_temperature,
    )
    logger.info(f"[{job}] llm_request {scope} model={provider.model_name}")

    try:
        response = provider.complete(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=prompt,
            max_tokens=config.llm_max_tokens,
            temperature=config.llm_temperature,
        )
    except Exception as e:
        llm_logger.log_error(request_id, e)
        raise

    llm_logger.log_response(request_id, response)
    content = (response.content or "").strip()
    logger.info(
        f"[{job}] llm_response {scope} length={len(content)} "
        f"tokens={response.total_tokens} duration_ms={response.duration_ms:.0f}"
    )

    if not content:
        raise ModelOutputError(f"{provider.provider_name} returned an empty reply", raw_length=0)

    return parse_reply(extract_json_object(content), reply_model), response

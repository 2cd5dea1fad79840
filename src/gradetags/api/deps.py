"""
Shared FastAPI dependencies.
"""

import logging
from typing import Optional

from gradetags.config import settings
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.providers import LLMProvider, provider_from_settings

logger = logging.getLogger(__name__)


def get_provider() -> Optional[LLMProvider]:
    """
    The configured text-generation provider, or None when it has no API key.

    Without a provider the sweep still runs; every job that needs the model
    fails and is reported per item.
    """
    try:
        return provider_from_settings(settings)
    except ValueError as e:
        logger.warning(f"Text-generation provider not configured: {e}")
        return None


def get_pipeline_config() -> PipelineConfig:
    return PipelineConfig.from_settings(settings)

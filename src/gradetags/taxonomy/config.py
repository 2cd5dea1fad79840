"""Immutable snapshot of the pipeline limits read by the jobs."""

from dataclasses import dataclass
from typing import Optional

from gradetags.config import Settings, settings


@dataclass(frozen=True)
class PipelineConfig:
    """Debounce windows, thresholds and prompt versions for one pipeline run."""

    tag_quiet_minutes: int = 5
    tag_max_wait_minutes: int = 30
    tag_min_sample_count: int = 5
    tag_top_issues: int = 50
    tag_limit: int = 8
    tag_prompt_version: str = "v1.0"
    tag_language: str = "Traditional Chinese"

    merge_quiet_minutes: int = 10
    merge_max_wait_minutes: int = 60
    merge_min_labels: int = 4
    merge_max_labels: int = 120
    merge_prompt_version: str = "v1.0"

    ability_tag_limit: int = 60
    ability_min_tags: int = 4
    ability_prompt_version: str = "v1.0"

    manual_lock_default: bool = True

    llm_max_tokens: int = 2000
    llm_temperature: float = 0.2

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "PipelineConfig":
        config = config or settings
        return cls(
            tag_quiet_minutes=config.tag_quiet_minutes,
            tag_max_wait_minutes=config.tag_max_wait_minutes,
            tag_min_sample_count=config.tag_min_sample_count,
            tag_top_issues=config.tag_top_issues,
            tag_limit=config.tag_limit,
            tag_prompt_version=config.tag_prompt_version,
            tag_language=config.tag_language,
            merge_quiet_minutes=config.merge_quiet_minutes,
            merge_max_wait_minutes=config.merge_max_wait_minutes,
            merge_min_labels=config.merge_min_labels,
            merge_max_labels=config.merge_max_labels,
            merge_prompt_version=config.merge_prompt_version,
            ability_tag_limit=config.ability_tag_limit,
            ability_min_tags=config.ability_min_tags,
            ability_prompt_version=config.ability_prompt_version,
            manual_lock_default=config.manual_lock_default,
            llm_max_tokens=config.llm_max_tokens,
            llm_temperature=config.llm_temperature,
        )

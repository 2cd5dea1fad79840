"""Tag and ability taxonomy pipeline mined from grading feedback."""

from .ability import AbilityMappingJob, AbilityRollup
from .clustering import ClusteringJob
from .config import PipelineConfig
from .domain_rollup import DomainRollup
from .merge import DictionaryMergeJob
from .orchestrator import PipelineOrchestrator, SweepReport, SweepRequest
from .service import TaxonomyService

__all__ = [
    "AbilityMappingJob",
    "AbilityRollup",
    "ClusteringJob",
    "DictionaryMergeJob",
    "DomainRollup",
    "PipelineConfig",
    "PipelineOrchestrator",
    "SweepReport",
    "SweepRequest",
    "TaxonomyService",
]

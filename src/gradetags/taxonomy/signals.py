"""
Layer signals emitted by jobs.

A job never calls the next layer directly; it returns the layers it made
stale and the orchestrator decides when to run them.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional


class Layer(str, enum.Enum):
    MERGE = "merge"  # New dictionary labels; touch the owner's merge debounce
    DOMAIN = "domain"  # One (owner, domain) rollup is stale; no domain means all of them
    ABILITY = "ability"  # The owner's ability mapping should be recomputed


@dataclass(frozen=True)
class LayerSignal:
    layer: Layer
    owner_id: str
    domain: Optional[str] = None


@dataclass
class JobResult:
    """Outcome of one job run.

    Attributes:
        status: Final status (ready, insufficient_samples, locked, merged,
            skipped, mapped, ...)
        sample_count: Graded submissions seen by a clustering run
        skipped: Reason the job did nothing, if it was skipped
        details: Extra counters for reports
        signals: Layers this run made stale
    """

    status: str
    sample_count: Optional[int] = None
    skipped: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    signals: List[LayerSignal] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"status": self.status}
        if self.sample_count is not None:
            payload["sample_count"] = self.sample_count
        if self.skipped:
            payload["skipped"] = self.skipped
        payload.update(self.details)
        return payload

"""
Evaluation context.

Per-request description of who is asking for a flag. Built by the caller
and never persisted.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class EvaluationContext:
    """Request attributes consulted by targeting.

    `previous_variants` is mutated during a multi-experiment assignment so
    later experiments can see earlier results.
    """
    tenant_id: str
    user_id: Optional[str] = None
    user_role: Optional[str] = None
    plan: Optional[str] = None
    environment: Optional[str] = None
    region: Optional[str] = None
    user_cohort: Optional[str] = None
    timestamp: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    previous_variants: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        """Validate the tenant is present."""
        if not self.tenant_id or not str(self.tenant_id).strip():
            raise ValueError("tenant_id is required and cannot be empty")

    @property
    def segments(self) -> List[str]:
        """User segments from metadata; anything that is not a list counts as none."""
        segments = self.metadata.get("segments")
        if isinstance(segments, (list, tuple, set, frozenset)):
            return [str(s) for s in segments]
        return []

    @property
    def effective_region(self) -> Optional[str]:
        return self.region or self.metadata.get("region")

    @property
    def effective_cohort(self) -> Optional[str]:
        return self.user_cohort or self.metadata.get("userCohort") or self.metadata.get("user_cohort")

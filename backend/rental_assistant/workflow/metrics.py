"""
Per-turn metrics and latency threshold warnings.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..config import Settings

logger = logging.getLogger(__name__)


@dataclass
class TurnMetrics:
    """Measurements for one chat turn."""

    session_id: str
    intent: str
    candidate_count: int = 0
    search_latency_ms: float = 0.0
    generation_latency_ms: float = 0.0
    total_latency_ms: float = 0.0
    total_tokens: Optional[int] = None
    search_cache_hit: bool = False
    answer_cache_hit: bool = False
    used_fallback: bool = False

    def breaches(self, settings: Settings) -> List[str]:
        """Names of the latency thresholds this turn exceeded."""
        checks = (
            ("total", self.total_latency_ms, settings.TOTAL_LATENCY_WARN_MS),
            ("generation", self.generation_latency_ms, settings.GENERATION_LATENCY_WARN_MS),
            ("search", self.search_latency_ms, settings.SEARCH_LATENCY_WARN_MS),
        )
        return [name for name, value, limit in checks if value > limit]

    def log(self, settings: Settings) -> None:
        logger.info(
            f"Turn [{self.intent}] session={self.session_id} candidates={self.candidate_count} "
            f"search={self.search_latency_ms:.0f}ms generation={self.generation_latency_ms:.0f}ms "
            f"total={self.total_latency_ms:.0f}ms tokens={self.total_tokens} "
            f"cache_hit={self.search_cache_hit or self.answer_cache_hit} fallback={self.used_fallback}"
        )
        for name in self.breaches(settings):
            value = getattr(self, f"{name}_latency_ms")
            limit = getattr(settings, f"{name.upper()}_LATENCY_WARN_MS")
            logger.warning(f"Slow {name} latency: {value:.0f}ms exceeds {limit:.0f}ms (session={self.session_id})")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

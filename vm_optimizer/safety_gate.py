"""
Safety Gate

The single mandatory checkpoint before any mutation. A rejection here ends
the run with the host untouched.
"""

import logging
from typing import Dict, List, Optional

from .models import SWAP_SIZE, HardwareProfile, HostResources, ParameterDiff, RecommendationSet, SafetyOutcome
from .recommendation_calculator import SMALL_MEMORY_MB

logger = logging.getLogger(__name__)

DEFAULT_MIN_AVAILABLE_MEMORY_MB = 50
DEFAULT_SWAP_DISK_MULTIPLIER = 2


class SafetyGate:
    """Pre-flight checks on free memory, disk space and swap state"""

    def __init__(self, config: Optional[Dict] = None):
        safety = (config or {}).get('safety', {})
        self.min_available_memory_mb = safety.get('min_available_memory_mb', DEFAULT_MIN_AVAILABLE_MEMORY_MB)
        self.swap_disk_multiplier = safety.get('swap_disk_multiplier', DEFAULT_SWAP_DISK_MULTIPLIER)

    def check(self, profile: HardwareProfile, recommendation: RecommendationSet,
              diffs: List[ParameterDiff], resources: HostResources) -> SafetyOutcome:
        logger.info("Running safety checks...")

        if resources.available_memory_mb < self.min_available_memory_mb:
            reason = (f"Available memory {resources.available_memory_mb} MB is below "
                      f"{self.min_available_memory_mb} MB; free memory before tuning")
            logger.error(reason)
            return SafetyOutcome(ok=False, recommendation=recommendation, reason=reason)

        swap_planned = any(d.name == SWAP_SIZE and d.changed for d in diffs)
        if swap_planned:
            required_mb = recommendation.swap_size_mb * self.swap_disk_multiplier
            if resources.available_disk_mb < required_mb:
                reason = (f"Not enough disk space for a {recommendation.swap_size_mb} MB swapfile: "
                          f"need {required_mb} MB, have {resources.available_disk_mb} MB")
                logger.error(reason)
                return SafetyOutcome(ok=False, recommendation=recommendation, reason=reason)

        adjustments = []
        adjusted = recommendation
        if (profile.total_ram_mb <= SMALL_MEMORY_MB and resources.current_swap_mb == 0
                and recommendation.overcommit_memory != 1):
            logger.warning("Small-memory host without swap, forcing overcommit_memory=1")
            adjusted = recommendation.with_overrides(overcommit_memory=1)
            adjustments.append('overcommit_memory forced to 1 (no swap on small-memory host)')

        logger.info("Safety checks passed")
        return SafetyOutcome(ok=True, recommendation=adjusted, adjustments=tuple(adjustments))


def check_safety(profile: HardwareProfile, recommendation: RecommendationSet,
                 diffs: List[ParameterDiff], resources: HostResources,
                 config: Optional[Dict] = None) -> SafetyOutcome:
    return SafetyGate(config).check(profile, recommendation, diffs, resources)

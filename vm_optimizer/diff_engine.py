"""
Diff Engine

Compares the live configuration with a recommendation. Discrete tunables
must match exactly; swap size tolerates a relative band so that negligible
differences never trigger a swapfile rebuild.
"""

import logging
from typing import List

from .models import SWAP_SIZE, TUNABLES, CurrentState, ParameterDiff, RecommendationSet

logger = logging.getLogger(__name__)

LOW_MEMORY_MB = 2048
SMALL_HOST_SWAP_BAND = 0.10
SWAP_BAND = 0.20


def swap_tolerance_mb(recommended_mb: int, total_ram_mb: int) -> float:
    band = SMALL_HOST_SWAP_BAND if total_ram_mb < LOW_MEMORY_MB else SWAP_BAND
    return recommended_mb * band


def swap_changed(current_mb: int, recommended_mb: int, total_ram_mb: int) -> bool:
    """No swap at all always counts as a change"""
    if current_mb <= 0:
        return True
    return abs(recommended_mb - current_mb) > swap_tolerance_mb(recommended_mb, total_ram_mb)


def diff(current: CurrentState, recommended: RecommendationSet, total_ram_mb: int) -> List[ParameterDiff]:
    """One ParameterDiff per managed tunable plus swap size"""
    diffs = []
    for name in TUNABLES:
        current_value = current.get(name)
        recommended_value = getattr(recommended, name)
        diffs.append(ParameterDiff(
            name=name,
            current_value=current_value,
            recommended_value=recommended_value,
            changed=current_value != recommended_value,
        ))

    diffs.append(ParameterDiff(
        name=SWAP_SIZE,
        current_value=current.swap_size_mb,
        recommended_value=recommended.swap_size_mb,
        changed=swap_changed(current.swap_size_mb, recommended.swap_size_mb, total_ram_mb),
    ))

    changed = [d for d in diffs if d.changed]
    logger.info(f"Parameter comparison complete, {len(changed)} difference(s) found")
    for d in changed:
        logger.info(f"  {d.key}: {d.current_value} -> {d.recommended_value}")
    return diffs


def changed_names(diffs: List[ParameterDiff]) -> List[str]:
    return [d.name for d in diffs if d.changed]

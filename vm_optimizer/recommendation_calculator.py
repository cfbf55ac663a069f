"""
Recommendation Calculator

Multi-factor model turning the hardware profile, raw benchmark metrics and
performance scores into concrete virtual-memory tunables.

Safety rules enforced here:
- overcommit_memory is only ever 0 or 1
- on hosts with <= 512 MB RAM, min_free_kbytes is kept at its current value
- on hosts below 1 GiB, min_free_kbytes stays within 80-100% of current
"""

import logging
import math
from typing import List, Tuple

from .models import (
    BenchmarkResult,
    CurrentState,
    DiskClass,
    HardwareProfile,
    HostClass,
    PerformanceScore,
    RecommendationSet,
    SwapBreakdown,
)

logger = logging.getLogger(__name__)

# Hosts at or below this size are treated as "512 MB class" machines
SMALL_MEMORY_MB = 512
SUB_GIB_MB = 1024
LOW_MEMORY_MB = 2048

SWAP_FLOOR_MB = 256
SWAP_CEILING_MB = 16384

# (upper bound in MB, multiple of RAM) - above the last bound a fixed size applies
SWAP_RAM_TIERS: List[Tuple[int, float]] = [
    (1024, 1.4),
    (2048, 1.3),
    (4096, 1.0),
    (8192, 0.7),
    (16384, 0.5),
    (32768, 0.35),
    (65536, 0.18),
]
SWAP_FIXED_TIERS: List[Tuple[int, int]] = [
    (131072, 8192),
]
SWAP_FIXED_LARGEST = 16384

# (minimum single-thread events/sec, factor)
CPU_FACTOR_TIERS = [(1500, 0.97), (1000, 1.00), (600, 1.05), (300, 1.10)]
CPU_FACTOR_FLOOR = 1.15

# (minimum read bandwidth MB/s, factor)
MEMORY_FACTOR_TIERS = [(30000, 0.90), (20000, 0.95), (15000, 1.00), (8000, 1.05)]
MEMORY_FACTOR_FLOOR = 1.10

# Disk factor tables keyed by the (disk, host) category.
# Ascending tables: (IOPS upper bound, factor); descending: (IOPS lower bound, factor)
VIRTUALIZED_DISK_FACTORS = [(100, 1.45), (150, 1.40), (300, 1.30)]
VIRTUALIZED_DISK_FACTOR_DEFAULT = 1.20
SSD_DISK_FACTORS = [(100000, 0.70), (50000, 0.80), (20000, 0.90), (10000, 0.95)]
SSD_DISK_FACTOR_DEFAULT = 1.00
HDD_DISK_FACTORS = [(400, 1.05), (200, 1.10), (100, 1.20)]
HDD_DISK_FACTOR_DEFAULT = 1.30

SWAPPINESS_RAM_TIERS = [(2048, 60), (4096, 40), (8192, 30), (16384, 20), (32768, 10), (65536, 5)]
SWAPPINESS_LARGEST = 1
SWAPPINESS_SSD_ADJUST = [(100000, 2), (50000, 1)]
SWAPPINESS_VIRTUALIZED_ADJUST = [(100, -20), (150, -15), (300, -10)]
SWAPPINESS_VIRTUALIZED_DEFAULT = -5
SWAPPINESS_HDD_ADJUST = [(400, -2), (200, -5)]
SWAPPINESS_HDD_DEFAULT = -10
HIGH_SCORE = 75.0
HIGH_SCORE_SWAPPINESS_REDUCTION = 2


def _lower_bound_lookup(value: float, tiers: List[Tuple[float, float]], default: float) -> float:
    """First factor whose lower bound `value` reaches; tiers sorted descending"""
    for bound, factor in tiers:
        if value >= bound:
            return factor
    return default


def _upper_bound_lookup(value: float, tiers: List[Tuple[float, float]], default: float) -> float:
    """First factor whose upper bound `value` stays below; tiers sorted ascending"""
    for bound, factor in tiers:
        if value < bound:
            return factor
    return default


class RecommendationCalculator:
    """Computes a RecommendationSet from measurements"""

    def swap_bounds(self, ram_mb: int) -> Tuple[int, int]:
        # The 10% floor never exceeds the 16 GiB ceiling on very large hosts
        min_swap = min(max(SWAP_FLOOR_MB, math.ceil(ram_mb * 0.10)), SWAP_CEILING_MB)
        max_swap = min(ram_mb * 2, SWAP_CEILING_MB)
        # Tiny hosts: the floor wins over twice RAM
        return min_swap, max(max_swap, min_swap)

    def base_swap(self, ram_mb: int) -> int:
        for upper, multiple in SWAP_RAM_TIERS:
            if ram_mb < upper:
                return int(ram_mb * multiple)
        for upper, fixed in SWAP_FIXED_TIERS:
            if ram_mb < upper:
                return fixed
        return SWAP_FIXED_LARGEST

    def cpu_factor(self, result: BenchmarkResult) -> float:
        return _lower_bound_lookup(result.cpu_single_thread_eps, CPU_FACTOR_TIERS, CPU_FACTOR_FLOOR)

    def memory_factor(self, result: BenchmarkResult) -> float:
        return _lower_bound_lookup(result.memory_read_bandwidth_mb_s, MEMORY_FACTOR_TIERS, MEMORY_FACTOR_FLOOR)

    def disk_factor(self, profile: HardwareProfile, result: BenchmarkResult) -> float:
        iops = result.disk_random_read_iops
        if profile.host_class == HostClass.VIRTUALIZED_LOW_IOPS:
            return _upper_bound_lookup(iops, VIRTUALIZED_DISK_FACTORS, VIRTUALIZED_DISK_FACTOR_DEFAULT)
        if profile.disk_class == DiskClass.SSD:
            return _lower_bound_lookup(iops, SSD_DISK_FACTORS, SSD_DISK_FACTOR_DEFAULT)
        return _lower_bound_lookup(iops, HDD_DISK_FACTORS, HDD_DISK_FACTOR_DEFAULT)

    def calculate_swap(self, profile: HardwareProfile, result: BenchmarkResult) -> SwapBreakdown:
        """Swap size from RAM tier scaled by CPU, memory and disk factors"""
        ram_mb = profile.total_ram_mb
        min_swap, max_swap = self.swap_bounds(ram_mb)
        return SwapBreakdown(
            base_swap_mb=self.base_swap(ram_mb),
            cpu_factor=self.cpu_factor(result),
            memory_factor=self.memory_factor(result),
            disk_factor=self.disk_factor(profile, result),
            min_swap_mb=min_swap,
            max_swap_mb=max_swap,
        )

    def calculate_swappiness(self, profile: HardwareProfile, result: BenchmarkResult,
                             score: PerformanceScore) -> int:
        ram_mb = profile.total_ram_mb
        iops = result.disk_random_read_iops
        base = int(_upper_bound_lookup(ram_mb, SWAPPINESS_RAM_TIERS, SWAPPINESS_LARGEST))

        if profile.host_class == HostClass.VIRTUALIZED_LOW_IOPS:
            adjustment = _upper_bound_lookup(iops, SWAPPINESS_VIRTUALIZED_ADJUST, SWAPPINESS_VIRTUALIZED_DEFAULT)
        elif profile.disk_class == DiskClass.SSD:
            adjustment = _lower_bound_lookup(iops, SWAPPINESS_SSD_ADJUST, 0)
        else:
            adjustment = _lower_bound_lookup(iops, SWAPPINESS_HDD_ADJUST, SWAPPINESS_HDD_DEFAULT)

        swappiness = base + int(adjustment)
        if score.cpu_score >= HIGH_SCORE and score.memory_score >= HIGH_SCORE:
            swappiness -= HIGH_SCORE_SWAPPINESS_REDUCTION
        return int(max(1, min(100, swappiness)))

    def calculate_vfs_cache_pressure(self, profile: HardwareProfile, result: BenchmarkResult,
                                     score: PerformanceScore) -> int:
        if profile.disk_class == DiskClass.SSD:
            return 150 if score.disk_score >= HIGH_SCORE else 100
        return 50 if result.disk_random_write_iops < 200 else 75

    def calculate_dirty_ratio(self, profile: HardwareProfile, result: BenchmarkResult) -> int:
        iops = result.disk_random_write_iops
        if profile.disk_class == DiskClass.SSD:
            return 40 if iops >= 50000 else 30

        # Dirty pages must not eat scarce memory on small hosts
        if profile.total_ram_mb < SUB_GIB_MB:
            return 5
        if iops >= 400:
            return 20
        if iops >= 200:
            return 15
        return 8 if profile.total_ram_mb < LOW_MEMORY_MB else 10

    def calculate_dirty_timers(self, profile: HardwareProfile, result: BenchmarkResult) -> Tuple[int, int]:
        """(dirty_expire_centisecs, dirty_writeback_centisecs)"""
        if profile.disk_class == DiskClass.SSD:
            return 1500, 200

        iops = result.disk_random_write_iops
        if iops < 100 and profile.host_class == HostClass.VIRTUALIZED_LOW_IOPS:
            expire = 4000
        elif iops < 150:
            expire = 3000
        else:
            expire = 2000
        return expire, 500

    def calculate_min_free_kbytes(self, profile: HardwareProfile, current_min_free: int) -> int:
        ram_mb = profile.total_ram_mb
        ram_kb = profile.total_ram_kb
        target = int(ram_kb * 0.005 * (1 + profile.cpu_core_count * 0.05))

        if ram_mb <= SMALL_MEMORY_MB:
            logger.warning(f"Small-memory host: keeping min_free_kbytes={current_min_free}")
            return current_min_free

        if ram_mb < SUB_GIB_MB:
            lower = math.ceil(current_min_free * 0.8)
            upper = current_min_free
        else:
            lower = min(max(int(ram_kb * 0.02), 16384), 65536)
            upper = min(int(ram_kb * 0.10), 1048576)
        return max(lower, min(upper, target))

    def calculate_overcommit(self, profile: HardwareProfile) -> Tuple[int, int]:
        """(overcommit_memory, overcommit_ratio); strict mode 2 is never produced"""
        if profile.total_ram_mb <= SMALL_MEMORY_MB:
            return 1, 100
        if profile.total_ram_mb < LOW_MEMORY_MB:
            return 0, 80
        return 0, 50

    def recommend(self, profile: HardwareProfile, result: BenchmarkResult,
                  score: PerformanceScore, current: CurrentState) -> RecommendationSet:
        breakdown = self.calculate_swap(profile, result)
        raw_swap = int(breakdown.base_swap_mb * breakdown.combined_factor)
        swap_size = max(breakdown.min_swap_mb, min(breakdown.max_swap_mb, raw_swap))

        dirty_ratio = self.calculate_dirty_ratio(profile, result)
        dirty_expire, dirty_writeback = self.calculate_dirty_timers(profile, result)
        overcommit_memory, overcommit_ratio = self.calculate_overcommit(profile)

        recommendation = RecommendationSet(
            swap_size_mb=swap_size,
            swappiness=self.calculate_swappiness(profile, result, score),
            vfs_cache_pressure=self.calculate_vfs_cache_pressure(profile, result, score),
            dirty_ratio=dirty_ratio,
            dirty_background_ratio=max(3, dirty_ratio // 4),
            dirty_expire_centisecs=dirty_expire,
            dirty_writeback_centisecs=dirty_writeback,
            min_free_kbytes=self.calculate_min_free_kbytes(profile, current.get('min_free_kbytes')),
            page_cluster=0 if profile.disk_class == DiskClass.SSD else 3,
            overcommit_memory=overcommit_memory,
            overcommit_ratio=overcommit_ratio,
            swap_breakdown=breakdown,
        )

        logger.info(f"Recommended swap: {swap_size} MB (base {breakdown.base_swap_mb} MB x "
                    f"cpu {breakdown.cpu_factor} x memory {breakdown.memory_factor} x "
                    f"disk {breakdown.disk_factor}, range {breakdown.min_swap_mb}-{breakdown.max_swap_mb} MB)")
        for name, value in recommendation.tunables().items():
            logger.debug(f"Recommended vm.{name} = {value}")
        return recommendation


def recommend(profile: HardwareProfile, result: BenchmarkResult, score: PerformanceScore,
              current: CurrentState) -> RecommendationSet:
    return RecommendationCalculator().recommend(profile, result, score, current)

"""
Score Normalizer

Maps raw benchmark metrics onto a 1-100 score per resource. Each component
is expressed as a multiple of a fixed baseline, capped at `component_cap`
times that baseline, weighted, and scaled so that the cap maps to 100 and
the baseline to 100 / component_cap.
"""

import logging
from typing import Dict, List, Tuple

from .models import BenchmarkResult, DiskClass, HardwareProfile, PerformanceScore

logger = logging.getLogger(__name__)

MIN_SCORE = 1.0
MAX_SCORE = 100.0
DEFAULT_COMPONENT_CAP = 2.0

# Baseline table. sysbench prime search at --cpu-max-prime=10000 on a
# typical current server core runs ~1000 events/sec.
CPU_BASELINES = {
    'single_thread_eps': 1000.0,
    'multi_thread_eps_per_core': 1000.0,
    'multi_thread_efficiency': 0.85,
    'integer_ops_per_sec': 10_000_000.0,
    'float_ops_per_sec': 8_000_000.0,
}
CPU_WEIGHTS = {'single': 0.25, 'multi': 0.35, 'integer': 0.2, 'float': 0.2}

MEMORY_BASELINES = {
    'read_mb_s': 20000.0,
    'write_mb_s': 15000.0,
    'random_mb_s': 2000.0,
}
MEMORY_WEIGHTS = {'read': 0.4, 'write': 0.4, 'random': 0.2}

DISK_BASELINES = {
    DiskClass.SSD: {'seq_read_mb_s': 500.0, 'seq_write_mb_s': 450.0,
                    'rand_read_iops': 50000.0, 'rand_write_iops': 40000.0},
    DiskClass.HDD: {'seq_read_mb_s': 150.0, 'seq_write_mb_s': 140.0,
                    'rand_read_iops': 150.0, 'rand_write_iops': 120.0},
}
# Rotating media: random IOPS outweigh sequential throughput
DISK_WEIGHTS = {
    DiskClass.SSD: {'seq_read': 0.2, 'seq_write': 0.2, 'rand_read': 0.3, 'rand_write': 0.3},
    DiskClass.HDD: {'seq_read': 0.1, 'seq_write': 0.1, 'rand_read': 0.45, 'rand_write': 0.35},
}


def clamp(value: float, lower: float, upper: float) -> float:
    return max(lower, min(upper, value))


def weighted_score(components: List[Tuple[float, float, float]], cap: float) -> float:
    """Combine (value, baseline, weight) triples into a clamped 1-100 score"""
    total = 0.0
    for value, baseline, weight in components:
        ratio = max(value, 0.0) / baseline if baseline > 0 else 0.0
        total += weight * min(ratio, cap)
    return clamp(MAX_SCORE * total / cap, MIN_SCORE, MAX_SCORE)


class ScoreNormalizer:
    """Turns a BenchmarkResult into a PerformanceScore"""

    def __init__(self, config: Dict = None):
        normalization = (config or {}).get('normalization', {})
        self.cap = float(normalization.get('component_cap', DEFAULT_COMPONENT_CAP))
        if self.cap <= 0:
            raise ValueError(f'component_cap must be positive, got {self.cap}')

    def cpu_score(self, result: BenchmarkResult, profile: HardwareProfile) -> float:
        cores = max(profile.cpu_core_count, 1)
        multi_baseline = (CPU_BASELINES['multi_thread_eps_per_core'] * cores
                          * CPU_BASELINES['multi_thread_efficiency'])
        return weighted_score([
            (result.cpu_single_thread_eps, CPU_BASELINES['single_thread_eps'], CPU_WEIGHTS['single']),
            (result.cpu_multi_thread_eps, multi_baseline, CPU_WEIGHTS['multi']),
            (result.cpu_integer_ops_per_sec, CPU_BASELINES['integer_ops_per_sec'], CPU_WEIGHTS['integer']),
            (result.cpu_float_ops_per_sec, CPU_BASELINES['float_ops_per_sec'], CPU_WEIGHTS['float']),
        ], self.cap)

    def memory_score(self, result: BenchmarkResult) -> float:
        return weighted_score([
            (result.memory_read_bandwidth_mb_s, MEMORY_BASELINES['read_mb_s'], MEMORY_WEIGHTS['read']),
            (result.memory_write_bandwidth_mb_s, MEMORY_BASELINES['write_mb_s'], MEMORY_WEIGHTS['write']),
            (result.memory_random_bandwidth_mb_s, MEMORY_BASELINES['random_mb_s'], MEMORY_WEIGHTS['random']),
        ], self.cap)

    def disk_score(self, result: BenchmarkResult, profile: HardwareProfile) -> float:
        baselines = DISK_BASELINES[profile.disk_class]
        weights = DISK_WEIGHTS[profile.disk_class]
        return weighted_score([
            (result.disk_sequential_read_mb_s, baselines['seq_read_mb_s'], weights['seq_read']),
            (result.disk_sequential_write_mb_s, baselines['seq_write_mb_s'], weights['seq_write']),
            (result.disk_random_read_iops, baselines['rand_read_iops'], weights['rand_read']),
            (result.disk_random_write_iops, baselines['rand_write_iops'], weights['rand_write']),
        ], self.cap)

    def normalize(self, result: BenchmarkResult, profile: HardwareProfile) -> PerformanceScore:
        score = PerformanceScore(
            cpu_score=round(self.cpu_score(result, profile), 2),
            memory_score=round(self.memory_score(result), 2),
            disk_score=round(self.disk_score(result, profile), 2),
        )
        logger.info(f"Performance scores - CPU: {score.cpu_score}, memory: {score.memory_score}, "
                    f"disk: {score.disk_score} ({profile.disk_class.value})")
        return score

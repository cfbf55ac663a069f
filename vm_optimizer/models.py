"""
Value objects shared by every stage of a tuning run.

Each stage receives these by reference and returns new instances; none of
them is mutated after construction. Only the staged applier touches the host.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple


class DiskClass(Enum):
    """Storage media class of the root filesystem's block device"""
    SSD = "ssd"
    HDD = "hdd"


class HostClass(Enum):
    """Whether the disk looks like a host-backed, IOPS-limited virtual disk"""
    PHYSICAL = "physical"
    VIRTUALIZED_LOW_IOPS = "virtualized_low_iops"


class ApplyPhase(Enum):
    """States of the staged applier"""
    PENDING = "pending"
    APPLY_SAFE = "apply_safe"
    APPLY_SWAP = "apply_swap"
    APPLY_OVERCOMMIT = "apply_overcommit"
    DONE = "done"


class RunOutcome(Enum):
    """Final result of a run"""
    NO_CHANGES = "no_changes"
    APPLIED = "applied"
    DRY_RUN = "dry_run"
    SAFETY_FAILED = "safety_failed"
    APPLY_FAILED = "apply_failed"


class VMOptimizerError(Exception):
    """Base error for the optimizer"""


class MeasurementError(VMOptimizerError):
    """A benchmark could not be run or its output could not be parsed"""


class ApplyError(VMOptimizerError):
    """A live kernel write or a swap command failed"""


class PlanConsumedError(VMOptimizerError):
    """An apply plan was handed to the applier more than once"""


class PhaseOrderError(VMOptimizerError):
    """The applier was asked for a transition the state machine forbids"""


# Kernel tunables managed by the optimizer, in apply order
SAFE_TUNABLES = (
    'swappiness',
    'vfs_cache_pressure',
    'dirty_ratio',
    'dirty_background_ratio',
    'dirty_expire_centisecs',
    'dirty_writeback_centisecs',
    'min_free_kbytes',
    'page_cluster',
)
OVERCOMMIT_TUNABLES = ('overcommit_memory', 'overcommit_ratio')
TUNABLES = SAFE_TUNABLES + OVERCOMMIT_TUNABLES
SWAP_SIZE = 'swap_size_mb'

# Values the kernel ships with; used when a tunable cannot be read
KERNEL_DEFAULTS = {
    'swappiness': 60,
    'vfs_cache_pressure': 100,
    'dirty_ratio': 20,
    'dirty_background_ratio': 10,
    'dirty_expire_centisecs': 3000,
    'dirty_writeback_centisecs': 500,
    'min_free_kbytes': 65536,
    'page_cluster': 3,
    'overcommit_memory': 0,
    'overcommit_ratio': 50,
}


def sysctl_key(name: str) -> str:
    """Map a tunable name to its sysctl key, e.g. page_cluster -> vm.page_cluster"""
    return f'vm.{name}'


@dataclass(frozen=True)
class Measurement:
    """A single benchmark value, marked with whether it was actually measured"""
    value: float
    measured: bool = True
    note: str = ''

    @classmethod
    def fallback(cls, value: float, note: str) -> 'Measurement':
        return cls(value=value, measured=False, note=note)


@dataclass(frozen=True)
class HardwareProfile:
    """Host identification, created once per run by the collector"""
    cpu_core_count: int
    cpu_max_frequency_mhz: int
    total_ram_mb: int
    disk_device_id: str
    disk_is_rotational: bool
    virtualization_suspected: bool = False
    cpu_model: str = 'Unknown'
    memory_type: str = 'Unknown'
    memory_speed: str = 'Unknown'
    memory_category: str = 'Unknown'
    disk_category: str = 'Unknown'

    @property
    def total_ram_kb(self) -> int:
        return self.total_ram_mb * 1024

    @property
    def disk_class(self) -> DiskClass:
        return DiskClass.HDD if self.disk_is_rotational else DiskClass.SSD

    @property
    def host_class(self) -> HostClass:
        if self.virtualization_suspected:
            return HostClass.VIRTUALIZED_LOW_IOPS
        return HostClass.PHYSICAL


@dataclass(frozen=True)
class BenchmarkResult:
    """Raw benchmark metrics; `defaults_used` names every metric that fell back"""
    cpu_single_thread_eps: float
    cpu_multi_thread_eps: float
    cpu_integer_ops_per_sec: float
    cpu_float_ops_per_sec: float
    memory_read_bandwidth_mb_s: float
    memory_write_bandwidth_mb_s: float
    memory_random_bandwidth_mb_s: float
    disk_sequential_read_mb_s: float
    disk_sequential_write_mb_s: float
    disk_random_read_iops: float
    disk_random_write_iops: float
    disk_average_latency_us: float
    defaults_used: Tuple[str, ...] = ()

    def used_default(self, metric: str) -> bool:
        return metric in self.defaults_used


@dataclass(frozen=True)
class PerformanceScore:
    """Normalized per-resource scores, each in [1, 100]"""
    cpu_score: float
    memory_score: float
    disk_score: float


@dataclass(frozen=True)
class SwapBreakdown:
    """How the recommended swap size was derived"""
    base_swap_mb: int
    cpu_factor: float
    memory_factor: float
    disk_factor: float
    min_swap_mb: int
    max_swap_mb: int

    @property
    def combined_factor(self) -> float:
        return self.cpu_factor * self.memory_factor * self.disk_factor


@dataclass(frozen=True)
class RecommendationSet:
    """Target value for every managed tunable plus the swap size"""
    swap_size_mb: int
    swappiness: int
    vfs_cache_pressure: int
    dirty_ratio: int
    dirty_background_ratio: int
    dirty_expire_centisecs: int
    dirty_writeback_centisecs: int
    min_free_kbytes: int
    page_cluster: int
    overcommit_memory: int
    overcommit_ratio: int
    swap_breakdown: Optional[SwapBreakdown] = None

    def __post_init__(self):
        # Strict overcommit (2) starves allocations on small hosts; never emit it
        if self.overcommit_memory not in (0, 1):
            raise ValueError(f'overcommit_memory must be 0 or 1, got {self.overcommit_memory}')

    def tunables(self) -> Dict[str, int]:
        return {name: getattr(self, name) for name in TUNABLES}

    def with_overrides(self, **changes) -> 'RecommendationSet':
        return replace(self, **changes)


@dataclass(frozen=True)
class CurrentState:
    """Live values of the managed tunables and the active swap size"""
    values: Dict[str, int]
    swap_size_mb: int
    unreadable: Tuple[str, ...] = ()

    def get(self, name: str) -> int:
        if name == SWAP_SIZE:
            return self.swap_size_mb
        return self.values.get(name, KERNEL_DEFAULTS[name])


@dataclass(frozen=True)
class HostResources:
    """Point-in-time free capacity consulted by the safety gate"""
    available_memory_mb: int
    available_disk_mb: int
    current_swap_mb: int


@dataclass(frozen=True)
class ParameterDiff:
    """Current vs. recommended value of one tunable"""
    name: str
    current_value: int
    recommended_value: int
    changed: bool

    @property
    def key(self) -> str:
        if self.name == SWAP_SIZE:
            return SWAP_SIZE
        return sysctl_key(self.name)


@dataclass(frozen=True)
class SafetyOutcome:
    """Result of the pre-flight checks"""
    ok: bool
    recommendation: RecommendationSet
    reason: str = ''
    adjustments: Tuple[str, ...] = ()


@dataclass
class ApplyPlan:
    """Ordered change set; consumed exactly once by the staged applier"""
    safe_changes: List[ParameterDiff] = field(default_factory=list)
    swap_change: Optional[ParameterDiff] = None
    overcommit_changes: List[ParameterDiff] = field(default_factory=list)
    consumed: bool = False

    @classmethod
    def from_diffs(cls, diffs: List[ParameterDiff]) -> 'ApplyPlan':
        changed = {d.name: d for d in diffs if d.changed}
        return cls(
            safe_changes=[changed[name] for name in SAFE_TUNABLES if name in changed],
            swap_change=changed.get(SWAP_SIZE),
            overcommit_changes=[changed[name] for name in OVERCOMMIT_TUNABLES if name in changed],
        )

    @property
    def is_empty(self) -> bool:
        return not (self.safe_changes or self.swap_change or self.overcommit_changes)

    @property
    def change_count(self) -> int:
        return len(self.safe_changes) + len(self.overcommit_changes) + (1 if self.swap_change else 0)


@dataclass
class ApplyReport:
    """What the applier actually did"""
    final_phase: ApplyPhase = ApplyPhase.PENDING
    applied: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    persisted: Optional[bool] = None
    backup_path: Optional[str] = None
    swap_resized: bool = False
    probe_passed: Optional[bool] = None
    rolled_back: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.failed

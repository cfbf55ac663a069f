"""
Shared pytest fixtures for the VM optimizer tests.

Fixture Organization
--------------------
- **make_profile / make_result / make_score / make_current**: value-object
  builders with sensible defaults, overridable per test
- **proc_sys**: a fake /proc/sys tree populated with kernel defaults
- **test_config**: default configuration pointing every path into tmp_path
- **restore_root_logger**: undoes setup_logging() between tests
"""

import logging
from pathlib import Path
from typing import Callable

import pytest

from vm_optimizer.config import get_default_config
from vm_optimizer.models import (
    KERNEL_DEFAULTS,
    BenchmarkResult,
    CurrentState,
    HardwareProfile,
    PerformanceScore,
)


# ============================================================================
# Value Object Builders
# ============================================================================


@pytest.fixture
def make_profile() -> Callable[..., HardwareProfile]:
    """Build a HardwareProfile for a 4-core, 8 GiB SSD host by default."""

    def _make(**overrides) -> HardwareProfile:
        fields = {
            'cpu_core_count': 4,
            'cpu_max_frequency_mhz': 3000,
            'total_ram_mb': 8192,
            'disk_device_id': '/dev/sda',
            'disk_is_rotational': False,
            'virtualization_suspected': False,
        }
        fields.update(overrides)
        return HardwareProfile(**fields)

    return _make


@pytest.fixture
def make_result() -> Callable[..., BenchmarkResult]:
    """Build a BenchmarkResult for a mid-range SSD host by default."""

    def _make(**overrides) -> BenchmarkResult:
        fields = {
            'cpu_single_thread_eps': 1000.0,
            'cpu_multi_thread_eps': 3400.0,
            'cpu_integer_ops_per_sec': 10_000_000.0,
            'cpu_float_ops_per_sec': 8_000_000.0,
            'memory_read_bandwidth_mb_s': 20000.0,
            'memory_write_bandwidth_mb_s': 15000.0,
            'memory_random_bandwidth_mb_s': 2000.0,
            'disk_sequential_read_mb_s': 500.0,
            'disk_sequential_write_mb_s': 450.0,
            'disk_random_read_iops': 50000.0,
            'disk_random_write_iops': 40000.0,
            'disk_average_latency_us': 100.0,
        }
        fields.update(overrides)
        return BenchmarkResult(**fields)

    return _make


@pytest.fixture
def make_score() -> Callable[..., PerformanceScore]:
    def _make(cpu: float = 50.0, memory: float = 50.0, disk: float = 50.0) -> PerformanceScore:
        return PerformanceScore(cpu_score=cpu, memory_score=memory, disk_score=disk)

    return _make


@pytest.fixture
def make_current() -> Callable[..., CurrentState]:
    """Build a CurrentState holding kernel defaults and 2 GiB of swap."""

    def _make(swap_size_mb: int = 2048, **values) -> CurrentState:
        merged = dict(KERNEL_DEFAULTS)
        merged.update(values)
        return CurrentState(values=merged, swap_size_mb=swap_size_mb)

    return _make


# ============================================================================
# Filesystem Fixtures
# ============================================================================


@pytest.fixture
def proc_sys(tmp_path: Path) -> Path:
    """Fake /proc/sys with a vm/ directory holding kernel defaults."""
    root = tmp_path / 'proc_sys'
    vm_dir = root / 'vm'
    vm_dir.mkdir(parents=True)
    for name, value in KERNEL_DEFAULTS.items():
        (vm_dir / name).write_text(f'{value}\n')
    return root


@pytest.fixture
def test_config(tmp_path: Path, proc_sys: Path) -> dict:
    """Default configuration with every host path redirected into tmp_path."""
    config = get_default_config()
    config['paths'].update({
        'proc_sys_root': str(proc_sys),
        'sysctl_conf': str(tmp_path / 'sysctl.conf'),
        'swapfile': str(tmp_path / 'swapfile'),
        'fstab': str(tmp_path / 'fstab'),
        'sys_block_root': str(tmp_path / 'sys_block'),
        'benchmark_dir': str(tmp_path),
    })
    return config


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Drop the handlers setup_logging() installs and restore the root level."""
    root = logging.getLogger()
    level = root.level
    yield
    for handler in root.handlers[:]:
        if type(handler) in (logging.StreamHandler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)

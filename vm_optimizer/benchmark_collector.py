"""
Benchmark Collector

Identifies the host hardware and measures CPU, memory and disk throughput:
- sysbench for CPU (prime search) and memory bandwidth
- a short in-process arithmetic probe for integer/float throughput
- fio for sequential bandwidth, random 4K IOPS and single-depth latency

A benchmark that is missing, times out or prints something unparsable never
fails the run: its metric is replaced by a conservative default and recorded
in BenchmarkResult.defaults_used.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from .models import BenchmarkResult, HardwareProfile, Measurement, MeasurementError
from .parsers import (
    parse_cpu_model,
    parse_dmidecode_memory,
    parse_fio_bandwidth,
    parse_fio_iops,
    parse_fio_latency_us,
    parse_sysbench_cpu,
    parse_sysbench_memory,
)

logger = logging.getLogger(__name__)

# Conservative values used whenever a measurement is unavailable
DEFAULT_CPU_SINGLE_EPS = 800.0
DEFAULT_CPU_EFFICIENCY = 0.85
DEFAULT_INTEGER_OPS = 5_000_000.0
DEFAULT_FLOAT_OPS = 4_000_000.0
DEFAULT_MEMORY_READ_MB_S = 10000.0
DEFAULT_MEMORY_WRITE_MB_S = 8000.0
DEFAULT_MEMORY_RANDOM_MB_S = 1500.0
DEFAULT_DISK_SEQ_READ_MB_S = 100.0
DEFAULT_DISK_SEQ_WRITE_MB_S = 80.0
DEFAULT_DISK_RAND_READ_IOPS = 100.0
DEFAULT_DISK_RAND_WRITE_IOPS = 80.0
DEFAULT_DISK_LATENCY_US = 5000.0
DEFAULT_CPU_FREQUENCY_MHZ = 2000

VIRTUAL_DEVICE_PATTERN = re.compile(r'^x?vd[a-z]+$')

Runner = Callable[..., subprocess.CompletedProcess]


def classify_memory(read_bandwidth_mb_s: float) -> str:
    """Guess the memory generation from measured read bandwidth (advisory only)"""
    bands = [
        (10000, 'DDR3-1333/1600'),
        (14000, 'DDR3-1866/DDR4-2133'),
        (17000, 'DDR4-2400'),
        (20000, 'DDR4-2666'),
        (25000, 'DDR4-3200'),
        (35000, 'DDR5-4800'),
    ]
    for upper, category in bands:
        if read_bandwidth_mb_s < upper:
            return category
    return 'DDR5-5600+'


def detect_virtualization(device: str, rotational: bool, seq_read_mb_s: Optional[float],
                          random_read_iops: Optional[float]) -> bool:
    """Fast sequential throughput with starved IOPS points at a host-backed virtual disk"""
    if VIRTUAL_DEVICE_PATTERN.match(os.path.basename(device)):
        return True
    if seq_read_mb_s is None or random_read_iops is None:
        return False

    if rotational:
        if seq_read_mb_s > 500 and random_read_iops < 1000:
            return True
        return random_read_iops < 200 and seq_read_mb_s < 300
    return seq_read_mb_s > 1000 and random_read_iops < 10000


def classify_disk(rotational: bool, seq_read_mb_s: float, random_read_iops: float,
                  virtualized: bool) -> str:
    """Human-readable disk class (advisory only)"""
    if not rotational:
        if virtualized:
            return 'Virtualized SSD (IOPS-limited)'
        if seq_read_mb_s > 5000 and random_read_iops > 200000:
            return 'PCIe 4.0 NVMe SSD'
        if seq_read_mb_s > 3000 and random_read_iops > 100000:
            return 'PCIe 3.0 NVMe SSD'
        if seq_read_mb_s > 1500 and random_read_iops > 50000:
            return 'NVMe or enterprise SATA SSD'
        if seq_read_mb_s > 400 and random_read_iops > 30000:
            return 'Enterprise SATA SSD'
        if random_read_iops > 10000:
            return 'SATA SSD'
        return 'Slow SSD'

    if virtualized:
        return 'Virtualized disk (IOPS-limited)'
    if seq_read_mb_s > 200 and random_read_iops > 180:
        return '10K/15K RPM SAS HDD'
    if random_read_iops > 120:
        return '7200 RPM SAS HDD'
    if random_read_iops > 80:
        return '7200 RPM SATA HDD'
    return '5400 RPM HDD'


class BenchmarkCollector:
    """Runs the micro-benchmarks and builds the hardware profile"""

    def __init__(self, config: Dict, runner: Runner = subprocess.run):
        self.config = config
        self.bench_config = config.get('benchmarks', {})
        self.paths = config.get('paths', {})
        self.runner = runner
        self.sys_block_root = Path(self.paths.get('sys_block_root', '/sys/block'))
        self.grace = self.bench_config.get('timeout_grace_secs', 30)

    def collect(self, skip_benchmarks: bool = False) -> Tuple[HardwareProfile, BenchmarkResult]:
        """Measure the host. Never raises for measurement problems."""
        cores = psutil.cpu_count(logical=True) or 1
        total_ram_mb = psutil.virtual_memory().total // (1024 * 1024)
        device = self.detect_root_device()
        rotational = self.is_rotational(device)

        logger.info(f"CPU cores: {cores}, RAM: {total_ram_mb} MB, "
                    f"disk: /dev/{device} ({'HDD' if rotational else 'SSD'})")

        measurements: Dict[str, Measurement] = {}
        run_cpu = not skip_benchmarks and self.bench_config.get('enable_cpu', True)
        run_memory = not skip_benchmarks and self.bench_config.get('enable_memory', True)
        run_disk = not skip_benchmarks and self.bench_config.get('enable_disk', True)

        measurements.update(self.benchmark_cpu(cores) if run_cpu else self._cpu_defaults(cores, 'cpu benchmark disabled'))
        measurements.update(self.benchmark_memory(cores) if run_memory else self._memory_defaults('memory benchmark disabled'))
        measurements.update(self.benchmark_disk() if run_disk else self._disk_defaults('disk benchmark disabled'))

        result = BenchmarkResult(
            **{metric: m.value for metric, m in measurements.items()},
            defaults_used=tuple(sorted(metric for metric, m in measurements.items() if not m.measured)),
        )

        seq = measurements['disk_sequential_read_mb_s']
        iops = measurements['disk_random_read_iops']
        virtualized = detect_virtualization(
            device, rotational,
            seq.value if seq.measured else None,
            iops.value if iops.measured else None,
        )
        if virtualized:
            logger.warning(f"Virtualized disk suspected: sequential {seq.value:.0f} MB/s vs "
                           f"{iops.value:.0f} random read IOPS")

        memory_type, memory_speed = self.detect_memory_modules()
        profile = HardwareProfile(
            cpu_core_count=cores,
            cpu_max_frequency_mhz=self.detect_cpu_frequency(),
            total_ram_mb=int(total_ram_mb),
            disk_device_id=f'/dev/{device}',
            disk_is_rotational=rotational,
            virtualization_suspected=virtualized,
            cpu_model=self.detect_cpu_model(),
            memory_type=memory_type,
            memory_speed=memory_speed,
            memory_category=classify_memory(result.memory_read_bandwidth_mb_s),
            disk_category=classify_disk(rotational, result.disk_sequential_read_mb_s,
                                        result.disk_random_read_iops, virtualized),
        )

        if result.defaults_used:
            logger.warning(f"Using default values for: {', '.join(result.defaults_used)}")
        return profile, result

    # ------------------------------------------------------------------
    # Hardware identification
    # ------------------------------------------------------------------

    def detect_cpu_model(self) -> str:
        try:
            with open('/proc/cpuinfo', 'r') as f:
                return parse_cpu_model(f.read()) or 'Unknown'
        except OSError:
            return 'Unknown'

    def detect_cpu_frequency(self) -> int:
        """Max CPU frequency in MHz"""
        try:
            with open('/sys/devices/system/cpu/cpu0/cpufreq/cpuinfo_max_freq', 'r') as f:
                return int(f.read().strip()) // 1000
        except (OSError, ValueError):
            pass

        freq = psutil.cpu_freq()
        if freq:
            return int(freq.max or freq.current) or DEFAULT_CPU_FREQUENCY_MHZ
        return DEFAULT_CPU_FREQUENCY_MHZ

    def detect_memory_modules(self) -> Tuple[str, str]:
        try:
            output = self._run_tool(['dmidecode', '-t', 'memory'], timeout=self.grace)
        except MeasurementError as e:
            logger.debug(f"dmidecode unavailable: {e}")
            return 'Unknown', 'Unknown'
        return parse_dmidecode_memory(output)

    def detect_root_device(self) -> str:
        """Name of the whole-disk block device backing the root mount, e.g. 'sda'"""
        root_mount = self.paths.get('root_mount', '/')
        partition = None
        for part in psutil.disk_partitions(all=False):
            if part.mountpoint == root_mount:
                partition = part.device
                break
        if not partition:
            logger.warning(f"No block device found for {root_mount}, assuming sda")
            return 'sda'

        # -s walks LVM and dm-crypt stacks down to the disk that backs them
        try:
            output = self._run_tool(['lsblk', '-lnso', 'NAME,TYPE', partition], timeout=self.grace)
            for line in output.splitlines():
                fields = line.split()
                if len(fields) == 2 and fields[1] == 'disk':
                    return fields[0]
        except MeasurementError as e:
            logger.debug(f"lsblk failed for {partition}: {e}")

        name = os.path.basename(partition)
        if re.match(r'^(nvme\d+n\d+|mmcblk\d+)p\d+$', name):
            return re.sub(r'p\d+$', '', name)
        return re.sub(r'\d+$', '', name)

    def is_rotational(self, device: str) -> bool:
        rotational_path = self.sys_block_root / device / 'queue' / 'rotational'
        try:
            return rotational_path.read_text().strip() == '1'
        except OSError:
            logger.warning(f"Cannot read {rotational_path}, assuming rotational media")
            return True

    # ------------------------------------------------------------------
    # Benchmarks
    # ------------------------------------------------------------------

    def _run_tool(self, command: List[str], timeout: float) -> str:
        try:
            completed = self.runner(command, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise MeasurementError(f'{command[0]} is not installed') from e
        except OSError as e:
            raise MeasurementError(f'{command[0]} could not be run: {e}') from e
        except subprocess.TimeoutExpired as e:
            raise MeasurementError(f'{command[0]} timed out after {timeout}s') from e
        if completed.returncode != 0:
            raise MeasurementError(f'{command[0]} exited with {completed.returncode}: {(completed.stderr or "").strip()}')
        return completed.stdout

    def _measure(self, metric: str, measure: Callable[[], float], default: float) -> Measurement:
        try:
            value = measure()
            logger.info(f"{metric}: {value:.2f}")
            return Measurement(value=value)
        except MeasurementError as e:
            logger.warning(f"{metric} unavailable ({e}), using default {default}")
            return Measurement.fallback(default, str(e))

    def _sysbench_cpu(self, threads: int) -> float:
        cpu_time = self.bench_config.get('cpu_time_secs', 5)
        command = [
            'sysbench', 'cpu',
            f"--cpu-max-prime={self.bench_config.get('cpu_max_prime', 10000)}",
            f'--threads={threads}',
            f'--time={cpu_time}',
            'run',
        ]
        return parse_sysbench_cpu(self._run_tool(command, timeout=cpu_time + self.grace))

    def _arithmetic_probe(self, kind: str) -> float:
        """Operations per second of a tight integer or float loop"""
        duration = float(self.bench_config.get('arithmetic_probe_secs', 1.0))
        batch = 10000
        ops = 0
        x = 1
        y = 1.0
        start = time.perf_counter()
        deadline = start + duration
        while time.perf_counter() < deadline:
            if kind == 'integer':
                for i in range(batch):
                    x = (x * 31 + i) & 0xFFFFFFFF
            else:
                for _ in range(batch):
                    y = y * 1.000001 + 0.5
            ops += batch
        elapsed = time.perf_counter() - start
        if elapsed <= 0 or ops == 0:
            raise MeasurementError(f'{kind} probe did not complete')
        return ops / elapsed

    def _cpu_defaults(self, cores: int, note: str) -> Dict[str, Measurement]:
        return {
            'cpu_single_thread_eps': Measurement.fallback(DEFAULT_CPU_SINGLE_EPS, note),
            'cpu_multi_thread_eps': Measurement.fallback(DEFAULT_CPU_SINGLE_EPS * cores * DEFAULT_CPU_EFFICIENCY, note),
            'cpu_integer_ops_per_sec': Measurement.fallback(DEFAULT_INTEGER_OPS, note),
            'cpu_float_ops_per_sec': Measurement.fallback(DEFAULT_FLOAT_OPS, note),
        }

    def benchmark_cpu(self, cores: int) -> Dict[str, Measurement]:
        """Single/multi-thread sysbench plus the arithmetic probes"""
        logger.info("Running CPU benchmarks...")
        return {
            'cpu_single_thread_eps': self._measure(
                'cpu_single_thread_eps', lambda: self._sysbench_cpu(1), DEFAULT_CPU_SINGLE_EPS),
            'cpu_multi_thread_eps': self._measure(
                'cpu_multi_thread_eps', lambda: self._sysbench_cpu(cores),
                DEFAULT_CPU_SINGLE_EPS * cores * DEFAULT_CPU_EFFICIENCY),
            'cpu_integer_ops_per_sec': self._measure(
                'cpu_integer_ops_per_sec', lambda: self._arithmetic_probe('integer'), DEFAULT_INTEGER_OPS),
            'cpu_float_ops_per_sec': self._measure(
                'cpu_float_ops_per_sec', lambda: self._arithmetic_probe('float'), DEFAULT_FLOAT_OPS),
        }

    def _sysbench_memory(self, threads: int, block_size: str, total_size: str,
                         operation: str, access_mode: str) -> float:
        command = [
            'sysbench', 'memory',
            f'--memory-block-size={block_size}',
            f'--memory-total-size={total_size}',
            f'--memory-oper={operation}',
            f'--memory-access-mode={access_mode}',
            f'--threads={threads}',
            'run',
        ]
        return parse_sysbench_memory(self._run_tool(command, timeout=60 + self.grace))

    def _memory_defaults(self, note: str) -> Dict[str, Measurement]:
        return {
            'memory_read_bandwidth_mb_s': Measurement.fallback(DEFAULT_MEMORY_READ_MB_S, note),
            'memory_write_bandwidth_mb_s': Measurement.fallback(DEFAULT_MEMORY_WRITE_MB_S, note),
            'memory_random_bandwidth_mb_s': Measurement.fallback(DEFAULT_MEMORY_RANDOM_MB_S, note),
        }

    def benchmark_memory(self, cores: int) -> Dict[str, Measurement]:
        """Sequential 1M/10G read and write, random 4K/1G read"""
        logger.info("Running memory benchmarks...")
        return {
            'memory_read_bandwidth_mb_s': self._measure(
                'memory_read_bandwidth_mb_s',
                lambda: self._sysbench_memory(cores, '1M', '10G', 'read', 'seq'),
                DEFAULT_MEMORY_READ_MB_S),
            'memory_write_bandwidth_mb_s': self._measure(
                'memory_write_bandwidth_mb_s',
                lambda: self._sysbench_memory(cores, '1M', '10G', 'write', 'seq'),
                DEFAULT_MEMORY_WRITE_MB_S),
            'memory_random_bandwidth_mb_s': self._measure(
                'memory_random_bandwidth_mb_s',
                lambda: self._sysbench_memory(cores, '4K', '1G', 'read', 'rnd'),
                DEFAULT_MEMORY_RANDOM_MB_S),
        }

    def _fio(self, test_dir: str, name: str, rw: str, block_size: str, size: str,
             numjobs: int, iodepth: int, runtime: int) -> str:
        command = [
            'fio',
            f'--name={name}',
            f'--directory={test_dir}',
            f'--rw={rw}',
            f'--bs={block_size}',
            f'--size={size}',
            f'--numjobs={numjobs}',
            f'--iodepth={iodepth}',
            '--time_based',
            f'--runtime={runtime}',
            '--ioengine=libaio',
            '--direct=1',
            '--group_reporting',
            '--output-format=json',
        ]
        return self._run_tool(command, timeout=runtime + self.grace)

    def _disk_defaults(self, note: str) -> Dict[str, Measurement]:
        return {
            'disk_sequential_read_mb_s': Measurement.fallback(DEFAULT_DISK_SEQ_READ_MB_S, note),
            'disk_sequential_write_mb_s': Measurement.fallback(DEFAULT_DISK_SEQ_WRITE_MB_S, note),
            'disk_random_read_iops': Measurement.fallback(DEFAULT_DISK_RAND_READ_IOPS, note),
            'disk_random_write_iops': Measurement.fallback(DEFAULT_DISK_RAND_WRITE_IOPS, note),
            'disk_average_latency_us': Measurement.fallback(DEFAULT_DISK_LATENCY_US, note),
        }

    def benchmark_disk(self) -> Dict[str, Measurement]:
        """fio against a scratch directory on the root filesystem"""
        logger.info("Running disk benchmarks...")
        runtime = int(self.bench_config.get('disk_runtime_secs', 10))
        latency_runtime = int(self.bench_config.get('latency_runtime_secs', 5))
        base_dir = self.paths.get('benchmark_dir', '/var/tmp')

        try:
            test_dir = tempfile.mkdtemp(prefix='vm_optimizer_fio_', dir=base_dir)
        except OSError as e:
            logger.warning(f"Cannot create benchmark directory in {base_dir}: {e}")
            return self._disk_defaults(f'no scratch directory: {e}')

        try:
            return {
                'disk_sequential_read_mb_s': self._measure(
                    'disk_sequential_read_mb_s',
                    lambda: parse_fio_bandwidth(
                        self._fio(test_dir, 'seq_read', 'read', '4m', '512m', 1, 1, runtime), 'read'),
                    DEFAULT_DISK_SEQ_READ_MB_S),
                'disk_sequential_write_mb_s': self._measure(
                    'disk_sequential_write_mb_s',
                    lambda: parse_fio_bandwidth(
                        self._fio(test_dir, 'seq_write', 'write', '4m', '512m', 1, 1, runtime), 'write'),
                    DEFAULT_DISK_SEQ_WRITE_MB_S),
                'disk_random_read_iops': self._measure(
                    'disk_random_read_iops',
                    lambda: parse_fio_iops(
                        self._fio(test_dir, 'rand_read_4k', 'randread', '4k', '256m', 4, 32, runtime), 'read'),
                    DEFAULT_DISK_RAND_READ_IOPS),
                'disk_random_write_iops': self._measure(
                    'disk_random_write_iops',
                    lambda: parse_fio_iops(
                        self._fio(test_dir, 'rand_write_4k', 'randwrite', '4k', '256m', 4, 32, runtime), 'write'),
                    DEFAULT_DISK_RAND_WRITE_IOPS),
                'disk_average_latency_us': self._measure(
                    'disk_average_latency_us',
                    lambda: parse_fio_latency_us(
                        self._fio(test_dir, 'latency_qd1', 'randread', '4k', '64m', 1, 1, latency_runtime), 'read'),
                    DEFAULT_DISK_LATENCY_US),
            }
        finally:
            shutil.rmtree(test_dir, ignore_errors=True)

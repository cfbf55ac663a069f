"""
Strict parsers for benchmark tool output.

Every parser either returns a value or raises MeasurementError; choosing a
fallback is the collector's job, never the parser's.
"""

import json
import re
from typing import Dict, Optional, Tuple

from .models import MeasurementError

_EVENTS_PER_SEC = re.compile(r'events per second:\s+([\d.]+)')
_MEMORY_THROUGHPUT = re.compile(r'([\d.]+)\s+Mi?B transferred\s+\(([\d.]+)\s+Mi?B/sec\)')
_DMI_TYPE = re.compile(r'^\s*Type:\s*(\S+)', re.MULTILINE)
_DMI_SPEED = re.compile(r'^\s*Speed:\s*(\d+)\s*(MT/s|MHz)', re.MULTILINE)


def parse_sysbench_cpu(output: str) -> float:
    """Extract events/sec from `sysbench cpu run` output"""
    match = _EVENTS_PER_SEC.search(output or '')
    if not match:
        raise MeasurementError('sysbench cpu output has no "events per second" line')
    value = float(match.group(1))
    if value <= 0:
        raise MeasurementError(f'sysbench cpu reported non-positive throughput {value}')
    return value


def parse_sysbench_memory(output: str) -> float:
    """Extract MiB/sec from `sysbench memory run` output"""
    match = _MEMORY_THROUGHPUT.search(output or '')
    if not match:
        raise MeasurementError('sysbench memory output has no "transferred" line')
    value = float(match.group(2))
    if value <= 0:
        raise MeasurementError(f'sysbench memory reported non-positive bandwidth {value}')
    return value


def _load_fio_json(output: str) -> Dict:
    # fio may print warnings before the JSON document
    start = (output or '').find('{')
    if start < 0:
        raise MeasurementError('fio output contains no JSON document')
    try:
        data = json.loads(output[start:])
    except json.JSONDecodeError as e:
        raise MeasurementError(f'fio output is not valid JSON: {e}') from e

    jobs = data.get('jobs') if isinstance(data, dict) else None
    if not jobs:
        raise MeasurementError('fio output missing job data')
    return jobs[0]


def _fio_direction(job: Dict, direction: str) -> Dict:
    stats = job.get(direction)
    if not isinstance(stats, dict):
        raise MeasurementError(f'fio job has no {direction} statistics')
    return stats


def parse_fio_bandwidth(output: str, direction: str) -> float:
    """Bandwidth in MB/s for `direction` ('read' or 'write') of an fio JSON report"""
    stats = _fio_direction(_load_fio_json(output), direction)
    bw_kib = float(stats.get('bw', 0) or 0)
    if bw_kib <= 0:
        raise MeasurementError(f'fio reported zero {direction} bandwidth')
    return bw_kib / 1024


def parse_fio_iops(output: str, direction: str) -> float:
    """IOPS for `direction` of an fio JSON report"""
    stats = _fio_direction(_load_fio_json(output), direction)
    iops = float(stats.get('iops', 0) or 0)
    if iops <= 0:
        raise MeasurementError(f'fio reported zero {direction} IOPS')
    return iops


def parse_fio_latency_us(output: str, direction: str) -> float:
    """Mean completion latency in microseconds"""
    stats = _fio_direction(_load_fio_json(output), direction)
    for key in ('lat_ns', 'clat_ns'):
        lat = stats.get(key)
        if isinstance(lat, dict) and lat.get('mean'):
            return float(lat['mean']) / 1000
    lat_us = stats.get('lat')
    if isinstance(lat_us, dict) and lat_us.get('mean'):
        return float(lat_us['mean'])
    raise MeasurementError(f'fio report has no {direction} latency')


def parse_dmidecode_memory(output: str) -> Tuple[str, str]:
    """Memory type and speed from `dmidecode -t memory`; 'Unknown' when absent"""
    memory_type = 'Unknown'
    for match in _DMI_TYPE.finditer(output or ''):
        if match.group(1) not in ('Unknown', 'Other'):
            memory_type = match.group(1)
            break

    speed_match = _DMI_SPEED.search(output or '')
    memory_speed = f'{speed_match.group(1)} {speed_match.group(2)}' if speed_match else 'Unknown'
    return memory_type, memory_speed


def parse_cpu_model(cpuinfo: str) -> Optional[str]:
    for line in (cpuinfo or '').splitlines():
        if line.startswith('model name'):
            return line.split(':', 1)[1].strip()
    return None

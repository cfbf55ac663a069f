"""
Configuration loading and logging setup for the VM optimizer.
"""

import copy
import logging
import sys
from typing import Dict, Optional

import yaml

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def get_default_config() -> Dict:
    """Get default configuration"""
    return {
        'paths': {
            'proc_sys_root': '/proc/sys',
            'sysctl_conf': '/etc/sysctl.conf',
            'swapfile': '/swapfile',
            'fstab': '/etc/fstab',
            'sys_block_root': '/sys/block',
            'benchmark_dir': '/var/tmp',
            'root_mount': '/',
        },
        'benchmarks': {
            'enable_cpu': True,
            'enable_memory': True,
            'enable_disk': True,
            'cpu_time_secs': 5,
            'cpu_max_prime': 10000,
            'arithmetic_probe_secs': 1.0,
            'disk_runtime_secs': 10,
            'latency_runtime_secs': 5,
            'timeout_grace_secs': 30,
        },
        'normalization': {
            'component_cap': 2.0,
        },
        'safety': {
            'min_available_memory_mb': 50,
            'swap_disk_multiplier': 2,
            'backup_min_free_kb': 512,
        },
        'apply': {
            'probe_mb': 16,
        },
        'logging': {
            'level': 'INFO',
            'log_file': None,
        },
    }


def _deep_merge(base: Dict, override: Dict) -> Dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str] = None) -> Dict:
    """Load configuration from YAML file, merged over the defaults"""
    config = get_default_config()
    if not config_path:
        return config

    try:
        with open(config_path, 'r') as f:
            user_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Config file {config_path} not found, using defaults")
        return config
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Failed to load config from {config_path}: {e}")
        return config

    if not isinstance(user_config, dict):
        logger.error(f"Config file {config_path} is not a mapping, using defaults")
        return config

    logger.info(f"Configuration loaded from {config_path}")
    return _deep_merge(config, user_config)


def setup_logging(config: Dict, verbose: bool = False) -> None:
    """Configure root logging the same way for every entry point"""
    log_config = config.get('logging', {})
    handlers = [logging.StreamHandler(sys.stdout)]

    log_file = log_config.get('log_file')
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)

    level = logging.DEBUG if verbose else getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)

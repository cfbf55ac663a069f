"""
Current-State Reader

Reads the live value of every managed tunable from /proc/sys/vm and the
host's free capacity through psutil.
"""

import logging
import os
from pathlib import Path
from typing import Dict, List

import psutil

from .kernel_interface import KernelTunables
from .models import KERNEL_DEFAULTS, TUNABLES, CurrentState, HostResources

logger = logging.getLogger(__name__)

MB = 1024 * 1024


class CurrentStateReader:
    """Reads live kernel tunables and host capacity"""

    def __init__(self, config: Dict):
        paths = config.get('paths', {})
        self.kernel = KernelTunables(paths.get('proc_sys_root', '/proc/sys'))
        self.swapfile = Path(paths.get('swapfile', '/swapfile'))

    def current_swap_mb(self) -> int:
        return int(psutil.swap_memory().total // MB)

    def read(self) -> CurrentState:
        """Read every managed tunable, falling back to the kernel default"""
        values = {}
        unreadable: List[str] = []
        for name in TUNABLES:
            try:
                values[name] = self.kernel.read(name)
            except (OSError, ValueError, IndexError) as e:
                logger.warning(f"Could not read vm.{name} ({e}), assuming kernel default {KERNEL_DEFAULTS[name]}")
                values[name] = KERNEL_DEFAULTS[name]
                unreadable.append(name)

        state = CurrentState(values=values, swap_size_mb=self.current_swap_mb(), unreadable=tuple(unreadable))
        logger.info(f"Current swap: {state.swap_size_mb} MB")
        return state

    def host_resources(self) -> HostResources:
        """Free memory, free space where the swapfile lives, and active swap"""
        swap_dir = self.swapfile.parent
        if not swap_dir.exists():
            swap_dir = Path(os.sep)
        return HostResources(
            available_memory_mb=int(psutil.virtual_memory().available // MB),
            available_disk_mb=int(psutil.disk_usage(str(swap_dir)).free // MB),
            current_swap_mb=self.current_swap_mb(),
        )

"""
Host-side effects: live /proc/sys writes, the persisted sysctl file, the
swapfile and the post-apply allocation probe.
"""

import logging
import os
import re
import shutil
import subprocess
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil

from .models import TUNABLES, ApplyError, sysctl_key

logger = logging.getLogger(__name__)

BLOCK_BEGIN = '# BEGIN vm-optimizer'
BLOCK_END = '# END vm-optimizer'
_SYSCTL_LINE = re.compile(r'^\s*(vm\.[a-z_]+)\s*=\s*(\S+)\s*$')

# Host files may carry bytes that are not UTF-8; they round-trip unchanged
FILE_ENCODING = 'utf-8'
FILE_ERRORS = 'surrogateescape'

Runner = Callable[..., subprocess.CompletedProcess]


class KernelTunables:
    """Live values under /proc/sys/vm"""

    def __init__(self, proc_sys_root: str = '/proc/sys'):
        self.vm_dir = Path(proc_sys_root) / 'vm'

    def write(self, name: str, value: int) -> None:
        path = self.vm_dir / name
        try:
            with open(path, 'w') as f:
                f.write(f'{value}\n')
        except OSError as e:
            raise ApplyError(f'Failed to write {sysctl_key(name)}={value}: {e}') from e

    def read(self, name: str) -> int:
        with open(self.vm_dir / name, 'r') as f:
            return int(f.read().split()[0])


class SysctlConfigFile:
    """The persisted `key = value` configuration holding one managed block"""

    def __init__(self, path: str = '/etc/sysctl.conf', backup_min_free_kb: int = 512):
        self.path = Path(path)
        self.backup_min_free_kb = backup_min_free_kb

    def _free_kb(self) -> int:
        return int(psutil.disk_usage(str(self.path.parent)).free // 1024)

    def backup(self) -> Optional[str]:
        """Copy the file to a timestamped backup; None when skipped"""
        if not self.path.exists():
            logger.info(f"{self.path} does not exist yet, nothing to back up")
            return None

        try:
            free_kb = self._free_kb()
        except OSError as e:
            logger.warning(f"Cannot determine free space for {self.path}: {e}; skipping backup")
            return None
        if free_kb <= self.backup_min_free_kb:
            logger.warning(f"Only {free_kb} KB free, skipping backup of {self.path}")
            return None

        backup_path = f"{self.path}.backup.{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        try:
            shutil.copy2(self.path, backup_path)
        except OSError as e:
            logger.warning(f"Backup of {self.path} failed: {e}")
            return None
        logger.info(f"Configuration backed up to {backup_path}")
        return backup_path

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding=FILE_ENCODING, errors=FILE_ERRORS).splitlines()

    def _split(self, lines: List[str]):
        """Separate unmanaged lines from persisted values of managed keys"""
        managed_keys = {sysctl_key(name) for name in TUNABLES}
        kept = []
        persisted: Dict[str, str] = {}
        in_block = False
        for line in lines:
            stripped = line.strip()
            if stripped.startswith(BLOCK_BEGIN):
                in_block = True
                continue
            if stripped.startswith(BLOCK_END):
                in_block = False
                continue

            match = _SYSCTL_LINE.match(line)
            if match and match.group(1) in managed_keys:
                persisted[match.group(1)] = match.group(2)
                continue
            if in_block:
                continue
            kept.append(line)

        while kept and not kept[-1].strip():
            kept.pop()
        return kept, persisted

    def persist(self, values: Dict[str, int]) -> bool:
        """Merge `values` into the managed block and rewrite the file"""
        try:
            lines = self._read_lines()
        except OSError as e:
            logger.warning(f"Cannot read {self.path}: {e}")
            return False

        kept, persisted = self._split(lines)
        for name, value in values.items():
            persisted[sysctl_key(name)] = str(value)

        block = ['', f"{BLOCK_BEGIN} {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}"]
        for name in TUNABLES:
            key = sysctl_key(name)
            if key in persisted:
                block.append(f'{key} = {persisted[key]}')
        block.append(BLOCK_END)

        tmp_path = self.path.with_name(f'.{self.path.name}.tmp')
        try:
            tmp_path.write_text('\n'.join(kept + block) + '\n', encoding=FILE_ENCODING, errors=FILE_ERRORS)
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning(f"Failed to write {self.path}: {e}")
            try:
                tmp_path.unlink()
            except OSError:
                pass
            return False

        logger.info(f"Persisted {len(values)} value(s) to {self.path}")
        return True

    def read_persisted(self) -> Dict[str, str]:
        _, persisted = self._split(self._read_lines())
        return persisted


class SwapFileManager:
    """Rebuilds the file-backed swap area and registers it in fstab"""

    def __init__(self, swapfile: str = '/swapfile', fstab: str = '/etc/fstab',
                 runner: Runner = subprocess.run, command_timeout: int = 1800):
        self.swapfile = Path(swapfile)
        self.fstab = Path(fstab)
        self.runner = runner
        self.command_timeout = command_timeout

    def _run(self, command: List[str]) -> subprocess.CompletedProcess:
        try:
            return self.runner(command, capture_output=True, text=True, check=True,
                               timeout=self.command_timeout)
        except subprocess.CalledProcessError as e:
            raise ApplyError(f"{' '.join(command)} failed: {(e.stderr or '').strip()}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ApplyError(f"{' '.join(command)} failed: {e}") from e

    def resize(self, size_mb: int, swap_active: bool) -> None:
        if swap_active:
            logger.info("Disabling active swap...")
            self._run(['swapoff', '-a'])

        if self.swapfile.exists():
            logger.info(f"Removing old swapfile {self.swapfile}")
            try:
                self.swapfile.unlink()
            except OSError as e:
                raise ApplyError(f'Cannot remove {self.swapfile}: {e}') from e

        logger.info(f"Creating {size_mb} MB swapfile at {self.swapfile} (this may take a while)...")
        self._run(['dd', 'if=/dev/zero', f'of={self.swapfile}', 'bs=1M', f'count={size_mb}', 'status=none'])
        try:
            os.chmod(self.swapfile, 0o600)
        except OSError as e:
            raise ApplyError(f'Cannot chmod {self.swapfile}: {e}') from e
        self._run(['mkswap', str(self.swapfile)])
        self._run(['swapon', str(self.swapfile)])
        logger.info("Swap enabled")
        self.register()

    def register(self) -> None:
        """Add the swapfile to fstab unless an entry already exists"""
        try:
            content = self.fstab.read_text(encoding=FILE_ENCODING, errors=FILE_ERRORS) if self.fstab.exists() else ''
        except OSError as e:
            raise ApplyError(f'Cannot read {self.fstab}: {e}') from e

        for line in content.splitlines():
            fields = line.split()
            if fields and not fields[0].startswith('#') and fields[0] == str(self.swapfile):
                logger.info(f"{self.swapfile} already registered in {self.fstab}")
                return

        entry = f'{self.swapfile} none swap sw 0 0\n'
        try:
            with open(self.fstab, 'a', encoding=FILE_ENCODING, errors=FILE_ERRORS) as f:
                if content and not content.endswith('\n'):
                    f.write('\n')
                f.write(entry)
        except OSError as e:
            raise ApplyError(f'Cannot update {self.fstab}: {e}') from e
        logger.info(f"Added {self.swapfile} to {self.fstab}")


def allocation_probe(probe_mb: int = 16, runner: Runner = subprocess.run) -> bool:
    """Fork a child that allocates `probe_mb` MiB; False if either step fails"""
    command = [sys.executable, '-c', f'bytearray({int(probe_mb)} * 1024 * 1024)']
    try:
        completed = runner(command, capture_output=True, text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.error(f"Allocation probe could not run: {e}")
        return False
    if completed.returncode != 0:
        logger.error(f"Allocation probe exited with {completed.returncode}: {(completed.stderr or '').strip()}")
        return False
    return True

"""
Tests for the host-side effect layer.

Test Strategy
-------------
- /proc/sys, sysctl.conf and fstab are plain files under tmp_path
- Swap commands go through a recording fake runner
- psutil.disk_usage is patched to exercise the backup space check

Organization
------------
- TestKernelTunables: live reads and writes
- TestSysctlConfigFile: backup and managed-block rewrite
- TestSwapFileManager: command sequence and fstab registration
- TestAllocationProbe: child-process probe outcomes
"""

import subprocess
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from vm_optimizer.kernel_interface import (
    BLOCK_BEGIN,
    BLOCK_END,
    KernelTunables,
    SwapFileManager,
    SysctlConfigFile,
    allocation_probe,
)
from vm_optimizer.models import ApplyError


class RecordingRunner:
    """Records commands; `dd` creates the target file, `fail_on` raises CalledProcessError."""

    def __init__(self, fail_on=None):
        self.commands = []
        self.fail_on = fail_on

    def __call__(self, command, **kwargs):
        self.commands.append(command)
        if command[0] == self.fail_on:
            raise subprocess.CalledProcessError(1, command, stderr=f'{command[0]}: failed')
        if command[0] == 'dd':
            target = next(a for a in command if a.startswith('of='))[3:]
            with open(target, 'wb') as f:
                f.write(b'\0')
        return subprocess.CompletedProcess(command, 0, stdout='', stderr='')


class TestKernelTunables:
    """Tests for /proc/sys/vm access."""

    def test_write_then_read(self, proc_sys):
        tunables = KernelTunables(str(proc_sys))
        tunables.write('swappiness', 10)

        assert (proc_sys / 'vm' / 'swappiness').read_text() == '10\n'
        assert tunables.read('swappiness') == 10

    def test_write_failure_raises_apply_error(self, tmp_path):
        tunables = KernelTunables(str(tmp_path / 'missing'))
        with pytest.raises(ApplyError, match='vm.swappiness'):
            tunables.write('swappiness', 10)

    def test_read_takes_first_field(self, proc_sys):
        (proc_sys / 'vm' / 'min_free_kbytes').write_text('67584\t\n')
        assert KernelTunables(str(proc_sys)).read('min_free_kbytes') == 67584


class TestSysctlConfigFile:
    """Tests for the persisted configuration file."""

    def test_persist_creates_managed_block(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        assert SysctlConfigFile(str(path)).persist({'swappiness': 10, 'page_cluster': 0}) is True

        lines = path.read_text().splitlines()
        assert any(line.startswith(BLOCK_BEGIN) for line in lines)
        assert lines[-1] == BLOCK_END
        assert 'vm.swappiness = 10' in lines
        assert 'vm.page_cluster = 0' in lines

    def test_persist_keeps_unmanaged_lines_and_drops_stale_keys(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        path.write_text('# local settings\nnet.core.somaxconn = 1024\nvm.swappiness=60\n')

        SysctlConfigFile(str(path)).persist({'swappiness': 10})

        content = path.read_text()
        assert 'net.core.somaxconn = 1024' in content
        assert '# local settings' in content
        assert 'vm.swappiness=60' not in content
        assert content.count('vm.swappiness') == 1

    def test_repeated_persist_keeps_single_block_and_merges(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        config_file = SysctlConfigFile(str(path))
        config_file.persist({'swappiness': 10, 'dirty_ratio': 30})
        config_file.persist({'overcommit_memory': 1})

        content = path.read_text()
        assert content.count(BLOCK_BEGIN) == 1
        assert content.count(BLOCK_END) == 1
        assert config_file.read_persisted() == {
            'vm.swappiness': '10',
            'vm.dirty_ratio': '30',
            'vm.overcommit_memory': '1',
        }

    def test_persisted_values_follow_tunable_order(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        SysctlConfigFile(str(path)).persist({'overcommit_ratio': 50, 'swappiness': 10})

        keys = [line.split()[0] for line in path.read_text().splitlines() if line.startswith('vm.')]
        assert keys == ['vm.swappiness', 'vm.overcommit_ratio']

    def test_persist_failure_returns_false(self, tmp_path):
        path = tmp_path / 'missing_dir' / 'sysctl.conf'
        assert SysctlConfigFile(str(path)).persist({'swappiness': 10}) is False

    def test_persist_keeps_non_utf8_bytes(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        path.write_bytes(b'# caf\xe9 tuning\nkernel.panic = 10\n')

        assert SysctlConfigFile(str(path)).persist({'swappiness': 10}) is True

        content = path.read_bytes()
        assert content.startswith(b'# caf\xe9 tuning\nkernel.panic = 10\n')
        assert b'vm.swappiness = 10\n' in content

    def test_read_persisted_non_utf8(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        path.write_bytes(b'# \xff\xfe\nvm.swappiness = 30\n')
        assert SysctlConfigFile(str(path)).read_persisted() == {'vm.swappiness': '30'}

    def test_unreadable_file_returns_false(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        path.mkdir()
        assert SysctlConfigFile(str(path)).persist({'swappiness': 10}) is False

    def test_backup_copies_file(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        path.write_text('vm.swappiness = 60\n')

        backup = SysctlConfigFile(str(path)).backup()

        assert backup is not None
        assert backup.startswith(f'{path}.backup.')
        with open(backup) as f:
            assert f.read() == 'vm.swappiness = 60\n'

    def test_backup_skipped_when_disk_full(self, tmp_path):
        path = tmp_path / 'sysctl.conf'
        path.write_text('vm.swappiness = 60\n')

        with patch('vm_optimizer.kernel_interface.psutil.disk_usage',
                   return_value=SimpleNamespace(free=100 * 1024)):
            backup = SysctlConfigFile(str(path), backup_min_free_kb=512).backup()

        assert backup is None
        assert not list(tmp_path.glob('sysctl.conf.backup.*'))

    def test_backup_of_missing_file(self, tmp_path):
        assert SysctlConfigFile(str(tmp_path / 'sysctl.conf')).backup() is None


class TestSwapFileManager:
    """Tests for swapfile rebuild and fstab registration."""

    def test_resize_command_sequence(self, tmp_path):
        swapfile = tmp_path / 'swapfile'
        swapfile.write_bytes(b'old')
        runner = RecordingRunner()
        manager = SwapFileManager(str(swapfile), str(tmp_path / 'fstab'), runner=runner)

        manager.resize(1024, swap_active=True)

        tools = [command[0] for command in runner.commands]
        assert tools == ['swapoff', 'dd', 'mkswap', 'swapon']
        assert f'of={swapfile}' in runner.commands[1]
        assert 'count=1024' in runner.commands[1]
        assert (swapfile.stat().st_mode & 0o777) == 0o600

    def test_resize_without_active_swap_skips_swapoff(self, tmp_path):
        runner = RecordingRunner()
        manager = SwapFileManager(str(tmp_path / 'swapfile'), str(tmp_path / 'fstab'), runner=runner)

        manager.resize(256, swap_active=False)

        assert [command[0] for command in runner.commands] == ['dd', 'mkswap', 'swapon']

    def test_resize_failure_raises_apply_error(self, tmp_path):
        manager = SwapFileManager(str(tmp_path / 'swapfile'), str(tmp_path / 'fstab'),
                                  runner=RecordingRunner(fail_on='mkswap'))
        with pytest.raises(ApplyError, match='mkswap'):
            manager.resize(256, swap_active=False)

    def test_register_appends_once(self, tmp_path):
        fstab = tmp_path / 'fstab'
        fstab.write_text('UUID=abc / ext4 defaults 0 1')
        manager = SwapFileManager(str(tmp_path / 'swapfile'), str(fstab), runner=RecordingRunner())

        manager.register()
        manager.register()

        lines = fstab.read_text().splitlines()
        assert lines == ['UUID=abc / ext4 defaults 0 1', f'{tmp_path / "swapfile"} none swap sw 0 0']

    def test_register_ignores_commented_entry(self, tmp_path):
        fstab = tmp_path / 'fstab'
        swapfile = tmp_path / 'swapfile'
        fstab.write_text(f'#{swapfile} none swap sw 0 0\n')

        SwapFileManager(str(swapfile), str(fstab), runner=RecordingRunner()).register()

        assert f'{swapfile} none swap sw 0 0\n' in fstab.read_text().splitlines(keepends=True)


    def test_register_keeps_non_utf8_bytes(self, tmp_path):
        fstab = tmp_path / 'fstab'
        swapfile = tmp_path / 'swapfile'
        fstab.write_bytes(b'# disque syst\xe8me\nUUID=abc / ext4 defaults 0 1\n')

        SwapFileManager(str(swapfile), str(fstab), runner=RecordingRunner()).register()

        assert fstab.read_bytes() == (b'# disque syst\xe8me\nUUID=abc / ext4 defaults 0 1\n'
                                      + f'{swapfile} none swap sw 0 0\n'.encode())

    def test_unreadable_fstab_raises_apply_error(self, tmp_path):
        fstab = tmp_path / 'fstab'
        fstab.mkdir()
        manager = SwapFileManager(str(tmp_path / 'swapfile'), str(fstab), runner=RecordingRunner())
        with pytest.raises(ApplyError, match='Cannot read'):
            manager.register()


class TestAllocationProbe:
    """Tests for the allocation probe."""

    def test_probe_success(self):
        runner = RecordingRunner()
        assert allocation_probe(16, runner=runner) is True
        assert 'bytearray(16 * 1024 * 1024)' in runner.commands[0][-1]

    def test_probe_nonzero_exit(self):
        def runner(command, **kwargs):
            return subprocess.CompletedProcess(command, 1, stdout='', stderr='MemoryError')
        assert allocation_probe(16, runner=runner) is False

    def test_probe_fork_failure(self):
        def runner(command, **kwargs):
            raise OSError(12, 'Cannot allocate memory')
        assert allocation_probe(16, runner=runner) is False

"""
Staged Applier

Applies an ApplyPlan in three strictly ordered phases:

1. APPLY_SAFE       - every changed tunable except overcommit, live and persisted
2. APPLY_SWAP       - rebuild the swapfile when its size changed
3. APPLY_OVERCOMMIT - overcommit tunables, followed by an allocation probe

Overcommit restrictions are never written before swap capacity exists: a
failure in the swap phase ends the run without touching overcommit.
"""

import logging
from functools import partial
from typing import Callable, Dict, List, Optional

from .kernel_interface import KernelTunables, SwapFileManager, SysctlConfigFile, allocation_probe
from .models import (
    ApplyError,
    ApplyPhase,
    ApplyPlan,
    ApplyReport,
    ParameterDiff,
    PhaseOrderError,
    PlanConsumedError,
    sysctl_key,
)

logger = logging.getLogger(__name__)

NEXT_PHASE = {
    ApplyPhase.PENDING: ApplyPhase.APPLY_SAFE,
    ApplyPhase.APPLY_SAFE: ApplyPhase.APPLY_SWAP,
    ApplyPhase.APPLY_SWAP: ApplyPhase.APPLY_OVERCOMMIT,
    ApplyPhase.APPLY_OVERCOMMIT: ApplyPhase.DONE,
}

SAFE_OVERCOMMIT_MEMORY = 0


class StagedApplier:
    """One-shot state machine that mutates the host"""

    def __init__(self, tunables: KernelTunables, config_file: SysctlConfigFile,
                 swap_manager: SwapFileManager, probe: Optional[Callable[[], bool]] = None, probe_mb: int = 16):
        self.tunables = tunables
        self.config_file = config_file
        self.swap_manager = swap_manager
        self.probe = probe or partial(allocation_probe, probe_mb)
        self.phase = ApplyPhase.PENDING

    @classmethod
    def from_config(cls, config: Dict) -> 'StagedApplier':
        paths = config.get('paths', {})
        safety = config.get('safety', {})
        return cls(
            tunables=KernelTunables(paths.get('proc_sys_root', '/proc/sys')),
            config_file=SysctlConfigFile(paths.get('sysctl_conf', '/etc/sysctl.conf'),
                                         safety.get('backup_min_free_kb', 512)),
            swap_manager=SwapFileManager(paths.get('swapfile', '/swapfile'), paths.get('fstab', '/etc/fstab')),
            probe_mb=config.get('apply', {}).get('probe_mb', 16),
        )

    def _advance(self, target: ApplyPhase) -> None:
        if NEXT_PHASE.get(self.phase) != target:
            raise PhaseOrderError(f"Cannot move from {self.phase.value} to {target.value}")
        logger.info(f"Phase {self.phase.value} -> {target.value}")
        self.phase = target

    def _write_live(self, changes: List[ParameterDiff], report: ApplyReport) -> Dict[str, int]:
        """Write each change and read it back; returns the values that took"""
        written = {}
        for change in changes:
            try:
                self.tunables.write(change.name, change.recommended_value)
                actual = self.tunables.read(change.name)
            except ApplyError as e:
                logger.error(str(e))
                report.failed[change.key] = str(e)
                continue
            except (OSError, ValueError, IndexError) as e:
                logger.error(f"Cannot verify {change.key}: {e}")
                report.failed[change.key] = f'verification failed: {e}'
                continue

            if actual != change.recommended_value:
                message = f'kernel reports {actual} after writing {change.recommended_value}'
                logger.error(f"{change.key}: {message}")
                report.failed[change.key] = message
                continue

            logger.info(f"Set {change.key}: {change.current_value} -> {change.recommended_value}")
            report.applied.append(change.key)
            written[change.name] = change.recommended_value
        return written

    def _persist(self, values: Dict[str, int], report: ApplyReport) -> None:
        if not values:
            return
        ok = self.config_file.persist(values)
        if not ok:
            logger.warning(f"Could not persist {', '.join(sysctl_key(n) for n in values)}; "
                           f"live values stay active until reboot")
        report.persisted = ok if report.persisted is None else report.persisted and ok

    def apply_safe(self, plan: ApplyPlan, report: ApplyReport) -> None:
        if plan.safe_changes or plan.overcommit_changes:
            report.backup_path = self.config_file.backup()
        written = self._write_live(plan.safe_changes, report)
        self._persist(written, report)

    def apply_swap(self, plan: ApplyPlan, report: ApplyReport) -> None:
        change = plan.swap_change
        if change is None:
            logger.info("Swap size unchanged, nothing to do")
            return
        logger.info(f"Resizing swap: {change.current_value} MB -> {change.recommended_value} MB")
        self.swap_manager.resize(change.recommended_value, swap_active=change.current_value > 0)
        report.swap_resized = True
        report.applied.append(change.key)

    def apply_overcommit(self, plan: ApplyPlan, report: ApplyReport) -> None:
        if not plan.overcommit_changes:
            logger.info("Overcommit settings unchanged, nothing to do")
            return

        written = self._write_live(plan.overcommit_changes, report)
        self._persist(written, report)
        if not written:
            return

        logger.info("Running allocation probe...")
        report.probe_passed = self.probe()
        if report.probe_passed:
            logger.info("Allocation probe passed")
            return

        logger.error(f"Allocation probe failed, rolling back vm.overcommit_memory to {SAFE_OVERCOMMIT_MEMORY}")
        try:
            self.tunables.write('overcommit_memory', SAFE_OVERCOMMIT_MEMORY)
        except ApplyError as e:
            raise ApplyError(f"Rollback of vm.overcommit_memory failed: {e}") from e
        self._persist({'overcommit_memory': SAFE_OVERCOMMIT_MEMORY}, report)
        report.rolled_back.append(sysctl_key('overcommit_memory'))

    def apply(self, plan: ApplyPlan) -> ApplyReport:
        """Run all three phases; an ApplyError stops the run in its phase"""
        if plan.consumed:
            raise PlanConsumedError("This apply plan has already been applied")
        if self.phase != ApplyPhase.PENDING:
            raise PhaseOrderError(f"Applier already ran (phase {self.phase.value})")
        plan.consumed = True

        report = ApplyReport()
        steps = [
            (ApplyPhase.APPLY_SAFE, self.apply_safe),
            (ApplyPhase.APPLY_SWAP, self.apply_swap),
            (ApplyPhase.APPLY_OVERCOMMIT, self.apply_overcommit),
        ]
        try:
            for phase, step in steps:
                self._advance(phase)
                step(plan, report)
            self._advance(ApplyPhase.DONE)
        except ApplyError as e:
            logger.error(f"Apply failed during {self.phase.value}: {e}")
            report.error = str(e)
        finally:
            report.final_phase = self.phase
        return report


def apply_plan(plan: ApplyPlan, config: Dict) -> ApplyReport:
    return StagedApplier.from_config(config).apply(plan)

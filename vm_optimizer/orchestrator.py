#!/usr/bin/env python3
"""
VM Optimizer

Benchmarks the host and tunes the Linux virtual-memory subsystem:
- CPU, memory and disk micro-benchmarks
- Normalized performance scores
- Swap size and vm.* tunable recommendations
- Safety checks before any change
- Staged apply with allocation probe and overcommit rollback
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import asdict
from datetime import datetime
from typing import Dict, List, Optional

import psutil

from . import __version__
from .benchmark_collector import BenchmarkCollector
from .config import get_default_config, load_config, setup_logging
from .current_state import CurrentStateReader
from .diff_engine import changed_names, diff
from .models import (
    ApplyPlan,
    ApplyReport,
    BenchmarkResult,
    CurrentState,
    HardwareProfile,
    ParameterDiff,
    PerformanceScore,
    RecommendationSet,
    RunOutcome,
    SafetyOutcome,
)
from .recommendation_calculator import RecommendationCalculator
from .safety_gate import SafetyGate
from .score_normalizer import ScoreNormalizer
from .staged_applier import StagedApplier

logger = logging.getLogger(__name__)

EXIT_CODES = {
    RunOutcome.NO_CHANGES: 0,
    RunOutcome.APPLIED: 0,
    RunOutcome.DRY_RUN: 0,
    RunOutcome.SAFETY_FAILED: 2,
    RunOutcome.APPLY_FAILED: 3,
}
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


class VMOptimizer:
    """Runs one measure -> recommend -> diff -> check -> apply pass"""

    def __init__(self, config: Dict, collector: BenchmarkCollector = None,
                 reader: CurrentStateReader = None, applier: StagedApplier = None):
        self.config = config
        self.collector = collector or BenchmarkCollector(config)
        self.reader = reader or CurrentStateReader(config)
        self.normalizer = ScoreNormalizer(config)
        self.calculator = RecommendationCalculator()
        self.safety_gate = SafetyGate(config)
        self.applier = applier or StagedApplier.from_config(config)

        self.profile: Optional[HardwareProfile] = None
        self.benchmark: Optional[BenchmarkResult] = None
        self.score: Optional[PerformanceScore] = None
        self.current: Optional[CurrentState] = None
        self.recommendation: Optional[RecommendationSet] = None
        self.diffs: List[ParameterDiff] = []
        self.safety: Optional[SafetyOutcome] = None
        self.plan: Optional[ApplyPlan] = None
        self.apply_report: Optional[ApplyReport] = None
        self.outcome: Optional[RunOutcome] = None

    def run_optimization(self, dry_run: bool = False, skip_benchmarks: bool = False) -> RunOutcome:
        """Run the complete pipeline and return its outcome"""
        logger.info("Starting VM optimization")

        logger.info("Collecting hardware profile and benchmarks...")
        self.profile, self.benchmark = self.collector.collect(skip_benchmarks=skip_benchmarks)
        self.score = self.normalizer.normalize(self.benchmark, self.profile)

        self.current = self.reader.read()
        self.recommendation = self.calculator.recommend(self.profile, self.benchmark, self.score, self.current)
        self.diffs = diff(self.current, self.recommendation, self.profile.total_ram_mb)

        if not changed_names(self.diffs):
            logger.info("System is already optimally configured, no changes needed")
            self.outcome = RunOutcome.NO_CHANGES
            return self.outcome

        resources = self.reader.host_resources()
        self.safety = self.safety_gate.check(self.profile, self.recommendation, self.diffs, resources)
        if not self.safety.ok:
            logger.error(f"Safety check failed, no changes made: {self.safety.reason}")
            self.outcome = RunOutcome.SAFETY_FAILED
            return self.outcome

        if self.safety.recommendation != self.recommendation:
            self.recommendation = self.safety.recommendation
            self.diffs = diff(self.current, self.recommendation, self.profile.total_ram_mb)

        self.plan = ApplyPlan.from_diffs(self.diffs)
        if dry_run:
            logger.info(f"Dry run: {self.plan.change_count} change(s) would be applied")
            self.outcome = RunOutcome.DRY_RUN
            return self.outcome

        logger.info(f"Applying {self.plan.change_count} change(s)...")
        self.apply_report = self.applier.apply(self.plan)
        if self.apply_report.succeeded:
            logger.info("VM optimization completed")
            self.outcome = RunOutcome.APPLIED
        else:
            logger.error("VM optimization finished with errors")
            self.outcome = RunOutcome.APPLY_FAILED
        return self.outcome

    def _apply_section(self) -> Optional[Dict]:
        if self.apply_report is None:
            return None
        section = asdict(self.apply_report)
        section['final_phase'] = self.apply_report.final_phase.value
        return section

    def generate_report(self) -> Dict:
        """Generate the run report"""
        uname = os.uname()
        return {
            'timestamp': datetime.now().isoformat(),
            'version': __version__,
            'system_info': {
                'hostname': uname.nodename,
                'os': f"{uname.sysname} {uname.release}",
                'python_version': sys.version.split()[0],
                'cpu_cores': psutil.cpu_count(),
            },
            'outcome': self.outcome.value if self.outcome else None,
            'hardware': asdict(self.profile) if self.profile else None,
            'benchmark': asdict(self.benchmark) if self.benchmark else None,
            'defaults_used': list(self.benchmark.defaults_used) if self.benchmark else [],
            'scores': asdict(self.score) if self.score else None,
            'current': asdict(self.current) if self.current else None,
            'recommendation': asdict(self.recommendation) if self.recommendation else None,
            'changes': [
                {'parameter': d.key, 'current': d.current_value, 'recommended': d.recommended_value,
                 'changed': d.changed}
                for d in self.diffs
            ],
            'safety': asdict(self.safety) if self.safety else None,
            'apply': self._apply_section(),
        }

    def save_report(self, report: Dict, filename: str = None) -> str:
        """Save run report to file"""
        if not filename:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
            filename = f'vm_optimizer_report_{timestamp}.json'

        with open(filename, 'w') as f:
            json.dump(report, f, indent=2, default=str)

        logger.info(f"Report saved to {filename}")
        return filename

    def print_summary(self, report_filename: Optional[str]) -> None:
        print("\n" + "=" * 60)
        print("VM OPTIMIZATION SUMMARY")
        print("=" * 60)

        if self.profile:
            print(f"CPU: {self.profile.cpu_model} ({self.profile.cpu_core_count} cores)")
            print(f"RAM: {self.profile.total_ram_mb} MB ({self.profile.memory_category})")
            print(f"Disk: {self.profile.disk_device_id} ({self.profile.disk_category})")
        if self.score:
            print(f"Scores: CPU {self.score.cpu_score}, memory {self.score.memory_score}, "
                  f"disk {self.score.disk_score}")
        if self.benchmark and self.benchmark.defaults_used:
            print(f"Defaults used: {', '.join(self.benchmark.defaults_used)}")

        changed = [d for d in self.diffs if d.changed]
        if changed:
            print("\nPARAMETER CHANGES:")
            for d in changed:
                print(f"  {d.key}: {d.current_value} -> {d.recommended_value}")

        if self.safety and not self.safety.ok:
            print(f"\nSAFETY CHECK FAILED: {self.safety.reason}")
        elif self.safety and self.safety.adjustments:
            for adjustment in self.safety.adjustments:
                print(f"\nAdjusted: {adjustment}")

        if self.apply_report:
            for key, error in self.apply_report.failed.items():
                print(f"FAILED: {key}: {error}")
            for key in self.apply_report.rolled_back:
                print(f"ROLLED BACK: {key}")
            if self.apply_report.error:
                print(f"Stopped during {self.apply_report.final_phase.value}: {self.apply_report.error}")
            if self.apply_report.backup_path:
                print(f"Configuration backup: {self.apply_report.backup_path}")

        print(f"\nOutcome: {self.outcome.value if self.outcome else 'unknown'}")
        if report_filename:
            print(f"Detailed report saved to: {report_filename}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Benchmark-driven Linux virtual memory optimizer')
    parser.add_argument('--config', help='Configuration file path (YAML)')
    parser.add_argument('--dry-run', action='store_true', help='Measure and recommend without changing the system')
    parser.add_argument('--output', help='Output report filename')
    parser.add_argument('--skip-benchmarks', action='store_true',
                        help='Use default benchmark values instead of running benchmarks')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main function"""
    args = build_parser().parse_args(argv)

    setup_logging(get_default_config(), args.verbose)
    config = load_config(args.config)
    # Reapply with the loaded level and log file
    setup_logging(config, args.verbose)

    if not args.dry_run and os.geteuid() != 0:
        logger.error("Applying changes requires root privileges; rerun with sudo or use --dry-run")
        return EXIT_ERROR

    optimizer = VMOptimizer(config)
    try:
        outcome = optimizer.run_optimization(dry_run=args.dry_run, skip_benchmarks=args.skip_benchmarks)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return EXIT_INTERRUPTED
    except Exception as e:
        logger.exception(f"VM optimization failed: {e}")
        return EXIT_ERROR

    report_filename = None
    try:
        report_filename = optimizer.save_report(optimizer.generate_report(), args.output)
    except OSError as e:
        logger.error(f"Failed to save report: {e}")

    optimizer.print_summary(report_filename)
    return EXIT_CODES[outcome]


if __name__ == '__main__':
    sys.exit(main())

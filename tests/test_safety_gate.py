"""
Tests for the Safety Gate.

Organization
------------
- TestRejections: memory and disk-space vetoes
- TestAdjustments: overcommit override on small hosts without swap
"""

import pytest

from vm_optimizer.diff_engine import diff
from vm_optimizer.models import CurrentState, HostResources
from vm_optimizer.recommendation_calculator import recommend
from vm_optimizer.safety_gate import SafetyGate, check_safety


@pytest.fixture
def plan_inputs(make_profile, make_result, make_score, make_current):
    """Profile, recommendation and diffs for an 8 GiB host with no swap yet."""
    profile = make_profile(total_ram_mb=8192)
    current = make_current(swap_size_mb=0)
    rec = recommend(profile, make_result(), make_score(), current)
    return profile, rec, diff(current, rec, profile.total_ram_mb)


def resources(memory_mb=4096, disk_mb=100000, swap_mb=0):
    return HostResources(available_memory_mb=memory_mb, available_disk_mb=disk_mb, current_swap_mb=swap_mb)


class TestRejections:
    """Vetoes that abort the run before any change."""

    def test_low_memory_rejected(self, plan_inputs):
        profile, rec, diffs = plan_inputs
        outcome = check_safety(profile, rec, diffs, resources(memory_mb=30))

        assert outcome.ok is False
        assert 'memory' in outcome.reason.lower()

    def test_low_memory_rejected_even_without_changes(self, make_profile, make_result, make_score):
        profile = make_profile()
        rec = recommend(profile, make_result(), make_score(), CurrentState(values={}, swap_size_mb=0))
        current = CurrentState(values=rec.tunables(), swap_size_mb=rec.swap_size_mb)

        outcome = check_safety(profile, rec, diff(current, rec, profile.total_ram_mb), resources(memory_mb=30))

        assert outcome.ok is False

    def test_insufficient_disk_for_swap_rejected(self, plan_inputs):
        profile, rec, diffs = plan_inputs
        outcome = check_safety(profile, rec, diffs, resources(disk_mb=rec.swap_size_mb * 2 - 1))

        assert outcome.ok is False
        assert 'disk space' in outcome.reason

    def test_exactly_twice_swap_is_enough(self, plan_inputs):
        profile, rec, diffs = plan_inputs
        assert check_safety(profile, rec, diffs, resources(disk_mb=rec.swap_size_mb * 2)).ok is True

    def test_disk_space_ignored_when_swap_unchanged(self, make_profile, make_result, make_score):
        profile = make_profile()
        rec = recommend(profile, make_result(), make_score(), CurrentState(values={}, swap_size_mb=0))
        current = CurrentState(values={}, swap_size_mb=rec.swap_size_mb)
        diffs = diff(current, rec, profile.total_ram_mb)

        outcome = check_safety(profile, rec, diffs, resources(disk_mb=10, swap_mb=rec.swap_size_mb))

        assert outcome.ok is True

    def test_thresholds_from_config(self, plan_inputs):
        profile, rec, diffs = plan_inputs
        gate = SafetyGate({'safety': {'min_available_memory_mb': 5000}})
        assert gate.check(profile, rec, diffs, resources(memory_mb=4096)).ok is False


class TestAdjustments:
    """Overrides applied to an accepted recommendation."""

    def test_small_host_without_swap_forces_overcommit(self, make_profile, make_result, make_score,
                                                       make_current):
        profile = make_profile(total_ram_mb=512)
        current = make_current(swap_size_mb=0)
        rec = recommend(profile, make_result(), make_score(), current).with_overrides(overcommit_memory=0)

        outcome = check_safety(profile, rec, diff(current, rec, 512), resources())

        assert outcome.ok is True
        assert outcome.recommendation.overcommit_memory == 1
        assert outcome.adjustments
        assert rec.overcommit_memory == 0

    def test_small_host_with_swap_not_adjusted(self, make_profile, make_result, make_score, make_current):
        profile = make_profile(total_ram_mb=512)
        current = make_current(swap_size_mb=512)
        rec = recommend(profile, make_result(), make_score(), current).with_overrides(overcommit_memory=0)

        outcome = check_safety(profile, rec, diff(current, rec, 512), resources(swap_mb=512))

        assert outcome.recommendation.overcommit_memory == 0
        assert outcome.adjustments == ()

    def test_large_host_not_adjusted(self, plan_inputs):
        profile, rec, diffs = plan_inputs
        outcome = check_safety(profile, rec, diffs, resources())

        assert outcome.recommendation is rec
        assert outcome.adjustments == ()

"""
Tests for the Score Normalizer.

Organization
------------
- TestWeightedScore: cap and clamp arithmetic
- TestScoreNormalizer: per-resource scores, bounds and monotonicity
"""

import pytest

from vm_optimizer.score_normalizer import ScoreNormalizer, clamp, weighted_score


class TestWeightedScore:
    """Tests for the weighted_score helper."""

    def test_baseline_maps_to_half_with_default_cap(self):
        assert weighted_score([(100.0, 100.0, 1.0)], cap=2.0) == pytest.approx(50.0)

    def test_cap_maps_to_hundred(self):
        assert weighted_score([(1e9, 100.0, 1.0)], cap=2.0) == pytest.approx(100.0)

    def test_zero_value_clamped_to_one(self):
        assert weighted_score([(0.0, 100.0, 1.0)], cap=2.0) == 1.0

    def test_negative_value_treated_as_zero(self):
        assert weighted_score([(-50.0, 100.0, 1.0)], cap=2.0) == 1.0

    def test_clamp(self):
        assert clamp(150, 1, 100) == 100
        assert clamp(-3, 1, 100) == 1
        assert clamp(42, 1, 100) == 42


class TestScoreNormalizer:
    """Tests for per-resource scores."""

    def test_baseline_host_scores_fifty(self, make_profile, make_result):
        score = ScoreNormalizer().normalize(make_result(cpu_multi_thread_eps=3400.0), make_profile())

        assert score.cpu_score == pytest.approx(50.0)
        assert score.memory_score == pytest.approx(50.0)
        assert score.disk_score == pytest.approx(50.0)

    @pytest.mark.parametrize('factor', [0.0, 0.001, 1.0, 1000.0])
    def test_scores_always_within_bounds(self, make_profile, make_result, factor):
        result = make_result(
            cpu_single_thread_eps=1000.0 * factor,
            cpu_multi_thread_eps=3400.0 * factor,
            cpu_integer_ops_per_sec=1e7 * factor,
            cpu_float_ops_per_sec=8e6 * factor,
            memory_read_bandwidth_mb_s=20000.0 * factor,
            memory_write_bandwidth_mb_s=15000.0 * factor,
            memory_random_bandwidth_mb_s=2000.0 * factor,
            disk_sequential_read_mb_s=500.0 * factor,
            disk_sequential_write_mb_s=450.0 * factor,
            disk_random_read_iops=50000.0 * factor,
            disk_random_write_iops=40000.0 * factor,
        )
        for rotational in (False, True):
            score = ScoreNormalizer().normalize(result, make_profile(disk_is_rotational=rotational))
            for value in (score.cpu_score, score.memory_score, score.disk_score):
                assert 1.0 <= value <= 100.0

    def test_faster_cpu_scores_higher(self, make_profile, make_result):
        normalizer = ScoreNormalizer()
        profile = make_profile()
        slow = normalizer.cpu_score(make_result(cpu_single_thread_eps=500.0), profile)
        fast = normalizer.cpu_score(make_result(cpu_single_thread_eps=1500.0), profile)
        assert fast > slow

    def test_multi_thread_baseline_scales_with_cores(self, make_profile, make_result):
        normalizer = ScoreNormalizer()
        result = make_result(cpu_multi_thread_eps=3400.0)
        assert normalizer.cpu_score(result, make_profile(cpu_core_count=4)) > \
            normalizer.cpu_score(result, make_profile(cpu_core_count=16))

    def test_hdd_judged_against_hdd_baselines(self, make_profile, make_result):
        result = make_result(
            disk_sequential_read_mb_s=150.0,
            disk_sequential_write_mb_s=140.0,
            disk_random_read_iops=150.0,
            disk_random_write_iops=120.0,
        )
        normalizer = ScoreNormalizer()
        hdd = normalizer.disk_score(result, make_profile(disk_is_rotational=True))
        ssd = normalizer.disk_score(result, make_profile(disk_is_rotational=False))
        assert hdd == pytest.approx(50.0)
        assert ssd < hdd

    def test_component_cap_from_config(self, make_profile, make_result):
        normalizer = ScoreNormalizer({'normalization': {'component_cap': 4.0}})
        assert normalizer.memory_score(make_result()) == pytest.approx(25.0)

    def test_invalid_cap_rejected(self):
        with pytest.raises(ValueError):
            ScoreNormalizer({'normalization': {'component_cap': 0}})

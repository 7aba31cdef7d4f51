"""
Variance hysteresis policy tests.

Verifies the NARROW/ENLARGE state machine of VarianceHysteresisPolicy:
1. The first round builds the narrow configuration
2. Rebuilds happen only on a threshold crossing that needs the other configuration
3. In-range and "wrong direction" readings never rebuild (no thrashing)
4. Construction fails loud on missing arguments and invalid ranges
5. Replaced and abandoned engines are released

Usage:
    python tests/test_hysteresis.py
"""

import os
import random
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from support import CountingConfig, make_result, run_tests, variance_result
from adaptive_ga.adaptive import AdaptiveEngine
from adaptive_ga.engine import ENLARGE_ALTERER, NARROW_ALTERER, Engine, EngineBuilder
from adaptive_ga.errors import InvalidConfigurationError, InvalidRangeError
from adaptive_ga.hysteresis import AdaptiveMode, VarianceHysteresisPolicy, VarianceRange
from adaptive_ga.models import EvolutionResult, EvolutionStart


def new_policy(low=0.2, high=0.8, enlarge_fails=False):
    narrow = CountingConfig("narrow")
    enlarge = CountingConfig("enlarge", fail=enlarge_fails)
    policy = VarianceHysteresisPolicy(VarianceRange(low, high), narrow, enlarge)
    return policy, narrow, enlarge


def test_first_pull_builds_narrow():
    """VarianceRange(0.2, 0.8): the first pull builds and uses the narrow configuration."""
    policy, narrow, enlarge = new_policy()
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)

    assert narrow.builds == 0 and enlarge.builds == 0

    first = next(stream)

    assert narrow.builds == 1
    assert enlarge.builds == 0
    assert policy.mode is AdaptiveMode.NARROW
    assert first.engine_label == "narrow"
    assert first.generation == 0
    stream.close()


def test_variance_sequence_states():
    """Readings [0.1, 0.1, 0.9, 0.9, 0.5] from NARROW rebuild exactly at the two crossings."""
    policy, narrow, enlarge = new_policy()
    policy.select(None)

    observed = []
    for generation, variance in enumerate([0.1, 0.1, 0.9, 0.9, 0.5], start=1):
        engine = policy.select(variance_result(variance, generation))
        observed.append((policy.mode, policy.last_decision.rebuilt))
        assert engine is policy.state.cached_engine

    assert observed == [
        (AdaptiveMode.ENLARGE, True),
        (AdaptiveMode.ENLARGE, False),
        (AdaptiveMode.NARROW, True),
        (AdaptiveMode.NARROW, False),
        (AdaptiveMode.NARROW, False),
    ], observed
    assert narrow.builds == 2
    assert enlarge.builds == 1
    assert policy.builds == 3
    assert policy.state.switch_generations.to_list() == [1, 3]


def test_inverted_range_fails_at_construction():
    for low, high in [(0.9, 0.1), (-0.1, 0.5), (0.0, float("inf")), (float("nan"), 1.0)]:
        try:
            VarianceRange(low, high)
            assert False, f"VarianceRange({low}, {high}) should fail"
        except InvalidRangeError as e:
            assert isinstance(e, InvalidConfigurationError)
            assert isinstance(e, ValueError)

    # Degenerate but valid: a single admissible variance
    assert VarianceRange(0.5, 0.5).contains(0.5)


def test_no_thrash_inside_range():
    """After a crossing, any run of in-range readings leaves state and engine untouched."""
    policy, narrow, enlarge = new_policy()
    policy.select(None)
    engine = policy.select(variance_result(0.05, 1))
    assert policy.mode is AdaptiveMode.ENLARGE

    rng = random.Random(7)
    for generation in range(2, 52):
        assert policy.select(variance_result(rng.uniform(0.25, 0.75), generation)) is engine
        assert policy.mode is AdaptiveMode.ENLARGE
        assert policy.last_decision.rebuilt is False

    assert narrow.builds == 1
    assert enlarge.builds == 1


def test_single_crossing_single_rebuild():
    policy, narrow, enlarge = new_policy()
    policy.select(None)

    policy.select(variance_result(0.1, 1))
    assert enlarge.builds == 1
    policy.select(variance_result(0.1, 2))
    assert enlarge.builds == 1
    assert narrow.builds == 1


def test_symmetric_crossing_back_to_narrow():
    policy, narrow, enlarge = new_policy()
    policy.select(None)
    policy.select(variance_result(0.1, 1))

    policy.select(variance_result(2.0, 2))
    assert policy.mode is AdaptiveMode.NARROW
    assert narrow.builds == 2

    policy.select(variance_result(2.0, 3))
    assert policy.mode is AdaptiveMode.NARROW
    assert narrow.builds == 2
    assert enlarge.builds == 1


def test_wrong_direction_readings_never_rebuild():
    """NARROW with v > max and ENLARGE with v < min confirm the current mode."""
    policy, narrow, enlarge = new_policy()
    policy.select(None)

    policy.select(variance_result(50.0, 1))
    assert policy.mode is AdaptiveMode.NARROW
    assert narrow.builds == 1 and enlarge.builds == 0

    policy.select(variance_result(0.01, 2))
    assert policy.mode is AdaptiveMode.ENLARGE

    policy.select(make_result([3.0, 3.0, 3.0], generation=3))
    assert policy.mode is AdaptiveMode.ENLARGE
    assert enlarge.builds == 1


def test_boundaries_are_inside_the_range():
    # Fitness [0, 1] has sample variance exactly 0.5
    on_boundary = make_result([0.0, 1.0], generation=1)

    policy, narrow, enlarge = new_policy(0.5, 2.0)
    policy.select(None)
    policy.select(on_boundary)
    assert policy.mode is AdaptiveMode.NARROW

    policy, narrow, enlarge = new_policy(0.1, 0.5)
    policy.select(None)
    policy.select(make_result([1.0, 1.0], generation=1))
    assert policy.mode is AdaptiveMode.ENLARGE
    policy.select(on_boundary)
    assert policy.mode is AdaptiveMode.ENLARGE


def test_empty_population_counts_as_below_min():
    policy, narrow, enlarge = new_policy()
    policy.select(None)

    policy.select(EvolutionResult(generation=4, population=()))

    assert policy.mode is AdaptiveMode.ENLARGE
    assert policy.last_decision.variance == 0.0
    assert policy.last_decision.generation == 4


def test_missing_arguments_fail_at_construction():
    narrow = CountingConfig("narrow")
    enlarge = CountingConfig("enlarge")
    band = VarianceRange(0.2, 0.8)

    for args in [(None, narrow, enlarge), (band, None, enlarge), (band, narrow, None), (band, object(), enlarge)]:
        try:
            VarianceHysteresisPolicy(*args)
            assert False, f"construction with {args} should fail"
        except InvalidConfigurationError:
            pass

    assert narrow.builds == 0 and enlarge.builds == 0


def test_replaced_engine_is_released():
    policy, narrow, enlarge = new_policy()
    policy.select(None)
    first = narrow.engines[0]

    policy.select(variance_result(0.1, 1))
    assert first.closed
    assert not enlarge.engines[0].closed


def test_failed_rebuild_keeps_previous_state():
    policy, narrow, enlarge = new_policy(enlarge_fails=True)
    engine = policy.select(None)

    try:
        policy.select(variance_result(0.1, 1))
        assert False, "build failure should propagate"
    except RuntimeError as e:
        assert "enlarge" in str(e)

    assert policy.mode is AdaptiveMode.NARROW
    assert policy.state.cached_engine is engine
    assert not engine.closed
    assert policy.builds == 1


def test_close_releases_cached_engine():
    policy, narrow, enlarge = new_policy()
    policy.select(None)
    policy.select(variance_result(0.1, 1))

    policy.close()

    assert enlarge.engines[0].closed
    assert policy.state is None
    assert policy.mode is None
    assert policy.builds == 0

    # Reusable: the next first call starts over in NARROW
    policy.select(None)
    assert policy.mode is AdaptiveMode.NARROW
    assert narrow.builds == 2


def test_by_fitness_variance_derives_both_engines():
    base = EngineBuilder.for_problem("sphere", dimensions=2).population_size(10).seed(5)
    policy = VarianceHysteresisPolicy.by_fitness_variance(
        VarianceRange(0.2, 0.8), base, NARROW_ALTERER, ENLARGE_ALTERER
    )

    narrow_engine = policy.select(None)
    assert isinstance(narrow_engine, Engine)
    assert narrow_engine.label == "narrow"
    assert narrow_engine.params.population_size == 10

    enlarge_engine = policy.select(variance_result(0.0, 1))
    assert enlarge_engine.label == "enlarge"
    assert narrow_engine.closed
    assert not enlarge_engine.closed

    # The base builder is untouched
    assert base.parameters.alterer.label == "default"
    policy.close()
    assert enlarge_engine.closed


def test_by_fitness_variance_requires_arguments():
    base = EngineBuilder.for_problem("sphere", dimensions=2)
    for args in [
        (VarianceRange(0.2, 0.8), None, NARROW_ALTERER, ENLARGE_ALTERER),
        (VarianceRange(0.2, 0.8), base, None, ENLARGE_ALTERER),
        (None, base, NARROW_ALTERER, ENLARGE_ALTERER),
    ]:
        try:
            VarianceHysteresisPolicy.by_fitness_variance(*args)
            assert False, "missing argument should fail"
        except InvalidConfigurationError:
            pass


def test_policy_drives_one_stream_at_a_time():
    policy, narrow, enlarge = new_policy()
    first = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)

    try:
        AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)
        assert False, "second live stream should be rejected"
    except InvalidConfigurationError:
        pass

    next(first)
    first.close()

    second = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)
    assert next(second).engine_label == "narrow"
    second.close()
    assert narrow.builds == 2


def main():
    return run_tests("VARIANCE HYSTERESIS TESTS", [
        test_first_pull_builds_narrow,
        test_variance_sequence_states,
        test_inverted_range_fails_at_construction,
        test_no_thrash_inside_range,
        test_single_crossing_single_rebuild,
        test_symmetric_crossing_back_to_narrow,
        test_wrong_direction_readings_never_rebuild,
        test_boundaries_are_inside_the_range,
        test_empty_population_counts_as_below_min,
        test_missing_arguments_fail_at_construction,
        test_replaced_engine_is_released,
        test_failed_rebuild_keeps_previous_state,
        test_close_releases_cached_engine,
        test_by_fitness_variance_derives_both_engines,
        test_by_fitness_variance_requires_arguments,
        test_policy_drives_one_stream_at_a_time,
    ])


if __name__ == "__main__":
    sys.exit(main())

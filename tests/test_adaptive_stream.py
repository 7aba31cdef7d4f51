"""
Adaptive evolution stream tests.

Verifies the contract of AdaptiveEngine / AdaptiveEvolutionStream:
1. Laziness - nothing is selected, built or supplied before the first pull
2. Causal ordering - the policy always sees exactly the previous result
3. Round granularity - generations_per_round = 1, n and None
4. Fail loud - policy/build/engine errors reach the consumer, then the stream ends
5. The stream is ordered and refuses to split or to serve concurrent pulls
6. Closing or abandoning a stream releases the policy and its cached engine

Usage:
    python tests/test_adaptive_stream.py
"""

import gc
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, os.path.dirname(__file__))

from support import CountingConfig, StubEngine, make_result, run_tests
from adaptive_ga.adaptive import AdaptiveEngine, AdaptiveEvolutionStream, FunctionPolicy
from adaptive_ga.engine import AltererSettings, EngineBuilder
from adaptive_ga.errors import (
    ConcurrentPullError,
    EvaluationError,
    InvalidConfigurationError,
    StreamNotSplittableError
)
from adaptive_ga.hysteresis import VarianceHysteresisPolicy, VarianceRange
from adaptive_ga.models import EvolutionStart


class RecordingPolicy:
    """Callable policy remembering every `previous` it was shown."""

    def __init__(self, engine):
        self.engine = engine
        self.seen = []

    def __call__(self, previous):
        self.seen.append(previous)
        return self.engine


def test_nothing_happens_before_first_pull():
    config = CountingConfig("narrow")
    supplied = []

    def supplier():
        supplied.append(True)
        return EvolutionStart.empty()

    policy = VarianceHysteresisPolicy(VarianceRange(0.2, 0.8), config, CountingConfig("enlarge"))
    stream = AdaptiveEngine.from_supplier(supplier, policy)

    assert config.builds == 0
    assert supplied == []
    assert stream.previous is None
    assert stream.rounds == 0

    next(stream)
    assert config.builds == 1
    assert len(supplied) == 1

    next(stream)
    assert len(supplied) == 1, "supplier is only used for the first round"
    stream.close()


def test_policy_sees_exactly_the_previous_result():
    policy = RecordingPolicy(StubEngine("stub"))
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)

    results = list(stream.limit(6))

    assert [r.generation for r in results] == [0, 1, 2, 3, 4, 5]
    assert policy.seen[0] is None
    for i in range(1, 6):
        assert policy.seen[i] is results[i - 1], f"round {i} saw a stale result"
    assert stream.previous is results[-1]


def test_each_round_continues_from_previous_population():
    engine = StubEngine("stub")
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, lambda previous: engine)

    results = list(stream.limit(4))

    assert engine.starts[0].is_fresh
    for i in range(1, 4):
        start = engine.starts[i]
        assert start.generation == results[i - 1].generation
        assert start.population is results[i - 1].population


def test_from_initial_state_continues_the_given_population():
    seed_population = make_result([1.0, 4.0, 9.0], generation=7).population
    initial = EvolutionStart(population=seed_population, generation=7)
    engine = StubEngine("stub")

    stream = AdaptiveEngine.from_initial_state(initial, lambda previous: engine)
    results = list(stream.limit(3))

    assert [r.generation for r in results] == [8, 9, 10]
    assert engine.starts[0] is initial
    assert len(engine.starts) == 3


def test_construction_arguments_are_required():
    for build in [
        lambda: AdaptiveEngine(None),
        lambda: AdaptiveEngine.from_supplier(None, lambda previous: None),
        lambda: AdaptiveEngine.from_supplier(EvolutionStart.empty, None),
        lambda: AdaptiveEngine.from_initial_state(None, lambda previous: None),
        lambda: AdaptiveEngine(lambda previous: None, generations_per_round=0),
        lambda: AdaptiveEngine(lambda previous: None, generations_per_round=True),
        lambda: AdaptiveEngine(lambda previous: None, generations_per_round="2"),
        lambda: AdaptiveEngine("not a policy"),
    ]:
        try:
            build()
            assert False, "construction should fail"
        except InvalidConfigurationError:
            pass


def test_policy_error_propagates_then_stream_ends():
    boom = RuntimeError("policy exploded")
    engine = StubEngine("stub")
    calls = []

    def policy(previous):
        calls.append(previous)
        if len(calls) == 3:
            raise boom
        return engine

    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)
    next(stream)
    next(stream)

    try:
        next(stream)
        assert False, "policy error should propagate"
    except RuntimeError as e:
        assert e is boom

    assert stream.exhausted
    try:
        next(stream)
        assert False, "exhausted stream should stop"
    except StopIteration:
        pass
    assert len(calls) == 3


def test_build_error_propagates_and_releases_policy():
    policy = VarianceHysteresisPolicy(
        VarianceRange(0.2, 0.8), CountingConfig("narrow", fail=True), CountingConfig("enlarge")
    )
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)

    try:
        next(stream)
        assert False, "build failure should propagate"
    except RuntimeError as e:
        assert "narrow" in str(e)

    assert list(stream) == []

    # The policy is free to drive a new stream
    AdaptiveEngine.from_supplier(EvolutionStart.empty, policy).close()


def test_engine_error_propagates():
    def broken(genotype):
        raise ZeroDivisionError("bad landscape")

    builder = EngineBuilder(broken, dimensions=2).population_size(10)
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, lambda previous: builder.build())

    try:
        next(stream)
        assert False, "evaluation failure should propagate"
    except EvaluationError as e:
        assert isinstance(e.__cause__, ZeroDivisionError)

    assert stream.exhausted


def test_policy_returning_nothing_fails():
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, lambda previous: None)
    try:
        next(stream)
        assert False, "a missing engine should fail"
    except InvalidConfigurationError:
        pass


def test_stream_is_ordered_and_not_splittable():
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, lambda previous: StubEngine("stub"))

    assert AdaptiveEvolutionStream.ORDERED is True
    assert AdaptiveEvolutionStream.SPLITTABLE is False
    try:
        stream.split()
        assert False, "split should be refused"
    except StreamNotSplittableError:
        pass
    stream.close()


def test_reentrant_pull_is_rejected():
    holder = {}

    def greedy(previous):
        return next(holder["stream"])

    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, greedy)
    holder["stream"] = stream

    try:
        next(stream)
        assert False, "pull during a pull should fail"
    except ConcurrentPullError:
        pass
    assert stream.exhausted


def test_rounds_of_n_generations():
    policy = RecordingPolicy(StubEngine("stub"))
    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy, generations_per_round=3)

    results = list(stream.limit(7))

    assert [r.generation for r in results] == list(range(7))
    assert stream.rounds == 3
    assert policy.seen == [None, results[2], results[5]]


def test_rounds_until_engine_stops():
    builder = EngineBuilder.for_problem("sphere", dimensions=2).population_size(10).seed(11)
    limited = builder.limit(4)
    built = []

    def policy(previous):
        engine = limited.build()
        built.append(engine)
        return engine

    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy, generations_per_round=None)
    results = list(stream.limit(10))

    assert [r.generation for r in results] == list(range(10))
    assert stream.rounds == 3
    assert len(built) == 3


def test_empty_round_ends_the_stream():
    stream = AdaptiveEngine.from_supplier(
        EvolutionStart.empty, lambda previous: StubEngine("stub", generations=0)
    )
    assert list(stream) == []
    assert stream.exhausted


def test_close_releases_the_cached_engine():
    narrow = CountingConfig("narrow")
    policy = VarianceHysteresisPolicy(VarianceRange(0.2, 0.8), narrow, CountingConfig("enlarge"))

    with AdaptiveEngine.from_supplier(EvolutionStart.empty, policy) as stream:
        next(stream)
        next(stream)

    assert narrow.engines[0].closed
    assert stream.exhausted
    assert policy.state is None


def test_abandoned_stream_releases_policy():
    narrow = CountingConfig("narrow")
    policy = VarianceHysteresisPolicy(VarianceRange(0.2, 0.8), narrow, CountingConfig("enlarge"))
    adaptive = AdaptiveEngine(policy)

    # Stop pulling after three results and never close the stream
    results = list(adaptive.stream(EvolutionStart.empty).limit(3))
    gc.collect()

    assert len(results) == 3
    assert narrow.engines[0].closed
    assert policy.state is None

    restarted = adaptive.stream(EvolutionStart.empty)
    assert next(restarted).generation == 0
    assert narrow.builds == 2
    restarted.close()


def test_function_policy_is_shareable():
    policy = FunctionPolicy(lambda previous: StubEngine("stub"))
    first = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)
    second = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)

    assert next(first).generation == 0
    assert next(second).generation == 0
    first.close()
    second.close()


def test_adaptive_run_on_sphere():
    base = EngineBuilder.for_problem("sphere", dimensions=3).population_size(20).seed(3)
    policy = VarianceHysteresisPolicy.by_fitness_variance(
        VarianceRange(0.01, 1.0), base,
        AltererSettings(label="narrow", mutation_sigma=0.01, crossover_mode="mean"),
        AltererSettings(label="enlarge", mutation_fraction=0.4, mutation_probability=0.8, mutation_sigma=0.3)
    )

    stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)
    results = list(stream.limit(30))
    stream.close()

    assert [r.generation for r in results] == list(range(30))
    assert {r.engine_label for r in results} <= {"narrow", "enlarge"}
    assert results[0].engine_label == "narrow"

    # Elitism: the best fitness never gets worse across engine switches
    best = [r.best().fitness for r in results]
    assert all(later <= earlier for earlier, later in zip(best, best[1:])), best


def main():
    return run_tests("ADAPTIVE STREAM TESTS", [
        test_nothing_happens_before_first_pull,
        test_policy_sees_exactly_the_previous_result,
        test_each_round_continues_from_previous_population,
        test_from_initial_state_continues_the_given_population,
        test_construction_arguments_are_required,
        test_policy_error_propagates_then_stream_ends,
        test_build_error_propagates_and_releases_policy,
        test_engine_error_propagates,
        test_policy_returning_nothing_fails,
        test_stream_is_ordered_and_not_splittable,
        test_reentrant_pull_is_rejected,
        test_rounds_of_n_generations,
        test_rounds_until_engine_stops,
        test_empty_round_ends_the_stream,
        test_close_releases_the_cached_engine,
        test_abandoned_stream_releases_policy,
        test_function_policy_is_shareable,
        test_adaptive_run_on_sphere,
    ])


if __name__ == "__main__":
    sys.exit(main())

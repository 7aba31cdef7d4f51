"""
Shared helpers for the test scripts.

- make_result() / variance_result(): hand-built EvolutionResult snapshots
- StubEngine / CountingConfig: buildable configurations that count builds
  and record the start states they were streamed from
- FakeCouchbaseClient: in-memory stand-in for CouchbaseClient
- run_tests(): script-mode runner printing a PASSED/FAILED summary
"""

import math
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from adaptive_ga.models import EvolutionResult, Individual


def make_result(fitness_values, generation=0, label="", maximize=True):
    """Snapshot whose individuals carry the given fitness values."""
    population = tuple(
        Individual(genotype=(0.0 if v is None else float(v),), fitness=v, generation=generation)
        for v in fitness_values
    )
    return EvolutionResult(generation=generation, population=population,
                           engine_label=label, maximize=maximize)


def variance_result(variance, generation=0):
    """Two-individual snapshot whose sample fitness variance is `variance`."""
    return make_result([0.0, math.sqrt(2.0 * variance)], generation=generation)


class StubEngine:
    """Unbounded generation source producing fixed fitness values."""

    def __init__(self, label, fitness=(1.0, 2.0), generations=None):
        self.label = label
        self.fitness = fitness
        self.generations = generations
        self.starts = []
        self.closed = False

    def stream(self, start):
        self.starts.append(start)

        def generate():
            current = start
            produced = 0
            while self.generations is None or produced < self.generations:
                generation = current.generation if current.is_fresh else current.generation + 1
                result = make_result(self.fitness, generation=generation, label=self.label)
                produced += 1
                yield result
                current = result.to_evolution_start()

        return generate()

    def close(self):
        self.closed = True


class CountingConfig:
    """Buildable configuration counting how often build() is called."""

    def __init__(self, label, fitness=(1.0, 2.0), generations=None, fail=False):
        self.label = label
        self.fitness = fitness
        self.generations = generations
        self.fail = fail
        self.engines = []

    @property
    def builds(self):
        return len(self.engines)

    def build(self):
        if self.fail:
            raise RuntimeError(f"cannot build {self.label}")
        engine = StubEngine(self.label, self.fitness, self.generations)
        self.engines.append(engine)
        return engine


class FakeCouchbaseClient:
    """Dictionary-backed replacement for CouchbaseClient."""

    def __init__(self):
        self.collections = {}

    def save_document(self, collection_name, document_id, content):
        self.collections.setdefault(collection_name, {})[document_id] = dict(content)

    def get_document(self, collection_name, document_id):
        try:
            return dict(self.collections[collection_name][document_id])
        except KeyError as e:
            raise Exception(f"Failed to get document '{document_id}' from '{collection_name}'") from e

    def documents(self, collection_name):
        return self.collections.get(collection_name, {})


def run_tests(title, tests):
    """Run test functions outside pytest; returns a process exit code."""
    print("\n" + "="*60)
    print(title)
    print("="*60)

    passed = 0
    for test_func in tests:
        try:
            test_func()
            print(f"✓ PASSED - {test_func.__name__}")
            passed += 1
        except AssertionError as e:
            print(f"✗ FAILED - {test_func.__name__}: {e}")
        except Exception as e:
            print(f"✗ UNEXPECTED ERROR - {test_func.__name__}: {type(e).__name__}: {e}")

    total = len(tests)
    print("\n" + "="*60)
    print(f"Tests Passed: {passed}/{total}")
    print("="*60)
    return 0 if passed == total else 1

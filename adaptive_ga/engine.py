"""
Evolution Engine - one configured genetic algorithm variant.

This module turns a set of GA parameters into a runnable generation source.
An adaptive run switches between several such engines; each of them only
knows how to go from one generation to the next.

Key Components:
- AltererSettings: How strongly mutation/crossover act (narrow vs. enlarge)
- EngineParameters: Complete, immutable engine description
- validate_engine_parameters(): Fail-fast parameter checks
- EngineBuilder: Immutable copy-on-write builder; build() creates an Engine
- Engine: evolve() performs Gen N -> Gen N+1, stream() yields generations
- LimitedEngine: Engine whose stream stops after a fixed number of generations

Building an engine is the expensive step: with evaluation_workers > 1 the
engine allocates its own ThreadPoolExecutor, released by close().

Used by: adaptive.AdaptiveEngine (via selection policies), scripts
Related: ga_operators.py (operators), fitness_evaluator.py (evaluation),
         hysteresis.py (switches between a narrow and an enlarge builder)
"""

import itertools
import math
import random
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Iterator, Optional, Tuple

from adaptive_ga.errors import AdaptiveEngineError, InvalidConfigurationError
from adaptive_ga.fitness_evaluator import PROBLEMS, FitnessFunction, evaluate_population
from adaptive_ga.ga_operators import (
    CROSSOVER_MODES,
    create_immigrant,
    crossover,
    mutate_individual,
    select_elite,
    tournament_select
)
from adaptive_ga.models import EvolutionResult, EvolutionStart


@dataclass(frozen=True)
class AltererSettings:
    """
    Strength of the variation operators.

    An exploitative ("narrow") alterer uses few, small mutations and mean
    crossover, pulling the population together. An explorative ("enlarge")
    alterer mutates more genes by larger steps and recombines uniformly,
    spreading the population out.
    """

    label: str = "default"
    mutation_fraction: float = 0.2      # Fraction of children created by mutation
    mutation_probability: float = 0.1   # Per-gene mutation probability
    mutation_sigma: float = 0.1         # Step size relative to the search interval width
    crossover_mode: str = "uniform"     # "uniform" | "mean" | "single_gene"


NARROW_ALTERER = AltererSettings(
    label="narrow",
    mutation_fraction=0.1,
    mutation_probability=0.05,
    mutation_sigma=0.02,
    crossover_mode="mean"
)

ENLARGE_ALTERER = AltererSettings(
    label="enlarge",
    mutation_fraction=0.4,
    mutation_probability=0.5,
    mutation_sigma=0.25,
    crossover_mode="uniform"
)


PARENT_SELECTIONS = ("elite", "tournament")


@dataclass(frozen=True)
class EngineParameters:
    """Complete description of one engine configuration."""

    fitness_function: FitnessFunction
    dimensions: int
    bounds: Tuple[float, float] = (-1.0, 1.0)
    maximize: bool = True
    population_size: int = 20
    elite_fraction: float = 0.2
    immigration_fraction: float = 0.0
    alterer: AltererSettings = field(default_factory=AltererSettings)
    parent_selection: str = "elite"     # "elite" (uniform among elite) | "tournament"
    tournament_size: int = 3
    evaluation_workers: int = 1
    seed: Optional[int] = None


def validate_engine_parameters(params: EngineParameters) -> None:
    """
    Validate GA parameters before building an engine.

    Ensures fractions don't exceed 1.0 and the population is large enough
    to support all genetic operators.

    Raises:
        InvalidConfigurationError: If parameters are invalid or incompatible

    Example:
        >>> validate_engine_parameters(EngineParameters(sphere, 2))            # OK
        >>> validate_engine_parameters(EngineParameters(sphere, 2, population_size=3))
        InvalidConfigurationError: population_size must be >= 5 ...
    """
    if params.fitness_function is None:
        raise InvalidConfigurationError("fitness_function is required")

    if params.dimensions < 1:
        raise InvalidConfigurationError(f"dimensions must be >= 1, got {params.dimensions}")

    low, high = params.bounds
    if not (math.isfinite(low) and math.isfinite(high)) or low >= high:
        raise InvalidConfigurationError(f"bounds must be finite with lower < upper, got {params.bounds}")

    if params.population_size < 5:
        raise InvalidConfigurationError(
            f"population_size must be >= 5 for meaningful evolution, got {params.population_size}"
        )

    if not (0.0 < params.elite_fraction <= 0.5):
        raise InvalidConfigurationError(f"elite_fraction must be in (0.0, 0.5], got {params.elite_fraction}")

    alterer = params.alterer
    if not (0.0 <= alterer.mutation_fraction <= 0.5):
        raise InvalidConfigurationError(
            f"mutation_fraction must be in [0.0, 0.5], got {alterer.mutation_fraction}"
        )

    if not (0.0 <= alterer.mutation_probability <= 1.0):
        raise InvalidConfigurationError(
            f"mutation_probability must be in [0.0, 1.0], got {alterer.mutation_probability}"
        )

    if alterer.mutation_sigma < 0.0:
        raise InvalidConfigurationError(f"mutation_sigma must be >= 0, got {alterer.mutation_sigma}")

    if alterer.crossover_mode not in CROSSOVER_MODES:
        raise InvalidConfigurationError(
            f"crossover_mode must be one of {CROSSOVER_MODES}, got '{alterer.crossover_mode}'"
        )

    if not (0.0 <= params.immigration_fraction <= 0.3):
        raise InvalidConfigurationError(
            f"immigration_fraction must be in [0.0, 0.3], got {params.immigration_fraction}"
        )

    if params.parent_selection not in PARENT_SELECTIONS:
        raise InvalidConfigurationError(
            f"parent_selection must be one of {PARENT_SELECTIONS}, got '{params.parent_selection}'"
        )

    if params.tournament_size < 1:
        raise InvalidConfigurationError(f"tournament_size must be >= 1, got {params.tournament_size}")

    if params.evaluation_workers < 1:
        raise InvalidConfigurationError(f"evaluation_workers must be >= 1, got {params.evaluation_workers}")

    # Sum check (worst case: odd generation with immigration)
    max_fraction = params.elite_fraction + alterer.mutation_fraction + params.immigration_fraction
    if max_fraction >= 1.0:
        raise InvalidConfigurationError(
            f"Sum of fractions too high ({max_fraction:.2f} >= 1.0). "
            f"elite={params.elite_fraction}, mutation={alterer.mutation_fraction}, "
            f"immigration={params.immigration_fraction}. Must leave room for crossover!"
        )

    elite_count = int(params.population_size * params.elite_fraction)
    mutation_count = int(params.population_size * alterer.mutation_fraction)
    immigrant_count = math.ceil(params.population_size * params.immigration_fraction)

    if elite_count < 1:
        raise InvalidConfigurationError(
            f"elite_fraction too low: produces 0 elite for population={params.population_size}"
        )

    min_crossover = params.population_size - elite_count - mutation_count - immigrant_count
    if min_crossover < 1:
        raise InvalidConfigurationError(
            f"Parameters leave no room for crossover! "
            f"pop={params.population_size}, elite={elite_count}, mutation={mutation_count}, "
            f"immigrant={immigrant_count}, crossover would be {min_crossover}"
        )


class EngineBuilder:
    """
    Immutable builder for Engine instances.

    Every configuration method returns a new builder, so one base builder can
    safely derive several variants:

        base = EngineBuilder.for_problem("sphere", dimensions=5)
        narrow = base.alterer(NARROW_ALTERER)
        enlarge = base.alterer(ENLARGE_ALTERER)

    build() validates the parameters and creates a fresh Engine each call;
    the only state it touches is the count of engines built so far.
    """

    def __init__(
        self,
        fitness_function: FitnessFunction = None,
        dimensions: int = 1,
        bounds: Tuple[float, float] = (-1.0, 1.0),
        parameters: Optional[EngineParameters] = None
    ):
        if parameters is None:
            parameters = EngineParameters(
                fitness_function=fitness_function,
                dimensions=dimensions,
                bounds=tuple(bounds)
            )
        self._params = parameters
        self._builds = 0

    @classmethod
    def for_problem(cls, name: str, dimensions: int = 2) -> 'EngineBuilder':
        """Builder for one of the registered benchmark problems."""
        if name not in PROBLEMS:
            raise InvalidConfigurationError(f"Unknown problem '{name}', expected one of {sorted(PROBLEMS)}")

        function, bounds, maximize = PROBLEMS[name]
        builder = cls(function, dimensions, bounds)
        return builder.maximizing() if maximize else builder.minimizing()

    @property
    def parameters(self) -> EngineParameters:
        return self._params

    def _with(self, **changes) -> 'EngineBuilder':
        return EngineBuilder(parameters=replace(self._params, **changes))

    def copy(self) -> 'EngineBuilder':
        return EngineBuilder(parameters=self._params)

    def alterer(self, settings: AltererSettings) -> 'EngineBuilder':
        return self._with(alterer=settings)

    def population_size(self, size: int) -> 'EngineBuilder':
        return self._with(population_size=size)

    def elite_fraction(self, fraction: float) -> 'EngineBuilder':
        return self._with(elite_fraction=fraction)

    def immigration_fraction(self, fraction: float) -> 'EngineBuilder':
        return self._with(immigration_fraction=fraction)

    def maximizing(self) -> 'EngineBuilder':
        return self._with(maximize=True)

    def minimizing(self) -> 'EngineBuilder':
        return self._with(maximize=False)

    def parent_selection(self, mode: str, tournament_size: int = 3) -> 'EngineBuilder':
        return self._with(parent_selection=mode, tournament_size=tournament_size)

    def evaluation_workers(self, workers: int) -> 'EngineBuilder':
        return self._with(evaluation_workers=workers)

    def seed(self, seed: Optional[int]) -> 'EngineBuilder':
        return self._with(seed=seed)

    def limit(self, generations: int) -> 'LimitedEngineBuilder':
        """Configuration whose built engines stop after `generations` results per stream."""
        return LimitedEngineBuilder(self, generations)

    def build(self) -> 'Engine':
        """
        Validate and create a new Engine.

        With a seed, every build of this builder gets its own random stream
        derived from (seed, alterer label, build number): rebuilding a configuration
        after a switch continues with fresh draws, and a new builder with the
        same seed reproduces the whole sequence of builds.
        """
        validate_engine_parameters(self._params)
        engine = Engine(self._params, build_index=self._builds)
        self._builds += 1
        return engine

    def __repr__(self) -> str:
        return f"EngineBuilder(alterer={self._params.alterer.label!r}, population={self._params.population_size})"


class LimitedEngineBuilder:
    """Builds LimitedEngine instances; pairs with generations_per_round=None."""

    def __init__(self, builder: EngineBuilder, generations: int):
        if generations < 1:
            raise InvalidConfigurationError(f"generations must be >= 1, got {generations}")
        self.builder = builder
        self.generations = generations

    def copy(self) -> 'LimitedEngineBuilder':
        return LimitedEngineBuilder(self.builder.copy(), self.generations)

    def alterer(self, settings: AltererSettings) -> 'LimitedEngineBuilder':
        return LimitedEngineBuilder(self.builder.alterer(settings), self.generations)

    def build(self) -> 'LimitedEngine':
        return self.builder.build().limit(self.generations)

    def __repr__(self) -> str:
        return f"LimitedEngineBuilder({self.builder!r}, generations={self.generations})"


class Engine:
    """
    Runnable genetic algorithm configuration.

    evolve() performs exactly one generation step:
    - Fresh start (empty population): create and evaluate a random initial
      population; the result is the start's generation (usually 0)
    - Continuation: elite + crossover + mutation (+ immigrants on odd
      generations) -> generation N+1

    Elite fitness is carried forward; only children are evaluated.

    Example:
        >>> with EngineBuilder.for_problem("sphere", 3).build() as engine:
        ...     for result in engine.limit(10).stream(EvolutionStart.empty()):
        ...         print(result.generation, result.mean_fitness)
    """

    def __init__(self, params: EngineParameters, build_index: int = 0):
        self.params = params
        self.label = params.alterer.label
        self.build_index = build_index
        if params.seed is None:
            self._rng = random.Random()
        else:
            self._rng = random.Random(f"{params.seed}:{self.label}:{build_index}")
        self._executor = (
            ThreadPoolExecutor(max_workers=params.evaluation_workers, thread_name_prefix=f"eval-{self.label}")
            if params.evaluation_workers > 1 else None
        )
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def initial_start(self) -> EvolutionStart:
        return EvolutionStart.empty()

    def evolve(self, start: EvolutionStart) -> EvolutionResult:
        """
        Evolve from generation N to generation N+1 (or create generation 0).

        Raises:
            AdaptiveEngineError: If the engine was closed
            EvaluationError: If fitness evaluation fails (fail loud)
            OperatorError: If the start population is incompatible
        """
        if self._closed:
            raise AdaptiveEngineError(f"Engine '{self.label}' is closed")

        if start.is_fresh:
            return self._initial_generation(start.generation)

        return self._next_generation(start)

    def stream(self, start: EvolutionStart) -> Iterator[EvolutionResult]:
        """Unbounded, lazy iterator of generations starting from `start`."""
        def generate():
            current = start
            while True:
                result = self.evolve(current)
                yield result
                current = result.to_evolution_start()

        return generate()

    def limit(self, generations: int) -> 'LimitedEngine':
        return LimitedEngine(self, generations)

    def close(self) -> None:
        """Release the evaluation executor. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"Engine(label={self.label!r}, population={self.params.population_size})"

    # -------------------------------------------------------------------------
    # Generation steps
    # -------------------------------------------------------------------------

    def _initial_generation(self, generation: int) -> EvolutionResult:
        params = self.params
        population = [
            create_immigrant(generation, params.dimensions, params.bounds, self._rng, type="initial")
            for _ in range(params.population_size)
        ]
        evaluate_population(population, params.fitness_function, self._executor)

        return EvolutionResult(
            generation=generation,
            population=tuple(population),
            engine_label=self.label,
            maximize=params.maximize
        )

    def _next_generation(self, start: EvolutionStart) -> EvolutionResult:
        params = self.params
        alterer = params.alterer
        next_gen = start.generation + 1

        # Never touch the previous snapshot's individuals
        parents = [ind if ind.fitness is not None else replace(ind) for ind in start.population]
        evaluate_population(parents, params.fitness_function, self._executor)

        # STEP 1: Select elite
        elite = select_elite(parents, params.elite_fraction, params.maximize)

        # STEP 2: Child counts (immigration on ODD generations only)
        mutation_count = int(params.population_size * alterer.mutation_fraction)
        if next_gen % 2 == 0:
            immigrant_count = 0
        else:
            immigrant_count = math.ceil(params.population_size * params.immigration_fraction)
        crossover_count = max(0, params.population_size - len(elite) - mutation_count - immigrant_count)

        # STEP 3: Create children
        children = []
        for _ in range(crossover_count):
            p1 = self._pick_parent(parents, elite)
            p2 = self._pick_parent(parents, elite)
            children.append(crossover(p1, p2, mode=alterer.crossover_mode, rng=self._rng))

        for _ in range(mutation_count):
            parent = self._pick_parent(parents, elite)
            children.append(mutate_individual(
                parent,
                probability=alterer.mutation_probability,
                sigma=alterer.mutation_sigma,
                bounds=params.bounds,
                rng=self._rng
            ))

        for _ in range(immigrant_count):
            children.append(create_immigrant(next_gen, params.dimensions, params.bounds, self._rng))

        for child in children:
            child.generation = next_gen

        # STEP 4: Evaluate children only (elite fitness carries forward)
        evaluate_population(children, params.fitness_function, self._executor)

        # STEP 5: Carry elite forward with lineage pointing at themselves
        carried = [
            replace(ind, generation=next_gen, type="elite", parents=[ind.individual_id])
            for ind in elite
        ]

        return EvolutionResult(
            generation=next_gen,
            population=tuple(carried + children),
            engine_label=self.label,
            maximize=params.maximize
        )

    def _pick_parent(self, parents, elite):
        """Uniform choice among the elite, or a tournament over the whole previous population."""
        params = self.params
        if params.parent_selection == "tournament":
            return tournament_select(parents, params.tournament_size, params.maximize, self._rng)
        return self._rng.choice(elite)


class LimitedEngine:
    """Engine view whose stream stops after `generations` results."""

    def __init__(self, engine: Engine, generations: int):
        if generations < 1:
            raise InvalidConfigurationError(f"generations must be >= 1, got {generations}")
        self.engine = engine
        self.generations = generations

    @property
    def label(self) -> str:
        return self.engine.label

    def stream(self, start: EvolutionStart) -> Iterator[EvolutionResult]:
        """At most `generations` results; closing it closes the engine's own stream."""
        def generate():
            source = self.engine.stream(start)
            try:
                yield from itertools.islice(source, self.generations)
            finally:
                source.close()

        return generate()

    def close(self) -> None:
        self.engine.close()

    def __repr__(self) -> str:
        return f"LimitedEngine({self.engine!r}, generations={self.generations})"

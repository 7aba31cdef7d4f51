"""
Streaming moment statistics for population fitness.

MomentStatistics is a Welford accumulator: it consumes fitness values one at
a time and keeps count, mean and the sum of squared deviations (M2), so the
variance is available after a single pass without materializing the fitness
list. Two accumulators can be merged (Chan et al. parallel update), which is
how per-chunk statistics would be combined.

Conventions:
- variance is the sample variance (M2 / (n - 1))
- fewer than two values -> variance 0.0
- an empty population -> mean 0.0, variance 0.0

Used by: models.EvolutionResult (on-demand statistics),
         hysteresis.VarianceHysteresisPolicy (adaptation signal),
         experiment.calculate_generation_stats()
"""

import math
from typing import Callable, Iterable, Optional


class MomentStatistics:
    """
    Single-pass mean/variance accumulator (Welford's algorithm).

    Example:
        >>> stats = MomentStatistics()
        >>> stats.accept_all([1.0, 2.0, 3.0, 4.0])
        >>> stats.mean      # 2.5
        >>> stats.variance  # 1.666...
    """

    def __init__(self):
        self._count = 0
        self._mean = 0.0
        self._m2 = 0.0
        self._sum = 0.0
        self._min = math.inf
        self._max = -math.inf

    def accept(self, value: float) -> None:
        value = float(value)
        if math.isnan(value):
            raise ValueError("Cannot accumulate NaN fitness value")

        self._count += 1
        delta = value - self._mean
        self._mean += delta / self._count
        self._m2 += delta * (value - self._mean)
        self._sum += value
        self._min = min(self._min, value)
        self._max = max(self._max, value)

    def accept_all(self, values: Iterable[float]) -> None:
        for value in values:
            self.accept(value)

    def combine(self, other: 'MomentStatistics') -> 'MomentStatistics':
        """
        Merge another accumulator into this one and return self.

        Uses the pairwise update, so the result equals accumulating both
        value streams into one instance.
        """
        if other._count == 0:
            return self
        if self._count == 0:
            self._count = other._count
            self._mean = other._mean
            self._m2 = other._m2
            self._sum = other._sum
            self._min = other._min
            self._max = other._max
            return self

        count = self._count + other._count
        delta = other._mean - self._mean
        self._m2 += other._m2 + delta * delta * self._count * other._count / count
        self._mean += delta * other._count / count
        self._count = count
        self._sum += other._sum
        self._min = min(self._min, other._min)
        self._max = max(self._max, other._max)
        return self

    @property
    def count(self) -> int:
        return self._count

    @property
    def mean(self) -> float:
        return self._mean

    @property
    def variance(self) -> float:
        if self._count < 2:
            return 0.0
        return self._m2 / (self._count - 1)

    @property
    def std(self) -> float:
        return math.sqrt(self.variance)

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def min(self) -> Optional[float]:
        return self._min if self._count > 0 else None

    @property
    def max(self) -> Optional[float]:
        return self._max if self._count > 0 else None

    def __repr__(self) -> str:
        return (
            f"MomentStatistics(count={self._count}, mean={self._mean:.6g}, "
            f"variance={self.variance:.6g})"
        )


def fitness_moments(
    population: Iterable,
    fitness: Optional[Callable] = None
) -> MomentStatistics:
    """
    Accumulate fitness moments over a population in one pass.

    Args:
        population: Iterable of individuals
        fitness: Extractor returning an individual's fitness
                 (default: the individual's .fitness attribute)

    Returns:
        MomentStatistics over every non-None fitness value
    """
    extract = fitness if fitness is not None else (lambda ind: ind.fitness)

    stats = MomentStatistics()
    for individual in population:
        value = extract(individual)
        if value is not None:
            stats.accept(value)
    return stats


def fitness_variance(
    population: Iterable,
    fitness: Optional[Callable] = None
) -> float:
    """
    Sample variance of the population's fitness values.

    Empty populations (or populations without any evaluated individual)
    have variance 0.0 by convention.
    """
    return fitness_moments(population, fitness).variance

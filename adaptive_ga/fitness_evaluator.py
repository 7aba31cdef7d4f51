"""
Fitness evaluation for real-valued genotypes.

This module maps genotypes to fitness values and evaluates populations:
1. Benchmark fitness functions (sphere, rastrigin, sin_cos)
2. evaluate_individual(): one genotype, fail loud on bad values
3. evaluate_population(): every unevaluated individual, optionally on an
   executor owned by the engine

Elite individuals carry their fitness forward, so evaluate_population()
only touches individuals whose fitness is still None.

Used by: engine.Engine (initial population and children of every generation)
Creates: Fitness scores
Critical for: Selection pressure, the variance signal used for adaptation
"""

import math
from concurrent.futures import Executor
from typing import Callable, Dict, List, Optional, Sequence

from adaptive_ga.errors import EvaluationError
from adaptive_ga.models import Individual


FitnessFunction = Callable[[Sequence[float]], float]


def sphere(x: Sequence[float]) -> float:
    """Sum of squares. Minimum 0 at the origin."""
    return sum(v * v for v in x)


def rastrigin(x: Sequence[float]) -> float:
    """Highly multimodal. Minimum 0 at the origin."""
    return 10.0 * len(x) + sum(v * v - 10.0 * math.cos(2.0 * math.pi * v) for v in x)


def sin_cos(x: Sequence[float]) -> float:
    """sin(x0) * cos(x1), defined on [0, 2*pi]^2."""
    return math.sin(x[0]) * math.cos(x[1])


# name -> (function, default bounds, maximize)
PROBLEMS: Dict[str, tuple] = {
    "sphere": (sphere, (-5.12, 5.12), False),
    "rastrigin": (rastrigin, (-5.12, 5.12), False),
    "sin_cos": (sin_cos, (0.0, 2.0 * math.pi), False),
}


def evaluate_individual(
    individual: Individual,
    fitness_function: FitnessFunction
) -> float:
    """
    Evaluate one individual's genotype.

    Returns:
        Finite fitness value

    Raises:
        EvaluationError: If the fitness function raises or returns NaN/inf
    """
    try:
        value = float(fitness_function(individual.genotype))
    except Exception as e:
        raise EvaluationError(
            f"Fitness function failed for individual {individual.individual_id[:8]}: {e}"
        ) from e

    if not math.isfinite(value):
        raise EvaluationError(
            f"Fitness function returned non-finite value {value} "
            f"for individual {individual.individual_id[:8]}"
        )
    return value


def evaluate_population(
    individuals: List[Individual],
    fitness_function: FitnessFunction,
    executor: Optional[Executor] = None
) -> int:
    """
    Evaluate every individual whose fitness is None, in place.

    Args:
        individuals: Individuals to evaluate (evaluated ones are skipped)
        fitness_function: Genotype -> fitness
        executor: Optional executor for parallel evaluation

    Returns:
        Number of individuals actually evaluated

    Raises:
        EvaluationError: First evaluation failure (fail loud, no partial results)
    """
    pending = [ind for ind in individuals if ind.fitness is None]
    if not pending:
        return 0

    if executor is None:
        values = [evaluate_individual(ind, fitness_function) for ind in pending]
    else:
        futures = [executor.submit(evaluate_individual, ind, fitness_function) for ind in pending]
        values = [f.result() for f in futures]

    for individual, value in zip(pending, values):
        individual.fitness = value

    return len(pending)

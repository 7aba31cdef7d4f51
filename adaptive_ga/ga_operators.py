"""
Genetic algorithm operators for real-valued genotypes.

This module implements the four core GA operators:
1. Selection: Identify elite performers (top N% by fitness) / tournaments
2. Mutation: Gaussian perturbation of genes (local search)
3. Crossover: Combine genes from two parents
4. Immigration: Inject fresh random individuals for diversity

These operators work together inside Engine.evolve():
- Selection provides survival pressure
- Mutation enables local search and refinement
- Crossover recombines successful patterns
- Immigration prevents premature convergence

How strongly mutation and crossover act is what distinguishes a "narrow"
(exploitative) from an "enlarge" (explorative) engine configuration; see
AltererSettings in engine.py.

Used by: engine.Engine
Creates: Child individuals for the next generation, with lineage tracking

Related files:
- adaptive_ga/models.py: Individual structure
- adaptive_ga/fitness_evaluator.py: Fitness calculation
- adaptive_ga/engine.py: Generation orchestration
"""

from typing import List, Optional, Tuple
import random
from uuid import uuid4

from adaptive_ga.errors import OperatorError
from adaptive_ga.int_list import IntList
from adaptive_ga.models import Individual


CROSSOVER_MODES = ("uniform", "mean", "single_gene")


def _fitness_key(maximize: bool):
    # Unevaluated individuals always sort last
    if maximize:
        return lambda ind: ind.fitness if ind.fitness is not None else float("-inf")
    return lambda ind: -ind.fitness if ind.fitness is not None else float("-inf")


def select_elite_indices(
    population: List[Individual],
    elite_fraction: float = 0.2,
    maximize: bool = True
) -> IntList:
    """
    Population indices of the elite, best first.

    Args:
        population: Evaluated population
        elite_fraction: Fraction to keep (default 0.2 = top 20%)
        maximize: True if higher fitness is better

    Returns:
        IntList of indices into population, sorted by fitness (best first).
        At least one index if the population is non-empty.
    """
    indices = IntList()
    if not population:
        return indices

    key = _fitness_key(maximize)
    ranked = sorted(range(len(population)), key=lambda i: key(population[i]), reverse=True)

    elite_count = int(len(population) * elite_fraction)
    if elite_count < 1:
        elite_count = 1

    indices.add_all(ranked[:elite_count])
    return indices


def select_elite(
    population: List[Individual],
    elite_fraction: float = 0.2,
    maximize: bool = True
) -> List[Individual]:
    """
    Select top performers by fitness for breeding.

    The elite automatically survive to the next generation and serve as the
    parent pool for mutation and crossover operations.

    Edge Cases:
        - Empty population -> return empty list
        - elite_count < 1 -> return at least 1 individual
        - None fitness values -> sort to end (treated as worst)

    Example:
        >>> elite = select_elite(population, elite_fraction=0.2)
        >>> len(elite)  # 20 for a population of 100

    Used by: Engine.evolve()
    Related: tournament_select(), mutate_individual(), crossover()
    """
    return [population[i] for i in select_elite_indices(population, elite_fraction, maximize)]


def tournament_select(
    population: List[Individual],
    tournament_size: int = 3,
    maximize: bool = True,
    rng: Optional[random.Random] = None
) -> Individual:
    """
    Pick the best of `tournament_size` randomly drawn individuals.

    Raises:
        OperatorError: If population is empty or tournament_size < 1
    """
    if not population:
        raise OperatorError("Cannot run a tournament on an empty population")
    if tournament_size < 1:
        raise OperatorError(f"tournament_size must be >= 1, got {tournament_size}")

    rng = rng or random
    contestants = [rng.choice(population) for _ in range(tournament_size)]
    return max(contestants, key=_fitness_key(maximize))


def _clip(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return min(max(value, low), high)


def mutate_individual(
    parent: Individual,
    probability: float = 0.1,
    sigma: float = 0.1,
    bounds: Tuple[float, float] = (-1.0, 1.0),
    rng: Optional[random.Random] = None
) -> Individual:
    """
    Create child individual by Gaussian mutation of the parent's genes.

    Every gene is perturbed with probability `probability` by N(0, sigma * width),
    where width is the size of the search interval; results are clipped to
    bounds. At least one gene is always mutated so the child differs from
    the parent.

    Lineage Tracking:
    - type="mutation", parents=[parent.individual_id], generation=parent+1
    - fitness=None (evaluated separately)

    Raises:
        OperatorError: If parent has an empty genotype or probability/sigma
                       are out of range

    Used by: Engine.evolve()
    Related: crossover(), create_immigrant()
    """
    if not parent.genotype:
        raise OperatorError(f"Parent {parent.individual_id} has an empty genotype")
    if not (0.0 <= probability <= 1.0):
        raise OperatorError(f"mutation probability must be in [0.0, 1.0], got {probability}")
    if sigma < 0.0:
        raise OperatorError(f"mutation sigma must be >= 0, got {sigma}")

    rng = rng or random
    width = bounds[1] - bounds[0]
    genes = list(parent.genotype)

    mutated = [i for i in range(len(genes)) if rng.random() < probability]
    if not mutated:
        mutated = [rng.randrange(len(genes))]

    for i in mutated:
        genes[i] = _clip(genes[i] + rng.gauss(0.0, sigma * width), bounds)

    return Individual(
        individual_id=str(uuid4()),
        genotype=tuple(genes),
        fitness=None,
        generation=parent.generation + 1,
        type="mutation",
        parents=[parent.individual_id]
    )


def crossover(
    parent1: Individual,
    parent2: Individual,
    mode: str = "uniform",
    rng: Optional[random.Random] = None
) -> Individual:
    """
    Create child individual by recombining two parents.

    Modes:
    - "uniform": each gene taken from parent1 or parent2 with equal odds
    - "mean": each gene is the arithmetic mean of both parents' genes
    - "single_gene": copy parent1, replace exactly one gene from parent2

    Lineage Tracking:
    - type="crossover", parents=[parent1.id, parent2.id],
      generation=max(parent generations)+1

    Raises:
        OperatorError: If genotypes are empty or of different length
        ValueError: If mode is unknown

    Used by: Engine.evolve()
    Related: select_elite(), mutate_individual()
    """
    if mode not in CROSSOVER_MODES:
        raise ValueError(f"Unknown crossover mode '{mode}', expected one of {CROSSOVER_MODES}")
    if not parent1.genotype or not parent2.genotype:
        raise OperatorError("Crossover requires non-empty genotypes")
    if len(parent1.genotype) != len(parent2.genotype):
        raise OperatorError(
            f"Genotype length mismatch: parent1={len(parent1.genotype)}, "
            f"parent2={len(parent2.genotype)}"
        )

    rng = rng or random

    if mode == "uniform":
        genes = [rng.choice(pair) for pair in zip(parent1.genotype, parent2.genotype)]
    elif mode == "mean":
        genes = [(a + b) / 2.0 for a, b in zip(parent1.genotype, parent2.genotype)]
    else:
        genes = list(parent1.genotype)
        swap = rng.randrange(len(genes))
        genes[swap] = parent2.genotype[swap]

    return Individual(
        individual_id=str(uuid4()),
        genotype=tuple(genes),
        fitness=None,
        generation=max(parent1.generation, parent2.generation) + 1,
        type="crossover",
        parents=[parent1.individual_id, parent2.individual_id]
    )


def create_immigrant(
    generation: int,
    dimensions: int,
    bounds: Tuple[float, float] = (-1.0, 1.0),
    rng: Optional[random.Random] = None,
    type: str = "immigrant"
) -> Individual:
    """
    Create fresh random individual with no evolutionary history.

    Also used for the initial population (type="initial").

    Raises:
        OperatorError: If dimensions < 1 or bounds are inverted
    """
    if dimensions < 1:
        raise OperatorError(f"dimensions must be >= 1, got {dimensions}")
    if bounds[0] > bounds[1]:
        raise OperatorError(f"Invalid bounds {bounds}: lower bound exceeds upper bound")

    rng = rng or random
    return Individual(
        individual_id=str(uuid4()),
        genotype=tuple(rng.uniform(bounds[0], bounds[1]) for _ in range(dimensions)),
        fitness=None,
        generation=generation,
        type=type,
        parents=None
    )

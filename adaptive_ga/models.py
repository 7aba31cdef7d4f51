"""
Data models for adaptive genetic algorithm runs.

This module defines the core data structures used throughout the framework:
- Individual: One member of the population (genotype + fitness + lineage)
- EvolutionStart: The state a generation step starts from
- EvolutionResult: Immutable snapshot of one evolved generation

These models are used by:
- Engine (produces EvolutionResult, consumes EvolutionStart)
- Selection policies (read EvolutionResult statistics)
- AdaptiveEvolutionStream (threads results into the next start state)
- Couchbase storage/retrieval (to_dict/from_dict)

Critical: EvolutionResult statistics are computed on demand from the
population and never cached on the snapshot itself.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Dict, List, Tuple
from uuid import uuid4

from adaptive_ga.moments import MomentStatistics, fitness_moments


@dataclass
class Individual:
    """
    Represents a single member of the population.

    The genotype is a fixed-length vector of floats. Individuals are created
    by the GA operators and evaluated by the fitness evaluator:
    - Initial/immigrant: fresh random genotype, no parents
    - Mutation: perturbed copy of one parent
    - Crossover: recombination of two parents
    - Elite: carried forward unchanged (fitness is not re-evaluated)

    Lineage Fields:
    - type: How the individual entered THIS generation
      ("initial" | "elite" | "crossover" | "mutation" | "immigrant")
    - parents: individual_id(s) of the parent(s), None for fresh individuals

    Used by: EvolutionResult, EvolutionStart, GA operators, fitness evaluator
    """

    individual_id: str = field(default_factory=lambda: str(uuid4()))
    genotype: Tuple[float, ...] = ()
    fitness: Optional[float] = None
    generation: int = 0
    type: str = "initial"  # "initial" | "elite" | "crossover" | "mutation" | "immigrant"
    parents: Optional[List[str]] = None

    @property
    def is_evaluated(self) -> bool:
        return self.fitness is not None

    def to_dict(self) -> Dict:
        """Convert to dictionary for Couchbase storage."""
        return {
            "individual_id": self.individual_id,
            "genotype": list(self.genotype),
            "fitness": self.fitness,
            "generation": self.generation,
            "type": self.type,
            "parents": self.parents
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Individual':
        """Reconstruct Individual from Couchbase document."""
        return cls(
            individual_id=data["individual_id"],
            genotype=tuple(data.get("genotype", ())),
            fitness=data.get("fitness"),
            generation=data.get("generation", 0),
            type=data.get("type", "initial"),
            parents=data.get("parents")
        )


@dataclass(frozen=True)
class EvolutionStart:
    """
    Start state for one generation step.

    Two flavours exist:
    - Fresh start: empty population, generation 0 (see EvolutionStart.empty()).
      The engine creates and evaluates a random initial population.
    - Continuation: population + generation carried forward from a previous
      EvolutionResult (see EvolutionResult.to_evolution_start()). Any
      bookkeeping of the engine that produced the result is NOT carried
      over - the next engine starts cold apart from population and
      generation count.

    Exactly one EvolutionStart is consumed per adaptive round.
    """

    population: Tuple[Individual, ...] = ()
    generation: int = 0

    def __post_init__(self):
        if self.generation < 0:
            raise ValueError(f"generation must be >= 0, got {self.generation}")
        # Accept lists from callers but store an immutable tuple
        if not isinstance(self.population, tuple):
            object.__setattr__(self, "population", tuple(self.population))

    @classmethod
    def empty(cls) -> 'EvolutionStart':
        """Fresh-start descriptor with no history."""
        return cls(population=(), generation=0)

    @property
    def is_fresh(self) -> bool:
        return len(self.population) == 0


@dataclass(frozen=True)
class EvolutionResult:
    """
    Immutable snapshot of one generation.

    Produced by Engine.evolve(), read by the selection policy (to decide the
    next configuration) and by the consumer (statistics, convergence checks,
    storage). The adaptive stream keeps only the most recent one.

    Statistics (mean, variance, min, max) are derived on demand with a
    single-pass MomentStatistics accumulator. Nothing is cached here, so the
    snapshot stays a plain value object.

    Used by: AdaptiveEvolutionStream, VarianceHysteresisPolicy,
             experiment.run_adaptive_evolution(), CouchbaseClient storage
    """

    generation: int
    population: Tuple[Individual, ...]
    engine_label: str = ""
    maximize: bool = True

    def __post_init__(self):
        if self.generation < 0:
            raise ValueError(f"generation must be >= 0, got {self.generation}")
        if not isinstance(self.population, tuple):
            object.__setattr__(self, "population", tuple(self.population))

    def fitness_values(self) -> List[float]:
        """Fitness of every evaluated individual, in population order."""
        return [ind.fitness for ind in self.population if ind.fitness is not None]

    def moments(self) -> MomentStatistics:
        return fitness_moments(self.population)

    @property
    def mean_fitness(self) -> float:
        return self.moments().mean

    @property
    def fitness_variance(self) -> float:
        return self.moments().variance

    def best(self) -> Optional[Individual]:
        """Best evaluated individual according to the optimization direction."""
        evaluated = [ind for ind in self.population if ind.fitness is not None]
        if not evaluated:
            return None
        if self.maximize:
            return max(evaluated, key=lambda ind: ind.fitness)
        return min(evaluated, key=lambda ind: ind.fitness)

    def to_evolution_start(self) -> EvolutionStart:
        """
        Continuation start state derived from this snapshot.

        Carries population and generation forward. The next engine evolves
        generation + 1 from it.
        """
        return EvolutionStart(population=self.population, generation=self.generation)

    def with_label(self, engine_label: str) -> 'EvolutionResult':
        return replace(self, engine_label=engine_label)

    def to_dict(self) -> Dict:
        """
        Convert to dictionary for Couchbase storage.

        Returns the complete snapshot including every individual.
        """
        return {
            "generation": self.generation,
            "engine_label": self.engine_label,
            "maximize": self.maximize,
            "population": [ind.to_dict() for ind in self.population]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EvolutionResult':
        """Reconstruct EvolutionResult from Couchbase document."""
        return cls(
            generation=data["generation"],
            population=tuple(Individual.from_dict(d) for d in data.get("population", [])),
            engine_label=data.get("engine_label", ""),
            maximize=data.get("maximize", True)
        )

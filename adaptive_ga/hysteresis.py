"""
Variance hysteresis - keep population diversity inside a target band.

VarianceHysteresisPolicy toggles between a "narrow" (exploitative) and an
"enlarge" (explorative) engine configuration based on the fitness variance
of the previous generation:

    state      variance v        next       engine
    --------   ---------------   --------   -------------------------
    (first)    -                 NARROW     build narrow, cache it
    NARROW     v < min           ENLARGE    build enlarge, cache it
    NARROW     v > max           NARROW     reuse cached
    NARROW     min <= v <= max   NARROW     reuse cached
    ENLARGE    v < min           ENLARGE    reuse cached
    ENLARGE    v > max           NARROW     build narrow, cache it
    ENLARGE    min <= v <= max   ENLARGE    reuse cached

An engine is only rebuilt when the variance crosses a threshold in the
direction that needs the other configuration. In-range readings, and
out-of-range readings that already agree with the current mode, never
rebuild. A noisy variance signal therefore cannot make the run alternate
between configurations every generation.

Empty populations have variance 0.0 and count as "below min".

Used by: scripts/run_adaptive_evolution.py, experiment.run_adaptive_evolution()
Related: adaptive.py (SelectionPolicy), engine.py (EngineBuilder),
         moments.py (variance)
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from adaptive_ga.adaptive import SelectionPolicy
from adaptive_ga.errors import InvalidConfigurationError, InvalidRangeError
from adaptive_ga.int_list import IntList
from adaptive_ga.models import EvolutionResult
from adaptive_ga.moments import fitness_variance


class AdaptiveMode(Enum):
    """Which configuration the hysteresis policy is currently running."""
    NARROW = "narrow"      # Exploitative: pull the population together
    ENLARGE = "enlarge"    # Explorative: spread the population out


@dataclass(frozen=True)
class VarianceRange:
    """
    Target band for the population's fitness variance.

    Raises:
        InvalidRangeError: If a bound is not finite, min < 0 or min > max
    """

    min: float
    max: float

    def __post_init__(self):
        if self.min is None or self.max is None:
            raise InvalidRangeError(f"VarianceRange requires both bounds, got ({self.min}, {self.max})")
        if not (math.isfinite(self.min) and math.isfinite(self.max)):
            raise InvalidRangeError(f"VarianceRange bounds must be finite, got ({self.min}, {self.max})")
        if self.min < 0.0:
            raise InvalidRangeError(f"VarianceRange min must be >= 0, got {self.min}")
        if self.min > self.max:
            raise InvalidRangeError(
                f"VarianceRange min must not exceed max, got min={self.min}, max={self.max}"
            )

    def is_below(self, variance: float) -> bool:
        return variance < self.min

    def is_above(self, variance: float) -> bool:
        return variance > self.max

    def contains(self, variance: float) -> bool:
        return self.min <= variance <= self.max


@dataclass
class HysteresisState:
    """
    Mutable state of one VarianceHysteresisPolicy.

    Invariant: cached_engine was built from the configuration matching mode.
    Owned by exactly one policy instance and never shared.
    """

    mode: AdaptiveMode
    cached_engine: object
    builds: int = 1
    switch_generations: IntList = field(default_factory=IntList)


@dataclass(frozen=True)
class HysteresisDecision:
    """What the policy did in one round."""

    mode: AdaptiveMode
    rebuilt: bool
    variance: Optional[float]
    generation: Optional[int]


class VarianceHysteresisPolicy(SelectionPolicy):
    """
    SelectionPolicy keeping fitness variance inside a VarianceRange.

    Args:
        variance_range: Target variance band
        narrow: Buildable exploitative configuration (anything with build(),
                e.g. an EngineBuilder or a LimitedEngine-producing config)
        enlarge: Buildable explorative configuration
        verbose: Print one line per configuration switch

    Raises:
        InvalidConfigurationError: If any argument is missing or not buildable

    Example:
        >>> base = EngineBuilder.for_problem("rastrigin", dimensions=5)
        >>> policy = VarianceHysteresisPolicy.by_fitness_variance(
        ...     VarianceRange(0.2, 0.8), base, NARROW_ALTERER, ENLARGE_ALTERER
        ... )
        >>> stream = AdaptiveEngine.from_supplier(EvolutionStart.empty, policy)
    """

    def __init__(self, variance_range: VarianceRange, narrow, enlarge, verbose: bool = False):
        super().__init__()
        if variance_range is None:
            raise InvalidConfigurationError("variance_range is required")
        if narrow is None:
            raise InvalidConfigurationError("narrow engine configuration is required")
        if enlarge is None:
            raise InvalidConfigurationError("enlarge engine configuration is required")
        for name, config in (("narrow", narrow), ("enlarge", enlarge)):
            if not callable(getattr(config, "build", None)):
                raise InvalidConfigurationError(
                    f"{name} configuration must provide build(), got {type(config).__name__}"
                )

        self.variance_range = variance_range
        self._configs = {AdaptiveMode.NARROW: narrow, AdaptiveMode.ENLARGE: enlarge}
        self.verbose = verbose

        self._state: Optional[HysteresisState] = None
        self.last_decision: Optional[HysteresisDecision] = None

    @classmethod
    def by_fitness_variance(
        cls,
        variance_range: VarianceRange,
        builder,
        narrow_alterer,
        enlarge_alterer,
        verbose: bool = False
    ) -> 'VarianceHysteresisPolicy':
        """
        Derive both configurations from one base EngineBuilder.

        The narrow engine uses `narrow_alterer`, the enlarge engine
        `enlarge_alterer`; every other parameter comes from `builder`.
        """
        if builder is None:
            raise InvalidConfigurationError("builder is required")
        if narrow_alterer is None or enlarge_alterer is None:
            raise InvalidConfigurationError("narrow and enlarge alterers are required")

        return cls(
            variance_range,
            builder.copy().alterer(narrow_alterer),
            builder.copy().alterer(enlarge_alterer),
            verbose=verbose
        )

    @property
    def state(self) -> Optional[HysteresisState]:
        return self._state

    @property
    def mode(self) -> Optional[AdaptiveMode]:
        return self._state.mode if self._state is not None else None

    @property
    def builds(self) -> int:
        return self._state.builds if self._state is not None else 0

    def select(self, previous: Optional[EvolutionResult]):
        if previous is None or self._state is None:
            self._start(previous)
            return self._state.cached_engine

        variance = fitness_variance(previous.population)
        mode = self._state.mode

        if mode is AdaptiveMode.NARROW and self.variance_range.is_below(variance):
            self._switch(AdaptiveMode.ENLARGE, previous.generation, variance)
        elif mode is AdaptiveMode.ENLARGE and self.variance_range.is_above(variance):
            self._switch(AdaptiveMode.NARROW, previous.generation, variance)
        else:
            self.last_decision = HysteresisDecision(mode, False, variance, previous.generation)

        return self._state.cached_engine

    def close(self) -> None:
        """Release the cached engine and forget the state."""
        state = self._state
        self._state = None
        if state is not None:
            _release(state.cached_engine)

    def _start(self, previous: Optional[EvolutionResult]) -> None:
        engine = self._configs[AdaptiveMode.NARROW].build()

        old, self._state = self._state, HysteresisState(mode=AdaptiveMode.NARROW, cached_engine=engine)
        if old is not None:
            _release(old.cached_engine)

        generation = previous.generation if previous is not None else None
        self.last_decision = HysteresisDecision(AdaptiveMode.NARROW, True, None, generation)

    def _switch(self, mode: AdaptiveMode, generation: int, variance: float) -> None:
        # Build first: if it fails the state still matches the old engine
        engine = self._configs[mode].build()

        state = self._state
        old_engine, old_mode = state.cached_engine, state.mode
        state.mode = mode
        state.cached_engine = engine
        state.builds += 1
        state.switch_generations.add(generation)

        self.last_decision = HysteresisDecision(mode, True, variance, generation)
        _release(old_engine)

        if self.verbose:
            bound = (
                f"< min={self.variance_range.min}" if mode is AdaptiveMode.ENLARGE
                else f"> max={self.variance_range.max}"
            )
            print(f"  ↻ Gen {generation}: {old_mode.name} → {mode.name} (variance={variance:.4g} {bound})")

    def __repr__(self) -> str:
        return (
            f"VarianceHysteresisPolicy(range=({self.variance_range.min}, {self.variance_range.max}), "
            f"mode={self.mode.name if self.mode else None})"
        )


def _release(engine) -> None:
    close = getattr(engine, "close", None)
    if close is not None:
        close()

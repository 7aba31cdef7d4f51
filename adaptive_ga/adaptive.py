"""
Adaptive Evolution - engines chosen generation by generation.

The AdaptiveEngine lets the algorithm that drives the population change while
the run is in progress. Before each round a SelectionPolicy looks at the last
EvolutionResult and returns the engine to run next; the results of all
rounds are stitched into one continuous, lazily-produced stream:

               +------------------------------------------+
    (start) -->|  EvolutionResult[i-1] -> policy -> Engine[i]  |--> result
               +---------------^--------------------------+     |
                               |                                |
                               +------------<-------------------+

Key Components:
- SelectionPolicy: One-method capability, previous result -> engine
- FunctionPolicy: Wraps a plain callable as a SelectionPolicy
- AdaptiveEngine: Entry points (from_supplier / from_initial_state)
- AdaptiveEvolutionStream: The pull-based iterator doing the actual work

Round granularity:
generations_per_round=1 (default) asks the policy before every generation.
An integer n > 1 lets the chosen engine run up to n generations per round.
None lets each round last until the engine's own stream ends (combine with
Engine.limit(n) or any other bounded streamable).

Contract:
- Lazy: nothing is built or evaluated before the consumer calls next()
- Strictly ordered: result i is produced only after result i-1, and the
  policy always sees exactly the previous result. The stream cannot be split
  and rejects concurrent pulls.
- Fail loud: an error from the policy, the build or the engine propagates
  to the consumer and the stream is exhausted afterwards.
- No cancellation needed: a consumer may simply stop pulling. close() (or
  the with-block) releases the policy at once; an abandoned stream releases
  it when it is garbage-collected.

Used by: experiment.run_adaptive_evolution(), scripts/run_adaptive_evolution.py
Related: hysteresis.py (VarianceHysteresisPolicy), engine.py (Engine)
"""

import itertools
import threading
import weakref
from abc import ABC, abstractmethod
from typing import Callable, Iterator, Optional

from adaptive_ga.errors import (
    ConcurrentPullError,
    InvalidConfigurationError,
    StreamNotSplittableError
)
from adaptive_ga.models import EvolutionResult, EvolutionStart


StartSupplier = Callable[[], EvolutionStart]


class SelectionPolicy(ABC):
    """
    Chooses the engine for the next round from the previous result.

    select(None) is called for the very first round; afterwards select() gets
    the last result of the previous round. The returned object must provide
    stream(start) -> Iterator[EvolutionResult] (an Engine, a LimitedEngine,
    or anything shaped like them).

    Policies holding mutable state are exclusive: one policy instance can
    drive only one live stream at a time (bind()/unbind() enforce this).
    Stateless policies set `exclusive = False`.
    """

    exclusive = True

    def __init__(self):
        self._bound = False

    @abstractmethod
    def select(self, previous: Optional[EvolutionResult]):
        """Return the evolution streamable for the next round."""

    def __call__(self, previous: Optional[EvolutionResult]):
        return self.select(previous)

    def bind(self) -> None:
        if self.exclusive and self._bound:
            raise InvalidConfigurationError(
                f"{type(self).__name__} is already driving another evolution stream. "
                f"Create one policy instance per concurrent run."
            )
        self._bound = True

    def unbind(self) -> None:
        self._bound = False

    def close(self) -> None:
        """Release resources held by the policy (default: nothing to release)."""


class FunctionPolicy(SelectionPolicy):
    """SelectionPolicy backed by a plain `previous -> streamable` callable."""

    exclusive = False

    def __init__(self, function: Callable):
        super().__init__()
        if function is None:
            raise InvalidConfigurationError("Selection function is required")
        self.function = function

    def select(self, previous: Optional[EvolutionResult]):
        return self.function(previous)

    def __repr__(self) -> str:
        return f"FunctionPolicy({self.function!r})"


def as_policy(policy) -> SelectionPolicy:
    """Accept a SelectionPolicy or a plain callable."""
    if policy is None:
        raise InvalidConfigurationError("A selection policy is required")
    if isinstance(policy, SelectionPolicy):
        return policy
    if callable(policy):
        return FunctionPolicy(policy)
    raise InvalidConfigurationError(
        f"Selection policy must be a SelectionPolicy or callable, got {type(policy).__name__}"
    )


def _validate_round_size(generations_per_round: Optional[int]) -> None:
    if generations_per_round is None:
        return
    if isinstance(generations_per_round, bool) or not isinstance(generations_per_round, int):
        raise InvalidConfigurationError(
            f"generations_per_round must be a positive int or None, got {generations_per_round!r}"
        )
    if generations_per_round < 1:
        raise InvalidConfigurationError(
            f"generations_per_round must be >= 1, got {generations_per_round}"
        )


def _release_policy(policy: SelectionPolicy) -> None:
    try:
        policy.close()
    finally:
        policy.unbind()


class _InitialStartOnce:
    """Start supplier that hands out one fixed initial state exactly once."""

    def __init__(self, initial_start: EvolutionStart):
        self._initial_start = initial_start
        self._consumed = False

    def __call__(self) -> EvolutionStart:
        if self._consumed:
            raise InvalidConfigurationError("Initial evolution start has already been consumed")
        self._consumed = True
        return self._initial_start


class AdaptiveEvolutionStream:
    """
    Lazy, strictly ordered iterator over adaptively evolved generations.

    Generator-local state between pulls is the previous result plus the
    iterator of the round in progress. Nothing else is kept; history is
    never re-evaluated.

    Example:
        >>> with AdaptiveEngine.from_supplier(EvolutionStart.empty, policy) as stream:
        ...     for result in stream.limit(50):
        ...         print(result.generation, result.engine_label)
    """

    ORDERED = True
    SPLITTABLE = False

    def __init__(
        self,
        policy: SelectionPolicy,
        start_supplier: StartSupplier,
        generations_per_round: Optional[int] = 1
    ):
        if start_supplier is None:
            raise InvalidConfigurationError("A start supplier is required")
        _validate_round_size(generations_per_round)

        self._policy = as_policy(policy)
        self._start_supplier = start_supplier
        self._generations_per_round = generations_per_round

        self._previous: Optional[EvolutionResult] = None
        self._round_source = None   # raw iterator of the current round
        self._round_iter = None     # same iterator, possibly capped
        self._rounds = 0
        self._exhausted = False
        self._pull_lock = threading.Lock()

        self._policy.bind()
        # Streams dropped without close() still release the policy when collected
        self._release = weakref.finalize(self, _release_policy, self._policy)

    @property
    def previous(self) -> Optional[EvolutionResult]:
        """Most recent result produced by this stream (None before the first pull)."""
        return self._previous

    @property
    def rounds(self) -> int:
        """Number of policy decisions taken so far."""
        return self._rounds

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def policy(self) -> SelectionPolicy:
        return self._policy

    def __iter__(self) -> Iterator[EvolutionResult]:
        return self

    def __next__(self) -> EvolutionResult:
        if not self._pull_lock.acquire(blocking=False):
            raise ConcurrentPullError(
                "AdaptiveEvolutionStream is strictly sequential; another pull is in progress"
            )
        try:
            if self._exhausted:
                raise StopIteration

            try:
                result = self._pull()
            except BaseException:
                self._finish()
                raise

            self._previous = result
            return result
        finally:
            self._pull_lock.release()

    def limit(self, generations: int) -> Iterator[EvolutionResult]:
        """Iterator over at most `generations` further results."""
        return itertools.islice(self, generations)

    def split(self):
        raise StreamNotSplittableError(
            "Generation i depends on the full result of generation i-1; "
            "adaptive evolution streams cannot be split for parallel traversal"
        )

    def close(self) -> None:
        """Stop the stream and release the current round and the policy's resources."""
        if not self._exhausted:
            self._finish()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # -------------------------------------------------------------------------
    # Round handling
    # -------------------------------------------------------------------------

    def _pull(self) -> EvolutionResult:
        if self._round_iter is not None:
            for result in self._round_iter:
                return result
            self._close_round()

        return self._start_round()

    def _start_round(self) -> EvolutionResult:
        streamable = self._policy.select(self._previous)
        if streamable is None:
            raise InvalidConfigurationError("Selection policy returned no engine")

        if self._previous is None:
            start = self._start_supplier()
        else:
            start = self._previous.to_evolution_start()

        source = iter(streamable.stream(start))
        self._round_source = source
        if self._generations_per_round is None:
            self._round_iter = source
        else:
            self._round_iter = itertools.islice(source, self._generations_per_round)
        self._rounds += 1

        for result in self._round_iter:
            return result

        # The chosen engine produced nothing: the stream ends here
        raise StopIteration

    def _close_round(self) -> None:
        source = self._round_source
        self._round_source = None
        self._round_iter = None

        close = getattr(source, "close", None)
        if close is not None:
            close()

    def _finish(self) -> None:
        self._exhausted = True
        try:
            self._close_round()
        finally:
            self._release()


class AdaptiveEngine:
    """
    Factory for adaptive evolution streams.

    Args:
        policy: SelectionPolicy, or a callable `previous_result -> engine`
        generations_per_round: Generations per policy decision
                               (1 = every generation, None = until the
                               engine's own stream ends)

    Raises:
        InvalidConfigurationError: If policy is missing or the round size is invalid

    Example:
        >>> adaptive = AdaptiveEngine(lambda result: choose_engine(result))
        >>> stream = adaptive.stream(EvolutionStart.empty)
        >>> best = list(stream.limit(100))[-1].best()
    """

    def __init__(self, policy, generations_per_round: Optional[int] = 1):
        self.policy = as_policy(policy)
        _validate_round_size(generations_per_round)
        self.generations_per_round = generations_per_round

    def stream(self, start_supplier: StartSupplier = EvolutionStart.empty) -> AdaptiveEvolutionStream:
        """
        New stream whose first round starts from start_supplier().

        The supplier is called lazily, on the first pull, and only when there
        is no previous result.
        """
        if start_supplier is None:
            raise InvalidConfigurationError("A start supplier is required")
        return AdaptiveEvolutionStream(self.policy, start_supplier, self.generations_per_round)

    def stream_from(self, initial_start: EvolutionStart) -> AdaptiveEvolutionStream:
        """New stream whose first round starts from one fixed initial state (used once)."""
        if initial_start is None:
            raise InvalidConfigurationError("An initial evolution start is required")
        return AdaptiveEvolutionStream(
            self.policy,
            _InitialStartOnce(initial_start),
            self.generations_per_round
        )

    @classmethod
    def from_supplier(
        cls,
        start_supplier: StartSupplier,
        policy,
        generations_per_round: Optional[int] = 1
    ) -> AdaptiveEvolutionStream:
        return cls(policy, generations_per_round).stream(start_supplier)

    @classmethod
    def from_initial_state(
        cls,
        initial_start: EvolutionStart,
        policy,
        generations_per_round: Optional[int] = 1
    ) -> AdaptiveEvolutionStream:
        return cls(policy, generations_per_round).stream_from(initial_start)

    def __repr__(self) -> str:
        return f"AdaptiveEngine(policy={self.policy!r}, generations_per_round={self.generations_per_round})"

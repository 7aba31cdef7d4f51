"""
Exception hierarchy for the adaptive evolution framework.

Every failure family gets its own class so callers can tell a bad
configuration (caught at construction) from a failure that surfaced while
the population was evolving (caught at the failing pull).

Fail-loud philosophy: nothing in this package retries or substitutes a
partial result. Errors propagate to whoever pulled the next generation.

Used by: adaptive.py, hysteresis.py, engine.py, ga_operators.py,
         fitness_evaluator.py, int_list.py
"""


class AdaptiveEngineError(Exception):
    """Base class for all errors raised by adaptive_ga."""
    pass


class InvalidConfigurationError(AdaptiveEngineError, ValueError):
    """
    Raised at construction time when a required argument is missing or invalid.

    Covers: missing selection policy, missing variance range or engine
    configurations, invalid GA parameters, a policy bound to two streams.
    """
    pass


class InvalidRangeError(InvalidConfigurationError):
    """Raised when a VarianceRange has min > max, a negative or a non-finite bound."""
    pass


class StreamNotSplittableError(AdaptiveEngineError):
    """Raised when a strictly ordered evolution stream is asked to split for parallel traversal."""
    pass


class ConcurrentPullError(AdaptiveEngineError):
    """Raised when a second caller pulls from a stream while a pull is in flight."""
    pass


class EvaluationError(AdaptiveEngineError):
    """Raised when a fitness function fails or returns a non-finite value."""
    pass


class OperatorError(AdaptiveEngineError):
    """Raised when a GA operator receives parents it cannot work with."""
    pass


class CapacityOverflowError(OverflowError):
    """
    Raised when an IntList would grow beyond its capacity ceiling.
    """
    pass

"""
Resizable list of 32-bit integers.

A classical amortized-growth array used for index bookkeeping (elite
indices in ga_operators, switch generations in the hysteresis policy).
Storage is an array.array('i'); capacity grows by ~1.5x and a default-built
list reserves DEFAULT_CAPACITY slots on its first growth.
"""

from array import array
from typing import Callable, Iterable, Iterator, List

from adaptive_ga.errors import CapacityOverflowError


MAX_SIZE = 2**31 - 1 - 8
DEFAULT_CAPACITY = 10

_INT_MIN = -2**31
_INT_MAX = 2**31 - 1


def _check_value(value: int) -> int:
    if not _INT_MIN <= value <= _INT_MAX:
        raise OverflowError(f"Value {value} does not fit into a 32-bit integer")
    return value


class IntList:
    """
    Growable int buffer with explicit capacity management.

    Example:
        >>> values = IntList()
        >>> values.add_all([0, 1, 2])
        >>> values.insert(1, 9)
        >>> values.to_list()   # [0, 9, 1, 2]
    """

    def __init__(self, capacity: int = None, max_size: int = MAX_SIZE):
        if capacity is not None and capacity < 0:
            raise ValueError(f"Illegal Capacity: {capacity}")
        if capacity is not None and capacity > max_size:
            raise CapacityOverflowError(f"Capacity {capacity} exceeds maximum size {max_size}")

        self._default_sized = capacity is None
        self._data = array('i', bytes(4 * (capacity or 0)))
        self._size = 0
        self._mod_count = 0
        self._max_size = max_size

    def get(self, index: int) -> int:
        self._range_check(index)
        return self._data[index]

    def __getitem__(self, index: int) -> int:
        return self.get(index)

    def add(self, element: int) -> None:
        _check_value(element)
        self._ensure_size(self._size + 1)
        self._data[self._size] = element
        self._size += 1

    def insert(self, index: int, element: int) -> None:
        """Insert element at index, shifting the tail to the right."""
        self._add_range_check(index)
        _check_value(element)

        self._ensure_size(self._size + 1)
        self._data[index + 1:self._size + 1] = self._data[index:self._size]
        self._data[index] = element
        self._size += 1

    def add_all(self, elements: Iterable[int]) -> bool:
        values = [_check_value(e) for e in elements]
        count = len(values)

        self._ensure_size(self._size + count)
        self._data[self._size:self._size + count] = array('i', values)
        self._size += count
        return count != 0

    def insert_all(self, index: int, elements: Iterable[int]) -> bool:
        self._add_range_check(index)
        values = [_check_value(e) for e in elements]
        count = len(values)

        self._ensure_size(self._size + count)
        moved = self._size - index
        if moved > 0:
            self._data[index + count:self._size + count] = self._data[index:self._size]

        self._data[index:index + count] = array('i', values)
        self._size += count
        return count != 0

    def clear(self) -> None:
        self._mod_count += 1
        self._size = 0

    def trim_to_size(self) -> None:
        """Shrink capacity to the current size."""
        self._mod_count += 1
        self._default_sized = False
        if self._size < len(self._data):
            self._data = self._data[:self._size]

    def size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return self._size

    def is_empty(self) -> bool:
        return self._size == 0

    @property
    def capacity(self) -> int:
        return len(self._data)

    def to_list(self) -> List[int]:
        return self._data[:self._size].tolist()

    def for_each(self, action: Callable[[int], None]) -> None:
        for value in self:
            action(value)

    def __iter__(self) -> Iterator[int]:
        expected_mod_count = self._mod_count
        size = self._size
        for i in range(size):
            if self._mod_count != expected_mod_count:
                break
            yield self._data[i]
        if self._mod_count != expected_mod_count:
            raise RuntimeError("IntList modified during iteration")

    def __eq__(self, other) -> bool:
        if isinstance(other, IntList):
            return self.to_list() == other.to_list()
        return NotImplemented

    def __repr__(self) -> str:
        return f"IntList({self.to_list()})"

    # -------------------------------------------------------------------------
    # Capacity management
    # -------------------------------------------------------------------------

    def _ensure_size(self, size: int) -> None:
        if self._default_sized and len(self._data) == 0:
            size = max(DEFAULT_CAPACITY, size)

        self._mod_count += 1
        if size > len(self._data):
            self._grow(size)

    def _grow(self, size: int) -> None:
        if size > self._max_size:
            raise CapacityOverflowError(
                f"Required capacity {size} exceeds maximum size {self._max_size}"
            )

        old_size = len(self._data)
        new_size = old_size + (old_size >> 1)
        if new_size < size:
            new_size = size
        if new_size > self._max_size:
            new_size = self._max_size

        self._data.extend(array('i', bytes(4 * (new_size - old_size))))

    def _range_check(self, index: int) -> None:
        if index < 0 or index >= self._size:
            raise IndexError(f"Index: {index}, Size: {self._size}")

    def _add_range_check(self, index: int) -> None:
        if index < 0 or index > self._size:
            raise IndexError(f"Index: {index}, Size: {self._size}")

import logging
from collections import deque
from typing import Iterator, NamedTuple


class Sample(NamedTuple):
    """One period's reading of the work queue metrics."""
    timestamp: float
    visible_messages: int
    empty_receives: int
    stale: bool = False


class SampleWindow:
    """
    The last `size` samples of one metric, oldest first.

    Timestamps are strictly increasing: a sample that is not newer than the
    newest one already held is dropped.
    """

    def __init__(self, size: int, name: str = 'window'):
        if size < 1:
            raise ValueError(f"Window size must be >= 1, got {size}")
        self.size = size
        self.name = name
        self._samples = deque(maxlen=size)

    def push(self, sample: Sample) -> bool:
        if self._samples and sample.timestamp <= self._samples[-1].timestamp:
            logging.warning(f"Dropping out-of-order sample for {self.name}: {sample.timestamp} is not after "
                            f"{self._samples[-1].timestamp}")
            return False
        self._samples.append(sample)
        return True

    @property
    def full(self) -> bool:
        return len(self._samples) == self.size

    def total(self, field: str) -> int:
        return sum(getattr(sample, field) for sample in self._samples)

    def clear(self):
        self._samples.clear()

    def __len__(self):
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self._samples)

    def __repr__(self):
        return f"SampleWindow(name={self.name!r}, size={self.size}, samples={list(self._samples)!r})"

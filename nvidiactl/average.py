"""Fixed-size moving average used to smooth temperature and power limit samples."""

from collections import deque


class MovingAverage:
    """Sliding window over the last `size` integer samples.

    The mean uses integer (truncating) division, so the smoothed value may sit
    up to one unit below the true mean.
    """

    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError(f"Window size must be at least 1, got {size}")
        self._window: deque[int] = deque(maxlen=size)

    @property
    def maxlen(self) -> int:
        return self._window.maxlen  # type: ignore[return-value]

    @property
    def average(self) -> int:
        if not self._window:
            return 0
        return sum(self._window) // len(self._window)

    def __len__(self) -> int:
        return len(self._window)

    def update(self, sample: int) -> int:
        """Add a sample, evicting the oldest one if the window is full."""
        self._window.append(sample)
        return self.average

    def reset(self) -> None:
        self._window.clear()

"""A fixed-length pipeline of batches of trace ids."""

from __future__ import annotations

import threading
from collections import deque


class InvalidNumBatchesError(ValueError):
    """Raised when the number of batches is not greater than zero."""

    def __init__(self, message: str = "invalid number of batches, it must be greater than zero") -> None:
        super().__init__(message)


class InvalidBatchChannelSizeError(ValueError):
    """Raised when the batch channel size is not greater than zero."""

    def __init__(self, message: str = "invalid batch channel size, it must be greater than zero") -> None:
        super().__init__(message)


class BatcherStoppedError(RuntimeError):
    """Raised when a stopped batcher is asked to take more ids or to stop again."""

    def __init__(self, message: str = "batcher is stopped") -> None:
        super().__init__(message)


class Batcher:
    """Pipeline holding a fixed number of closed batches and one open batch.

    Ids are added to the open batch. Closing it pushes the oldest batch out
    of the pipe and puts the closed one at its end, in one atomic step. The
    pipe starts filled with empty batches, so a caller ticking on a timer
    sees ids only after ``num_batches`` ticks.
    """

    def __init__(self, num_batches: int, new_batches_initial_capacity: int, batch_channel_size: int) -> None:
        if num_batches < 1:
            raise InvalidNumBatchesError()
        if batch_channel_size < 1:
            raise InvalidBatchChannelSizeError()
        self.num_batches = num_batches
        self.new_batches_initial_capacity = new_batches_initial_capacity
        self.batch_channel_size = batch_channel_size
        self._lock = threading.Lock()
        self._pipe: deque[list[bytes]] = deque([] for _ in range(num_batches))
        self._current: list[bytes] = []
        self._stopped = False

    def add_to_current_batch(self, trace_id: bytes) -> None:
        """Add an id to the open batch."""
        with self._lock:
            if self._stopped:
                raise BatcherStoppedError()
            self._current.append(trace_id)

    def close_current_and_take_first_batch(self) -> tuple[list[bytes], bool]:
        """Take the batch at the front of the pipe and close the open batch.

        Returns the batch and whether more batches may follow. Once the
        batcher is stopped and the pipe is drained, the open batch is
        returned with ``False``.
        """
        with self._lock:
            if self._pipe:
                first = self._pipe.popleft()
                if not self._stopped:
                    self._pipe.append(self._current)
                    self._current = []
                return first, True
            last = self._current
            self._current = []
            return last, False

    def stop(self) -> None:
        """Refuse further ids; the pipe can still be drained."""
        with self._lock:
            if self._stopped:
                raise BatcherStoppedError()
            self._stopped = True
import os
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from cascadingfilter.idbatcher import (
    Batcher,
    BatcherStoppedError,
    InvalidBatchChannelSizeError,
    InvalidNumBatchesError,
)
from cascadingfilter.idconv import uint64_to_trace_id


@pytest.mark.parametrize(
    "num_batches, capacity, channel_size, error",
    [
        (0, 0, 1, InvalidNumBatchesError),
        (1, 0, 0, InvalidBatchChannelSizeError),
    ],
)
def test_batcher_new_invalid(num_batches, capacity, channel_size, error):
    with pytest.raises(error):
        Batcher(num_batches, capacity, channel_size)


def test_batcher_new_valid():
    batcher = Batcher(1, 0, 1)
    assert batcher.close_current_and_take_first_batch() == ([], True)
    batcher.stop()


def test_error_messages():
    assert str(InvalidNumBatchesError()) == "invalid number of batches, it must be greater than zero"
    assert str(InvalidBatchChannelSizeError()) == "invalid batch channel size, it must be greater than zero"


def _generate_sequential_ids(count):
    return [uint64_to_trace_id(0, i) for i in range(count)]


def _concurrency_test(num_batches, capacity, channel_size):
    batcher = Batcher(num_batches, capacity, channel_size)
    got = []
    early_non_empty = []
    stop_ticker = threading.Event()

    def ticker():
        completed = 0
        while not stop_ticker.wait(0.005):
            batch, _ = batcher.close_current_and_take_first_batch()
            completed += 1
            if completed <= num_batches and batch:
                early_non_empty.append(completed)
            got.extend(batch)

    thread = threading.Thread(target=ticker)
    thread.start()

    ids = _generate_sequential_ids(10000)
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(batcher.add_to_current_batch, ids))

    stop_ticker.set()
    thread.join()
    batcher.stop()

    while True:
        batch, more = batcher.close_current_and_take_first_batch()
        got.extend(batch)
        if not more:
            break

    assert early_non_empty == []
    assert len(got) == len(ids)
    assert set(got) == set(ids)


def test_typical_config():
    _concurrency_test(10, 100, 4 * (os.cpu_count() or 1))


def test_min_buffered_channels():
    _concurrency_test(1, 0, 1)


def test_ids_surface_after_pipeline_length():
    batcher = Batcher(2, 0, 1)
    ids = _generate_sequential_ids(3)
    for trace_id in ids:
        batcher.add_to_current_batch(trace_id)
    assert batcher.close_current_and_take_first_batch() == ([], True)
    assert batcher.close_current_and_take_first_batch() == ([], True)
    assert batcher.close_current_and_take_first_batch() == (ids, True)


def test_drain_after_stop():
    batcher = Batcher(2, 0, 1)
    first, second = _generate_sequential_ids(2)
    batcher.add_to_current_batch(first)
    batcher.close_current_and_take_first_batch()
    batcher.add_to_current_batch(second)
    batcher.stop()
    assert batcher.close_current_and_take_first_batch() == ([], True)
    assert batcher.close_current_and_take_first_batch() == ([first], True)
    assert batcher.close_current_and_take_first_batch() == ([second], False)
    assert batcher.close_current_and_take_first_batch() == ([], False)


def test_add_after_stop_raises():
    batcher = Batcher(1, 0, 1)
    batcher.stop()
    with pytest.raises(BatcherStoppedError):
        batcher.add_to_current_batch(uint64_to_trace_id(0, 1))


def test_stop_twice_raises():
    batcher = Batcher(1, 0, 1)
    batcher.stop()
    with pytest.raises(BatcherStoppedError):
        batcher.stop()
import pytest

from cascadingfilter.idconv import (
    span_id_to_uint64,
    uint64_to_span_id,
    uint64_to_trace_id,
)

MAX_UINT64 = 2**64 - 1


@pytest.mark.parametrize(
    "high, low, expected",
    [
        (0, 0, bytes(16)),
        (
            256 * 256 + 256 + 1,
            256 + 1,
            bytes([0, 0, 0, 0, 0, 1, 1, 1, 0, 0, 0, 0, 0, 0, 1, 1]),
        ),
        (0, 5, bytes([0] * 15 + [5])),
        (5, 0, bytes([0, 0, 0, 0, 0, 0, 0, 5] + [0] * 8)),
        (MAX_UINT64, 5, bytes([0xFF] * 8 + [0] * 7 + [5])),
    ],
)
def test_uint64_to_trace_id(high, low, expected):
    assert uint64_to_trace_id(high, low) == expected


@pytest.mark.parametrize(
    "value, expected",
    [
        (0, bytes(8)),
        (256 * 256 + 256 + 1, bytes([0, 0, 0, 0, 0, 1, 1, 1])),
        (MAX_UINT64, bytes([0xFF] * 8)),
    ],
)
def test_uint64_to_span_id(value, expected):
    assert uint64_to_span_id(value) == expected


def test_span_id_round_trip():
    value = 0x0001020304050607
    assert span_id_to_uint64(uint64_to_span_id(value)) == value


def test_span_id_to_uint64_rejects_wrong_length():
    with pytest.raises(ValueError):
        span_id_to_uint64(bytes(7))


@pytest.mark.parametrize("value", [-1, MAX_UINT64 + 1])
def test_out_of_range_values_are_rejected(value):
    with pytest.raises(ValueError):
        uint64_to_span_id(value)
    with pytest.raises(ValueError):
        uint64_to_trace_id(value, 0)


def test_non_integer_is_rejected():
    with pytest.raises(TypeError):
        uint64_to_span_id("5")
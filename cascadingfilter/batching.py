"""Building, combining and tagging the span batches of a trace."""

from __future__ import annotations

import copy
import math
from collections.abc import Iterable, Sequence

from .traces import InstrumentationLibrarySpans, ResourceSpans, Span, Traces

ATTRIBUTE_SAMPLING_RULE = "sampling.rule"
ATTRIBUTE_SAMPLING_PROBABILITY = "sampling.probability"
PROBABILISTIC_RULE_VALUE = "probabilistic"
FILTERED_RULE_VALUE = "filtered"


def prepare_trace_batch(resource_spans: ResourceSpans, spans: Sequence[Span]) -> Traces:
    """Return a new batch holding copies of the resource and the given spans."""
    rs = ResourceSpans(
        resource=copy.deepcopy(resource_spans.resource),
        instrumentation_library_spans=[
            InstrumentationLibrarySpans(spans=[span.copy() for span in spans])
        ],
    )
    return Traces(resource_spans=[rs])


def combine_batches(batches: Iterable[Traces]) -> Traces:
    """Move the resource spans of all batches into one new batch."""
    combined = Traces()
    for batch in batches:
        batch.move_into(combined)
    return combined


def _ratio(part: int, whole: int) -> float:
    if whole == 0:
        if part == 0:
            return math.nan
        return math.copysign(math.inf, part)
    return part / whole


def update_probabilistic_rate_tag(traces: Traces, probabilistic_spans: int, all_spans: int) -> None:
    """Scale or set the sampling probability of every span and mark it probabilistic."""
    ratio = _ratio(probabilistic_spans, all_spans)
    for span in traces.iter_spans():
        current = span.attributes.get(ATTRIBUTE_SAMPLING_PROBABILITY)
        if isinstance(current, float):
            span.attributes[ATTRIBUTE_SAMPLING_PROBABILITY] = current * ratio
        else:
            span.attributes[ATTRIBUTE_SAMPLING_PROBABILITY] = ratio
        span.attributes[ATTRIBUTE_SAMPLING_RULE] = PROBABILISTIC_RULE_VALUE


def update_filtering_tag(traces: Traces) -> None:
    """Mark every span as selected by filtering."""
    for span in traces.iter_spans():
        span.attributes[ATTRIBUTE_SAMPLING_RULE] = FILTERED_RULE_VALUE
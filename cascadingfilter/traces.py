"""Trace data model and the interface that sampling policies implement."""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any

TRACE_ID_SIZE = 16
SPAN_ID_SIZE = 8


class Decision(IntEnum):
    """Status of a sampling decision."""

    UNSPECIFIED = 0
    PENDING = 1
    SAMPLED = 2
    SECOND_CHANCE = 3
    NOT_SAMPLED = 4
    DROPPED = 5


@dataclass
class Span:
    """A single span; timestamps are nanoseconds since the epoch."""

    trace_id: bytes = bytes(TRACE_ID_SIZE)
    span_id: bytes = bytes(SPAN_ID_SIZE)
    name: str = ""
    start_timestamp: int = 0
    end_timestamp: int = 0
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.trace_id = bytes(self.trace_id)
        self.span_id = bytes(self.span_id)
        if len(self.trace_id) != TRACE_ID_SIZE:
            raise ValueError(f"trace id must be {TRACE_ID_SIZE} bytes")
        if len(self.span_id) != SPAN_ID_SIZE:
            raise ValueError(f"span id must be {SPAN_ID_SIZE} bytes")

    def copy(self) -> Span:
        """Return an independent copy of the span."""
        return replace(self, attributes=copy.deepcopy(self.attributes))


@dataclass
class InstrumentationLibrarySpans:
    """Spans produced by one instrumentation library."""

    spans: list[Span] = field(default_factory=list)


@dataclass
class ResourceSpans:
    """Spans that share one resource."""

    resource: dict[str, Any] = field(default_factory=dict)
    instrumentation_library_spans: list[InstrumentationLibrarySpans] = field(default_factory=list)


@dataclass
class Traces:
    """A batch of spans grouped by resource."""

    resource_spans: list[ResourceSpans] = field(default_factory=list)

    def iter_spans(self) -> Iterator[Span]:
        """Yield every span in resource, library and span order."""
        for rs in self.resource_spans:
            for ils in rs.instrumentation_library_spans:
                yield from ils.spans

    def span_count(self) -> int:
        """Return the number of spans in the batch."""
        return sum(
            len(ils.spans)
            for rs in self.resource_spans
            for ils in rs.instrumentation_library_spans
        )

    def move_into(self, other: Traces) -> None:
        """Append this batch's resource spans to ``other`` and leave this batch empty."""
        if other is self:
            return
        other.resource_spans.extend(self.resource_spans)
        self.resource_spans.clear()


@dataclass
class TraceData:
    """Sampling state kept for one trace."""

    decisions: list[Decision] = field(default_factory=list)
    final_decision: Decision = Decision.UNSPECIFIED
    selected_by_probabilistic_filter: bool = False
    arrival_time: float = 0.0
    decision_time: float = 0.0
    span_count: int = 0
    received_batches: list[Traces] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def take_batches(self) -> list[Traces]:
        """Remove and return the received batches."""
        with self.lock:
            batches = self.received_batches
            self.received_batches = []
        return batches


class PolicyEvaluator(ABC):
    """Makes a sampling decision for a trace when asked."""

    @abstractmethod
    def evaluate(self, trace_id: bytes, trace: TraceData) -> Decision:
        """Return the sampling decision for the given trace."""

    @abstractmethod
    def on_late_arriving_spans(self, early_decision: Decision, spans: Sequence[Span]) -> None:
        """Handle spans that arrived after the decision was taken; raise on failure."""
"""Metric measures and views reported by the cascading filter processor."""

from __future__ import annotations

import math
import threading
from bisect import bisect_right
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum, IntEnum


class TelemetryLevel(IntEnum):
    """How much telemetry the processor reports."""

    NONE = 0
    BASIC = 1
    NORMAL = 2
    DETAILED = 3


class AggregationKind(Enum):
    """How recorded values of a view are combined."""

    SUM = "sum"
    DISTRIBUTION = "distribution"
    LAST_VALUE = "last_value"


@dataclass(frozen=True)
class Aggregation:
    """An aggregation kind, with bucket bounds for distributions."""

    kind: AggregationKind
    bounds: tuple[float, ...] = ()

    def __post_init__(self) -> None:
        if self.kind is not AggregationKind.DISTRIBUTION and self.bounds:
            raise ValueError("only distributions have bucket bounds")
        if any(b >= a for a, b in zip(self.bounds[1:], self.bounds)):
            raise ValueError("distribution bounds must be strictly increasing")

    @classmethod
    def sum(cls) -> Aggregation:
        """Sum of all recorded values."""
        return cls(AggregationKind.SUM)

    @classmethod
    def last_value(cls) -> Aggregation:
        """The most recently recorded value."""
        return cls(AggregationKind.LAST_VALUE)

    @classmethod
    def distribution(cls, *bounds: float) -> Aggregation:
        """Histogram of recorded values over the given bucket bounds."""
        return cls(AggregationKind.DISTRIBUTION, tuple(bounds))


UNIT_DIMENSIONLESS = "1"


@dataclass(frozen=True)
class Measure:
    """A named integer quantity that can be recorded."""

    name: str
    description: str
    unit: str


@dataclass(frozen=True)
class View:
    """How a measure is aggregated and broken down by tags."""

    name: str
    measure: Measure
    description: str
    aggregation: Aggregation
    tag_keys: tuple[str, ...] = ()


@dataclass
class DistributionData:
    """Aggregated state of a distribution view row."""

    bounds: tuple[float, ...]
    count: int = 0
    sum: float = 0
    min: float = math.inf
    max: float = -math.inf
    bucket_counts: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.bucket_counts:
            self.bucket_counts = [0] * (len(self.bounds) + 1)

    @property
    def mean(self) -> float:
        """Mean of the recorded values, NaN when nothing was recorded."""
        return self.sum / self.count if self.count else math.nan

    def add(self, value: float) -> None:
        """Account for one recorded value."""
        self.count += 1
        self.sum += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.bucket_counts[bisect_right(self.bounds, value)] += 1


STATUS_SAMPLED = "Sampled"
STATUS_NOT_SAMPLED = "NotSampled"
STATUS_EXCEEDED_KEY = "RateExceeded"
STATUS_SECOND_CHANCE = "SecondChance"
STATUS_SECOND_CHANCE_SAMPLED = "SecondChanceSampled"
STATUS_SECOND_CHANCE_EXCEEDED = "SecondChanceRateExceeded"

TAG_POLICY_KEY = "policy"
TAG_CASCADING_FILTER_DECISION_KEY = "cascading_filter_decision"
TAG_POLICY_DECISION_KEY = "policy_decision"

STAT_DECISION_LATENCY_MICRO_SEC = Measure(
    "policy_decision_latency", "Latency (in microseconds) of a given filtering policy", "µs"
)
STAT_OVERALL_DECISION_LATENCY_US = Measure(
    "cascading_filtering_batch_processing_latency",
    "Latency (in microseconds) of each run of the cascading filter timer",
    "µs",
)
STAT_TRACE_REMOVAL_AGE_SEC = Measure(
    "cascading_trace_removal_age",
    "Time (in seconds) from arrival of a new trace until its removal from memory",
    "s",
)
STAT_LATE_SPAN_ARRIVAL_AFTER_DECISION = Measure(
    "cascadind_late_span_age",
    "Time (in seconds) from the cascading filter decision was taken and the arrival of a late span",
    "s",
)
STAT_POLICY_EVALUATION_ERROR_COUNT = Measure(
    "cascading_policy_evaluation_error",
    "Count of cascading policy evaluation errors",
    UNIT_DIMENSIONLESS,
)
STAT_CASCADING_FILTER_DECISION = Measure(
    "count_final_decision", "Count of traces that were filtered or not", UNIT_DIMENSIONLESS
)
STAT_POLICY_DECISION = Measure(
    "count_policy_decision",
    "Count of provisional (policy) decisions if traces were filtered or not",
    UNIT_DIMENSIONLESS,
)
STAT_DROPPED_TOO_EARLY_COUNT = Measure(
    "casdading_trace_dropped_too_early",
    "Count of traces that needed to be dropped the configured wait time",
    UNIT_DIMENSIONLESS,
)
STAT_NEW_TRACE_ID_RECEIVED_COUNT = Measure(
    "cascading_new_trace_id_received", "Counts the arrival of new traces", UNIT_DIMENSIONLESS
)
STAT_TRACES_ON_MEMORY_GAUGE = Measure(
    "cascading_traces_on_memory",
    "Tracks the number of traces current on memory",
    UNIT_DIMENSIONLESS,
)

LATENCY_BOUNDS: tuple[float, ...] = (
    1, 2, 5, 10, 25, 50, 75, 100, 150, 200, 300, 400, 500, 750, 1000,
    2000, 3000, 4000, 5000, 10000, 20000, 30000, 50000,
)
AGE_BOUNDS: tuple[float, ...] = (
    1, 2, 5, 10, 20, 30, 40, 50, 60, 90, 120, 180, 300, 600, 1800, 3600, 7200,
)


def _view(measure: Measure, aggregation: Aggregation, tag_keys: tuple[str, ...] = ()) -> View:
    return View(measure.name, measure, measure.description, aggregation, tag_keys)


def cascading_filter_metric_views(level: TelemetryLevel) -> list[View]:
    """Return the views to register for the given telemetry level."""
    if level == TelemetryLevel.NONE:
        return []
    latency = Aggregation.distribution(*LATENCY_BOUNDS)
    age = Aggregation.distribution(*AGE_BOUNDS)
    return [
        _view(STAT_OVERALL_DECISION_LATENCY_US, latency),
        _view(STAT_TRACE_REMOVAL_AGE_SEC, age),
        _view(STAT_LATE_SPAN_ARRIVAL_AFTER_DECISION, age),
        _view(STAT_POLICY_DECISION, Aggregation.sum(), (TAG_POLICY_KEY, TAG_POLICY_DECISION_KEY)),
        _view(STAT_DECISION_LATENCY_MICRO_SEC, Aggregation.sum(), (TAG_POLICY_KEY,)),
        _view(
            STAT_CASCADING_FILTER_DECISION,
            Aggregation.sum(),
            (TAG_POLICY_KEY, TAG_CASCADING_FILTER_DECISION_KEY),
        ),
        _view(STAT_POLICY_EVALUATION_ERROR_COUNT, Aggregation.sum()),
        _view(STAT_DROPPED_TOO_EARLY_COUNT, Aggregation.sum()),
        _view(STAT_NEW_TRACE_ID_RECEIVED_COUNT, Aggregation.sum()),
        _view(STAT_TRACES_ON_MEMORY_GAUGE, Aggregation.last_value()),
    ]


RowKey = tuple[tuple[str, str], ...]


class MetricsRegistry:
    """Holds registered views and aggregates the values recorded against them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._views: dict[str, View] = {}
        self._rows: dict[str, dict[RowKey, float | DistributionData]] = {}

    def register(self, views: Iterable[View]) -> None:
        """Register views; a different view under a taken name raises ``ValueError``."""
        views = list(views)
        with self._lock:
            for view in views:
                existing = self._views.get(view.name)
                if existing is not None and existing != view:
                    raise ValueError(f"a different view named {view.name!r} is already registered")
            for view in views:
                if view.name not in self._views:
                    self._views[view.name] = view
                    self._rows[view.name] = {}

    def record(self, measure: Measure, value: float, tags: Mapping[str, str] | None = None) -> None:
        """Record a value of a measure into every view of that measure."""
        tags = tags or {}
        with self._lock:
            for view in self._views.values():
                if view.measure != measure:
                    continue
                key: RowKey = tuple((k, tags[k]) for k in view.tag_keys if k in tags)
                rows = self._rows[view.name]
                kind = view.aggregation.kind
                if kind is AggregationKind.SUM:
                    rows[key] = rows.get(key, 0) + value
                elif kind is AggregationKind.LAST_VALUE:
                    rows[key] = value
                else:
                    data = rows.get(key)
                    if data is None:
                        data = rows[key] = DistributionData(view.aggregation.bounds)
                    data.add(value)

    def rows(self, view_name: str) -> dict[RowKey, float | DistributionData]:
        """Return the aggregated rows of a view keyed by its tag pairs; ``KeyError`` if unknown."""
        with self._lock:
            if view_name not in self._rows:
                raise KeyError(view_name)
            return dict(self._rows[view_name])
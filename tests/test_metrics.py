import pytest

from cascadingfilter.metrics import (
    AGE_BOUNDS,
    LATENCY_BOUNDS,
    STAT_CASCADING_FILTER_DECISION,
    STAT_NEW_TRACE_ID_RECEIVED_COUNT,
    STAT_OVERALL_DECISION_LATENCY_US,
    STAT_TRACES_ON_MEMORY_GAUGE,
    STATUS_SAMPLED,
    STATUS_NOT_SAMPLED,
    TAG_CASCADING_FILTER_DECISION_KEY,
    TAG_POLICY_KEY,
    Aggregation,
    AggregationKind,
    DistributionData,
    Measure,
    MetricsRegistry,
    TelemetryLevel,
    View,
    cascading_filter_metric_views,
)


@pytest.fixture
def registry():
    reg = MetricsRegistry()
    reg.register(cascading_filter_metric_views(TelemetryLevel.NORMAL))
    return reg


def test_no_views_for_level_none():
    assert cascading_filter_metric_views(TelemetryLevel.NONE) == []


def test_view_names_and_order():
    names = [v.name for v in cascading_filter_metric_views(TelemetryLevel.NORMAL)]
    assert names == [
        "cascading_filtering_batch_processing_latency",
        "cascading_trace_removal_age",
        "cascadind_late_span_age",
        "count_policy_decision",
        "policy_decision_latency",
        "count_final_decision",
        "cascading_policy_evaluation_error",
        "casdading_trace_dropped_too_early",
        "cascading_new_trace_id_received",
        "cascading_traces_on_memory",
    ]


def test_view_aggregations():
    views = {v.name: v for v in cascading_filter_metric_views(TelemetryLevel.DETAILED)}
    assert views["cascading_filtering_batch_processing_latency"].aggregation.bounds == LATENCY_BOUNDS
    assert views["cascading_trace_removal_age"].aggregation.bounds == AGE_BOUNDS
    assert views["cascading_traces_on_memory"].aggregation.kind is AggregationKind.LAST_VALUE
    assert views["count_final_decision"].tag_keys == ("policy", "cascading_filter_decision")
    assert all(v.description == v.measure.description for v in views.values())


def test_sum_accumulates(registry):
    registry.record(STAT_NEW_TRACE_ID_RECEIVED_COUNT, 3)
    registry.record(STAT_NEW_TRACE_ID_RECEIVED_COUNT, 4)
    assert registry.rows(STAT_NEW_TRACE_ID_RECEIVED_COUNT.name) == {(): 7}


def test_last_value_keeps_latest(registry):
    registry.record(STAT_TRACES_ON_MEMORY_GAUGE, 10)
    registry.record(STAT_TRACES_ON_MEMORY_GAUGE, 2)
    assert registry.rows(STAT_TRACES_ON_MEMORY_GAUGE.name) == {(): 2}


def test_tags_split_rows_and_unknown_tags_are_ignored(registry):
    registry.record(
        STAT_CASCADING_FILTER_DECISION,
        1,
        {TAG_CASCADING_FILTER_DECISION_KEY: STATUS_SAMPLED, "other": "x"},
    )
    registry.record(STAT_CASCADING_FILTER_DECISION, 1, {TAG_CASCADING_FILTER_DECISION_KEY: STATUS_SAMPLED})
    registry.record(
        STAT_CASCADING_FILTER_DECISION,
        1,
        {TAG_POLICY_KEY: "p", TAG_CASCADING_FILTER_DECISION_KEY: STATUS_NOT_SAMPLED},
    )
    rows = registry.rows(STAT_CASCADING_FILTER_DECISION.name)
    assert rows == {
        ((TAG_CASCADING_FILTER_DECISION_KEY, STATUS_SAMPLED),): 2,
        ((TAG_POLICY_KEY, "p"), (TAG_CASCADING_FILTER_DECISION_KEY, STATUS_NOT_SAMPLED)): 1,
    }


def test_distribution_invariants(registry):
    values = [0, 1, 7, 120, 60000]
    for v in values:
        registry.record(STAT_OVERALL_DECISION_LATENCY_US, v)
    data = registry.rows(STAT_OVERALL_DECISION_LATENCY_US.name)[()]
    assert isinstance(data, DistributionData)
    assert data.count == len(values)
    assert sum(data.bucket_counts) == len(values)
    assert len(data.bucket_counts) == len(LATENCY_BOUNDS) + 1
    assert data.min == 0 and data.max == 60000
    assert data.mean == sum(values) / len(values)
    assert data.bucket_counts[0] == 1
    assert data.bucket_counts[-1] == 1


def test_empty_distribution_mean_is_nan():
    data = DistributionData((1, 2))
    assert data.count == 0
    assert str(data.mean) == "nan"


def test_unknown_view_raises(registry):
    with pytest.raises(KeyError):
        registry.rows("no_such_view")


def test_unregistered_measure_is_not_recorded():
    reg = MetricsRegistry()
    reg.register([View("only", STAT_TRACES_ON_MEMORY_GAUGE, "d", Aggregation.last_value())])
    reg.record(Measure("other", "d", "1"), 5)
    assert reg.rows("only") == {}


def test_reregistering_same_view_is_allowed_and_keeps_data(registry):
    registry.record(STAT_NEW_TRACE_ID_RECEIVED_COUNT, 1)
    registry.register(cascading_filter_metric_views(TelemetryLevel.NORMAL))
    assert registry.rows(STAT_NEW_TRACE_ID_RECEIVED_COUNT.name) == {(): 1}


def test_conflicting_view_raises(registry):
    conflicting = View(
        STAT_NEW_TRACE_ID_RECEIVED_COUNT.name,
        STAT_NEW_TRACE_ID_RECEIVED_COUNT,
        "d",
        Aggregation.last_value(),
    )
    with pytest.raises(ValueError):
        registry.register([conflicting])


def test_invalid_aggregations():
    with pytest.raises(ValueError):
        Aggregation.distribution(5, 2)
    with pytest.raises(ValueError):
        Aggregation(AggregationKind.SUM, (1.0,))
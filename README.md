# cascadingfilter

A trace-sampling processor. It holds incoming spans grouped by trace id,
waits for a configurable decision period, and then runs each trace through a
cascade of filtering policies. A global spans-per-second budget caps what is
forwarded, each policy may have its own budget, and a share of the global
budget can be reserved for traces chosen by a probabilistic filter.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Concepts

- **Policies** (`cascadingfilter.config.PolicyCfg`) match traces by a numeric
  attribute range (`NumericAttributeCfg`), a set of string attribute values
  (`StringAttributeCfg`), or span properties (`PropertiesCfg`: operation name
  pattern, minimum trace duration, minimum number of spans). Attributes are
  looked up on both the resource and the spans. A policy with no conditions
  matches every trace; `invert_match` inverts the result.
- **Budgets**: each policy has `spans_per_second`. A negative budget makes the
  policy return `Decision.SECOND_CHANCE` for matching traces: they are sampled
  only if the global budget still has room after the first-choice traces of
  the same tick were handled.
- **Probabilistic filtering**: when `probabilistic_filtering_ratio` is above
  zero, a first policy named `probabilistic_filter` samples any trace that fits
  in `spans_per_second * ratio` spans per second.
- **Decisions** are members of `cascadingfilter.traces.Decision`:
  `UNSPECIFIED`, `PENDING`, `SAMPLED`, `SECOND_CHANCE`, `NOT_SAMPLED`,
  `DROPPED`.
- Forwarded spans carry a `sampling.rule` attribute (`filtered` or
  `probabilistic`); probabilistically selected spans also carry
  `sampling.probability`.

## Usage

```python
from cascadingfilter.config import Config
from cascadingfilter.factory import new_factory

cfg = Config.from_mapping({
    "decision_wait": "10s",
    "num_traces": 100,
    "expected_new_traces_per_sec": 10,
    "spans_per_second": 1000,
    "probabilistic_filtering_ratio": 0.1,
    "policies": [
        {"name": "slow", "spans_per_second": 50,
         "properties": {"min_duration": "9s"}},
        {"name": "errors", "numeric_attribute":
            {"key": "http.status_code", "min_value": 500, "max_value": 599}},
        {"name": "everything_else", "spans_per_second": -1},
    ],
})

received = []
factory = new_factory()
processor = factory.create_traces_processor(cfg, received.append)
processor.start()

# processor.consume_traces(traces)  # cascadingfilter.traces.Traces objects
# ...
processor.shutdown()
```

`Config.from_mapping` rejects unknown keys and wrongly typed values. Durations
are strings such as `"10s"`, `"1m30s"` or `"500us"` (see
`cascadingfilter.config.parse_duration`) or `datetime.timedelta` values.

`create_default_config()` returns a configuration with a 30 second decision
wait, room for 50 000 traces, a budget of 1500 spans per second, a
probabilistic filtering ratio of 0.2 and no other policies.

The decision wait is counted in whole seconds and must be at least one
second. `num_traces` must be at least one; once it is reached, the oldest
traces are dropped from memory. Passing `None` as the next consumer raises
`ValueError`.

The next consumer is any callable that accepts a `Traces` object. It is
called once per sampled trace with all of that trace's spans combined, and
again for spans that arrive late for an already sampled trace. Errors it
raises are logged, not propagated.

The first call to `consume_traces` starts a background thread that calls
`sampling_policy_on_tick` every second; `shutdown` stops it.
`get_trace` and `trace_count` show what is held in memory.

## Building blocks

- `cascadingfilter.traces` – the span data model (`Span`,
  `InstrumentationLibrarySpans`, `ResourceSpans`, `Traces`), the per-trace
  state `TraceData` and the `PolicyEvaluator` interface.
- `cascadingfilter.idbatcher.Batcher` – a fixed-length pipeline of trace-id
  batches that delays evaluation by the decision wait.
- `cascadingfilter.sampling.new_filter` / `new_probabilistic_filter` – the
  policy evaluators (`FilterEvaluator`).
- `cascadingfilter.batching` – building, combining and tagging span batches.
- `cascadingfilter.metrics` – views and an in-process `MetricsRegistry`; each
  processor keeps one as `processor.metrics`, and `rows(view_name)` returns
  the aggregated values.
- `cascadingfilter.idconv` – big-endian conversion between integers and
  trace or span ids.

## What it does not do

This is a library only: it has no command-line program, reads no
configuration files (build the mapping yourself, for example from YAML), does
not receive or export spans over the network, and keeps its metrics in
memory without exporting them anywhere.
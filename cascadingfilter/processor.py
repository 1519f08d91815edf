"""The cascading filter trace processor.

Spans are held per trace until the decision wait has passed. Then every
policy gives a provisional decision, and the global span budget decides
which traces are finally forwarded to the next consumer.
"""

from __future__ import annotations

import logging
import os
import struct
import threading
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .batching import (
    combine_batches,
    prepare_trace_batch,
    update_filtering_tag,
    update_probabilistic_rate_tag,
)
from .config import Config
from .idbatcher import Batcher
from .metrics import (
    STAT_CASCADING_FILTER_DECISION,
    STAT_DECISION_LATENCY_MICRO_SEC,
    STAT_DROPPED_TOO_EARLY_COUNT,
    STAT_LATE_SPAN_ARRIVAL_AFTER_DECISION,
    STAT_NEW_TRACE_ID_RECEIVED_COUNT,
    STAT_OVERALL_DECISION_LATENCY_US,
    STAT_POLICY_DECISION,
    STAT_POLICY_EVALUATION_ERROR_COUNT,
    STAT_TRACE_REMOVAL_AGE_SEC,
    STAT_TRACES_ON_MEMORY_GAUGE,
    STATUS_EXCEEDED_KEY,
    STATUS_NOT_SAMPLED,
    STATUS_SAMPLED,
    STATUS_SECOND_CHANCE,
    STATUS_SECOND_CHANCE_EXCEEDED,
    STATUS_SECOND_CHANCE_SAMPLED,
    TAG_CASCADING_FILTER_DECISION_KEY,
    TAG_POLICY_DECISION_KEY,
    TAG_POLICY_KEY,
    MetricsRegistry,
    TelemetryLevel,
    cascading_filter_metric_views,
)
from .sampling import new_filter, new_probabilistic_filter
from .traces import Decision, PolicyEvaluator, ResourceSpans, Span, TraceData, Traces

PROBABILISTIC_FILTER_POLICY_NAME = "probabilistic_filter"
TICK_INTERVAL_SECONDS = 1.0

TracesConsumer = Callable[[Traces], None]

_log = logging.getLogger(__name__)


def _float32(value: float) -> float:
    return struct.unpack("f", struct.pack("f", value))[0]


@dataclass
class Policy:
    """A named sampling policy evaluator."""

    name: str
    evaluator: PolicyEvaluator
    probabilistic_filter: bool = False


class _Ticker(Protocol):
    def start(self, interval: float) -> None: ...

    def on_tick(self) -> None: ...

    def stop(self) -> None: ...


class PolicyTicker:
    """Calls a function periodically from a background thread."""

    def __init__(self, on_tick: Callable[[], None]) -> None:
        self._callback = on_tick
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self, interval: float) -> None:
        """Start calling ``on_tick`` every ``interval`` seconds."""
        if interval <= 0:
            raise ValueError("ticker interval must be positive")
        if self._thread is not None:
            raise RuntimeError("ticker already started")
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, args=(interval,), daemon=True, name="cascading-filter-ticker"
        )
        self._thread.start()

    def _run(self, interval: float) -> None:
        while not self._stop_event.wait(interval):
            try:
                self.on_tick()
            except Exception:
                _log.exception("Sampling policy tick failed")

    def on_tick(self) -> None:
        """Run the tick function once."""
        self._callback()

    def stop(self) -> None:
        """Stop firing ticks."""
        self._stop_event.set()


class CascadingFilterProcessor:
    """Holds incoming spans per trace and forwards the traces the policies select."""

    def __init__(
        self,
        next_consumer: TracesConsumer | None,
        policies: Sequence[Policy],
        decision_batcher: Batcher,
        max_num_traces: int,
        max_spans_per_second: int,
        *,
        ticker: _Ticker | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_num_traces < 1:
            raise ValueError("number of traces kept in memory must be greater than zero")
        self.policies = list(policies)
        self.max_num_traces = max_num_traces
        self.max_spans_per_second = max_spans_per_second
        if metrics is None:
            metrics = MetricsRegistry()
            metrics.register(cascading_filter_metric_views(TelemetryLevel.NORMAL))
        self.metrics = metrics
        self._next_consumer = next_consumer
        self._decision_batcher = decision_batcher
        self._ticker: _Ticker = ticker if ticker is not None else PolicyTicker(self.sampling_policy_on_tick)
        self._clock = clock
        self._logger = logger or _log
        self._lock = threading.RLock()
        self._traces: dict[bytes, TraceData] = {}
        self._deletion_queue: deque[bytes] = deque()
        self._start_lock = threading.Lock()
        self._started = False
        self._current_second = 0
        self._spans_in_current_second = 0

    @classmethod
    def from_config(cls, next_consumer: TracesConsumer | None, cfg: Config) -> CascadingFilterProcessor:
        """Build a processor and its policies from a configuration."""
        num_decision_batches = int(cfg.decision_wait.total_seconds())
        batcher = Batcher(num_decision_batches, cfg.expected_new_traces_per_sec, 2 * (os.cpu_count() or 1))

        policies: list[Policy] = []
        # The probabilistic policy must come first: it selects independently of the others.
        ratio = cfg.probabilistic_filtering_ratio
        if ratio is not None and ratio > 0.0:
            rate = int(_float32(_float32(cfg.spans_per_second) * _float32(ratio)))
            policies.append(
                Policy(PROBABILISTIC_FILTER_POLICY_NAME, new_probabilistic_filter(rate), probabilistic_filter=True)
            )
        for policy_cfg in cfg.policy_cfgs:
            policies.append(Policy(policy_cfg.name, new_filter(policy_cfg)))

        return cls(
            next_consumer,
            policies,
            batcher,
            max_num_traces=cfg.num_traces,
            max_spans_per_second=cfg.spans_per_second,
        )

    def get_trace(self, trace_id: bytes) -> TraceData | None:
        """Return the data held for a trace, or ``None``."""
        with self._lock:
            return self._traces.get(bytes(trace_id))

    def trace_count(self) -> int:
        """Return the number of traces held in memory."""
        with self._lock:
            return len(self._traces)

    def start(self) -> None:
        """Nothing to do at service start; ticks begin with the first trace."""

    def shutdown(self) -> None:
        """Stop the decision ticker if it was started."""
        with self._start_lock:
            if self._started:
                self._ticker.stop()

    def consume_traces(self, traces: Traces) -> None:
        """Take in a batch of spans; the first call starts the decision ticker."""
        with self._start_lock:
            if not self._started:
                self._logger.info("First trace data arrived, starting cascading_filter timers")
                self._ticker.start(TICK_INTERVAL_SECONDS)
                self._started = True
        for resource_spans in traces.resource_spans:
            self._process_resource_spans(resource_spans)

    def update_rate(self, curr_second: int, num_spans: int) -> Decision:
        """Charge ``num_spans`` to the global budget of ``curr_second`` if they fit."""
        if self._current_second != curr_second:
            self._current_second = curr_second
            self._spans_in_current_second = 0
        if_sampled = self._spans_in_current_second + num_spans
        if if_sampled <= self.max_spans_per_second:
            self._spans_in_current_second = if_sampled
            return Decision.SAMPLED
        return Decision.NOT_SAMPLED

    def make_provisional_decision(self, trace_id: bytes, trace: TraceData) -> tuple[Decision, Policy | None]:
        """Run every policy on the trace; return the combined decision and the first sampling policy."""
        provisional = Decision.UNSPECIFIED
        matching: Policy | None = None
        for index, policy in enumerate(self.policies):
            started = time.perf_counter()
            decision = policy.evaluator.evaluate(trace_id, trace)
            self.metrics.record(
                STAT_DECISION_LATENCY_MICRO_SEC,
                int((time.perf_counter() - started) * 1_000_000),
                {TAG_POLICY_KEY: policy.name},
            )
            with trace.lock:
                trace.decisions[index] = decision

            if decision == Decision.SAMPLED:
                provisional = Decision.SAMPLED
                if matching is None:
                    matching = policy
                if policy.probabilistic_filter:
                    trace.selected_by_probabilistic_filter = True
                status = STATUS_SAMPLED
            elif decision == Decision.NOT_SAMPLED:
                if provisional == Decision.UNSPECIFIED:
                    provisional = Decision.NOT_SAMPLED
                status = STATUS_NOT_SAMPLED
            elif decision == Decision.SECOND_CHANCE:
                if provisional != Decision.SAMPLED:
                    provisional = Decision.SECOND_CHANCE
                status = STATUS_SECOND_CHANCE
            else:
                continue
            self.metrics.record(
                STAT_POLICY_DECISION, 1, {TAG_POLICY_KEY: policy.name, TAG_POLICY_DECISION_KEY: status}
            )
        return provisional, matching

    def sampling_policy_on_tick(self) -> None:
        """Decide on the oldest batch of traces and forward the sampled ones."""
        started = time.perf_counter()
        batch, _ = self._decision_batcher.close_current_and_take_first_batch()
        self._logger.debug("Sampling Policy Evaluation ticked")
        curr_second = int(self._clock())

        not_found = 0
        sampled = 0
        not_sampled = 0
        total_spans = 0
        probabilistic_spans = 0

        # First pass: provisional decisions, each policy on its own.
        for trace_id in batch:
            trace = self.get_trace(trace_id)
            if trace is None:
                not_found += 1
                continue
            trace.decision_time = self._clock()
            total_spans += trace.span_count

            provisional, _ = self.make_provisional_decision(trace_id, trace)
            if provisional == Decision.SAMPLED:
                trace.final_decision = self.update_rate(curr_second, trace.span_count)
                if trace.final_decision == Decision.SAMPLED:
                    if trace.selected_by_probabilistic_filter:
                        probabilistic_spans += trace.span_count
                    self._record_final(STATUS_SAMPLED)
                else:
                    self._record_final(STATUS_EXCEEDED_KEY)
            elif provisional == Decision.SECOND_CHANCE:
                trace.final_decision = Decision.SECOND_CHANCE
            else:
                trace.final_decision = provisional
                self._record_final(STATUS_NOT_SAMPLED)

        # Second pass: settle second chances and forward what was sampled.
        for trace_id in batch:
            trace = self.get_trace(trace_id)
            if trace is None:
                continue
            if trace.final_decision == Decision.SECOND_CHANCE:
                trace.final_decision = self.update_rate(curr_second, trace.span_count)
                if trace.final_decision == Decision.SAMPLED:
                    self._record_final(STATUS_SECOND_CHANCE_SAMPLED)
                else:
                    self._record_final(STATUS_SECOND_CHANCE_EXCEEDED)

            batches = trace.take_batches()
            if trace.final_decision == Decision.SAMPLED:
                sampled += 1
                combined = combine_batches(batches)
                if trace.selected_by_probabilistic_filter:
                    update_probabilistic_rate_tag(combined, probabilistic_spans, total_spans)
                else:
                    update_filtering_tag(combined)
                self._forward(combined)
            else:
                not_sampled += 1

        self.metrics.record(STAT_OVERALL_DECISION_LATENCY_US, int((time.perf_counter() - started) * 1_000_000))
        self.metrics.record(STAT_DROPPED_TOO_EARLY_COUNT, not_found)
        self.metrics.record(STAT_POLICY_EVALUATION_ERROR_COUNT, 0)
        self.metrics.record(STAT_TRACES_ON_MEMORY_GAUGE, self.trace_count())
        self._logger.debug(
            "Sampling policy evaluation completed: batch.len=%d sampled=%d notSampled=%d "
            "droppedPriorToEvaluation=%d",
            len(batch),
            sampled,
            not_sampled,
            not_found,
        )

    def drop_trace(self, trace_id: bytes, deletion_time: float) -> None:
        """Remove a trace from memory; ``deletion_time`` is in seconds since the epoch."""
        with self._lock:
            trace = self._traces.pop(bytes(trace_id), None)
        if trace is None:
            self._logger.error("Attempt to delete traceID not on table")
            return
        self.metrics.record(STAT_TRACE_REMOVAL_AGE_SEC, int(deletion_time - trace.arrival_time))

    def _record_final(self, status: str) -> None:
        self.metrics.record(STAT_CASCADING_FILTER_DECISION, 1, {TAG_CASCADING_FILTER_DECISION_KEY: status})

    def _forward(self, traces: Traces, policy_name: str | None = None) -> None:
        if self._next_consumer is None:
            self._logger.error("No next consumer to receive sampled traces")
            return
        try:
            self._next_consumer(traces)
        except Exception as exc:
            if policy_name is None:
                self._logger.error("Sampling Policy Evaluation error on consuming traces: %s", exc)
            else:
                self._logger.warning(
                    "Error sending late arrived spans to destination (policy %s): %s", policy_name, exc
                )

    def _process_resource_spans(self, resource_spans: ResourceSpans) -> None:
        grouped: dict[bytes, list[Span]] = {}
        for ils in resource_spans.instrumentation_library_spans:
            for span in ils.spans:
                grouped.setdefault(span.trace_id, []).append(span)

        new_trace_ids = 0
        for trace_id, spans in grouped.items():
            trace, created = self._load_or_store(trace_id, len(spans))
            if created:
                new_trace_ids += 1
                self._decision_batcher.add_to_current_batch(trace_id)
                self._schedule_deletion(trace_id)
            self._dispatch(resource_spans, trace, spans)

        self.metrics.record(STAT_NEW_TRACE_ID_RECEIVED_COUNT, new_trace_ids)

    def _load_or_store(self, trace_id: bytes, num_spans: int) -> tuple[TraceData, bool]:
        with self._lock:
            trace = self._traces.get(trace_id)
            if trace is None:
                trace = TraceData(
                    decisions=[Decision.PENDING] * len(self.policies),
                    arrival_time=self._clock(),
                    span_count=num_spans,
                )
                self._traces[trace_id] = trace
                return trace, True
        with trace.lock:
            trace.span_count += num_spans
        return trace, False

    def _schedule_deletion(self, trace_id: bytes) -> None:
        now = self._clock()
        with self._lock:
            # Only the oldest traces beyond the limit are dropped.
            while len(self._deletion_queue) >= self.max_num_traces:
                self.drop_trace(self._deletion_queue.popleft(), now)
            self._deletion_queue.append(trace_id)

    def _dispatch(self, resource_spans: ResourceSpans, trace: TraceData, spans: list[Span]) -> None:
        for index, policy in enumerate(self.policies):
            with trace.lock:
                decision = trace.decisions[index]
                # While pending, keep the spans under the lock so no decision slips in between.
                if decision == Decision.PENDING:
                    trace.received_batches.append(prepare_trace_batch(resource_spans, spans))
                    return

            if decision == Decision.SAMPLED:
                self._forward(prepare_trace_batch(resource_spans, spans), policy.name)
            if decision in (Decision.SAMPLED, Decision.NOT_SAMPLED):
                try:
                    policy.evaluator.on_late_arriving_spans(decision, spans)
                except Exception as exc:
                    self._logger.debug("Policy %s failed on late spans: %s", policy.name, exc)
                self.metrics.record(
                    STAT_LATE_SPAN_ARRIVAL_AFTER_DECISION, int(self._clock() - trace.decision_time)
                )
            elif decision != Decision.SECOND_CHANCE:
                self._logger.warning(
                    "Encountered unexpected sampling decision %d for policy %s", int(decision), policy.name
                )

            # Late spans of a sampled trace are forwarded only once.
            if decision == Decision.SAMPLED:
                return


def new_trace_processor(next_consumer: TracesConsumer | None, cfg: Config) -> CascadingFilterProcessor:
    """Create a processor forwarding to ``next_consumer``; raise ``ValueError`` if it is missing."""
    if next_consumer is None:
        raise ValueError("nil next consumer")
    return CascadingFilterProcessor.from_config(next_consumer, cfg)
"""Filtering policy evaluators: attribute, span property and rate based."""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from .config import NumericAttributeCfg, PolicyCfg, StringAttributeCfg
from .traces import Decision, PolicyEvaluator, Span, TraceData

_ONE_MICROSECOND = timedelta(microseconds=1)


def _int_value(value: Any) -> int:
    # Attributes that are not integers read as zero.
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return 0


def _str_value(value: Any) -> str:
    # Attributes that are not strings read as empty.
    return value if isinstance(value, str) else ""


@dataclass(frozen=True)
class NumericAttributeFilter:
    """Matches an integer attribute within ``[min_value, max_value]``."""

    key: str
    min_value: int
    max_value: int

    def matches(self, attributes: Mapping[str, Any]) -> bool:
        """Return whether the attributes hold the key with a value in range."""
        if self.key not in attributes:
            return False
        value = _int_value(attributes[self.key])
        return self.min_value <= value <= self.max_value


@dataclass(frozen=True)
class StringAttributeFilter:
    """Matches a string attribute equal to one of ``values``."""

    key: str
    values: frozenset[str]

    def matches(self, attributes: Mapping[str, Any]) -> bool:
        """Return whether the attributes hold the key with one of the values."""
        if self.key not in attributes:
            return False
        value = _str_value(attributes[self.key])
        return bool(value) and value in self.values


def _numeric_filter(cfg: NumericAttributeCfg | None) -> NumericAttributeFilter | None:
    if cfg is None:
        return None
    return NumericAttributeFilter(cfg.key, cfg.min_value, cfg.max_value)


def _string_filter(cfg: StringAttributeCfg | None) -> StringAttributeFilter | None:
    if cfg is None:
        return None
    return StringAttributeFilter(cfg.key, frozenset(v for v in cfg.values if v))


@dataclass
class FilterEvaluator(PolicyEvaluator):
    """Samples traces meeting every configured condition, within a span budget.

    A negative ``max_spans_per_second`` makes matching traces come back as
    ``SECOND_CHANCE`` instead of being rate limited here.
    """

    numeric_attr: NumericAttributeFilter | None = None
    string_attr: StringAttributeFilter | None = None
    operation_re: re.Pattern[str] | None = None
    min_duration: timedelta | None = None
    min_number_of_spans: int | None = None
    max_spans_per_second: int = 0
    invert_match: bool = False
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)
    current_second: int = field(default=0, init=False)
    spans_in_current_second: int = field(default=0, init=False)

    def on_late_arriving_spans(self, early_decision: Decision, spans: Sequence[Span]) -> None:
        """Late spans need no bookkeeping here."""

    def evaluate_rules(self, trace: TraceData) -> Decision:
        """Check the trace against the configured conditions, ignoring the budget."""
        with trace.lock:
            batches = list(trace.received_batches)

        check_attrs = self.string_attr is not None or self.numeric_attr is not None
        operation_found = False
        string_found = False
        numeric_found = False
        span_count = 0
        min_start = 0
        max_end = 0

        for batch in batches:
            for rs in batch.resource_spans:
                if check_attrs:
                    string_found, numeric_found = self._check_attrs(
                        rs.resource, string_found, numeric_found
                    )
                for ils in rs.instrumentation_library_spans:
                    span_count += len(ils.spans)
                    for span in ils.spans:
                        if check_attrs:
                            string_found, numeric_found = self._check_attrs(
                                span.attributes, string_found, numeric_found
                            )
                        if (
                            self.operation_re is not None
                            and not operation_found
                            and self.operation_re.search(span.name)
                        ):
                            operation_found = True
                        if self.min_duration is not None:
                            start = span.start_timestamp // 1000
                            end = span.end_timestamp // 1000
                            if min_start == 0:
                                min_start, max_end = start, end
                            else:
                                min_start = min(min_start, start)
                                max_end = max(max_end, end)

        conditions = [
            self.operation_re is None or operation_found,
            self.min_number_of_spans is None or span_count >= self.min_number_of_spans,
            self.min_duration is None
            or (
                max_end > min_start
                and max_end - min_start >= self.min_duration // _ONE_MICROSECOND
            ),
            self.numeric_attr is None or numeric_found,
            self.string_attr is None or string_found,
        ]
        matched = all(conditions)
        if matched != self.invert_match:
            return Decision.SAMPLED
        return Decision.NOT_SAMPLED

    def evaluate(self, trace_id: bytes, trace: TraceData) -> Decision:
        """Decide on the trace, taking the span budget into account."""
        curr_second = int(self.clock())
        if not self._should_consider(curr_second, trace):
            return Decision.NOT_SAMPLED
        decision = self.evaluate_rules(trace)
        if decision != Decision.SAMPLED:
            return decision
        if self.max_spans_per_second < 0:
            return Decision.SECOND_CHANCE
        return self._update_rate(curr_second, trace.span_count)

    def _check_attrs(
        self, attributes: Mapping[str, Any], string_found: bool, numeric_found: bool
    ) -> tuple[bool, bool]:
        if not string_found and self.string_attr is not None:
            string_found = self.string_attr.matches(attributes)
        if not numeric_found and self.numeric_attr is not None:
            numeric_found = self.numeric_attr.matches(attributes)
        return string_found, numeric_found

    def _should_consider(self, curr_second: int, trace: TraceData) -> bool:
        if self.max_spans_per_second < 0:
            return True
        if trace.span_count > self.max_spans_per_second:
            return False
        if (
            self.current_second == curr_second
            and trace.span_count > self.max_spans_per_second - self.spans_in_current_second
        ):
            return False
        return True

    def _update_rate(self, curr_second: int, num_spans: int) -> Decision:
        if self.current_second != curr_second:
            self.current_second = curr_second
            self.spans_in_current_second = 0
        if_sampled = self.spans_in_current_second + num_spans
        if if_sampled <= self.max_spans_per_second:
            self.spans_in_current_second = if_sampled
            return Decision.SAMPLED
        return Decision.NOT_SAMPLED


def new_probabilistic_filter(max_span_rate: int) -> FilterEvaluator:
    """Create an evaluator that samples any trace fitting in ``max_span_rate`` spans per second."""
    return FilterEvaluator(max_spans_per_second=max_span_rate)


def new_filter(cfg: PolicyCfg) -> FilterEvaluator:
    """Create an evaluator from a policy configuration; raise ``ValueError`` if it is invalid."""
    props = cfg.properties_cfg
    operation_re = None
    if props.name_pattern is not None:
        try:
            operation_re = re.compile(props.name_pattern)
        except re.error as exc:
            raise ValueError(f"invalid name pattern {props.name_pattern!r}: {exc}") from exc
    if props.min_duration is not None and props.min_duration < timedelta(0):
        raise ValueError("minimum span duration must be a non-negative number")
    if props.min_number_of_spans is not None and props.min_number_of_spans < 1:
        raise ValueError("minimum number of spans must be a positive number")
    return FilterEvaluator(
        numeric_attr=_numeric_filter(cfg.numeric_attribute_cfg),
        string_attr=_string_filter(cfg.string_attribute_cfg),
        operation_re=operation_re,
        min_duration=props.min_duration,
        min_number_of_spans=props.min_number_of_spans,
        max_spans_per_second=cfg.spans_per_second,
        invert_match=cfg.invert_match,
    )
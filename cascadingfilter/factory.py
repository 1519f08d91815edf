"""Factory creating cascading filter processors and their default configuration."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from .config import Config
from .processor import CascadingFilterProcessor, TracesConsumer, new_trace_processor

TYPE_STR = "cascading_filter"

DEFAULT_DECISION_WAIT = timedelta(seconds=30)
DEFAULT_NUM_TRACES = 50_000
DEFAULT_SPANS_PER_SECOND = 1500
DEFAULT_PROBABILISTIC_FILTERING_RATIO = 0.2


def create_default_config() -> Config:
    """Return a new configuration holding the processor's defaults."""
    return Config(
        decision_wait=DEFAULT_DECISION_WAIT,
        num_traces=DEFAULT_NUM_TRACES,
        spans_per_second=DEFAULT_SPANS_PER_SECOND,
        probabilistic_filtering_ratio=DEFAULT_PROBABILISTIC_FILTERING_RATIO,
    )


@dataclass(frozen=True)
class ProcessorFactory:
    """Creates configurations and trace processors of one processor type."""

    type: str = TYPE_STR

    def create_default_config(self) -> Config:
        """Return a new default configuration."""
        return create_default_config()

    def create_traces_processor(
        self, cfg: Config, next_consumer: TracesConsumer | None
    ) -> CascadingFilterProcessor:
        """Create a processor for ``cfg`` that forwards sampled traces to ``next_consumer``."""
        if not isinstance(cfg, Config):
            raise TypeError(f"expected a cascading filter Config, not {type(cfg).__name__}")
        return new_trace_processor(next_consumer, cfg)


def new_factory() -> ProcessorFactory:
    """Return a factory for the cascading filter processor."""
    return ProcessorFactory()
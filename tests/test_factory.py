from datetime import timedelta

import pytest

from cascadingfilter.config import Config, PolicyCfg
from cascadingfilter.factory import ProcessorFactory, create_default_config, new_factory


def _nop_consumer(traces):
    return None


def test_create_default_config_values():
    cfg = create_default_config()
    assert cfg.decision_wait == timedelta(seconds=30)
    assert cfg.num_traces == 50000
    assert cfg.spans_per_second == 1500
    assert cfg.probabilistic_filtering_ratio == pytest.approx(0.2)
    assert cfg.expected_new_traces_per_sec == 0
    assert cfg.policy_cfgs == []


def test_default_configs_are_independent():
    first = create_default_config()
    second = create_default_config()
    first.policy_cfgs.append(PolicyCfg(name="extra"))
    first.num_traces = 1
    assert second.policy_cfgs == []
    assert second.num_traces == 50000


def test_factory_type_and_default_config():
    factory = new_factory()
    assert isinstance(factory, ProcessorFactory)
    assert factory.type == "cascading_filter"
    assert factory.create_default_config() == create_default_config()


def test_create_processor():
    factory = new_factory()
    cfg = factory.create_default_config()
    cfg.expected_new_traces_per_sec = 64
    cfg.policy_cfgs = [PolicyCfg(name="test-policy")]

    processor = factory.create_traces_processor(cfg, _nop_consumer)

    assert [p.name for p in processor.policies] == ["probabilistic_filter", "test-policy"]
    assert processor.policies[0].probabilistic_filter is True
    assert processor.policies[1].probabilistic_filter is False
    assert processor.policies[0].evaluator.max_spans_per_second == 300
    assert processor.max_spans_per_second == 1500
    assert processor.max_num_traces == 50000
    assert processor.trace_count() == 0


def test_create_processor_without_probabilistic_ratio():
    factory = new_factory()
    cfg = factory.create_default_config()
    cfg.probabilistic_filtering_ratio = 0.0
    cfg.policy_cfgs = [PolicyCfg(name="only")]

    processor = factory.create_traces_processor(cfg, _nop_consumer)

    assert [p.name for p in processor.policies] == ["only"]


def test_create_processor_requires_consumer():
    factory = new_factory()
    with pytest.raises(ValueError):
        factory.create_traces_processor(factory.create_default_config(), None)


def test_create_processor_rejects_other_config_type():
    factory = new_factory()
    with pytest.raises(TypeError):
        factory.create_traces_processor({"num_traces": 10}, _nop_consumer)


def test_create_processor_rejects_invalid_policy():
    factory = new_factory()
    cfg = factory.create_default_config()
    cfg.policy_cfgs = [PolicyCfg.from_mapping({"name": "bad", "properties": {"min_number_of_spans": 0}})]
    with pytest.raises(ValueError):
        factory.create_traces_processor(cfg, _nop_consumer)


def test_create_processor_from_mapping_config():
    factory = new_factory()
    cfg = Config.from_mapping(
        {
            "decision_wait": "10s",
            "num_traces": 100,
            "expected_new_traces_per_sec": 10,
            "spans_per_second": 1000,
            "policies": [{"name": "everything_else", "spans_per_second": -1}],
        }
    )
    processor = factory.create_traces_processor(cfg, _nop_consumer)
    assert [p.name for p in processor.policies] == ["everything_else"]
    assert processor.max_num_traces == 100
"""Configuration of the cascading filter processor."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from fractions import Fraction
from typing import Any

_UNIT_NANOS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(value: str | timedelta) -> timedelta:
    """Parse a duration such as ``"10s"``, ``"1m30s"`` or ``"500us"``.

    A ``timedelta`` is returned unchanged. Precision below a microsecond
    is truncated.
    """
    if isinstance(value, timedelta):
        return value
    if not isinstance(value, str):
        raise TypeError(f"duration must be a string or timedelta, not {type(value).__name__}")
    text = value
    negative = False
    if text[:1] in ("+", "-"):
        negative = text[0] == "-"
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {value!r}")
    total = Fraction(0)
    pos = 0
    while pos < len(text):
        match = _COMPONENT.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {value!r}")
        total += Fraction(match.group(1)) * _UNIT_NANOS[match.group(2)]
        pos = match.end()
    micros = int(total / 1000)
    return timedelta(microseconds=-micros if negative else micros)


def _require_mapping(data: Any, section: str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise TypeError(f"{section} must be a mapping, not {type(data).__name__}")
    return data


def _check_keys(data: Mapping[str, Any], allowed: set[str], section: str) -> None:
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"unknown keys in {section}: {', '.join(map(str, unknown))}")


def _get_int(data: Mapping[str, Any], key: str, default: int, *, unsigned: bool = False) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{key} must be an integer, not {type(value).__name__}")
    if unsigned and value < 0:
        raise ValueError(f"{key} must not be negative, got {value}")
    return value


def _get_str(data: Mapping[str, Any], key: str, default: str) -> str:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string, not {type(value).__name__}")
    return value


def _get_bool(data: Mapping[str, Any], key: str, default: bool) -> bool:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise TypeError(f"{key} must be a boolean, not {type(value).__name__}")
    return value


@dataclass
class NumericAttributeCfg:
    """Match traces holding an integer attribute within ``[min_value, max_value]``."""

    key: str = ""
    min_value: int = 0
    max_value: int = 0


@dataclass
class StringAttributeCfg:
    """Match traces holding a string attribute equal to one of ``values``."""

    key: str = ""
    values: list[str] = field(default_factory=list)


@dataclass
class PropertiesCfg:
    """Optional span property conditions of a policy."""

    name_pattern: str | None = None
    min_duration: timedelta | None = None
    min_number_of_spans: int | None = None


@dataclass
class PolicyCfg:
    """Settings of one filtering policy."""

    name: str = ""
    numeric_attribute_cfg: NumericAttributeCfg | None = None
    string_attribute_cfg: StringAttributeCfg | None = None
    properties_cfg: PropertiesCfg = field(default_factory=PropertiesCfg)
    spans_per_second: int = 0
    invert_match: bool = False

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> PolicyCfg:
        """Build a policy from a mapping keyed as in the configuration file."""
        data = _require_mapping(data, "policy")
        _check_keys(
            data,
            {"name", "numeric_attribute", "string_attribute", "properties",
             "spans_per_second", "invert_match"},
            "policy",
        )
        return cls(
            name=_get_str(data, "name", ""),
            numeric_attribute_cfg=_numeric_from_mapping(data.get("numeric_attribute")),
            string_attribute_cfg=_string_from_mapping(data.get("string_attribute")),
            properties_cfg=_properties_from_mapping(data.get("properties")),
            spans_per_second=_get_int(data, "spans_per_second", 0),
            invert_match=_get_bool(data, "invert_match", False),
        )


def _numeric_from_mapping(data: Any) -> NumericAttributeCfg | None:
    if data is None:
        return None
    data = _require_mapping(data, "numeric_attribute")
    _check_keys(data, {"key", "min_value", "max_value"}, "numeric_attribute")
    return NumericAttributeCfg(
        key=_get_str(data, "key", ""),
        min_value=_get_int(data, "min_value", 0),
        max_value=_get_int(data, "max_value", 0),
    )


def _string_from_mapping(data: Any) -> StringAttributeCfg | None:
    if data is None:
        return None
    data = _require_mapping(data, "string_attribute")
    _check_keys(data, {"key", "values"}, "string_attribute")
    values = data.get("values") or []
    if isinstance(values, str) or not all(isinstance(v, str) for v in values):
        raise TypeError("values must be a list of strings")
    return StringAttributeCfg(key=_get_str(data, "key", ""), values=list(values))


def _properties_from_mapping(data: Any) -> PropertiesCfg:
    if data is None:
        return PropertiesCfg()
    data = _require_mapping(data, "properties")
    _check_keys(data, {"name_pattern", "min_duration", "min_number_of_spans"}, "properties")
    name_pattern = data.get("name_pattern")
    if name_pattern is not None and not isinstance(name_pattern, str):
        raise TypeError("name_pattern must be a string")
    min_duration = data.get("min_duration")
    min_spans = data.get("min_number_of_spans")
    return PropertiesCfg(
        name_pattern=name_pattern,
        min_duration=None if min_duration is None else parse_duration(min_duration),
        min_number_of_spans=None if min_spans is None else _get_int(data, "min_number_of_spans", 0),
    )


@dataclass
class Config:
    """Settings of the cascading filter processor."""

    decision_wait: timedelta = field(default_factory=timedelta)
    spans_per_second: int = 0
    probabilistic_filtering_ratio: float | None = None
    num_traces: int = 0
    expected_new_traces_per_sec: int = 0
    policy_cfgs: list[PolicyCfg] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Config:
        """Build a configuration from a mapping keyed as in the configuration file."""
        data = _require_mapping(data, "cascading_filter")
        _check_keys(
            data,
            {"decision_wait", "spans_per_second", "probabilistic_filtering_ratio",
             "num_traces", "expected_new_traces_per_sec", "policies"},
            "cascading_filter",
        )
        ratio = data.get("probabilistic_filtering_ratio")
        if ratio is not None:
            if isinstance(ratio, bool) or not isinstance(ratio, (int, float)):
                raise TypeError("probabilistic_filtering_ratio must be a number")
            ratio = float(ratio)
        decision_wait = data.get("decision_wait")
        policies = data.get("policies") or []
        if isinstance(policies, (str, bytes, Mapping)):
            raise TypeError("policies must be a list")
        return cls(
            decision_wait=timedelta(0) if decision_wait is None else parse_duration(decision_wait),
            spans_per_second=_get_int(data, "spans_per_second", 0),
            probabilistic_filtering_ratio=ratio,
            num_traces=_get_int(data, "num_traces", 0, unsigned=True),
            expected_new_traces_per_sec=_get_int(data, "expected_new_traces_per_sec", 0, unsigned=True),
            policy_cfgs=[PolicyCfg.from_mapping(p) for p in policies],
        )
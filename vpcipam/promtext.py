"""Parser for the Prometheus text exposition format."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field

__all__ = [
    "MetricType",
    "Quantile",
    "Bucket",
    "Sample",
    "MetricFamily",
    "ParseError",
    "parse_metric_families",
]

_METRIC_NAME = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")
_LABEL_VALUE = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)
_ESCAPE = re.compile(r"\\(.)", re.DOTALL)
_LABEL_ESCAPES = {"\\": "\\", '"': '"', "n": "\n"}
_HELP_ESCAPES = {"\\": "\\", "n": "\n"}
_COMPOSITE_SUFFIXES = ("_bucket", "_sum", "_count")


class MetricType(enum.Enum):
    """Type of a metric family as declared by a TYPE line."""

    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"
    UNTYPED = "untyped"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class Quantile:
    quantile: float
    value: float


@dataclass(frozen=True)
class Bucket:
    upper_bound: float
    cumulative_count: float


@dataclass
class Sample:
    """One metric of a family, identified by its label set."""

    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    quantiles: list[Quantile] = field(default_factory=list)
    buckets: list[Bucket] = field(default_factory=list)
    sample_count: float = 0.0
    sample_sum: float = 0.0
    timestamp_ms: int | None = None


@dataclass
class MetricFamily:
    name: str
    type: MetricType = MetricType.UNTYPED
    help: str | None = None
    metrics: list[Sample] = field(default_factory=list)


class ParseError(ValueError):
    """Raised when the exposition text is malformed."""

    def __init__(self, message: str, line: int | None = None) -> None:
        self.message = message
        self.line = line
        super().__init__(f"line {line}: {message}" if line is not None else message)


def _unescape(text: str, table: dict[str, str]) -> str:
    def replace(match: re.Match[str]) -> str:
        char = match.group(1)
        try:
            return table[char]
        except KeyError:
            raise ParseError(f"invalid escape sequence '\\{char}'") from None

    return _ESCAPE.sub(replace, text)


def _parse_float(text: str) -> float:
    if "_" in text:
        raise ParseError(f"invalid number {text!r}")
    try:
        return float(text)
    except ValueError:
        raise ParseError(f"invalid number {text!r}") from None


def _parse_timestamp(text: str) -> int:
    try:
        return int(text)
    except ValueError:
        raise ParseError(f"invalid timestamp {text!r}") from None


def _skip_spaces(line: str, pos: int) -> int:
    while pos < len(line) and line[pos] in " \t":
        pos += 1
    return pos


def _parse_labels(line: str, pos: int) -> tuple[dict[str, str], int]:
    labels: dict[str, str] = {}
    while True:
        pos = _skip_spaces(line, pos)
        if pos >= len(line):
            raise ParseError("unterminated label set")
        if line[pos] == "}":
            return labels, pos + 1
        name_match = _LABEL_NAME.match(line, pos)
        if name_match is None:
            raise ParseError(f"invalid label name at column {pos + 1}")
        name = name_match.group()
        pos = _skip_spaces(line, name_match.end())
        if not line.startswith("=", pos):
            raise ParseError(f"expected '=' after label name {name!r}")
        pos = _skip_spaces(line, pos + 1)
        value_match = _LABEL_VALUE.match(line, pos)
        if value_match is None:
            raise ParseError(f"invalid value for label {name!r}")
        if name in labels:
            raise ParseError(f"duplicate label name {name!r}")
        labels[name] = _unescape(value_match.group(1), _LABEL_ESCAPES)
        pos = _skip_spaces(line, value_match.end())
        if line.startswith(",", pos):
            pos += 1
        elif not line.startswith("}", pos):
            raise ParseError("expected ',' or '}' in label set")


class _TextParser:
    def __init__(self) -> None:
        self._families: dict[str, MetricFamily] = {}
        self._grouped: dict[tuple[str, tuple[tuple[str, str], ...]], Sample] = {}
        self._typed: set[str] = set()
        self._sampled: set[str] = set()

    def parse(self, text: str) -> dict[str, MetricFamily]:
        for lineno, raw in enumerate(text.splitlines(), 1):
            line = raw.strip()
            if not line:
                continue
            try:
                if line.startswith("#"):
                    self._comment_line(line)
                else:
                    self._sample_line(line)
            except ParseError as err:
                raise ParseError(err.message, lineno) from None
        return self._families

    def _family(self, name: str) -> MetricFamily:
        family = self._families.get(name)
        if family is None:
            family = self._families[name] = MetricFamily(name)
        return family

    def _comment_line(self, line: str) -> None:
        parts = line[1:].strip().split(None, 2)
        if len(parts) < 2 or parts[0] not in ("HELP", "TYPE"):
            return
        keyword, name = parts[0], parts[1]
        rest = parts[2] if len(parts) > 2 else ""
        if not _METRIC_NAME.fullmatch(name):
            raise ParseError(f"invalid metric name {name!r}")
        family = self._family(name)
        if keyword == "HELP":
            if family.help is not None:
                raise ParseError(f"second HELP line for metric name {name!r}")
            family.help = _unescape(rest, _HELP_ESCAPES)
            return
        if name in self._typed:
            raise ParseError(f"second TYPE line for metric name {name!r}")
        if name in self._sampled:
            raise ParseError(f"TYPE line for {name!r} must appear before its first sample")
        try:
            family.type = MetricType(rest.strip())
        except ValueError:
            raise ParseError(f"unknown metric type {rest.strip()!r}") from None
        self._typed.add(name)

    def _family_for(self, name: str) -> tuple[MetricFamily, str]:
        for suffix in _COMPOSITE_SUFFIXES:
            if name.endswith(suffix):
                base = self._families.get(name[: -len(suffix)])
                if base is not None and (
                    base.type is MetricType.HISTOGRAM
                    or (base.type is MetricType.SUMMARY and suffix != "_bucket")
                ):
                    return base, suffix
        return self._family(name), ""

    def _sample_line(self, line: str) -> None:
        match = _METRIC_NAME.match(line)
        if match is None:
            raise ParseError("invalid metric name")
        name, pos = match.group(), match.end()
        labels: dict[str, str] = {}
        if line.startswith("{", pos):
            labels, pos = _parse_labels(line, pos + 1)
        if pos < len(line) and not line[pos].isspace():
            raise ParseError(f"unexpected character {line[pos]!r} after metric name")
        fields = line[pos:].split()
        if not 1 <= len(fields) <= 2:
            raise ParseError("expected a value and an optional timestamp")
        value = _parse_float(fields[0])
        timestamp = _parse_timestamp(fields[1]) if len(fields) == 2 else None

        family, suffix = self._family_for(name)
        self._sampled.add(family.name)
        if family.type in (MetricType.SUMMARY, MetricType.HISTOGRAM):
            self._add_composite(family, suffix, labels, value, timestamp)
        else:
            family.metrics.append(Sample(labels=labels, value=value, timestamp_ms=timestamp))

    def _add_composite(
        self,
        family: MetricFamily,
        suffix: str,
        labels: dict[str, str],
        value: float,
        timestamp: int | None,
    ) -> None:
        is_summary = family.type is MetricType.SUMMARY
        if not is_summary and suffix == "":
            raise ParseError(f"histogram {family.name!r} sample lacks a _bucket, _sum or _count suffix")
        special = "quantile" if is_summary else "le"
        bound = labels.pop(special, None)
        key = (family.name, tuple(sorted(labels.items())))
        sample = self._grouped.get(key)
        if sample is None:
            sample = self._grouped[key] = Sample(labels=labels)
            family.metrics.append(sample)
        if timestamp is not None:
            sample.timestamp_ms = timestamp
        if suffix == "_sum":
            sample.sample_sum = value
        elif suffix == "_count":
            sample.sample_count = value
        else:
            if bound is None:
                raise ParseError(f"{special!r} label missing for {family.name!r}")
            limit = _parse_float(bound)
            if is_summary:
                sample.quantiles.append(Quantile(limit, value))
            else:
                sample.buckets.append(Bucket(limit, value))


def parse_metric_families(text: str | bytes) -> dict[str, MetricFamily]:
    """Parse exposition text into metric families keyed by name."""
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8")
    return _TextParser().parse(text)
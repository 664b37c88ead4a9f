#!/usr/bin/python3
"""
Decoding and rendering of Maia/Prometheus API responses.

Responses are classified by content type and, for query results, by the
`resultType` of the envelope into one of the QueryResult variants below. The
render functions return the complete output as a string so that a failure
half-way through never leaves partial output on stdout.
"""
import json
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

import jinja2

import maia

TIMESTAMP_KEY = "__timestamp__"
VALUE_KEY = "__value__"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
# Step buckets are aligned to 0001-01-01T00:00:00Z.
_ZERO_TIME_OFFSET_MS = 62135596800000
_ESCAPED_AMPERSAND_RE = re.compile(r"(?<!\\)((?:\\\\)*)\\u0026")


@dataclass(frozen=True)
class Sample:
    labels: dict
    timestamp_ms: int
    value: str


@dataclass(frozen=True)
class Series:
    labels: dict
    points: tuple = ()


@dataclass(frozen=True)
class Scalar:
    timestamp_ms: int
    value: str


@dataclass(frozen=True)
class Vector:
    samples: tuple = ()


@dataclass(frozen=True)
class Matrix:
    series: tuple = ()


@dataclass(frozen=True)
class StringList:
    values: tuple = ()


@dataclass(frozen=True)
class LabelSetList:
    rows: tuple = ()


@dataclass(frozen=True)
class RawText:
    body: str


@dataclass
class RenderSpec:
    format: str = "table"
    columns: list[str] = field(default_factory=list)
    separator: str = " "
    template: str = ""
    tz: object = None
    step: timedelta | None = None

    def __post_init__(self):
        self.format = (self.format or "").strip().lower()
        # `--columns a,b --columns c` and repeats of a name collapse to one ordered list
        names = (part.strip() for item in self.columns or () for part in item.split(","))
        self.columns = list(dict.fromkeys(n for n in names if n))


def _timestamp_ms(raw) -> int:
    try:
        return int((Decimal(str(raw)) * 1000).to_integral_value())
    except (InvalidOperation, ValueError) as e:
        raise maia.DecodeError(f"invalid sample timestamp: {raw!r}") from e


def _sample_pair(raw) -> tuple[int, str]:
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise maia.DecodeError(f"invalid sample: {raw!r}")
    return _timestamp_ms(raw[0]), str(raw[1])


def _labels(raw) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise maia.DecodeError(f"invalid label set: {raw!r}")
    return {str(k): str(v) for k, v in raw.items()}


def _load_json(body: bytes):
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise maia.DecodeError(f"invalid JSON in server response: {e}") from e


def _result_elements(result) -> list[dict]:
    if result is None:
        return []
    if not isinstance(result, list) or not all(isinstance(el, dict) for el in result):
        raise maia.DecodeError("invalid query result: expected a list of objects")
    return result


def decode_query_result(body: bytes):
    """Decode a `/query` or `/query_range` envelope into Scalar, Vector or Matrix."""
    payload = _load_json(body)
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        raise maia.DecodeError("server response has no query result")
    result_type = data.get("resultType")
    result = data.get("result")

    if result_type in ("scalar", "string"):
        ts, value = _sample_pair(result)
        return Scalar(timestamp_ms=ts, value=value)
    if result_type == "vector":
        samples = []
        for el in _result_elements(result):
            ts, value = _sample_pair(el.get("value"))
            samples.append(Sample(labels=_labels(el.get("metric")), timestamp_ms=ts, value=value))
        return Vector(samples=tuple(samples))
    if result_type == "matrix":
        series = []
        for el in _result_elements(result):
            points = tuple(_sample_pair(p) for p in (el.get("values") or []))
            series.append(Series(labels=_labels(el.get("metric")), points=points))
        return Matrix(series=tuple(series))
    raise maia.DecodeError(f"unsupported result type from server: {result_type}")


def decode_list_payload(body: bytes):
    """Decode the `data` list of series, label-values and labels responses."""
    payload = _load_json(body)
    data = payload.get("data") if isinstance(payload, dict) else None
    if data is None:
        data = []
    if not isinstance(data, list):
        raise maia.DecodeError("server response data is not a list")
    if all(isinstance(item, dict) for item in data) and data:
        return LabelSetList(rows=tuple(_labels(item) for item in data))
    if all(isinstance(item, str) for item in data):
        return StringList(values=tuple(data))
    raise maia.DecodeError("server response data mixes label sets and values")


def format_sample_value(raw: str) -> str:
    """Shortest plain decimal rendering of a sample value; no exponent notation."""
    try:
        f = float(raw)
    except (TypeError, ValueError):
        return str(raw)
    if math.isnan(f):
        return "NaN"
    if math.isinf(f):
        return "+Inf" if f > 0 else "-Inf"
    out = format(Decimal(repr(f)), "f")
    if "." in out:
        out = out.rstrip("0").rstrip(".")
    return out


def _time_from_ms(ms: int) -> datetime:
    return _EPOCH + timedelta(milliseconds=ms)


def align_to_step(ms: int, step: timedelta | None) -> int:
    """Round a timestamp down to a multiple of `step`; no-op without a step."""
    if not step:
        return ms
    step_ms = int(step.total_seconds() * 1000)
    if step_ms <= 0:
        return ms
    return ms - (ms + _ZERO_TIME_OFFSET_MS) % step_ms


def time_column(ms: int, spec: RenderSpec) -> str:
    return maia.format_rfc3339(_time_from_ms(align_to_step(ms, spec.step)), spec.tz)


def _sorted_keys(rows) -> list[str]:
    keys = set()
    for row in rows:
        keys.update(row.keys())
    return sorted(keys)


def _label_columns(spec: RenderSpec, label_sets) -> list[str]:
    if spec.columns:
        return list(spec.columns)
    return _sorted_keys(label_sets)


def _table_lines(columns: list[str], rows: list[dict], spec: RenderSpec) -> list[str]:
    lines = []
    if spec.format != "value":
        lines.append(spec.separator.join(columns))
    for row in rows:
        lines.append(spec.separator.join(row.get(c, "") for c in columns))
    return lines


def build_table(result, spec: RenderSpec) -> tuple[list[str], list[dict]]:
    """Columns and rows for any QueryResult variant that has a tabular shape."""
    if isinstance(result, Scalar):
        ts = maia.format_rfc3339(_time_from_ms(result.timestamp_ms), spec.tz, fractional=True)
        row = {TIMESTAMP_KEY: ts, VALUE_KEY: format_sample_value(result.value)}
        return [TIMESTAMP_KEY, VALUE_KEY], [row]

    if isinstance(result, Vector):
        rows = []
        for sample in result.samples:
            row = dict(sample.labels)
            row[TIMESTAMP_KEY] = maia.format_rfc3339(
                _time_from_ms(sample.timestamp_ms), spec.tz, fractional=True
            )
            row[VALUE_KEY] = format_sample_value(sample.value)
            rows.append(row)
        columns = _label_columns(spec, [s.labels for s in result.samples])
        return columns + [TIMESTAMP_KEY, VALUE_KEY], rows

    if isinstance(result, Matrix):
        rows = []
        ts_columns = set()
        for series in result.series:
            row = dict(series.labels)
            for ms, value in series.points:
                col = time_column(ms, spec)
                ts_columns.add(col)
                row[col] = format_sample_value(value)
            rows.append(row)
        columns = _label_columns(spec, [s.labels for s in result.series])
        return columns + sorted(ts_columns), rows

    if isinstance(result, LabelSetList):
        rows = [dict(r) for r in result.rows]
        return _label_columns(spec, rows), rows

    raise maia.DecodeError(f"cannot render {type(result).__name__} as a table")


def render_json(body: bytes) -> str:
    """The server's JSON, verbatim apart from HTML-escaped ampersands."""
    text = body.decode("utf-8", errors="replace")
    # an escaped backslash followed by `u0026` is literal text, not an escape
    return _ESCAPED_AMPERSAND_RE.sub(lambda m: m.group(1) + "&", text)


def render_template(body: bytes, template: str) -> str:
    if not template:
        raise maia.ConfigurationError("missing --template parameter")
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError) as e:
        raise maia.TemplateError(f"cannot bind template to server response: {e}") from e
    if not isinstance(data, dict):
        raise maia.TemplateError("cannot bind template to server response: not a JSON object")

    env = jinja2.Environment(autoescape=False, undefined=jinja2.StrictUndefined)
    try:
        return env.from_string(template).render(data)
    except jinja2.TemplateError as e:
        raise maia.TemplateError(f"template error: {e}") from e


def _content_kind(resp: maia.BackendResponse) -> str:
    content_type = resp.content_type
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == maia.JSON:
        return "json"
    if media_type.startswith(maia.PLAIN_TEXT):
        return "text"
    maia.logger.warning("Response body: %s", maia.redact_sensitive_text(resp.text)[:2000])
    raise maia.UnexpectedContentTypeError(f"unsupported response type from server: {content_type}")


def _unsupported(spec: RenderSpec):
    return maia.UnsupportedFormatError(f"unsupported --format value for this command: {spec.format}")


def _finish(lines: list[str]) -> str:
    return "".join(line + "\n" for line in lines)


def render_result(result, spec: RenderSpec) -> str:
    """Text output of a decoded result for the `value` and `table` formats."""
    if isinstance(result, RawText):
        return result.body
    if isinstance(result, StringList):
        return _finish(list(result.values))
    columns, rows = build_table(result, spec)
    return _finish(_table_lines(columns, rows, spec))


def render_values(resp: maia.BackendResponse, spec: RenderSpec) -> str:
    """
    Output for list-shaped responses (label values, metric names, label names)
    and for federation snapshots.
    """
    kind = _content_kind(resp)
    if kind == "text":
        if spec.format != "value":
            raise _unsupported(spec)
        return render_result(RawText(body=resp.text), spec)

    if spec.format == "json":
        return render_json(resp.body)
    if spec.format == "value":
        result = decode_list_payload(resp.body)
        if not isinstance(result, StringList):
            raise maia.DecodeError("server response data is not a list of values")
        return render_result(result, spec)
    raise _unsupported(spec)


def render_table(resp: maia.BackendResponse, spec: RenderSpec) -> str:
    """Output for series listings: label sets as rows, labels as columns."""
    kind = _content_kind(resp)
    if kind == "text":
        # only /federate answers with plain text; nothing to tabulate there
        return render_result(RawText(body=resp.text), spec)

    if spec.format == "json":
        return render_json(resp.body)
    if spec.format not in ("table", "value"):
        raise _unsupported(spec)
    result = decode_list_payload(resp.body)
    if isinstance(result, StringList):
        if result.values:
            raise maia.DecodeError("server response data is not a list of label sets")
        result = LabelSetList()
    return render_result(result, spec)


def render_query_response(resp: maia.BackendResponse, spec: RenderSpec) -> str:
    """Output for instant and range queries."""
    if _content_kind(resp) != "json":
        maia.logger.warning("Response body: %s", maia.redact_sensitive_text(resp.text)[:2000])
        raise maia.UnexpectedContentTypeError(
            f"unsupported response type from server: {resp.content_type}"
        )

    if spec.format == "json":
        return render_json(resp.body)
    if spec.format == "template":
        return render_template(resp.body, spec.template)
    if spec.format == "table":
        return render_result(decode_query_result(resp.body), spec)
    raise _unsupported(spec)

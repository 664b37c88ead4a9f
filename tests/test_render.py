import json
import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))

import maia  # noqa: E402
import maia_render  # noqa: E402


def _resp(payload, content_type="application/json"):
    body = payload if isinstance(payload, bytes) else json.dumps(payload, indent=2).encode()
    return maia.BackendResponse(200, "OK", {"Content-Type": content_type}, body)


def _spec(fmt, **kwargs):
    kwargs.setdefault("tz", timezone.utc)
    return maia_render.RenderSpec(format=fmt, **kwargs)


_SERIES = {
    "status": "success",
    "data": [
        {
            "__name__": "up",
            "component": "objectstore",
            "instance": "100.64.1.159:9102",
            "job": "endpoints",
            "kubernetes_name": "swift-proxy-cluster-3",
            "kubernetes_namespace": "swift",
            "os_cluster": "cluster-3",
            "region": "staging",
            "system": "openstack",
        }
    ],
}


def _ms(text):
    return int(datetime.fromisoformat(text).timestamp() * 1000)


def test_series_table():
    out = maia_render.render_table(_resp(_SERIES), _spec("table"))
    assert out == (
        "__name__ component instance job kubernetes_name kubernetes_namespace os_cluster region system\n"
        "up objectstore 100.64.1.159:9102 endpoints swift-proxy-cluster-3 swift cluster-3 staging openstack\n"
    )


def test_series_value_format_drops_header_and_uses_separator():
    out = maia_render.render_table(
        _resp(_SERIES), _spec("value", columns=["region", "job", "missing"], separator=",")
    )
    assert out == "staging,endpoints,\n"


def test_series_json_is_passed_through():
    resp = _resp(_SERIES)
    assert maia_render.render_table(resp, _spec("jsoN")) == resp.body.decode()


def test_series_plain_text_is_passed_through():
    resp = _resp(b'up{job="a"} 1\n', content_type="text/plain; version=0.0.4")
    assert maia_render.render_table(resp, _spec("table")) == 'up{job="a"} 1\n'


def _vector(*samples):
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [{"metric": m, "value": [ts, v]} for m, ts, v in samples],
        },
    }


def test_vector_table_without_labels():
    resp = _resp(_vector(({}, 1499066783.997, "0")))
    out = maia_render.render_query_response(resp, _spec("TaBle"))
    assert out == "__timestamp__ __value__\n2017-07-03T07:26:23.997Z 0\n"


def test_vector_table_explicit_columns():
    resp = _resp(
        _vector(
            ({"domain": "monsoon3", "resource": "capacity"}, 1557403210.724, "54975581388800"),
            ({"domain": "monsoon3", "resource": "cores"}, 1557403210.724, "11240"),
        )
    )
    out = maia_render.render_query_response(resp, _spec("table", columns=["domain"]))
    assert out == (
        "domain __timestamp__ __value__\n"
        "monsoon3 2019-05-09T12:00:10.724Z 54975581388800\n"
        "monsoon3 2019-05-09T12:00:10.724Z 11240\n"
    )


def test_vector_table_uses_sorted_union_of_labels():
    resp = _resp(
        _vector(
            ({"zone": "a", "job": "x"}, 1499066783, "1"),
            ({"app": "y"}, 1499066783, "2.5"),
        )
    )
    out = maia_render.render_query_response(resp, _spec("table"))
    assert out.splitlines() == [
        "app job zone __timestamp__ __value__",
        " x a 2017-07-03T07:26:23Z 1",
        "y   2017-07-03T07:26:23Z 2.5",
    ]


def test_scalar_table():
    payload = {"status": "success", "data": {"resultType": "scalar", "result": [1499066783.5, "42"]}}
    out = maia_render.render_query_response(_resp(payload), _spec("table"))
    assert out == "__timestamp__ __value__\n2017-07-03T07:26:23.5Z 42\n"


def _matrix(*series):
    return {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [{"metric": m, "values": [list(p) for p in points]} for m, points in series],
        },
    }


def test_range_table_truncates_to_step():
    resp = _resp(_matrix(({}, [(1499976630.781, "0"), (1499976930.781, "1")])))
    out = maia_render.render_query_response(
        resp, _spec("tablE", step=timedelta(seconds=300))
    )
    assert out == "2017-07-13T20:10:00Z 2017-07-13T20:15:00Z\n0 1\n"


def test_range_table_with_columns():
    base = _ms("2017-07-22T20:10:00+00:00") / 1000
    labels = {"check": "keystone", "instance": "100.64.0.102:9102", "region": "staging", "job": "bb"}
    resp = _resp(_matrix((labels, [(base, "0"), (base + 300, "1"), (base + 600, "0")])))
    out = maia_render.render_query_response(
        resp,
        _spec("table", columns=["region", "check", "instance"], step=timedelta(seconds=300)),
    )
    assert out == (
        "region check instance 2017-07-22T20:10:00Z 2017-07-22T20:15:00Z 2017-07-22T20:20:00Z\n"
        "staging keystone 100.64.0.102:9102 0 1 0\n"
    )


def test_range_table_merges_series_into_shared_time_columns():
    base = _ms("2017-07-22T20:10:00+00:00") / 1000
    resp = _resp(
        _matrix(
            ({"job": "a"}, [(base + 5, "1"), (base + 65, "2")]),
            ({"job": "b"}, [(base + 20, "3")]),
        )
    )
    out = maia_render.render_query_response(resp, _spec("table", step=timedelta(seconds=60)))
    assert out.splitlines() == [
        "job 2017-07-22T20:10:00Z 2017-07-22T20:11:00Z",
        "a 1 2",
        "b 3 ",
    ]


def test_align_to_step_uses_year_one_epoch():
    thursday = _ms("2017-07-13T20:10:00+00:00")
    monday = _ms("2017-07-10T00:00:00+00:00")
    assert maia_render.align_to_step(thursday, timedelta(days=7)) == monday
    assert maia_render.align_to_step(thursday + 1234, None) == thursday + 1234


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("0", "0"),
        ("3.0", "3"),
        ("0.1", "0.1"),
        ("2.5", "2.5"),
        ("54975581388800", "54975581388800"),
        ("1e+21", "1000000000000000000000"),
        ("1.5e-7", "0.00000015"),
        ("NaN", "NaN"),
        ("+Inf", "+Inf"),
        ("-Inf", "-Inf"),
    ],
)
def test_format_sample_value(raw, expected):
    assert maia_render.format_sample_value(raw) == expected


def test_label_values_value_format():
    resp = _resp(b'{"Status":"success","data":["objectstore"]}')
    assert maia_render.render_values(resp, _spec("value")) == "objectstore\n"


def test_json_passthrough_unescapes_ampersands_only():
    body = b'{"status":"success","data":["a\\u0026b","c\\u003cd"]}'
    out = maia_render.render_values(_resp(body), _spec("json"))
    assert out == '{"status":"success","data":["a&b","c\\u003cd"]}'


def test_json_passthrough_keeps_literal_backslash_u0026():
    # `\\u0026` is an escaped backslash followed by plain text, not an ampersand escape
    body = b'{"data":["x\\\\u0026y","z\\\\\\u0026w"]}'
    out = maia_render.render_values(_resp(body), _spec("json"))
    assert out == '{"data":["x\\\\u0026y","z\\\\&w"]}'
    assert json.loads(out) == {"data": ["x\\u0026y", "z\\&w"]}


def test_render_spec_merges_comma_separated_columns():
    spec = maia_render.RenderSpec(columns=["region,check", " instance ", "region", ""])
    assert spec.columns == ["region", "check", "instance"]
    assert maia_render.RenderSpec().columns == []
    assert maia_render.RenderSpec(format=" TaBle ").format == "table"


def test_snapshot_plain_text_is_printed_verbatim():
    text = b'up{job="a"} 1 1500291187275\n'
    resp = _resp(text, content_type="text/plain; version=0.0.4")
    assert maia_render.render_values(resp, _spec("value")) == text.decode()
    with pytest.raises(maia.UnsupportedFormatError):
        maia_render.render_values(resp, _spec("json"))


def test_unsupported_formats():
    with pytest.raises(maia.UnsupportedFormatError):
        maia_render.render_values(_resp({"data": []}), _spec("table"))
    with pytest.raises(maia.UnsupportedFormatError):
        maia_render.render_query_response(_resp(_vector()), _spec("value"))
    with pytest.raises(maia.UnsupportedFormatError):
        maia_render.render_table(_resp(_SERIES), _spec("template"))


def test_unexpected_content_type_logs_body(caplog):
    resp = _resp(b"<html>oops</html>", content_type="text/html")
    with caplog.at_level(logging.WARNING, logger="maia"):
        with pytest.raises(maia.UnexpectedContentTypeError, match="text/html"):
            maia_render.render_query_response(resp, _spec("json"))
    assert "<html>oops</html>" in caplog.text


def test_template_renders_against_json_object():
    resp = _resp(_vector(({"job": "a"}, 1499066783, "1"), ({"job": "b"}, 1499066783, "0")))
    template = "{% for r in data.result %}{{ r.metric.job }}={{ r.value[1] }}\n{% endfor %}"
    out = maia_render.render_query_response(resp, _spec("template", template=template))
    assert out == "a=1\nb=0\n"


def test_template_errors():
    resp = _resp(_vector())
    with pytest.raises(maia.ConfigurationError, match="--template"):
        maia_render.render_query_response(resp, _spec("template"))
    with pytest.raises(maia.TemplateError):
        maia_render.render_query_response(resp, _spec("template", template="{{ nope.missing }}"))
    with pytest.raises(maia.TemplateError):
        maia_render.render_query_response(resp, _spec("template", template="{% for %}"))
    with pytest.raises(maia.TemplateError):
        maia_render.render_query_response(_resp(b"[1, 2]"), _spec("template", template="x"))


def test_malformed_json_is_a_decode_error():
    with pytest.raises(maia.DecodeError):
        maia_render.render_query_response(_resp(b"{not json"), _spec("table"))
    with pytest.raises(maia.DecodeError):
        maia_render.render_values(_resp(b'{"data": {"resultType": "vector"}}'), _spec("value"))


def test_decode_query_result_variants():
    result = maia_render.decode_query_result(json.dumps(_vector(({"a": "1"}, 10.5, "2"))).encode())
    assert result == maia_render.Vector(
        samples=(maia_render.Sample(labels={"a": "1"}, timestamp_ms=10500, value="2"),)
    )
    result = maia_render.decode_query_result(
        b'{"data":{"resultType":"string","result":[1.25,"hello"]}}'
    )
    assert result == maia_render.Scalar(timestamp_ms=1250, value="hello")
    with pytest.raises(maia.DecodeError, match="unsupported result type"):
        maia_render.decode_query_result(b'{"data":{"resultType":"histogram","result":[]}}')


@pytest.mark.parametrize(
    "body",
    [
        b'{"data":{"resultType":"vector","result":["up"]}}',
        b'{"data":{"resultType":"vector","result":{"metric":{}}}}',
        b'{"data":{"resultType":"matrix","result":[null]}}',
    ],
)
def test_malformed_result_elements_are_decode_errors(body):
    with pytest.raises(maia.DecodeError, match="invalid query result"):
        maia_render.decode_query_result(body)
    with pytest.raises(maia.DecodeError):
        maia_render.render_query_response(_resp(body), _spec("table"))

import math

import pytest

from vpcipam.promtext import (
    Bucket,
    MetricType,
    ParseError,
    Quantile,
    parse_metric_families,
)


def test_gauge_with_help_and_type():
    families = parse_metric_families("# HELP foo Some help\n# TYPE foo gauge\nfoo 3.5\n")
    family = families["foo"]
    assert family.type is MetricType.GAUGE
    assert family.help == "Some help"
    assert [m.value for m in family.metrics] == [3.5]


def test_metric_type_values_match_format_keywords():
    assert MetricType("counter") is MetricType.COUNTER
    assert MetricType("histogram") is MetricType.HISTOGRAM


def test_untyped_without_type_line():
    families = parse_metric_families("bar 7\n")
    assert families["bar"].type is MetricType.UNTYPED
    assert families["bar"].help is None
    assert families["bar"].metrics[0].value == 7.0


def test_counter_keeps_each_label_set():
    text = (
        "# TYPE errs counter\n"
        'errs{api="a"} 10\n'
        'errs{api="b"} 4\n'
    )
    family = parse_metric_families(text)["errs"]
    assert [m.labels for m in family.metrics] == [{"api": "a"}, {"api": "b"}]
    assert sum(m.value for m in family.metrics) == 14.0


def test_label_escapes_are_decoded():
    text = 'foo{a="x\\"y",b="back\\\\slash",c="line\\nnext"} 1\n'
    labels = parse_metric_families(text)["foo"].metrics[0].labels
    assert labels["a"] == 'x"y'
    assert labels["b"] == "back\\slash"
    assert labels["c"] == "line\nnext"


def test_summary_groups_quantiles_sum_and_count():
    text = (
        "# TYPE lat summary\n"
        'lat{api="x",quantile="0.5"} 0.5\n'
        'lat{api="x",quantile="0.99"} 1\n'
        'lat_sum{api="x"} 20\n'
        'lat_count{api="x"} 30\n'
        'lat{api="y",quantile="0.99"} 2\n'
    )
    family = parse_metric_families(text)["lat"]
    assert family.type is MetricType.SUMMARY
    assert len(family.metrics) == 2
    first = family.metrics[0]
    assert first.labels == {"api": "x"}
    assert first.quantiles == [Quantile(0.5, 0.5), Quantile(0.99, 1.0)]
    assert first.sample_sum == 20.0
    assert first.sample_count == 30.0
    assert "lat_sum" not in parse_metric_families(text)


def test_histogram_buckets_keep_order_and_infinity():
    text = (
        "# TYPE h histogram\n"
        'h_bucket{le="1"} 2\n'
        'h_bucket{le="2"} 5\n'
        'h_bucket{le="+Inf"} 7\n'
        "h_sum 10\n"
        "h_count 7\n"
    )
    family = parse_metric_families(text)["h"]
    sample = family.metrics[0]
    assert sample.buckets == [Bucket(1.0, 2.0), Bucket(2.0, 5.0), Bucket(math.inf, 7.0)]
    assert sample.sample_count == 7.0
    assert sample.labels == {}


def test_timestamp_is_recorded():
    sample = parse_metric_families("foo 1 1395066363000\n")["foo"].metrics[0]
    assert sample.timestamp_ms == 1395066363000


def test_bytes_and_str_give_same_result():
    text = "# TYPE foo counter\nfoo{a=\"b\"} 2\n"
    assert parse_metric_families(text.encode()) == parse_metric_families(text)


def test_sum_of_gauge_is_separate_family():
    families = parse_metric_families("# TYPE g gauge\ng 1\ng_sum 2\n")
    assert set(families) == {"g", "g_sum"}
    assert families["g_sum"].type is MetricType.UNTYPED


def test_plain_comments_and_blank_lines_ignored():
    families = parse_metric_families("# just a note\n\n   \nfoo 1\n")
    assert list(families) == ["foo"]


@pytest.mark.parametrize(
    "text",
    [
        "# TYPE foo gauge\n# TYPE foo gauge\n",
        "foo 1\n# TYPE foo gauge\n",
        "# TYPE foo bogus\n",
        "foo abc\n",
        "foo 1_0\n",
        'foo{a="b" 1\n',
        'foo{a="b",a="c"} 1\n',
        'foo{a="\\q"} 1\n',
        "# HELP foo one\n# HELP foo two\n",
        "# TYPE h histogram\nh_bucket 1\n",
        "# TYPE h histogram\nh 1\n",
        "# TYPE s summary\ns 1\n",
        "foo 1 2 3\n",
        "foo\n",
        "foo 1 notatime\n",
        "{a=\"b\"} 1\n",
    ],
)
def test_malformed_text_raises(text):
    with pytest.raises(ParseError):
        parse_metric_families(text)


def test_parse_error_reports_line_number():
    with pytest.raises(ParseError) as info:
        parse_metric_families("foo 1\nbar nope\n")
    assert info.value.line == 2
    assert isinstance(info.value, ValueError)
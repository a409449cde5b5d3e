import pytest

from vpcipam.promstats import Counter, Gauge, Registry
from vpcipam.promtext import MetricType, parse_metric_families


def test_counter_inc_default_is_one():
    counter = Counter("awscni_add_ip_req_count", "The number of add IP address request")
    counter.inc()
    assert counter.value() == 1.0


def test_counter_accumulates_per_label():
    counter = Counter("awscni_ipamd_error_count", "errors", ["fn"])
    counter.inc(fn="a")
    counter.inc(fn="a")
    counter.inc(fn="b")
    assert counter.value(fn="a") == 2 * counter.value(fn="b")
    assert counter.value(fn="never") == 0.0


def test_counter_rejects_negative():
    counter = Counter("c_total")
    with pytest.raises(ValueError):
        counter.inc(-1)


def test_wrong_labels_rejected():
    counter = Counter("c_total", "help", ["fn"])
    with pytest.raises(ValueError):
        counter.inc(reason="x")
    with pytest.raises(ValueError):
        counter.value()


def test_invalid_names_rejected():
    with pytest.raises(ValueError):
        Counter("1bad")
    with pytest.raises(ValueError):
        Gauge("ok", "help", ["bad-label"])


def test_gauge_set_and_add_cancel_out():
    gauge = Gauge("awscni_eni_max", "max enis")
    gauge.set(7)
    gauge.add(1)
    gauge.add(-1)
    assert gauge.value() == 7.0


def test_counter_render_round_trip():
    counter = Counter("awscni_reconcile_count", "The number of reconciles", ["fn"])
    counter.inc(3, fn="eniReconcileAdd")
    families = parse_metric_families(counter.render())
    family = families["awscni_reconcile_count"]
    assert family.type is MetricType.COUNTER
    assert family.help == "The number of reconciles"
    assert len(family.metrics) == 1
    assert family.metrics[0].labels == {"fn": "eniReconcileAdd"}
    assert family.metrics[0].value == 3.0


def test_unlabelled_metric_rendered_at_zero():
    gauge = Gauge("awscni_ip_max", "max ips")
    family = parse_metric_families(gauge.render())["awscni_ip_max"]
    assert family.type is MetricType.GAUGE
    assert [m.value for m in family.metrics] == [0.0]


def test_label_escaping_round_trip():
    gauge = Gauge("g", "line\none", ["fn"])
    odd = 'a"b\\c\nd'
    gauge.set(4, fn=odd)
    family = parse_metric_families(gauge.render())["g"]
    assert family.metrics[0].labels == {"fn": odd}
    assert family.help == "line\none"


def test_registry_duplicate_rejected():
    registry = Registry()
    registry.register(Counter("dup_total"))
    with pytest.raises(ValueError):
        registry.register(Gauge("dup_total"))


def test_registry_render_contains_all():
    registry = Registry()
    registry.register(Gauge("awscni_total_ip_addresses", "total"))
    registry.register(Counter("awscni_del_ip_req_count", "del", ["reason"]))
    registry.render()
    families = parse_metric_families(registry.render())
    assert set(families) == {"awscni_total_ip_addresses", "awscni_del_ip_req_count"}
    assert "awscni_total_ip_addresses" in registry
import pytest

from warpsig.metrics import Counter, Gauge, GaugeVec, SignatureAggregatorMetrics


def test_counter_counts():
    c = Counter("app_request_count", "help")
    c.inc()
    c.inc(2)
    assert c.value == 3
    assert "app_request_count 3\n" in c.render()
    assert "# TYPE app_request_count counter" in c.render()


def test_counter_rejects_negative():
    with pytest.raises(ValueError):
        Counter("x", "h").inc(-1)


def test_gauge_set():
    g = Gauge("agg_sigs_latency_ms", "h")
    g.set(2.5)
    assert g.render().endswith("agg_sigs_latency_ms 2.5\n")


def test_gauge_vec_labels():
    vec = GaugeVec("connected_stake_weight_percentage", "h", ["subnetID"])
    vec.labels("abc").set(50)
    assert vec.labels("abc").value == 50
    assert 'connected_stake_weight_percentage{subnetID="abc"} 50' in vec.render()
    with pytest.raises(ValueError):
        vec.labels("a", "b")


def test_aggregator_metrics_render():
    m = SignatureAggregatorMetrics(prefix="")
    m.signature_cache_hits.inc(4)
    text = m.render()
    assert "signature_cache_hits 4\n" in text
    assert "# HELP agg_sigs_req_count Number of requests for aggregate signatures" in text


def test_prefix_applied():
    m = SignatureAggregatorMetrics()
    assert m.validator_timeouts.name == "signature_aggregator_validator_timeouts"
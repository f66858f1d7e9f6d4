from kiln.core.metrics import metrics

def test_metrics_recording():
    metrics.record_latency("test_op", 100.0)
    assert "test_op" in metrics.latencies
    assert metrics.latencies["test_op"][-1] == 100.0

def test_counters_with_tags():
    metrics.increment("commands", {"type": "load"})
    metrics.increment("commands", {"type": "load"})
    metrics.increment("generated_fragments", value=5)

    assert metrics.counters["commands[type=load]"] == 2
    assert metrics.count("commands", {"type": "load"}) == 2
    assert metrics.count("commands", {"type": "generate"}) == 0
    assert metrics.count("generated_fragments") == 5

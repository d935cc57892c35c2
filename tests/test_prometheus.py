from campaign_dispatch.prometheus import DispatchMetrics


def test_dispatch_metrics_counters_and_gauge():
    metrics = DispatchMetrics()

    metrics.inc_sent("acc1")
    metrics.inc_error(None)
    metrics.inc_rate_limited("")
    metrics.inc_store_error("acc1")
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b'cds_sent_total{account_id="acc1"} 1.0' in output
    assert b'cds_errors_total{account_id="default"} 1.0' in output
    assert b'cds_rate_limited_total{account_id="default"} 1.0' in output
    assert b'cds_store_errors_total{account_id="acc1"} 1.0' in output
    assert b"cds_pending_messages 3.0" in output


def test_separate_registries_do_not_collide():
    first, second = DispatchMetrics(), DispatchMetrics()
    first.inc_sent("a")
    assert b'cds_sent_total{account_id="a"}' not in second.generate_latest()

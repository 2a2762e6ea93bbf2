"""
Tests for the metrics recorder.

Local counters mirror the Prometheus ones and must stay exact when saga steps
record from several executor threads at once.
"""
import threading

from infra.metrics import MetricsRecorder


class TestLocalCounters:
    def test_singleton(self):
        assert MetricsRecorder(enabled=False) is MetricsRecorder()

    def test_counts_by_key(self):
        metrics = MetricsRecorder(enabled=False)
        metrics.record_transition("created", "payment_pending")
        metrics.record_transition("created", "payment_pending")
        metrics.record_escrow_op("lock", "ok")
        assert metrics.count("transition:created->payment_pending") == 2
        assert metrics.count("escrow:lock:ok") == 1
        assert metrics.count("terminal:escalated") == 0

    def test_concurrent_bumps_are_not_lost(self):
        metrics = MetricsRecorder(enabled=False)
        threads_n, per_thread = 8, 2_000
        barrier = threading.Barrier(threads_n)

        def work():
            barrier.wait()
            for _ in range(per_thread):
                metrics.record_discarded_fact("payment_confirmed")

        threads = [threading.Thread(target=work) for _ in range(threads_n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert metrics.count("discarded:payment_confirmed") == threads_n * per_thread

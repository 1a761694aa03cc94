"""Tests for pipeline counters."""

import threading

from keyai.metrics import COUNTERS, EVENTS_CAPTURED, EVENTS_DROPPED, AgentMetrics

from conftest import FakeClock

# --- Test Classes ---


class TestAgentMetrics:
    def test_all_counters_start_at_zero(self, metrics: AgentMetrics):
        snapshot = metrics.snapshot()
        for name in COUNTERS:
            assert snapshot[name] == 0
        assert snapshot["uptime_seconds"] == 0

    def test_increment(self, metrics: AgentMetrics):
        metrics.increment(EVENTS_CAPTURED)
        metrics.increment(EVENTS_DROPPED, 5)
        assert metrics.get(EVENTS_CAPTURED) == 1
        assert metrics.get(EVENTS_DROPPED) == 5

    def test_unknown_counter_reads_zero(self, metrics: AgentMetrics):
        assert metrics.get("nope") == 0

    def test_uptime(self):
        clock = FakeClock(100.0)
        metrics = AgentMetrics(clock=clock)
        metrics.mark_started()
        clock.advance(42.7)
        assert metrics.uptime_seconds() == 42
        metrics.mark_stopped()
        assert metrics.uptime_seconds() == 0

    def test_concurrent_increments(self, metrics: AgentMetrics):
        def work():
            for _ in range(1000):
                metrics.increment(EVENTS_CAPTURED)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert metrics.get(EVENTS_CAPTURED) == 8000

from __future__ import annotations

import pytest

from convoflow.service.errors import RunawayExecutionError
from convoflow.service.loop_guard import LoopGuard, LoopLimits


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def test_alternating_nodes_hit_the_per_node_limit():
    guard = LoopGuard(LoopLimits(max_visits_per_node=10))
    for _ in range(10):
        guard.visit("A")
        guard.visit("B")

    with pytest.raises(RunawayExecutionError) as excinfo:
        guard.visit("A")

    assert excinfo.value.node_id == "A"
    assert excinfo.value.error_code == "workflow_runaway"
    assert guard.stats()["total_dispatches"] == 20


def test_total_dispatch_limit():
    guard = LoopGuard(LoopLimits(max_visits_per_node=100, max_total_nodes=5))
    for index in range(5):
        guard.visit(f"n{index}")

    with pytest.raises(RunawayExecutionError) as excinfo:
        guard.visit("n5")
    assert "node limit" in excinfo.value.reason


def test_wall_clock_limit():
    clock = FakeClock()
    guard = LoopGuard(LoopLimits(max_execution_time_ms=1000), clock=clock)
    guard.visit("A")
    clock.now += 1.5

    with pytest.raises(RunawayExecutionError) as excinfo:
        guard.visit("B")
    assert "execution time" in excinfo.value.reason


def test_reaching_a_limit_exactly_is_allowed():
    guard = LoopGuard(LoopLimits(max_visits_per_node=2, max_total_nodes=2))
    assert guard.visit("A") == 1
    assert guard.visit("A") == 2
    assert guard.stats()["visits"] == {"A": 2}

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, Optional

from convoflow.logging import get_logger
from convoflow.service.errors import RunawayExecutionError

logger = get_logger(__name__)

DEFAULT_MAX_VISITS_PER_NODE = 10
DEFAULT_MAX_TOTAL_NODES = 100
DEFAULT_MAX_EXECUTION_TIME_MS = 300_000
# Share of any limit at which a warning is logged once
_WARNING_RATIO = 0.8


@dataclass(frozen=True)
class LoopLimits:
    max_visits_per_node: int = DEFAULT_MAX_VISITS_PER_NODE
    max_total_nodes: int = DEFAULT_MAX_TOTAL_NODES
    max_execution_time_ms: int = DEFAULT_MAX_EXECUTION_TIME_MS


class LoopGuard:
    """Bounds one burst: visits per node, total dispatches, and wall clock.

    ``visit`` is called before every dispatch and raises RunawayExecutionError
    as soon as a dispatch would exceed a limit; reaching a limit exactly is
    allowed.
    """

    def __init__(self, limits: Optional[LoopLimits] = None, *, clock=time.monotonic) -> None:
        self.limits = limits or LoopLimits()
        self._clock = clock
        self.started_at = clock()
        self.visits: Dict[str, int] = {}
        self.total = 0
        self._warned = False

    def elapsed_ms(self) -> float:
        return (self._clock() - self.started_at) * 1000.0

    def visit(self, node_id: str) -> int:
        elapsed = self.elapsed_ms()
        if elapsed > self.limits.max_execution_time_ms:
            raise self._trip(
                f"workflow execution time exceeded {self.limits.max_execution_time_ms}ms",
                node_id,
                elapsed_ms=int(elapsed),
            )
        if self.total + 1 > self.limits.max_total_nodes:
            raise self._trip(
                f"workflow node limit exceeded: {self.limits.max_total_nodes} dispatches",
                node_id,
                total_dispatches=self.total,
            )
        count = self.visits.get(node_id, 0) + 1
        if count > self.limits.max_visits_per_node:
            raise self._trip(
                f"loop detected: node '{node_id}' visited {count} times",
                node_id,
                visits=count,
            )
        self.visits[node_id] = count
        self.total += 1
        self._maybe_warn(node_id, elapsed)
        return count

    def _maybe_warn(self, node_id: str, elapsed: float) -> None:
        if self._warned:
            return
        if (
            self.total > self.limits.max_total_nodes * _WARNING_RATIO
            or elapsed > self.limits.max_execution_time_ms * _WARNING_RATIO
        ):
            self._warned = True
            logger.warning(
                "workflow_loop_guard_near_limit",
                node_id=node_id,
                total_dispatches=self.total,
                elapsed_ms=int(elapsed),
            )

    def _trip(self, reason: str, node_id: str, **detail) -> RunawayExecutionError:
        logger.error("workflow_runaway_detected", reason=reason, node_id=node_id, **detail)
        return RunawayExecutionError(reason, node_id=node_id, detail=detail)

    def stats(self) -> dict:
        return {
            "total_dispatches": self.total,
            "visits": dict(self.visits),
            "elapsed_ms": int(self.elapsed_ms()),
        }

# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BackpressureDecision:
    under_pressure: bool
    drop_oldest: bool
    supersede_interim: bool
    queue_depth: int
    reason: str


class OutboxBackpressure:
    """
    Queue-depth based backpressure policy for one participant's outbox.
    """

    def __init__(self, target_depth: int = 32, max_depth: int = 128) -> None:
        self.target_depth = max(1, int(target_depth))
        self.max_depth = max(self.target_depth, int(max_depth))

    def evaluate(self, queue_depth: int) -> BackpressureDecision:
        depth = max(0, int(queue_depth))
        if depth >= self.max_depth:
            return BackpressureDecision(
                under_pressure=True,
                drop_oldest=True,
                supersede_interim=True,
                queue_depth=depth,
                reason="hard_overflow",
            )
        if depth >= self.target_depth:
            return BackpressureDecision(
                under_pressure=True,
                drop_oldest=False,
                supersede_interim=True,
                queue_depth=depth,
                reason="soft_pressure",
            )
        return BackpressureDecision(
            under_pressure=False,
            drop_oldest=False,
            supersede_interim=False,
            queue_depth=depth,
            reason="normal",
        )

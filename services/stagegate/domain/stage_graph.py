"""
Stage Graph - pure lookup, no state
===================================

A fixed, totally ordered sequence of stages. Only single-step forward moves
are legal promotions.
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Optional, Tuple

from exceptions import InvalidPromotionPath, InvalidStage


@dataclass(frozen=True)
class StageGraph:
    name: str
    stages: Tuple[str, ...]
    deployment_stages: FrozenSet[str] = field(default_factory=frozenset)
    live_stages: FrozenSet[str] = field(default_factory=frozenset)
    labels: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)

    def index_of(self, stage: str) -> Optional[int]:
        """Position of `stage` in the sequence, or None if unknown."""
        try:
            return self.stages.index(stage)
        except ValueError:
            return None

    def require(self, stage: str) -> int:
        idx = self.index_of(stage)
        if idx is None:
            raise InvalidStage(stage, self.name, self.stages)
        return idx

    @property
    def initial_stage(self) -> str:
        return self.stages[0]

    def next_stage(self, stage: str) -> Optional[str]:
        idx = self.require(stage)
        if idx >= len(self.stages) - 1:
            return None
        return self.stages[idx + 1]

    def is_terminal(self, stage: str) -> bool:
        return self.require(stage) == len(self.stages) - 1

    def assert_next(self, current: str, target: str) -> None:
        """Raise unless `target` is the immediate successor of `current`."""
        self.require(current)
        self.require(target)
        expected = self.next_stage(current)
        if target != expected:
            raise InvalidPromotionPath(current, target, expected)

    def requires_deployment(self, stage: str) -> bool:
        """Reaching `stage` materializes a downstream live object."""
        self.require(stage)
        return stage in self.deployment_stages

    def is_paper(self, stage: str) -> bool:
        return stage not in self.live_stages

    def label(self, stage: str) -> str:
        return self.labels.get(stage, stage)


TRADING_STAGE_GRAPH = StageGraph(
    name="trading_strategy_lifecycle",
    stages=("research", "backtest", "paper", "staged_live", "full_live"),
    deployment_stages=frozenset({"paper", "staged_live", "full_live"}),
    live_stages=frozenset({"staged_live", "full_live"}),
)

BUSINESS_PHASE_GRAPH = StageGraph(
    name="business_phases",
    stages=("phase_1", "phase_2", "phase_3", "phase_4", "phase_5", "phase_6"),
    labels={
        "phase_1": "Research",
        "phase_2": "Branding",
        "phase_3": "Development",
        "phase_4": "Content",
        "phase_5": "Marketing",
        "phase_6": "Sales",
    },
)

GRAPHS_BY_KIND = {
    "strategy_candidate": TRADING_STAGE_GRAPH,
    "phase_deliverable": BUSINESS_PHASE_GRAPH,
}


def graph_for(kind: str) -> StageGraph:
    try:
        return GRAPHS_BY_KIND[kind]
    except KeyError:
        raise ValueError(f"Unknown entity kind: {kind}") from None

"""
Typed stage artifacts and summary metrics.

Each trading stage documents the keys it expects. Known keys are
type-checked on submission; additional keys are kept as-is so agents can
attach extra evidence without a schema change.
"""
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError

from exceptions import InvalidRequest


class StageArtifact(BaseModel):
    model_config = ConfigDict(extra="allow")

    notes: Optional[str] = None


class ResearchArtifact(StageArtifact):
    thesis: Optional[str] = None
    symbols: Optional[List[str]] = None
    sources: Optional[List[str]] = None


class BacktestArtifact(StageArtifact):
    sharpe: Optional[float] = None
    total_return: Optional[float] = None
    max_drawdown: Optional[float] = None
    trades: Optional[int] = None
    period: Optional[str] = None


class PaperArtifact(StageArtifact):
    trades: Optional[int] = None
    pnl: Optional[float] = None
    win_rate: Optional[float] = None
    days: Optional[int] = None


class LiveArtifact(StageArtifact):
    allocation_pct: Optional[float] = None
    pnl: Optional[float] = None
    trades: Optional[int] = None


ARTIFACT_MODELS: Dict[str, Type[StageArtifact]] = {
    "research": ResearchArtifact,
    "backtest": BacktestArtifact,
    "paper": PaperArtifact,
    "staged_live": LiveArtifact,
    "full_live": LiveArtifact,
}


class StageMetrics(BaseModel):
    """Summary metrics copied onto the entity for dashboarding."""
    model_config = ConfigDict(extra="ignore")

    risk_score: Optional[float] = None
    expected_return: Optional[float] = None
    max_drawdown: Optional[float] = None
    sharpe_ratio: Optional[float] = None


def parse_artifact(stage: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate `payload` against the model for `stage` and return it as a plain dict."""
    model = ARTIFACT_MODELS.get(stage, StageArtifact)
    try:
        artifact = model.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidRequest(f"Invalid artifact for stage {stage}", errors=e.errors(include_url=False, include_context=False)) from e
    return artifact.model_dump(exclude_none=True)


def parse_metrics(payload: Optional[Dict[str, Any]]) -> StageMetrics:
    try:
        return StageMetrics.model_validate(payload or {})
    except ValidationError as e:
        raise InvalidRequest("Invalid stage metrics", errors=e.errors(include_url=False, include_context=False)) from e

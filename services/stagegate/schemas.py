from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

TeamType = Literal["research", "backtest", "strategy", "execution", "risk", "compliance"]
RiskLevel = Literal["conservative", "moderate", "aggressive"]

ENTITY_ID_ALIASES = AliasChoices("candidateId", "candidate_id", "entityId", "entity_id")


class ActionParams(BaseModel):
    """Action parameters: camelCase wire names or snake_case both accepted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# =============================================================================
# Project structure
# =============================================================================

class CreateProjectParams(ActionParams):
    name: str = Field(min_length=1)
    exchange: str = "alpaca"
    mode: Literal["paper", "live"] = "paper"
    capital: Optional[float] = Field(default=None, ge=0)
    risk_level: RiskLevel = "moderate"


class CreateTeamParams(ActionParams):
    project_id: UUID
    name: str = Field(min_length=1)
    team_type: TeamType
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AddTeamMemberParams(ActionParams):
    team_id: UUID
    agent_id: str = Field(min_length=1)
    agent_name: str = Field(min_length=1)
    role: str = "analyst"
    capabilities: List[str] = Field(default_factory=list)


class CreateTeamTaskParams(ActionParams):
    project_id: UUID
    team_id: UUID
    assigned_member_id: Optional[UUID] = None
    task_type: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    priority: Literal["low", "medium", "high", "critical"] = "medium"
    input_payload: Dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Lifecycle
# =============================================================================

class CreateStrategyCandidateParams(ActionParams):
    project_id: UUID
    source_team_id: Optional[UUID] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None
    exchange: str = "alpaca"
    symbol_universe: List[str] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)


class CreatePhaseDeliverableParams(ActionParams):
    project_id: UUID
    source_team_id: Optional[UUID] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None
    deliverable_type: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)


class SubmitStageParams(ActionParams):
    candidate_id: UUID = Field(validation_alias=ENTITY_ID_ALIASES)
    stage: str
    artifact: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None


class ApproveStageParams(ActionParams):
    candidate_id: UUID = Field(validation_alias=ENTITY_ID_ALIASES)
    stage: str
    approver_type: str = Field(validation_alias=AliasChoices("approverType", "approver_type", "role"))
    approved: bool
    feedback: Optional[str] = None


class PromoteCandidateParams(ActionParams):
    candidate_id: UUID = Field(validation_alias=ENTITY_ID_ALIASES)
    target_stage: str


# =============================================================================
# Jobs / dashboard
# =============================================================================

class GeneratePhaseTasksParams(ActionParams):
    project_id: UUID
    phase_number: Optional[int] = Field(default=None, ge=1)


class RunWorkerJobsParams(ActionParams):
    project_id: UUID
    phase_number: Optional[int] = Field(default=None, ge=1)
    job_types: Optional[List[str]] = None


class DashboardParams(ActionParams):
    project_id: UUID


# =============================================================================
# HTTP bodies
# =============================================================================

class OrchestratorRequest(BaseModel):
    action: str
    params: Dict[str, Any] = Field(default_factory=dict)


class RunJobsRequest(RunWorkerJobsParams):
    pass

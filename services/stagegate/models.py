from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text,
    UniqueConstraint, Uuid, event,
)
from sqlalchemy.ext.hybrid import hybrid_property

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# PROJECT STRUCTURE
# =============================================================================

class TradingProject(Base):
    __tablename__ = "trading_projects"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String, nullable=False)
    exchange = Column(String(32), nullable=False, default="alpaca")
    mode = Column(String(16), nullable=False, default="paper")  # paper | live
    capital = Column(Float, nullable=True)
    risk_level = Column(String(16), nullable=False, default="moderate")
    status = Column(String(16), nullable=False, default="active")
    current_phase = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class ProjectPhase(Base):
    __tablename__ = "trading_project_phases"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    phase_number = Column(Integer, nullable=False)
    phase_name = Column(String(64), nullable=False)
    agent_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="pending")
    ceo_approved = Column(Boolean, nullable=False, default=False)
    user_approved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("project_id", "phase_number", name="uq_project_phase_number"),
    )


class RiskControls(Base):
    __tablename__ = "trading_risk_controls"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False)
    max_position_pct = Column(Float, nullable=False, default=10)
    daily_loss_limit = Column(Float, nullable=False, default=5)
    stop_loss_pct = Column(Float, nullable=False, default=2)
    kill_switch_active = Column(Boolean, nullable=False, default=False)


class TradingTeam(Base):
    __tablename__ = "trading_teams"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    team_type = Column(String(32), nullable=False)
    # research | backtest | strategy | execution | risk | compliance
    status = Column(String(16), nullable=False, default="active")
    team_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TradingTeamMember(Base):
    __tablename__ = "trading_team_members"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    team_id = Column(Uuid, ForeignKey("trading_teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    agent_id = Column(String(64), nullable=False)
    agent_name = Column(String, nullable=False)
    role = Column(String(32), nullable=False, default="analyst")
    capabilities = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TradingTeamTask(Base):
    __tablename__ = "trading_team_tasks"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    team_id = Column(Uuid, ForeignKey("trading_teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    assigned_member_id = Column(Uuid, ForeignKey("trading_team_members.id", ondelete="SET NULL"), nullable=True)
    task_type = Column(String(32), nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(String(16), nullable=False, default="medium")
    status = Column(String(16), nullable=False, default="pending")
    # pending | in_progress | completed | failed
    input_payload = Column(JSON, nullable=False, default=dict)
    output_payload = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# STAGE LIFECYCLE
# =============================================================================

class LifecycleEntity(Base):
    """
    An orchestrated entity moving through a stage graph.

    kind selects the graph:
    - strategy_candidate: research -> backtest -> paper -> staged_live -> full_live
    - phase_deliverable:  phase_1 .. phase_6

    status is read-only here. LifecycleDomainService is the only writer.
    """
    __tablename__ = "lifecycle_entities"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    kind = Column(String(32), nullable=False, default="strategy_candidate")
    source_team_id = Column(Uuid, ForeignKey("trading_teams.id", ondelete="SET NULL"), nullable=True)

    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    exchange = Column(String(32), nullable=False, default="alpaca")
    symbol_universe = Column(JSON, nullable=False, default=list)
    parameters = Column(JSON, nullable=False, default=dict)
    deliverable_type = Column(String(64), nullable=True)

    current_stage = Column(String(32), nullable=False)
    submitted_stage = Column(String(32), nullable=True)  # stage of the latest submission round
    _status = Column("status", String(16), nullable=False, default="draft")
    stage_artifacts = Column(JSON, nullable=False, default=dict)  # {stage: artifact}

    risk_score = Column(Float, nullable=True)
    expected_return = Column(Float, nullable=True)
    max_drawdown = Column(Float, nullable=True)
    sharpe_ratio = Column(Float, nullable=True)

    promoted_strategy_id = Column(Uuid, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @hybrid_property
    def status(self):
        """Read-only status - use LifecycleDomainService.change_status()"""
        return self._status

    @status.setter
    def status(self, value):
        raise RuntimeError(
            f"Direct status assignment blocked: attempted entity.status = '{value}'. "
            f"Use LifecycleDomainService.change_status()."
        )


class StageApproval(Base):
    """
    One approval checkpoint per (entity, stage, required approver).

    A new submission round resets the row to pending instead of adding one,
    so stale approvals can never satisfy the gate of a resubmitted stage.
    """
    __tablename__ = "stage_approvals"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id = Column(Uuid, ForeignKey("lifecycle_entities.id", ondelete="CASCADE"), nullable=False)
    project_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    stage = Column(String(32), nullable=False)
    required_approver = Column(String(16), nullable=False)  # ceo | user
    status = Column(String(16), nullable=False, default="pending")  # pending | approved | rejected
    feedback = Column(Text, nullable=True)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("entity_id", "stage", "required_approver", name="uq_stage_approval_key"),
        Index("idx_stage_approvals_entity_stage", "entity_id", "stage"),
    )


class StageTransitionEvent(Base):
    """
    Append-only audit trail of stage transitions.

    reason: approved | manual_promote | auto_stage_progression
    """
    __tablename__ = "stage_transition_events"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id = Column(Uuid, ForeignKey("lifecycle_entities.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    from_stage = Column(String(32), nullable=False)
    to_stage = Column(String(32), nullable=False)
    reason = Column(String(32), nullable=False)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


@event.listens_for(StageTransitionEvent, "before_update")
def _block_transition_update(mapper, connection, target):
    raise RuntimeError("stage_transition_events is append-only: UPDATE blocked")


@event.listens_for(StageTransitionEvent, "before_delete")
def _block_transition_delete(mapper, connection, target):
    raise RuntimeError("stage_transition_events is append-only: DELETE blocked")


class TradingStrategy(Base):
    """Live/paper strategy materialized from an approved candidate."""
    __tablename__ = "trading_strategies"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    name = Column(String, nullable=False)
    exchange = Column(String(32), nullable=False)
    strategy_type = Column(String(32), nullable=False, default="momentum")
    parameters = Column(JSON, nullable=False, default=dict)
    paper_mode = Column(Boolean, nullable=False, default=True)
    lifecycle_stage = Column(String(32), nullable=False)
    promoted_from_candidate_id = Column(Uuid, ForeignKey("lifecycle_entities.id", ondelete="SET NULL"), nullable=True)
    ceo_approved = Column(Boolean, nullable=False, default=False)
    user_approved = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=False)
    total_profit = Column(Float, nullable=False, default=0)
    total_trades = Column(Integer, nullable=False, default=0)
    win_rate = Column(Float, nullable=False, default=0)
    last_stage_transition_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# ORDERS / EXECUTIONS
# =============================================================================

class TradingOrder(Base):
    __tablename__ = "trading_orders"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("trading_projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    strategy_id = Column(Uuid, nullable=True)
    symbol = Column(String(32), nullable=False)
    side = Column(String(8), nullable=False)  # buy | sell
    quantity = Column(Float, nullable=False, default=0)
    status = Column(String(24), nullable=False, default="pending_approval")
    # pending_approval | approved | executed | cancelled | failed
    broker_order_id = Column(String(64), nullable=True)
    reconciliation_status = Column(String(24), nullable=False, default="pending")
    # pending | matched | mismatched | missing_broker_order
    reconciled_at = Column(DateTime(timezone=True), nullable=True)
    reconciliation_notes = Column(Text, nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TradingExecution(Base):
    __tablename__ = "trading_executions"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), nullable=False, index=True)
    strategy_id = Column(Uuid, nullable=True, index=True)
    symbol = Column(String(32), nullable=False)
    action = Column(String(8), nullable=False)
    profit_loss = Column(Float, nullable=True)
    executed_at = Column(DateTime(timezone=True), default=utcnow)


# =============================================================================
# SCHEDULER / RECONCILIATION
# =============================================================================

class SchedulerRun(Base):
    """One record per job invocation. Never reused across invocations."""
    __tablename__ = "scheduler_runs"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    job_type = Column(String(48), nullable=False)
    project_id = Column(Uuid, nullable=True, index=True)
    user_id = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="running")  # running | completed | failed
    details = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)


class ReconciliationEvent(Base):
    """
    result: matched | mismatched | missing_broker_order | error
    Only non-matched outcomes are recorded.
    """
    __tablename__ = "reconciliation_events"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("scheduler_runs.id", ondelete="SET NULL"), nullable=True)
    project_id = Column(Uuid, nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    order_id = Column(Uuid, nullable=True)
    broker_order_id = Column(String(64), nullable=True)
    db_status = Column(String(24), nullable=True)
    broker_status = Column(String(24), nullable=True)
    result = Column(String(24), nullable=False)
    notes = Column(Text, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class TeamPerformanceSnapshot(Base):
    __tablename__ = "team_performance_snapshots"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, nullable=False, index=True)
    team_id = Column(Uuid, ForeignKey("trading_teams.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(64), nullable=False)
    pnl = Column(Float, nullable=False, default=0)
    pnl_percent = Column(Float, nullable=False, default=0)
    active_tasks = Column(Integer, nullable=False, default=0)
    completed_tasks = Column(Integer, nullable=False, default=0)
    risk_events = Column(Integer, nullable=False, default=0)
    win_rate = Column(Float, nullable=False, default=0)
    snapshot_at = Column(DateTime(timezone=True), default=utcnow, index=True)


class ActivityLog(Base):
    __tablename__ = "activity_logs"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, nullable=False, index=True)
    phase_id = Column(Uuid, nullable=True)
    user_id = Column(String(64), nullable=False)
    agent_id = Column(String(64), nullable=False)
    agent_name = Column(String, nullable=False)
    action = Column(Text, nullable=False)
    status = Column(String(16), nullable=False, default="completed")
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)

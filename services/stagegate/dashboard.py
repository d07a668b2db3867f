"""
Live dashboard rollup for one project. Read-only.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from domain.stage_graph import TRADING_STAGE_GRAPH
from infrastructure.uow import as_uuid
from models import (
    LifecycleEntity,
    ReconciliationEvent,
    RiskControls,
    SchedulerRun,
    StageApproval,
    StageTransitionEvent,
    TeamPerformanceSnapshot,
    TradingExecution,
    TradingStrategy,
    TradingTeam,
    TradingTeamTask,
)
from serializers import as_aware, jsonable, model_dict, to_number

EXECUTION_WINDOW = 1000
TRANSITION_LIMIT = 30
SCHEDULER_RUN_LIMIT = 20
RECONCILIATION_EVENT_LIMIT = 20
SNAPSHOT_LIMIT = 40


def max_drawdown(pnls_oldest_first) -> float:
    """Largest peak-to-trough drop of the cumulative PnL curve (peak starts at 0)."""
    running = 0.0
    peak = 0.0
    worst = 0.0
    for pnl in pnls_oldest_first:
        running += pnl
        peak = max(peak, running)
        worst = max(worst, peak - running)
    return worst


def win_rate(pnls) -> float:
    if not pnls:
        return 0.0
    wins = sum(1 for pnl in pnls if pnl > 0)
    return round(wins / len(pnls) * 100, 2)


async def build_live_dashboard(session: AsyncSession, project_id, user_id: str) -> Dict[str, Any]:
    project_id = as_uuid(project_id)

    async def rows(stmt):
        return list((await session.execute(stmt)).scalars().all())

    teams = await rows(
        select(TradingTeam)
        .where(TradingTeam.project_id == project_id, TradingTeam.user_id == user_id)
        .order_by(TradingTeam.created_at)
    )
    tasks = await rows(
        select(TradingTeamTask).where(TradingTeamTask.project_id == project_id, TradingTeamTask.user_id == user_id)
    )
    candidates = await rows(
        select(LifecycleEntity)
        .where(LifecycleEntity.project_id == project_id, LifecycleEntity.user_id == user_id)
        .order_by(LifecycleEntity.created_at)
    )
    strategies = await rows(
        select(TradingStrategy)
        .where(TradingStrategy.project_id == project_id, TradingStrategy.user_id == user_id)
        .order_by(TradingStrategy.created_at)
    )
    approvals = await rows(
        select(StageApproval)
        .where(
            StageApproval.project_id == project_id,
            StageApproval.user_id == user_id,
            StageApproval.status == "pending",
        )
        .order_by(StageApproval.created_at)
    )
    risk = (await session.execute(
        select(RiskControls).where(RiskControls.project_id == project_id, RiskControls.user_id == user_id)
    )).scalar_one_or_none()
    executions = await rows(
        select(TradingExecution)
        .where(TradingExecution.user_id == user_id)
        .order_by(TradingExecution.executed_at.desc())
        .limit(EXECUTION_WINDOW)
    )
    transitions = await rows(
        select(StageTransitionEvent)
        .where(StageTransitionEvent.project_id == project_id, StageTransitionEvent.user_id == user_id)
        .order_by(StageTransitionEvent.created_at.desc())
        .limit(TRANSITION_LIMIT)
    )
    scheduler_runs = await rows(
        select(SchedulerRun)
        .where(SchedulerRun.project_id == project_id, SchedulerRun.user_id == user_id)
        .order_by(SchedulerRun.started_at.desc())
        .limit(SCHEDULER_RUN_LIMIT)
    )
    reconciliation_events = await rows(
        select(ReconciliationEvent)
        .where(ReconciliationEvent.project_id == project_id, ReconciliationEvent.user_id == user_id)
        .order_by(ReconciliationEvent.created_at.desc())
        .limit(RECONCILIATION_EVENT_LIMIT)
    )
    snapshots = await rows(
        select(TeamPerformanceSnapshot)
        .where(TeamPerformanceSnapshot.project_id == project_id, TeamPerformanceSnapshot.user_id == user_id)
        .order_by(TeamPerformanceSnapshot.snapshot_at.desc())
        .limit(SNAPSHOT_LIMIT)
    )

    strategy_ids = {s.id for s in strategies}
    pnl_by_strategy: Dict[Any, list] = {}
    for execution in executions:
        if execution.strategy_id in strategy_ids:
            pnl_by_strategy.setdefault(execution.strategy_id, []).append(to_number(execution.profit_loss))

    strategy_metrics = []
    for strategy in strategies:
        pnls = pnl_by_strategy.get(strategy.id, [])
        strategy_metrics.append({
            "id": str(strategy.id),
            "name": strategy.name,
            "lifecycle_stage": strategy.lifecycle_stage,
            "is_active": strategy.is_active,
            "paper_mode": strategy.paper_mode,
            "pnl": sum(pnls),
            "totalTrades": len(pnls),
            "winRate": win_rate(pnls),
        })

    lifecycle_counts = {
        stage: sum(1 for s in strategies if s.lifecycle_stage == stage)
        for stage in TRADING_STAGE_GRAPH.stages
    }

    day_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    realized_pnl_today = sum(
        to_number(e.profit_loss) for e in executions
        if e.executed_at is not None and as_aware(e.executed_at) >= day_start
    )
    drawdown = max_drawdown(to_number(e.profit_loss) for e in reversed(executions))

    candidate_by_id = {c.id: c for c in candidates}
    team_by_strategy = {}
    for strategy in strategies:
        candidate = candidate_by_id.get(strategy.promoted_from_candidate_id)
        if candidate is not None and candidate.source_team_id is not None:
            team_by_strategy[strategy.id] = candidate.source_team_id

    team_metrics = []
    for team in teams:
        statuses = [t.status for t in tasks if t.team_id == team.id]
        team_pnl = sum(
            sum(pnls) for strategy_id, pnls in pnl_by_strategy.items()
            if team_by_strategy.get(strategy_id) == team.id
        )
        team_metrics.append({
            "id": str(team.id),
            "name": team.name,
            "type": team.team_type,
            "status": team.status,
            "activeTasks": statuses.count("in_progress"),
            "pendingTasks": statuses.count("pending"),
            "completedTasks": statuses.count("completed"),
            "pnl": team_pnl,
        })

    pending_approvals = []
    for approval in approvals:
        candidate = candidate_by_id.get(approval.entity_id)
        pending_approvals.append({
            "id": str(approval.id),
            "candidate_id": str(approval.entity_id),
            "candidate_name": candidate.name if candidate is not None else "Unknown",
            "stage": approval.stage,
            "required_approver": approval.required_approver,
            "created_at": jsonable(approval.created_at),
        })

    return {
        "summary": {
            "teams": len(teams),
            "candidates": len(candidates),
            "activeStrategies": sum(1 for s in strategies if s.is_active),
            "pendingApprovals": len(pending_approvals),
            "killSwitchActive": bool(risk and risk.kill_switch_active),
            "maxPositionPct": risk.max_position_pct if risk else None,
            "dailyLossLimit": risk.daily_loss_limit if risk else None,
            "realizedPnLToday": realized_pnl_today,
            "maxDrawdown": drawdown,
        },
        "teamMetrics": team_metrics,
        "strategyMetrics": strategy_metrics,
        "pendingApprovals": pending_approvals,
        "lifecycleCounts": lifecycle_counts,
        "stageTransitions": [model_dict(t) for t in transitions],
        "operations": {
            "schedulerRuns": [model_dict(r) for r in scheduler_runs],
            "reconciliationEvents": [model_dict(e) for e in reconciliation_events],
            "latestSnapshots": [model_dict(s) for s in snapshots],
            "reconciliationSummary": {
                "mismatched": sum(1 for e in reconciliation_events if e.result == "mismatched"),
                "missingBrokerOrder": sum(1 for e in reconciliation_events if e.result == "missing_broker_order"),
                "errors": sum(1 for e in reconciliation_events if e.result == "error"),
            },
        },
    }

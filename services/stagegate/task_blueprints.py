"""
Phase task blueprints and task output snapshots.

Each project phase lists the teams it needs and the tasks those teams own.
Task outputs are rebuilt from live project state every time a task is
(re)completed; nothing here is cached.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from infrastructure.uow import as_uuid
from models import (
    LifecycleEntity,
    ProjectPhase,
    RiskControls,
    TradingExecution,
    TradingOrder,
    TradingStrategy,
)
from serializers import as_aware, row_dict, to_number

TASK_OUTPUT_SOURCE = "stagegate-scheduler-worker"
RECENT_ROW_LIMIT = 300


@dataclass(frozen=True)
class TaskTemplate:
    team_type: str
    task_type: str
    title: str
    description: str
    priority: str = "medium"


PHASE_TASK_BLUEPRINT: Dict[int, List[TaskTemplate]] = {
    1: [
        TaskTemplate(
            "research", "research",
            "Research market context for active symbols",
            "Compile real market/account/order activity context for this project.",
        ),
    ],
    2: [
        TaskTemplate(
            "backtest", "backtest",
            "Backtest candidate strategy assumptions",
            "Use real candidate and execution history to validate baseline signals.",
            "high",
        ),
        TaskTemplate(
            "strategy", "strategy_design",
            "Refine strategy parameters from backtest results",
            "Map approved candidate parameters to deployable strategy configuration.",
            "high",
        ),
    ],
    3: [
        TaskTemplate(
            "strategy", "strategy_design",
            "Prepare strategy for paper/staged deployment",
            "Validate lifecycle approvals and deployment readiness.",
            "high",
        ),
        TaskTemplate(
            "risk", "risk_review",
            "Run pre-deployment risk review",
            "Assess risk controls against current portfolio and execution profile.",
            "high",
        ),
    ],
    4: [
        TaskTemplate(
            "execution", "deploy",
            "Deploy approved strategy set",
            "Ensure approved strategies are wired for execution flow.",
            "high",
        ),
    ],
    5: [
        TaskTemplate(
            "execution", "monitor",
            "Monitor live/paper execution quality",
            "Track fill quality and execution consistency vs project risk limits.",
            "high",
        ),
        TaskTemplate(
            "risk", "risk_review",
            "Continuous risk review",
            "Validate real-time risk posture and drawdown boundaries.",
            "high",
        ),
    ],
    6: [
        TaskTemplate(
            "backtest", "backtest",
            "Post-cycle strategy performance backtest",
            "Re-run evaluation with latest execution data for iteration inputs.",
        ),
        TaskTemplate(
            "compliance", "compliance_review",
            "Compliance and audit review",
            "Reconcile lifecycle approvals, transitions, and execution records.",
        ),
    ],
}


def blueprint_for(phase_number: int) -> List[TaskTemplate]:
    return PHASE_TASK_BLUEPRINT.get(phase_number, [])


def required_team_types(templates: Iterable[TaskTemplate]) -> List[str]:
    """Distinct team types in blueprint order."""
    seen: List[str] = []
    for template in templates:
        if template.team_type not in seen:
            seen.append(template.team_type)
    return seen


ORDER_FIELDS = ("id", "status", "side", "symbol", "created_at", "executed_at", "reconciliation_status")
STRATEGY_FIELDS = ("id", "name", "is_active", "paper_mode", "lifecycle_stage", "total_profit", "total_trades", "win_rate")
RISK_FIELDS = ("max_position_pct", "daily_loss_limit", "stop_loss_pct", "kill_switch_active")


async def build_task_output(
    session: AsyncSession,
    project_id,
    user_id: str,
    task_type: str,
) -> Dict[str, Any]:
    """Snapshot of project state shaped for `task_type`."""
    project_id = as_uuid(project_id)

    risk = (await session.execute(
        select(RiskControls).where(RiskControls.project_id == project_id, RiskControls.user_id == user_id)
    )).scalar_one_or_none()
    phases = (await session.execute(
        select(ProjectPhase)
        .where(ProjectPhase.project_id == project_id, ProjectPhase.user_id == user_id)
        .order_by(ProjectPhase.phase_number)
    )).scalars().all()
    candidates = (await session.execute(
        select(LifecycleEntity)
        .where(
            LifecycleEntity.project_id == project_id,
            LifecycleEntity.user_id == user_id,
            LifecycleEntity.kind == "strategy_candidate",
        )
        .order_by(LifecycleEntity.created_at)
    )).scalars().all()
    strategies = (await session.execute(
        select(TradingStrategy)
        .where(TradingStrategy.project_id == project_id, TradingStrategy.user_id == user_id)
        .order_by(TradingStrategy.created_at)
    )).scalars().all()
    orders = (await session.execute(
        select(TradingOrder)
        .where(TradingOrder.project_id == project_id, TradingOrder.user_id == user_id)
        .order_by(TradingOrder.created_at.desc())
        .limit(RECENT_ROW_LIMIT)
    )).scalars().all()
    executions = (await session.execute(
        select(TradingExecution)
        .where(TradingExecution.user_id == user_id)
        .order_by(TradingExecution.executed_at.desc())
        .limit(RECENT_ROW_LIMIT)
    )).scalars().all()

    now = datetime.now(timezone.utc)
    since = now - timedelta(hours=24)
    last_24h = [e for e in executions if e.executed_at and as_aware(e.executed_at) >= since]
    pnl_24h = sum(to_number(e.profit_loss) for e in last_24h)

    order_dicts = [row_dict(o, ORDER_FIELDS) for o in orders]
    reconciliation_counts = {
        key: sum(1 for o in orders if o.reconciliation_status == key)
        for key in ("pending", "mismatched", "matched")
    }

    base = {
        "generated_at": now.isoformat(),
        "source": TASK_OUTPUT_SOURCE,
        "project_id": str(project_id),
        "phase_summary": [
            row_dict(p, ("phase_number", "status", "ceo_approved", "user_approved")) for p in phases
        ],
    }

    if task_type == "research":
        return {
            **base,
            "candidates": [
                {"id": str(c.id), "name": c.name, "stage": c.current_stage, "status": c.status}
                for c in candidates
            ],
            "market_activity": {
                "recent_orders": order_dicts[:20],
                "executions_24h": len(last_24h),
            },
        }

    if task_type == "backtest":
        return {
            **base,
            "candidate_metrics": [
                {
                    "id": str(c.id),
                    "name": c.name,
                    "stage": c.current_stage,
                    "risk_score": to_number(c.risk_score),
                    "expected_return": to_number(c.expected_return),
                    "max_drawdown": to_number(c.max_drawdown),
                    "sharpe_ratio": to_number(c.sharpe_ratio),
                }
                for c in candidates
            ],
            "execution_sample_size": len(executions),
        }

    if task_type == "strategy_design":
        return {
            **base,
            "strategy_inventory": [
                row_dict(s, ("id", "name", "lifecycle_stage", "paper_mode", "is_active")) for s in strategies
            ],
            "candidate_inventory": [
                row_dict(c, ("id", "name", "current_stage", "status")) for c in candidates
            ],
        }

    if task_type == "deploy":
        deployable = [
            row_dict(s, STRATEGY_FIELDS) for s in strategies
            if s.lifecycle_stage in ("paper", "staged_live", "full_live")
        ]
        return {
            **base,
            "deployable_strategy_count": len(deployable),
            "deployable_strategies": deployable,
            "open_orders": sum(1 for o in orders if o.status in ("approved", "pending_approval")),
        }

    if task_type == "monitor":
        return {
            **base,
            "live_orders": [d for d in order_dicts if d["status"] == "executed"][:50],
            "pnl_24h": pnl_24h,
            "executions_24h": len(last_24h),
            "reconciliation": {
                "pending": reconciliation_counts["pending"],
                "mismatched": reconciliation_counts["mismatched"],
            },
        }

    if task_type == "risk_review":
        return {
            **base,
            "risk_controls": row_dict(risk, RISK_FIELDS) if risk else None,
            "realized_pnl_24h": pnl_24h,
            "active_strategy_count": sum(1 for s in strategies if s.is_active),
        }

    # compliance_review and anything else: lifecycle audit view
    return {
        **base,
        "lifecycle": {
            "candidates": [
                {"id": str(c.id), "name": c.name, "stage": c.current_stage, "status": c.status}
                for c in candidates
            ],
            "strategies": [
                row_dict(s, ("id", "name", "lifecycle_stage")) for s in strategies
            ],
        },
        "reconciliation_summary": reconciliation_counts,
    }

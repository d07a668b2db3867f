"""
ORCHESTRATOR FAÇADE TESTS

Action routing, param validation, project bootstrap, notifications and the
live dashboard.

Author: Stagegate Core Team
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from dashboard import max_drawdown, win_rate
from exceptions import ExternalSystemError, InvalidRequest, ProjectNotFound, UnknownAction
from models import ProjectPhase, RiskControls, TradingExecution
from notifier import Notifier
from orchestrator import build_orchestrator

from conftest import OTHER_USER_ID, USER_ID, advance, approve_all


class FailingNotifier(Notifier):

    async def notify(self, event_type, payload):
        raise ExternalSystemError("notifier", "webhook down")


class TestDrawdownMath:

    def test_max_drawdown(self):
        assert max_drawdown([]) == 0.0
        assert max_drawdown([100, -50, -30, 20]) == 80
        # a loss before any gain counts from zero
        assert max_drawdown([-25, 10]) == 25

    def test_win_rate(self):
        assert win_rate([]) == 0.0
        assert win_rate([1, -1, 2]) == 66.67


@pytest.mark.asyncio(loop_scope="function")
class TestDispatch:

    async def test_unknown_action(self, orchestrator):
        with pytest.raises(UnknownAction) as exc_info:
            await orchestrator.dispatch("launch_rocket", {}, USER_ID)
        assert "submit_stage" in exc_info.value.details["known_actions"]

    async def test_invalid_params(self, orchestrator):
        with pytest.raises(InvalidRequest) as exc_info:
            await orchestrator.dispatch("submit_stage", {"stage": "backtest"}, USER_ID)
        assert exc_info.value.details["errors"]

    async def test_missing_params_treated_as_empty(self, orchestrator):
        with pytest.raises(InvalidRequest):
            await orchestrator.dispatch("create_project", None, USER_ID)

    async def test_unknown_project(self, orchestrator):
        with pytest.raises(ProjectNotFound):
            await orchestrator.dispatch("get_live_dashboard", {"projectId": str(uuid.uuid4())}, USER_ID)

    async def test_projects_scoped_by_user(self, orchestrator, project):
        with pytest.raises(ProjectNotFound):
            await orchestrator.dispatch(
                "create_strategy_candidate", {"projectId": project["id"], "name": "X"}, OTHER_USER_ID
            )

    async def test_actions_listed(self, orchestrator):
        assert "promote_candidate" in orchestrator.actions


@pytest.mark.asyncio(loop_scope="function")
class TestProjectBootstrap:

    async def test_create_project_seeds_phases_and_risk(self, orchestrator, session_factory):
        result = await orchestrator.dispatch(
            "create_project", {"name": "Fast Money", "risk_level": "aggressive", "capital": 25000}, USER_ID
        )
        project = result["project"]
        assert result["success"] is True
        assert project["status"] == "active"
        assert project["current_phase"] == 1

        async with session_factory() as session:
            phases = (await session.execute(
                select(ProjectPhase).order_by(ProjectPhase.phase_number)
            )).scalars().all()
            risk = (await session.execute(select(RiskControls))).scalar_one()

        assert [p.phase_name for p in phases] == ["Research", "Strategy", "Setup", "Execution", "Monitor", "Optimize"]
        assert (risk.max_position_pct, risk.daily_loss_limit, risk.stop_loss_pct) == (20, 10, 5)
        assert risk.kill_switch_active is False

    async def test_team_member_and_task(self, orchestrator, project):
        team = (await orchestrator.dispatch(
            "create_team", {"projectId": project["id"], "name": "Risk Desk", "teamType": "risk"}, USER_ID
        ))["team"]
        member = (await orchestrator.dispatch(
            "add_team_member",
            {"teamId": team["id"], "agentId": "risk-1", "agentName": "Risk Bot", "capabilities": ["var"]},
            USER_ID,
        ))["member"]
        task = (await orchestrator.dispatch(
            "create_team_task",
            {
                "projectId": project["id"],
                "teamId": team["id"],
                "assignedMemberId": member["id"],
                "taskType": "risk_review",
                "title": "Check exposure",
            },
            USER_ID,
        ))["task"]

        assert member["role"] == "analyst"
        assert member["capabilities"] == ["var"]
        assert task["status"] == "pending"
        assert task["assigned_member_id"] == member["id"]

    async def test_member_for_unknown_team(self, orchestrator):
        with pytest.raises(InvalidRequest, match="Team not found"):
            await orchestrator.dispatch(
                "add_team_member",
                {"teamId": str(uuid.uuid4()), "agentId": "a", "agentName": "A"},
                USER_ID,
            )

    async def test_invalid_team_type(self, orchestrator, project):
        with pytest.raises(InvalidRequest):
            await orchestrator.dispatch(
                "create_team", {"projectId": project["id"], "name": "Ops", "teamType": "catering"}, USER_ID
            )


@pytest.mark.asyncio(loop_scope="function")
class TestNotifications:

    async def test_approval_and_promotion_notified(self, orchestrator, notifier, candidate):
        cid = candidate["id"]
        await orchestrator.dispatch("submit_stage", {"candidateId": cid, "stage": "backtest"}, USER_ID)
        await approve_all(orchestrator, cid, "backtest")
        await orchestrator.dispatch("promote_candidate", {"candidateId": cid, "targetStage": "backtest"}, USER_ID)

        assert [event for event, _ in notifier.sent] == ["stage_approved", "stage_promoted"]
        assert notifier.sent[1][1]["stage"] == "backtest"
        assert notifier.sent[1][1]["entity_id"] == cid

    async def test_notifier_failure_does_not_undo_promotion(self, settings, session_factory, broker):
        orchestrator = build_orchestrator(
            settings, session_factory, brokers={"alpaca": broker}, notifier=FailingNotifier()
        )
        project = (await orchestrator.dispatch("create_project", {"name": "P"}, USER_ID))["project"]
        cid = (await orchestrator.dispatch(
            "create_strategy_candidate", {"projectId": project["id"], "name": "C"}, USER_ID
        ))["candidate"]["id"]

        result = await advance(orchestrator, cid, "backtest")
        assert result["success"] is True

        entity = await orchestrator.get_entity(cid, USER_ID)
        assert entity["current_stage"] == "backtest"


@pytest.mark.asyncio(loop_scope="function")
class TestLiveDashboard:

    async def test_dashboard_rollup(self, orchestrator, session_factory, project):
        team = (await orchestrator.dispatch(
            "create_team", {"projectId": project["id"], "name": "Alpha Research", "teamType": "research"}, USER_ID
        ))["team"]
        cid = (await orchestrator.dispatch(
            "create_strategy_candidate",
            {"projectId": project["id"], "sourceTeamId": team["id"], "name": "Trend"},
            USER_ID,
        ))["candidate"]["id"]
        await advance(orchestrator, cid, "backtest")
        strategy_id = (await advance(orchestrator, cid, "paper"))["strategyId"]
        await orchestrator.dispatch("submit_stage", {"candidateId": cid, "stage": "staged_live"}, USER_ID)

        base = datetime.now(timezone.utc) - timedelta(hours=2)
        async with session_factory() as session:
            for i, pnl in enumerate((100.0, -50.0, -30.0, 20.0)):
                session.add(TradingExecution(
                    user_id=USER_ID,
                    strategy_id=uuid.UUID(strategy_id),
                    symbol="SPY",
                    action="sell",
                    profit_loss=pnl,
                    executed_at=base + timedelta(minutes=i),
                ))
            await session.commit()

        dashboard = await orchestrator.dispatch("get_live_dashboard", {"projectId": project["id"]}, USER_ID)

        summary = dashboard["summary"]
        assert summary["teams"] == 1
        assert summary["candidates"] == 1
        assert summary["pendingApprovals"] == 2
        assert summary["maxDrawdown"] == 80
        assert summary["maxPositionPct"] == 10
        assert summary["killSwitchActive"] is False

        assert dashboard["lifecycleCounts"] == {
            "research": 0, "backtest": 0, "paper": 1, "staged_live": 0, "full_live": 0,
        }
        strategy = dashboard["strategyMetrics"][0]
        assert strategy["pnl"] == 40
        assert strategy["totalTrades"] == 4
        assert strategy["winRate"] == 50.0

        assert dashboard["teamMetrics"][0]["pnl"] == 40
        assert {a["required_approver"] for a in dashboard["pendingApprovals"]} == {"ceo", "user"}
        assert all(a["candidate_name"] == "Trend" for a in dashboard["pendingApprovals"])
        assert all(a["stage"] == "staged_live" for a in dashboard["pendingApprovals"])

        reasons = [t["reason"] for t in dashboard["stageTransitions"]]
        assert reasons.count("manual_promote") == 2
        assert reasons.count("approved") == 2

        assert dashboard["operations"]["reconciliationSummary"] == {
            "mismatched": 0, "missingBrokerOrder": 0, "errors": 0,
        }

    async def test_empty_project(self, orchestrator, project):
        dashboard = await orchestrator.dispatch("get_live_dashboard", {"projectId": project["id"]}, USER_ID)
        assert dashboard["summary"]["maxDrawdown"] == 0
        assert dashboard["summary"]["realizedPnLToday"] == 0
        assert dashboard["teamMetrics"] == []
        assert dashboard["operations"]["schedulerRuns"] == []

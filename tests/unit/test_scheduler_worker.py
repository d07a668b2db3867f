"""
SCHEDULER WORKER TESTS

Idempotent job runs: repeated invocations converge, every invocation leaves
its own run record, a failing job never aborts the batch.

Author: Stagegate Core Team
"""
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from exceptions import ProjectNotFound
from models import (
    ActivityLog,
    SchedulerRun,
    StageTransitionEvent,
    TeamPerformanceSnapshot,
    TradingExecution,
    TradingProject,
    TradingTeam,
    TradingTeamTask,
)
from scheduler_worker import DEFAULT_JOB_TYPES

from conftest import USER_ID, advance, approve_all

pytestmark = pytest.mark.asyncio(loop_scope="function")


async def all_rows(session_factory, model):
    async with session_factory() as session:
        return list((await session.execute(select(model))).scalars().all())


class TestPhaseTaskGeneration:

    async def test_repeated_runs_converge(self, orchestrator, session_factory, project):
        """
        SCENARIO: phase task generation runs twice for phase 1
        EXPECTED: first run creates the task, second creates nothing, one task row total
        """
        first = await orchestrator.worker.run_jobs(project["id"], USER_ID, ["phase_task_generation"])
        second = await orchestrator.worker.run_jobs(project["id"], USER_ID, ["phase_task_generation"])

        assert first["phase_task_generation"] == {"created": 1, "completed": 1, "phaseNumber": 1}
        assert second["phase_task_generation"] == {"created": 0, "completed": 1, "phaseNumber": 1}

        tasks = await all_rows(session_factory, TradingTeamTask)
        assert len(tasks) == 1
        task = tasks[0]
        assert task.status == "completed"
        assert task.title == "Research market context for active symbols"
        assert task.input_payload == {"phaseNumber": 1, "autoGenerated": True}
        assert task.output_payload["source"] == "stagegate-scheduler-worker"

        runs = await all_rows(session_factory, SchedulerRun)
        assert len(runs) == 2
        assert len({r.id for r in runs}) == 2
        assert all(r.status == "completed" for r in runs)

    async def test_missing_teams_are_auto_created(self, orchestrator, session_factory, project):
        result = await orchestrator.dispatch(
            "generate_phase_tasks", {"projectId": project["id"], "phaseNumber": 3}, USER_ID
        )
        assert result["summaries"]["phase_task_generation"]["created"] == 2

        teams = await all_rows(session_factory, TradingTeam)
        assert sorted(t.team_type for t in teams) == ["risk", "strategy"]
        assert all(t.team_metadata["auto_created"] is True for t in teams)

        logs = [log for log in await all_rows(session_factory, ActivityLog) if log.agent_id == "stagegate-scheduler-worker"]
        assert len(logs) == 1
        assert logs[0].details == {"phaseNumber": 3, "createdCount": 2, "completedCount": 2}

    async def test_existing_team_is_reused(self, orchestrator, session_factory, project):
        await orchestrator.dispatch(
            "create_team", {"projectId": project["id"], "name": "Alpha Research", "teamType": "research"}, USER_ID
        )
        await orchestrator.worker.run_jobs(project["id"], USER_ID, ["phase_task_generation"])

        teams = await all_rows(session_factory, TradingTeam)
        assert [t.name for t in teams] == ["Alpha Research"]

    async def test_phase_without_blueprint(self, orchestrator, project):
        summaries = await orchestrator.worker.run_jobs(
            project["id"], USER_ID, ["phase_task_generation"], phase_number=9
        )
        assert summaries["phase_task_generation"]["reason"] == "no_blueprint"
        assert summaries["phase_task_generation"]["created"] == 0

    async def test_missing_phase_row_fails_run(self, orchestrator, session_factory):
        async with session_factory() as session:
            bare = TradingProject(user_id=USER_ID, name="No phases", exchange="alpaca")
            session.add(bare)
            await session.commit()
            project_id = bare.id

        summaries = await orchestrator.worker.run_jobs(project_id, USER_ID, ["phase_task_generation"])
        assert summaries["phase_task_generation"] == {"error": "Project phase not found"}

        runs = await all_rows(session_factory, SchedulerRun)
        assert runs[0].status == "failed"
        assert runs[0].error_message == "Project phase not found"
        # the failed job rolled back its auto-created teams
        assert await all_rows(session_factory, TradingTeam) == []


class TestRunBookkeeping:

    async def test_default_batch(self, orchestrator, session_factory, project):
        summaries = await orchestrator.dispatch("run_worker_jobs", {"projectId": project["id"]}, USER_ID)
        assert list(summaries["summaries"]) == list(DEFAULT_JOB_TYPES)

        runs = await all_rows(session_factory, SchedulerRun)
        assert sorted(r.job_type for r in runs) == sorted(DEFAULT_JOB_TYPES)
        assert all(r.completed_at is not None for r in runs)

    async def test_unknown_job_recorded_and_batch_continues(self, orchestrator, session_factory, project):
        summaries = await orchestrator.worker.run_jobs(
            project["id"], USER_ID, ["bogus", "team_performance_snapshot"]
        )
        assert summaries["bogus"] == {"error": "Unknown job type: bogus"}
        assert summaries["team_performance_snapshot"] == {"snapshots": 0}

        runs = {r.job_type: r for r in await all_rows(session_factory, SchedulerRun)}
        assert runs["bogus"].status == "failed"
        assert runs["team_performance_snapshot"].status == "completed"

    async def test_unknown_project_raises_before_any_run(self, orchestrator, session_factory):
        with pytest.raises(ProjectNotFound):
            await orchestrator.worker.run_jobs(uuid.uuid4(), USER_ID)
        assert await all_rows(session_factory, SchedulerRun) == []


class TestTeamPerformanceSnapshot:

    async def test_snapshot_attributes_pnl_through_candidate(self, orchestrator, session_factory, project):
        team = (await orchestrator.dispatch(
            "create_team", {"projectId": project["id"], "name": "Alpha Research", "teamType": "research"}, USER_ID
        ))["team"]
        cid = (await orchestrator.dispatch(
            "create_strategy_candidate",
            {"projectId": project["id"], "sourceTeamId": team["id"], "name": "Mean Revert"},
            USER_ID,
        ))["candidate"]["id"]
        await advance(orchestrator, cid, "backtest")
        strategy_id = (await advance(orchestrator, cid, "paper"))["strategyId"]

        base = datetime.now(timezone.utc) - timedelta(hours=1)
        async with session_factory() as session:
            for i, pnl in enumerate((100.0, -40.0, 60.0)):
                session.add(TradingExecution(
                    user_id=USER_ID,
                    strategy_id=uuid.UUID(strategy_id),
                    symbol="AAPL",
                    action="sell",
                    profit_loss=pnl,
                    executed_at=base + timedelta(minutes=i),
                ))
            await session.commit()

        summaries = await orchestrator.worker.run_jobs(project["id"], USER_ID, ["team_performance_snapshot"])
        assert summaries["team_performance_snapshot"] == {"snapshots": 1}

        snapshot = (await all_rows(session_factory, TeamPerformanceSnapshot))[0]
        assert str(snapshot.team_id) == team["id"]
        assert snapshot.pnl == 120.0
        assert snapshot.win_rate == 66.67


class TestStageProgression:

    async def test_approved_successor_is_promoted(self, orchestrator, session_factory, candidate):
        """
        SCENARIO: backtest fully approved but nobody promoted it
        EXPECTED: the scheduler promotes it once, with auto_stage_progression
        """
        cid = candidate["id"]
        await orchestrator.dispatch("submit_stage", {"candidateId": cid, "stage": "backtest"}, USER_ID)
        await approve_all(orchestrator, cid, "backtest")

        first = await orchestrator.worker.run_jobs(candidate["project_id"], USER_ID, ["stage_progression"])
        assert first["stage_progression"] == {"progressed": 1, "deployed": 0}

        entity = await orchestrator.get_entity(cid, USER_ID)
        assert entity["current_stage"] == "backtest"
        assert entity["status"] == "draft"

        events = [
            e for e in await all_rows(session_factory, StageTransitionEvent)
            if e.reason == "auto_stage_progression"
        ]
        assert len(events) == 1
        assert events[0].event_metadata == {"scheduler": True}

        second = await orchestrator.worker.run_jobs(candidate["project_id"], USER_ID, ["stage_progression"])
        assert second["stage_progression"] == {"progressed": 0, "deployed": 0}

    async def test_partial_or_rejected_rounds_are_left_alone(self, orchestrator, candidate):
        cid = candidate["id"]
        await orchestrator.dispatch("submit_stage", {"candidateId": cid, "stage": "backtest"}, USER_ID)
        await orchestrator.dispatch(
            "approve_stage", {"candidateId": cid, "stage": "backtest", "approverType": "ceo", "approved": True}, USER_ID
        )
        await orchestrator.dispatch(
            "approve_stage", {"candidateId": cid, "stage": "backtest", "approverType": "user", "approved": False}, USER_ID
        )

        summaries = await orchestrator.worker.run_jobs(candidate["project_id"], USER_ID, ["stage_progression"])
        assert summaries["stage_progression"] == {"progressed": 0, "deployed": 0}

        entity = await orchestrator.get_entity(cid, USER_ID)
        assert entity["current_stage"] == "research"
        assert entity["status"] == "rejected"

    async def test_promotion_onto_terminal_stage_counts_as_deployed(self, orchestrator, candidate):
        cid = candidate["id"]
        for stage in ("backtest", "paper", "staged_live"):
            await advance(orchestrator, cid, stage)
        await orchestrator.dispatch("submit_stage", {"candidateId": cid, "stage": "full_live"}, USER_ID)
        await approve_all(orchestrator, cid, "full_live")

        summaries = await orchestrator.worker.run_jobs(candidate["project_id"], USER_ID, ["stage_progression"])
        assert summaries["stage_progression"] == {"progressed": 1, "deployed": 1}

        entity = await orchestrator.get_entity(cid, USER_ID)
        assert entity["current_stage"] == "full_live"
        assert entity["status"] == "deployed"

"""
SCHEDULER WORKER - idempotent per-project job runner
====================================================

Jobs:
- phase_task_generation      ensure blueprint tasks exist, complete them with fresh output
- team_performance_snapshot  one metrics row per team
- reconciliation             compare local orders with the broker
- stage_progression          promote entities whose next stage is fully approved

Every invocation of every job gets its own scheduler_runs row. The row is
opened, the job body runs and the row is finalized in three separate
transactions, so a failing job leaves a `failed` run behind and never aborts
the rest of the batch.

Author: Stagegate Core Team
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from domain.lifecycle_domain_service import TransitionReason
from domain.stage_graph import graph_for
from exceptions import BaseLifecycleException, PersistenceError, ProjectNotFound, ProjectPhaseNotFound
from infrastructure.uow import UnitOfWork, UoWProvider, as_uuid
from logging_config import get_logger, log_error
from models import (
    ActivityLog,
    LifecycleEntity,
    SchedulerRun,
    TeamPerformanceSnapshot,
    TradingExecution,
    TradingProject,
    TradingStrategy,
    TradingTeam,
    TradingTeamTask,
)
from reconciliation import ReconciliationChecker
from serializers import to_number
from stage_transition_service import StageTransitionService
from task_blueprints import blueprint_for, build_task_output, required_team_types

logger = get_logger(__name__)

PHASE_TASK_GENERATION = "phase_task_generation"
TEAM_PERFORMANCE_SNAPSHOT = "team_performance_snapshot"
RECONCILIATION = "reconciliation"
STAGE_PROGRESSION = "stage_progression"

DEFAULT_JOB_TYPES = (
    PHASE_TASK_GENERATION,
    TEAM_PERFORMANCE_SNAPSHOT,
    RECONCILIATION,
    STAGE_PROGRESSION,
)

WORKER_AGENT_ID = "stagegate-scheduler-worker"
WORKER_AGENT_NAME = "Stagegate Scheduler Worker"


class SchedulerWorker:

    def __init__(
        self,
        uow_provider: UoWProvider,
        transitions: StageTransitionService,
        reconciliation: ReconciliationChecker,
        execution_history_limit: int = 1500,
    ):
        self._uow = uow_provider
        self.transitions = transitions
        self.reconciliation = reconciliation
        self.execution_history_limit = execution_history_limit
        self._jobs: Dict[str, Callable] = {
            PHASE_TASK_GENERATION: self.phase_task_generation,
            TEAM_PERFORMANCE_SNAPSHOT: self.team_performance_snapshot,
            RECONCILIATION: self.reconcile,
            STAGE_PROGRESSION: self.stage_progression,
        }

    # =========================================================================
    # run bookkeeping
    # =========================================================================

    async def _start_run(self, job_type: str, project_id, user_id: str):
        async with self._uow() as uow:
            run = SchedulerRun(
                job_type=job_type,
                project_id=as_uuid(project_id),
                user_id=user_id,
                status="running",
                details={},
            )
            uow.session.add(run)
            await uow.session.flush()
            return run.id

    async def _finish_run(
        self,
        run_id,
        status: str,
        details: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        async with self._uow() as uow:
            run = await uow.session.get(SchedulerRun, run_id)
            run.status = status
            run.details = dict(details)
            run.error_message = error_message
            run.completed_at = datetime.now(timezone.utc)

    async def run_jobs(
        self,
        project_id,
        user_id: str,
        job_types: Optional[Iterable[str]] = None,
        phase_number: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Run `job_types` (default: all four) for one project, in order.

        Returns:
            {job_type: details} or {job_type: {"error": message}} per job

        Raises:
            ProjectNotFound: before any run is opened
        """
        async with self._uow() as uow:
            project = await uow.projects.get(project_id, user_id)
            if project is None:
                raise ProjectNotFound(str(project_id))

        requested: List[str] = list(job_types) if job_types else list(DEFAULT_JOB_TYPES)
        summaries: Dict[str, Any] = {}

        for job_type in requested:
            run_id = await self._start_run(job_type, project_id, user_id)
            logger.info("job_started", job_type=job_type, run_id=str(run_id), project_id=str(project_id))
            try:
                job = self._jobs.get(job_type)
                if job is None:
                    raise ValueError(f"Unknown job type: {job_type}")
                async with self._uow() as uow:
                    details = await job(
                        uow, project_id, user_id, run_id=run_id, phase_number=phase_number
                    )
            except BaseLifecycleException as e:
                message = e.message
            except SQLAlchemyError as e:
                message = PersistenceError(job_type, str(e)).message
                log_error(e, {"job_type": job_type, "run_id": str(run_id)})
            except Exception as e:
                message = str(e) or type(e).__name__
                log_error(e, {"job_type": job_type, "run_id": str(run_id)})
            else:
                await self._finish_run(run_id, "completed", details)
                summaries[job_type] = details
                logger.info("job_completed", job_type=job_type, run_id=str(run_id), details=details)
                continue

            await self._finish_run(run_id, "failed", {}, message)
            summaries[job_type] = {"error": message}
            logger.warning("job_failed", job_type=job_type, run_id=str(run_id), error=message)

        return summaries

    # =========================================================================
    # jobs
    # =========================================================================

    async def _load_project(self, uow: UnitOfWork, project_id, user_id: str) -> TradingProject:
        project = await uow.projects.get(project_id, user_id)
        if project is None:
            raise ProjectNotFound(str(project_id))
        return project

    async def _ensure_teams(self, uow: UnitOfWork, project: TradingProject, team_types: List[str]) -> Dict[str, TradingTeam]:
        stmt = (
            select(TradingTeam)
            .where(TradingTeam.project_id == project.id, TradingTeam.user_id == project.user_id)
            .order_by(TradingTeam.created_at)
        )
        teams = list((await uow.session.execute(stmt)).scalars().all())
        by_type: Dict[str, TradingTeam] = {}
        for team in teams:
            by_type.setdefault(team.team_type, team)

        for team_type in team_types:
            if team_type in by_type:
                continue
            team = TradingTeam(
                project_id=project.id,
                user_id=project.user_id,
                name=f"{team_type.capitalize()} Team",
                team_type=team_type,
                status="active",
                team_metadata={"auto_created": True, "reason": PHASE_TASK_GENERATION},
            )
            uow.session.add(team)
            by_type[team_type] = team
            logger.info("team_auto_created", project_id=str(project.id), team_type=team_type)

        await uow.session.flush()
        return by_type

    async def _find_generated_task(
        self,
        uow: UnitOfWork,
        project: TradingProject,
        team: TradingTeam,
        task_type: str,
        title: str,
        phase_number: int,
    ) -> Optional[TradingTeamTask]:
        stmt = (
            select(TradingTeamTask)
            .where(
                TradingTeamTask.project_id == project.id,
                TradingTeamTask.team_id == team.id,
                TradingTeamTask.user_id == project.user_id,
                TradingTeamTask.task_type == task_type,
                TradingTeamTask.title == title,
            )
            .order_by(TradingTeamTask.created_at.desc())
        )
        for task in (await uow.session.execute(stmt)).scalars():
            payload = task.input_payload or {}
            if payload.get("phaseNumber") == phase_number and payload.get("autoGenerated") is True:
                return task
        return None

    async def phase_task_generation(
        self,
        uow: UnitOfWork,
        project_id,
        user_id: str,
        phase_number: Optional[int] = None,
        **_,
    ) -> Dict[str, Any]:
        project = await self._load_project(uow, project_id, user_id)
        target_phase = int(phase_number or project.current_phase or 1)
        templates = blueprint_for(target_phase)
        if not templates:
            return {"created": 0, "completed": 0, "phaseNumber": target_phase, "reason": "no_blueprint"}

        teams = await self._ensure_teams(uow, project, required_team_types(templates))

        phase = await uow.projects.get_phase(project.id, target_phase)
        if phase is None:
            raise ProjectPhaseNotFound(str(project.id), target_phase)

        created = 0
        completed = 0
        for template in templates:
            team = teams[template.team_type]
            task = await self._find_generated_task(
                uow, project, team, template.task_type, template.title, target_phase
            )
            if task is None:
                task = TradingTeamTask(
                    project_id=project.id,
                    team_id=team.id,
                    user_id=user_id,
                    task_type=template.task_type,
                    title=template.title,
                    description=template.description,
                    priority=template.priority,
                    status="pending",
                    input_payload={"phaseNumber": target_phase, "autoGenerated": True},
                )
                uow.session.add(task)
                await uow.session.flush()
                created += 1

            now = datetime.now(timezone.utc)
            task.output_payload = await build_task_output(uow.session, project.id, user_id, template.task_type)
            task.status = "completed"
            task.started_at = now
            task.completed_at = now
            await uow.session.flush()
            completed += 1

        uow.session.add(ActivityLog(
            project_id=project.id,
            phase_id=phase.id,
            user_id=user_id,
            agent_id=WORKER_AGENT_ID,
            agent_name=WORKER_AGENT_NAME,
            action=f"Generated {created} phase tasks and completed {completed} using real project data",
            status="completed",
            details={"phaseNumber": target_phase, "createdCount": created, "completedCount": completed},
        ))
        await uow.session.flush()

        return {"created": created, "completed": completed, "phaseNumber": target_phase}

    async def team_performance_snapshot(self, uow: UnitOfWork, project_id, user_id: str, **_) -> Dict[str, Any]:
        project = await self._load_project(uow, project_id, user_id)
        session = uow.session

        teams = (await session.execute(
            select(TradingTeam)
            .where(TradingTeam.project_id == project.id, TradingTeam.user_id == user_id)
            .order_by(TradingTeam.created_at)
        )).scalars().all()
        tasks = (await session.execute(
            select(TradingTeamTask.team_id, TradingTeamTask.status)
            .where(TradingTeamTask.project_id == project.id, TradingTeamTask.user_id == user_id)
        )).all()
        candidates = (await session.execute(
            select(LifecycleEntity.id, LifecycleEntity.source_team_id)
            .where(LifecycleEntity.project_id == project.id, LifecycleEntity.user_id == user_id)
        )).all()
        strategies = (await session.execute(
            select(TradingStrategy.id, TradingStrategy.promoted_from_candidate_id)
            .where(TradingStrategy.project_id == project.id, TradingStrategy.user_id == user_id)
        )).all()
        executions = (await session.execute(
            select(TradingExecution.strategy_id, TradingExecution.profit_loss)
            .where(TradingExecution.user_id == user_id)
            .order_by(TradingExecution.executed_at.desc())
            .limit(self.execution_history_limit)
        )).all()

        team_by_candidate = {candidate_id: team_id for candidate_id, team_id in candidates}
        team_by_strategy = {}
        for strategy_id, candidate_id in strategies:
            team_id = team_by_candidate.get(candidate_id)
            if team_id is not None:
                team_by_strategy[strategy_id] = team_id

        now = datetime.now(timezone.utc)
        for team in teams:
            statuses = [status for team_id, status in tasks if team_id == team.id]
            pnls = [
                to_number(profit_loss)
                for strategy_id, profit_loss in executions
                if strategy_id is not None and team_by_strategy.get(strategy_id) == team.id
            ]
            wins = sum(1 for pnl in pnls if pnl > 0)
            win_rate = (wins / len(pnls)) * 100 if pnls else 0.0

            session.add(TeamPerformanceSnapshot(
                project_id=project.id,
                team_id=team.id,
                user_id=user_id,
                pnl=sum(pnls),
                pnl_percent=0,
                active_tasks=statuses.count("in_progress"),
                completed_tasks=statuses.count("completed"),
                risk_events=statuses.count("failed"),
                win_rate=round(win_rate, 2),
                snapshot_at=now,
            ))

        await session.flush()
        return {"snapshots": len(teams)}

    async def reconcile(self, uow: UnitOfWork, project_id, user_id: str, run_id=None, **_) -> Dict[str, Any]:
        project = await self._load_project(uow, project_id, user_id)
        return await self.reconciliation.check(uow.session, project, run_id=run_id)

    async def stage_progression(self, uow: UnitOfWork, project_id, user_id: str, **_) -> Dict[str, Any]:
        """
        Promote approved entities whose submitted successor stage holds every
        required approval. `deployed` counts promotions onto a terminal stage.
        """
        project = await self._load_project(uow, project_id, user_id)
        ledger = self.transitions.ledger
        entities = await uow.entities.list_by_status(project.id, user_id, "approved")

        progressed = 0
        deployed = 0
        for entity in entities:
            graph = graph_for(entity.kind)
            current = entity.current_stage
            if graph.index_of(current) is None:
                logger.warning("stage_progression_unknown_stage", entity_id=str(entity.id), stage=current)
                continue

            successor = graph.next_stage(current)
            if successor is None or entity.submitted_stage != successor:
                continue
            if not await ledger.is_fully_approved(uow.session, entity.id, successor):
                continue

            result = await self.transitions.promote(
                uow,
                entity.id,
                user_id,
                successor,
                reason=TransitionReason.AUTO_STAGE_PROGRESSION,
                actor="scheduler",
                metadata={"scheduler": True},
            )
            progressed += 1
            if graph.is_terminal(result["stage"]):
                deployed += 1

        return {"progressed": progressed, "deployed": deployed}

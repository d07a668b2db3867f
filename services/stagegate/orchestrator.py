"""
ORCHESTRATOR FAÇADE
===================

Single entry point for named actions. Each action:
1. validates its params (camelCase or snake_case keys)
2. runs in one UnitOfWork
3. hands lifecycle events to the notifier after commit

Author: Stagegate Core Team
"""
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError
from sqlalchemy.exc import SQLAlchemyError

from approval_ledger import ApprovalLedger
from broker_client import BrokerClient, build_broker_registry
from dashboard import build_live_dashboard
from domain.lifecycle_domain_service import EntityStatus, TransitionReason
from domain.stage_graph import graph_for
from exceptions import (
    EntityNotFound,
    ExternalSystemError,
    InvalidRequest,
    PersistenceError,
    ProjectNotFound,
    UnknownAction,
)
from infrastructure.uow import UoWProvider, create_uow_provider
from logging_config import get_logger
from models import (
    ActivityLog,
    LifecycleEntity,
    ProjectPhase,
    RiskControls,
    TradingProject,
    TradingTeam,
    TradingTeamMember,
    TradingTeamTask,
)
from notifier import STAGE_APPROVED, STAGE_PROMOTED, Notifier, NullNotifier, build_notifier
from reconciliation import ReconciliationChecker
from scheduler_worker import PHASE_TASK_GENERATION, SchedulerWorker
from schemas import (
    AddTeamMemberParams,
    ApproveStageParams,
    CreatePhaseDeliverableParams,
    CreateProjectParams,
    CreateStrategyCandidateParams,
    CreateTeamParams,
    CreateTeamTaskParams,
    DashboardParams,
    GeneratePhaseTasksParams,
    PromoteCandidateParams,
    RunWorkerJobsParams,
    SubmitStageParams,
)
from serializers import model_dict
from settings import Settings
from stage_transition_service import StageTransitionService

logger = get_logger(__name__)

TRADING_PHASES = (
    (1, "Research", "research-agent"),
    (2, "Strategy", "strategy-agent"),
    (3, "Setup", "setup-agent"),
    (4, "Execution", "execution-agent"),
    (5, "Monitor", "monitor-agent"),
    (6, "Optimize", "optimize-agent"),
)

# risk level -> (max_position_pct, daily_loss_limit, stop_loss_pct)
RISK_DEFAULTS = {
    "conservative": (5, 2, 1),
    "moderate": (10, 5, 2),
    "aggressive": (20, 10, 5),
}

Handler = Callable[[Any, str], Awaitable[Dict[str, Any]]]


class Orchestrator:

    def __init__(
        self,
        uow_provider: UoWProvider,
        transitions: StageTransitionService,
        worker: SchedulerWorker,
        notifier: Optional[Notifier] = None,
    ):
        self._uow = uow_provider
        self.transitions = transitions
        self.worker = worker
        self.notifier = notifier or NullNotifier()
        self._actions: Dict[str, Tuple[Type[BaseModel], Handler]] = {
            "create_project": (CreateProjectParams, self.create_project),
            "create_team": (CreateTeamParams, self.create_team),
            "add_team_member": (AddTeamMemberParams, self.add_team_member),
            "create_team_task": (CreateTeamTaskParams, self.create_team_task),
            "create_strategy_candidate": (CreateStrategyCandidateParams, self.create_strategy_candidate),
            "create_phase_deliverable": (CreatePhaseDeliverableParams, self.create_phase_deliverable),
            "submit_stage": (SubmitStageParams, self.submit_stage),
            "approve_stage": (ApproveStageParams, self.approve_stage),
            "promote_candidate": (PromoteCandidateParams, self.promote_candidate),
            "generate_phase_tasks": (GeneratePhaseTasksParams, self.generate_phase_tasks),
            "run_worker_jobs": (RunWorkerJobsParams, self.run_worker_jobs),
            "get_live_dashboard": (DashboardParams, self.get_live_dashboard),
        }

    @property
    def actions(self):
        return sorted(self._actions)

    async def dispatch(self, action: str, params: Optional[Dict[str, Any]], user_id: str) -> Dict[str, Any]:
        """
        Run a named action for `user_id`.

        Raises:
            UnknownAction, InvalidRequest, PersistenceError and every domain
            exception raised by the action itself
        """
        entry = self._actions.get(action)
        if entry is None:
            raise UnknownAction(action, self._actions)
        params_model, handler = entry

        try:
            parsed = params_model.model_validate(params or {})
        except ValidationError as e:
            raise InvalidRequest(
                f"Invalid params for {action}",
                errors=e.errors(include_url=False, include_context=False),
            ) from e

        try:
            result = await handler(parsed, user_id)
        except SQLAlchemyError as e:
            logger.error("action_persistence_failed", action=action, error=str(e))
            raise PersistenceError(action, str(e)) from e

        logger.info("action_completed", action=action, user_id=user_id)
        return {"success": True, **result}

    async def _notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self.notifier.notify(event_type, payload)
        except ExternalSystemError as e:
            logger.warning("notification_failed", event_type=event_type, error=e.message)

    async def _require_project(self, uow, project_id, user_id: str) -> TradingProject:
        project = await uow.projects.get(project_id, user_id)
        if project is None:
            raise ProjectNotFound(str(project_id))
        return project

    # =========================================================================
    # project structure
    # =========================================================================

    async def create_project(self, params: CreateProjectParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            project = TradingProject(
                user_id=user_id,
                name=params.name,
                exchange=params.exchange,
                mode=params.mode,
                capital=params.capital,
                risk_level=params.risk_level,
                status="active",
                current_phase=1,
            )
            uow.session.add(project)
            await uow.session.flush()

            for number, name, agent_id in TRADING_PHASES:
                uow.session.add(ProjectPhase(
                    project_id=project.id,
                    user_id=user_id,
                    phase_number=number,
                    phase_name=name,
                    agent_id=agent_id,
                    status="pending",
                ))

            max_position, daily_loss, stop_loss = RISK_DEFAULTS[params.risk_level]
            uow.session.add(RiskControls(
                project_id=project.id,
                user_id=user_id,
                max_position_pct=max_position,
                daily_loss_limit=daily_loss,
                stop_loss_pct=stop_loss,
                kill_switch_active=False,
            ))
            uow.session.add(ActivityLog(
                project_id=project.id,
                user_id=user_id,
                agent_id="system",
                agent_name="System",
                action=f"Trading project created: {params.name}",
                status="completed",
                details=params.model_dump(mode="json"),
            ))
            await uow.session.flush()
            payload = model_dict(project)

        logger.info("project_created", project_id=payload["id"], risk_level=params.risk_level)
        return {"project": payload}

    async def create_team(self, params: CreateTeamParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            await self._require_project(uow, params.project_id, user_id)
            team = TradingTeam(
                project_id=params.project_id,
                user_id=user_id,
                name=params.name,
                team_type=params.team_type,
                team_metadata=dict(params.metadata),
            )
            uow.session.add(team)
            await uow.session.flush()
            return {"team": model_dict(team)}

    async def add_team_member(self, params: AddTeamMemberParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            team = await uow.session.get(TradingTeam, params.team_id)
            if team is None or team.user_id != user_id:
                raise InvalidRequest("Team not found", errors=[{"team_id": str(params.team_id)}])
            member = TradingTeamMember(
                team_id=team.id,
                user_id=user_id,
                agent_id=params.agent_id,
                agent_name=params.agent_name,
                role=params.role,
                capabilities=list(params.capabilities),
            )
            uow.session.add(member)
            await uow.session.flush()
            return {"member": model_dict(member)}

    async def create_team_task(self, params: CreateTeamTaskParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            await self._require_project(uow, params.project_id, user_id)
            task = TradingTeamTask(
                project_id=params.project_id,
                team_id=params.team_id,
                user_id=user_id,
                assigned_member_id=params.assigned_member_id,
                task_type=params.task_type,
                title=params.title,
                description=params.description,
                priority=params.priority,
                status="pending",
                input_payload=dict(params.input_payload),
            )
            uow.session.add(task)
            await uow.session.flush()
            return {"task": model_dict(task)}

    # =========================================================================
    # lifecycle
    # =========================================================================

    async def _create_entity(self, uow, kind: str, params, user_id: str, **fields) -> LifecycleEntity:
        await self._require_project(uow, params.project_id, user_id)
        graph = graph_for(kind)
        entity = LifecycleEntity(
            project_id=params.project_id,
            user_id=user_id,
            kind=kind,
            source_team_id=params.source_team_id,
            name=params.name,
            description=params.description,
            parameters=dict(params.parameters),
            current_stage=graph.initial_stage,
            _status=EntityStatus.DRAFT.value,
            stage_artifacts={},
            **fields,
        )
        await uow.entities.save(entity)
        logger.info("entity_created", entity_id=str(entity.id), kind=kind, stage=entity.current_stage)
        return entity

    async def create_strategy_candidate(self, params: CreateStrategyCandidateParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            entity = await self._create_entity(
                uow, "strategy_candidate", params, user_id,
                exchange=params.exchange,
                symbol_universe=list(params.symbol_universe),
            )
            return {"candidate": model_dict(entity)}

    async def create_phase_deliverable(self, params: CreatePhaseDeliverableParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            entity = await self._create_entity(
                uow, "phase_deliverable", params, user_id,
                deliverable_type=params.deliverable_type,
            )
            return {"deliverable": model_dict(entity)}

    async def submit_stage(self, params: SubmitStageParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            result = await self.transitions.submit_stage(
                uow,
                params.candidate_id,
                user_id,
                params.stage,
                artifact=params.artifact,
                metrics=params.metrics,
            )
        return {"message": result["message"], "status": result["status"]}

    async def approve_stage(self, params: ApproveStageParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            result = await self.transitions.approve_stage(
                uow,
                params.candidate_id,
                user_id,
                params.stage,
                params.approver_type,
                params.approved,
                feedback=params.feedback,
            )

        if result["all_approved"]:
            await self._notify(STAGE_APPROVED, {
                "entity_id": result["entity_id"],
                "stage": params.stage,
                "strategy_id": result["strategy_id"],
                "user_id": user_id,
            })
        return {
            "allApproved": result["all_approved"],
            "strategyId": result["strategy_id"],
            "message": result["message"],
        }

    async def promote_candidate(self, params: PromoteCandidateParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            result = await self.transitions.promote(
                uow,
                params.candidate_id,
                user_id,
                params.target_stage,
                reason=TransitionReason.MANUAL_PROMOTE,
            )

        await self._notify(STAGE_PROMOTED, {
            "entity_id": result["entity_id"],
            "stage": result["stage"],
            "status": result["status"],
            "strategy_id": result["strategy_id"],
            "user_id": user_id,
        })
        return {"strategyId": result["strategy_id"], "stage": result["stage"], "status": result["status"]}

    async def get_entity(self, entity_id, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            entity = await uow.entities.get(entity_id, user_id)
            if entity is None:
                raise EntityNotFound(str(entity_id))
            return model_dict(entity)

    # =========================================================================
    # jobs / dashboard
    # =========================================================================

    async def generate_phase_tasks(self, params: GeneratePhaseTasksParams, user_id: str) -> Dict[str, Any]:
        summaries = await self.worker.run_jobs(
            params.project_id, user_id, [PHASE_TASK_GENERATION], phase_number=params.phase_number
        )
        return {"summaries": summaries}

    async def run_worker_jobs(self, params: RunWorkerJobsParams, user_id: str) -> Dict[str, Any]:
        summaries = await self.worker.run_jobs(
            params.project_id, user_id, params.job_types or None, phase_number=params.phase_number
        )
        return {"summaries": summaries}

    async def get_live_dashboard(self, params: DashboardParams, user_id: str) -> Dict[str, Any]:
        async with self._uow() as uow:
            await self._require_project(uow, params.project_id, user_id)
            return await build_live_dashboard(uow.session, params.project_id, user_id)


def build_orchestrator(
    settings: Settings,
    session_factory,
    brokers: Optional[Dict[str, BrokerClient]] = None,
    notifier: Optional[Notifier] = None,
) -> Orchestrator:
    """Wire ledger, transition engine, reconciliation and job runner from settings."""
    uow_provider = create_uow_provider(session_factory)
    transitions = StageTransitionService(ApprovalLedger(settings.required_approvers))
    checker = ReconciliationChecker(
        brokers if brokers is not None else build_broker_registry(settings),
        order_limit=settings.broker_order_limit,
    )
    worker = SchedulerWorker(
        uow_provider,
        transitions,
        checker,
        execution_history_limit=settings.execution_history_limit,
    )
    return Orchestrator(
        uow_provider,
        transitions,
        worker,
        notifier=notifier if notifier is not None else build_notifier(settings),
    )

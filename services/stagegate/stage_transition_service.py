"""
STAGE TRANSITION SERVICE - Application Operation
================================================

ARCHITECTURE:
- Domain Layer: domain/lifecycle_domain_service.py - status rules
- Domain Layer: domain/stage_graph.py - stage order
- Application Layer: this file - submit / approve / promote
- Infrastructure: infrastructure/uow.py - transactions

No transaction management here: every operation runs inside the caller's
UnitOfWork and raises a domain exception when a precondition fails.

Author: Stagegate Core Team
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from approval_ledger import ApprovalLedger
from domain.artifacts import parse_artifact, parse_metrics
from domain.lifecycle_domain_service import (
    EntityStatus,
    LifecycleDomainService,
    TransitionReason,
    lifecycle_domain_service,
)
from domain.stage_graph import StageGraph, graph_for
from exceptions import (
    ApprovalIncomplete,
    ApprovalNotFound,
    EntityNotFound,
    InvalidEntityState,
    InvalidStageTransition,
    InvariantViolation,
    SubmissionConflict,
)
from infrastructure.uow import UnitOfWork
from logging_config import get_logger, log_stage_transition
from models import LifecycleEntity, TradingStrategy

logger = get_logger(__name__)

STRATEGY_CANDIDATE = "strategy_candidate"


class StageTransitionService:
    """
    Moves orchestrated entities through their stage graph.

    submit_stage  -> opens an approval round (status in_review)
    approve_stage -> records one decision, flips status once all roles agree
    promote       -> advances current_stage by exactly one step
    """

    def __init__(
        self,
        ledger: Optional[ApprovalLedger] = None,
        domain: Optional[LifecycleDomainService] = None,
    ):
        self.ledger = ledger or ApprovalLedger()
        self._domain = domain or lifecycle_domain_service

    # =========================================================================
    # helpers
    # =========================================================================

    async def _load(self, uow: UnitOfWork, entity_id, user_id: str) -> LifecycleEntity:
        entity = await uow.entities.get_for_update(entity_id, user_id)
        if entity is None:
            raise EntityNotFound(str(entity_id))
        return entity

    def _change_status(self, entity: LifecycleEntity, new_status: EntityStatus) -> str:
        try:
            return self._domain.change_status(entity, new_status)
        except ValueError as e:
            raise InvariantViolation(str(e), entity_id=str(entity.id)) from e

    async def _append_event(
        self,
        uow: UnitOfWork,
        entity: LifecycleEntity,
        from_stage: str,
        to_stage: str,
        reason: TransitionReason,
        metadata: Optional[Dict[str, Any]] = None,
        actor: str = "system",
    ) -> None:
        event = self._domain.stage_transitioned(entity, from_stage, to_stage, reason, metadata)
        await uow.transitions.append(entity, event)
        log_stage_transition(
            entity_id=event.entity_id,
            from_stage=from_stage,
            to_stage=to_stage,
            reason=event.reason,
            actor=actor,
        )

    async def materialize_strategy(
        self,
        uow: UnitOfWork,
        entity: LifecycleEntity,
        stage: str,
        graph: StageGraph,
    ) -> Optional[str]:
        """
        Create or update the downstream trading strategy of a candidate.

        An already linked strategy is always kept in sync with `stage`; a new
        one is only created once a deployment stage is reached.
        """
        if entity.kind != STRATEGY_CANDIDATE:
            return None

        now = datetime.now(timezone.utc)
        paper_mode = graph.is_paper(stage)

        if entity.promoted_strategy_id is not None:
            strategy = await uow.strategies.get(entity.promoted_strategy_id, entity.user_id)
            if strategy is None:
                raise InvariantViolation(
                    f"promoted strategy {entity.promoted_strategy_id} is missing",
                    entity_id=str(entity.id),
                )
            strategy.lifecycle_stage = stage
            strategy.paper_mode = paper_mode
            strategy.ceo_approved = True
            strategy.user_approved = True
            strategy.last_stage_transition_at = now
            await uow.strategies.save(strategy)
            logger.info("strategy_synced", strategy_id=str(strategy.id), stage=stage, paper_mode=paper_mode)
            return str(strategy.id)

        if not graph.requires_deployment(stage):
            return None

        parameters = dict(entity.parameters or {})
        strategy = TradingStrategy(
            project_id=entity.project_id,
            user_id=entity.user_id,
            name=entity.name,
            exchange=entity.exchange,
            strategy_type=str(parameters.get("strategy_type") or "momentum"),
            parameters=parameters,
            paper_mode=paper_mode,
            lifecycle_stage=stage,
            promoted_from_candidate_id=entity.id,
            ceo_approved=True,
            user_approved=True,
            is_active=False,
            last_stage_transition_at=now,
        )
        await uow.strategies.save(strategy)
        entity.promoted_strategy_id = strategy.id
        logger.info("strategy_materialized", strategy_id=str(strategy.id), entity_id=str(entity.id), stage=stage)
        return str(strategy.id)

    # =========================================================================
    # operations
    # =========================================================================

    async def submit_stage(
        self,
        uow: UnitOfWork,
        entity_id,
        user_id: str,
        stage: str,
        artifact: Optional[Dict[str, Any]] = None,
        metrics: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Open an approval round for `stage`.

        `stage` must be the current stage (resubmission) or its immediate
        successor. current_stage is not touched.

        Raises:
            EntityNotFound, SubmissionConflict, InvalidEntityState,
            InvalidStage, InvalidStageTransition, InvalidRequest
        """
        entity = await self._load(uow, entity_id, user_id)
        graph = graph_for(entity.kind)
        graph.require(stage)

        if entity.status == EntityStatus.IN_REVIEW.value:
            raise SubmissionConflict(str(entity.id), entity.submitted_stage)
        if entity.status == EntityStatus.DEPLOYED.value:
            raise InvalidEntityState(
                str(entity.id),
                entity.status,
                [EntityStatus.DRAFT.value, EntityStatus.APPROVED.value, EntityStatus.REJECTED.value],
                action="submit a stage",
            )

        current = entity.current_stage
        successor = graph.next_stage(current)
        if stage != current and stage != successor:
            raise InvalidStageTransition(current, stage)
        if stage == current and entity.status == EntityStatus.APPROVED.value:
            raise InvalidStageTransition(
                current, stage, reason=f"Current stage {current} already submitted/approved"
            )

        parsed_artifact = parse_artifact(stage, artifact)
        parsed_metrics = parse_metrics(metrics)

        artifacts = dict(entity.stage_artifacts or {})
        artifacts[stage] = parsed_artifact
        entity.stage_artifacts = artifacts

        for field_name, value in parsed_metrics.model_dump(exclude_none=True).items():
            setattr(entity, field_name, value)

        entity.submitted_stage = stage
        self._change_status(entity, EntityStatus.IN_REVIEW)
        await uow.entities.save(entity)

        await self.ledger.open_round(uow.session, entity, stage)

        logger.info(
            "stage_submitted",
            entity_id=str(entity.id),
            stage=stage,
            current_stage=current,
            roles=list(self.ledger.required_roles),
        )
        return {
            "entity_id": str(entity.id),
            "stage": stage,
            "status": entity.status,
            "message": f"{stage} submitted for approval",
        }

    async def approve_stage(
        self,
        uow: UnitOfWork,
        entity_id,
        user_id: str,
        stage: str,
        role: str,
        approved: bool,
        feedback: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Record one approver decision for `stage`.

        A rejection moves the entity to rejected. An approval re-checks the
        ledger; when every role has approved, the entity becomes approved, an
        `approved` transition event is appended and the downstream strategy
        is created or synced.

        Only the open round (status in_review, `stage` == submitted_stage)
        accepts decisions. A rejection closes the round's remaining pending
        records.

        Raises:
            EntityNotFound, InvalidEntityState, ApprovalNotFound
        """
        entity = await self._load(uow, entity_id, user_id)
        graph = graph_for(entity.kind)
        graph.require(stage)

        if entity.status != EntityStatus.IN_REVIEW.value:
            raise InvalidEntityState(
                str(entity.id), entity.status, [EntityStatus.IN_REVIEW.value], action="record an approval"
            )
        # only the open round can be decided
        if stage != entity.submitted_stage:
            raise ApprovalNotFound(str(entity.id), stage, role)

        await self.ledger.record_decision(
            uow.session, entity.id, stage, role, approved, actor=actor or user_id, feedback=feedback
        )

        if not approved:
            closed = await self.ledger.close_round(uow.session, entity.id, stage, actor=actor or user_id)
            if closed:
                logger.info("approval_round_closed", entity_id=str(entity.id), stage=stage, roles=closed)
            self._change_status(entity, EntityStatus.REJECTED)
            await uow.entities.save(entity)
            logger.info("stage_rejected", entity_id=str(entity.id), stage=stage, role=role)
            return {
                "entity_id": str(entity.id),
                "all_approved": False,
                "strategy_id": None,
                "message": f"{stage} rejected by {role}",
            }

        all_approved = await self.ledger.is_fully_approved(uow.session, entity.id, stage)
        strategy_id = None

        if all_approved:
            self._change_status(entity, EntityStatus.APPROVED)
            await self._append_event(
                uow, entity, entity.current_stage, stage, TransitionReason.APPROVED, {"approved_by": role},
                actor=actor or user_id,
            )
            strategy_id = await self.materialize_strategy(uow, entity, stage, graph)
            await uow.entities.save(entity)

        logger.info(
            "stage_approved",
            entity_id=str(entity.id),
            stage=stage,
            role=role,
            all_approved=all_approved,
        )
        return {
            "entity_id": str(entity.id),
            "all_approved": all_approved,
            "strategy_id": strategy_id,
            "message": f"{stage} approved by {role}",
        }

    async def promote(
        self,
        uow: UnitOfWork,
        entity_id,
        user_id: str,
        target_stage: str,
        reason: TransitionReason = TransitionReason.MANUAL_PROMOTE,
        actor: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Advance current_stage to its immediate successor.

        Check order: stage path, approvals of the target stage, entity status.

        Raises:
            EntityNotFound, InvalidStage, InvalidPromotionPath,
            ApprovalIncomplete, InvalidEntityState
        """
        entity = await self._load(uow, entity_id, user_id)
        graph = graph_for(entity.kind)
        from_stage = entity.current_stage

        graph.assert_next(from_stage, target_stage)

        missing = await self.ledger.missing_roles(uow.session, entity.id, target_stage)
        if missing:
            raise ApprovalIncomplete(str(entity.id), target_stage, missing)

        if entity.status != EntityStatus.APPROVED.value:
            raise InvalidEntityState(
                str(entity.id), entity.status, [EntityStatus.APPROVED.value], action="promote"
            )

        strategy_id = await self.materialize_strategy(uow, entity, target_stage, graph)

        entity.current_stage = target_stage
        terminal = graph.is_terminal(target_stage)
        self._change_status(entity, EntityStatus.DEPLOYED if terminal else EntityStatus.DRAFT)
        await uow.entities.save(entity)

        await self._append_event(
            uow, entity, from_stage, target_stage, reason, metadata, actor=actor or user_id
        )

        logger.info(
            "stage_promoted",
            entity_id=str(entity.id),
            from_stage=from_stage,
            to_stage=target_stage,
            reason=TransitionReason(reason).value,
            status=entity.status,
        )
        return {
            "entity_id": str(entity.id),
            "strategy_id": strategy_id or (str(entity.promoted_strategy_id) if entity.promoted_strategy_id else None),
            "stage": target_stage,
            "status": entity.status,
        }

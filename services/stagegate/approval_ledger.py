"""
Approval Ledger
===============

Dual-approval bookkeeping for stage submissions. One record per
(entity, stage, required approver). A new submission round resets the
records of that stage to pending, so a stale decision never satisfies the
gate of a resubmitted stage.

All methods work inside the caller's transaction (UnitOfWork session) and
never commit.

Author: Stagegate Core Team
"""
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.lifecycle_domain_service import ApprovalStatus
from exceptions import ApprovalNotFound
from infrastructure.uow import as_uuid
from logging_config import get_logger
from models import LifecycleEntity, StageApproval

logger = get_logger(__name__)

DEFAULT_REQUIRED_ROLES: Tuple[str, ...] = ("ceo", "user")
ROUND_CLOSED_FEEDBACK = "round closed"


class ApprovalLedger:

    def __init__(self, required_roles: Iterable[str] = DEFAULT_REQUIRED_ROLES):
        self.required_roles: Tuple[str, ...] = tuple(required_roles)
        if not self.required_roles:
            raise ValueError("ApprovalLedger needs at least one required role")

    async def _get(self, session: AsyncSession, entity_id, stage: str, role: str) -> Optional[StageApproval]:
        stmt = select(StageApproval).where(
            StageApproval.entity_id == as_uuid(entity_id),
            StageApproval.stage == stage,
            StageApproval.required_approver == role,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _reset(record: StageApproval) -> None:
        record.status = ApprovalStatus.PENDING.value
        record.feedback = None
        record.approved_by = None
        record.approved_at = None

    async def upsert_approval(
        self,
        session: AsyncSession,
        entity: LifecycleEntity,
        stage: str,
        role: str,
    ) -> StageApproval:
        """
        Create the record for (entity, stage, role) or reset it to pending.

        A concurrent insert of the same key surfaces as an IntegrityError
        inside the savepoint; the existing row is then reset instead.
        """
        existing = await self._get(session, entity.id, stage, role)
        if existing is None:
            record = StageApproval(
                entity_id=entity.id,
                project_id=entity.project_id,
                user_id=entity.user_id,
                stage=stage,
                required_approver=role,
                status=ApprovalStatus.PENDING.value,
            )
            try:
                async with session.begin_nested():
                    session.add(record)
                return record
            except IntegrityError:
                logger.info(
                    "approval_upsert_race",
                    entity_id=str(entity.id),
                    stage=stage,
                    role=role,
                )
                existing = await self._get(session, entity.id, stage, role)
                if existing is None:
                    raise

        self._reset(existing)
        await session.flush()
        return existing

    async def open_round(self, session: AsyncSession, entity: LifecycleEntity, stage: str) -> List[StageApproval]:
        """Upsert a pending record for every required role."""
        return [await self.upsert_approval(session, entity, stage, role) for role in self.required_roles]

    async def record_decision(
        self,
        session: AsyncSession,
        entity_id,
        stage: str,
        role: str,
        approved: bool,
        actor: str,
        feedback: Optional[str] = None,
    ) -> StageApproval:
        """
        Resolve the pending record for (entity, stage, role).

        Raises:
            ApprovalNotFound: no pending record exists for that key
        """
        stmt = (
            select(StageApproval)
            .where(
                StageApproval.entity_id == as_uuid(entity_id),
                StageApproval.stage == stage,
                StageApproval.required_approver == role,
                StageApproval.status == ApprovalStatus.PENDING.value,
            )
            .with_for_update()
        )
        record = (await session.execute(stmt)).scalar_one_or_none()
        if record is None:
            raise ApprovalNotFound(str(entity_id), stage, role)

        record.status = (ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED).value
        record.feedback = feedback
        record.approved_by = actor
        record.approved_at = datetime.now(timezone.utc)
        await session.flush()
        return record

    async def close_round(
        self,
        session: AsyncSession,
        entity_id,
        stage: str,
        actor: str,
        feedback: str = ROUND_CLOSED_FEEDBACK,
    ) -> List[str]:
        """
        Reject every record of `stage` still pending. Returns the closed roles.

        Used once a round has been rejected so no pending record outlives it.
        """
        stmt = (
            select(StageApproval)
            .where(
                StageApproval.entity_id == as_uuid(entity_id),
                StageApproval.stage == stage,
                StageApproval.status == ApprovalStatus.PENDING.value,
            )
            .with_for_update()
        )
        records = list((await session.execute(stmt)).scalars().all())
        now = datetime.now(timezone.utc)
        for record in records:
            record.status = ApprovalStatus.REJECTED.value
            record.feedback = feedback
            record.approved_by = actor
            record.approved_at = now
        await session.flush()
        return [record.required_approver for record in records]

    async def statuses(self, session: AsyncSession, entity_id, stage: str) -> Dict[str, str]:
        """Role -> status for the records of one stage. Always re-queried."""
        stmt = select(StageApproval.required_approver, StageApproval.status).where(
            StageApproval.entity_id == as_uuid(entity_id),
            StageApproval.stage == stage,
        )
        rows = (await session.execute(stmt)).all()
        return {role: status for role, status in rows}

    async def missing_roles(self, session: AsyncSession, entity_id, stage: str) -> List[str]:
        statuses = await self.statuses(session, entity_id, stage)
        return [
            role for role in self.required_roles
            if statuses.get(role) != ApprovalStatus.APPROVED.value
        ]

    async def is_fully_approved(self, session: AsyncSession, entity_id, stage: str) -> bool:
        return not await self.missing_roles(session, entity_id, stage)

    async def pending_for_entity(self, session: AsyncSession, entity_id) -> List[StageApproval]:
        stmt = (
            select(StageApproval)
            .where(
                StageApproval.entity_id == as_uuid(entity_id),
                StageApproval.status == ApprovalStatus.PENDING.value,
            )
            .order_by(StageApproval.created_at)
        )
        return list((await session.execute(stmt)).scalars().all())

    async def pending_for_project(self, session: AsyncSession, project_id, user_id: str) -> List[StageApproval]:
        stmt = (
            select(StageApproval)
            .where(
                StageApproval.project_id == as_uuid(project_id),
                StageApproval.user_id == user_id,
                StageApproval.status == ApprovalStatus.PENDING.value,
            )
            .order_by(StageApproval.created_at.desc())
        )
        return list((await session.execute(stmt)).scalars().all())

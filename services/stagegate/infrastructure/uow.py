"""
Unit of Work + Repositories - Infrastructure Layer
==================================================
"""
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models import (
    LifecycleEntity,
    ProjectPhase,
    StageTransitionEvent,
    TradingProject,
    TradingStrategy,
)


def as_uuid(value) -> UUID:
    if isinstance(value, UUID):
        return value
    return UUID(str(value))


class UnitOfWork:
    """
    Thin Unit of Work: one session, one transaction.

    Usage:
        async with uow_provider() as uow:
            entity = await uow.entities.get_for_update(entity_id, user_id)
            ...
    Commits on clean exit, rolls back on exception.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._session: AsyncSession | None = None

    async def __aenter__(self) -> "UnitOfWork":
        self._session = self._session_factory()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                if self._session:
                    await self._session.commit()
            else:
                if self._session:
                    await self._session.rollback()
        finally:
            if self._session:
                await self._session.close()
                self._session = None

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError(
                "Session not available. Use 'async with UnitOfWork() as uow:' pattern."
            )
        return self._session

    @property
    def entities(self) -> "EntityRepository":
        return EntityRepository(self.session)

    @property
    def projects(self) -> "ProjectRepository":
        return ProjectRepository(self.session)

    @property
    def strategies(self) -> "StrategyRepository":
        return StrategyRepository(self.session)

    @property
    def transitions(self) -> "TransitionLog":
        return TransitionLog(self.session)


UoWProvider = Callable[[], UnitOfWork]


def create_uow_provider(session_factory: async_sessionmaker[AsyncSession]) -> UoWProvider:
    """
    Factory producing fresh UnitOfWork instances bound to `session_factory`.

    Usage in FastAPI:
        uow_provider = create_uow_provider(session_factory)
        async with uow_provider() as uow:
            ...
    """
    def provider() -> UnitOfWork:
        return UnitOfWork(session_factory)

    return provider


class EntityRepository:
    """Repository for LifecycleEntity - CRUD only"""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, entity_id, user_id: str) -> Optional[LifecycleEntity]:
        stmt = select(LifecycleEntity).where(
            LifecycleEntity.id == as_uuid(entity_id),
            LifecycleEntity.user_id == user_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_for_update(self, entity_id, user_id: str) -> Optional[LifecycleEntity]:
        """SELECT ... FOR UPDATE: serializes mutations of one entity."""
        stmt = (
            select(LifecycleEntity)
            .where(
                LifecycleEntity.id == as_uuid(entity_id),
                LifecycleEntity.user_id == user_id,
            )
            .with_for_update()
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_by_status(self, project_id, user_id: str, status: str) -> List[LifecycleEntity]:
        stmt = (
            select(LifecycleEntity)
            .where(
                LifecycleEntity.project_id == as_uuid(project_id),
                LifecycleEntity.user_id == user_id,
                LifecycleEntity.status == status,
            )
            .order_by(LifecycleEntity.created_at)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def save(self, entity: LifecycleEntity) -> None:
        self._session.add(entity)
        await self._session.flush()


class ProjectRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, project_id, user_id: str) -> Optional[TradingProject]:
        stmt = select(TradingProject).where(
            TradingProject.id == as_uuid(project_id),
            TradingProject.user_id == user_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def get_phase(self, project_id, phase_number: int) -> Optional[ProjectPhase]:
        stmt = select(ProjectPhase).where(
            ProjectPhase.project_id == as_uuid(project_id),
            ProjectPhase.phase_number == phase_number,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def list_active(self) -> List[TradingProject]:
        stmt = select(TradingProject).where(TradingProject.status == "active").order_by(TradingProject.created_at)
        return list((await self._session.execute(stmt)).scalars().all())


class StrategyRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, strategy_id, user_id: str) -> Optional[TradingStrategy]:
        stmt = select(TradingStrategy).where(
            TradingStrategy.id == as_uuid(strategy_id),
            TradingStrategy.user_id == user_id,
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()

    async def save(self, strategy: TradingStrategy) -> None:
        self._session.add(strategy)
        await self._session.flush()


class TransitionLog:
    """Append-only writer for stage_transition_events"""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def append(self, entity: LifecycleEntity, event) -> StageTransitionEvent:
        record = StageTransitionEvent(
            entity_id=entity.id,
            project_id=entity.project_id,
            user_id=entity.user_id,
            from_stage=event.from_stage,
            to_stage=event.to_stage,
            reason=event.reason,
            event_metadata=dict(event.metadata),
        )
        self._session.add(record)
        await self._session.flush()
        return record

    async def list_for_entity(self, entity_id) -> List[StageTransitionEvent]:
        stmt = (
            select(StageTransitionEvent)
            .where(StageTransitionEvent.entity_id == as_uuid(entity_id))
            .order_by(StageTransitionEvent.created_at)
        )
        return list((await self._session.execute(stmt)).scalars().all())

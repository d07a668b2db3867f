# Infrastructure Layer
from .uow import (
    UnitOfWork,
    EntityRepository,
    ProjectRepository,
    StrategyRepository,
    TransitionLog,
    create_uow_provider,
    as_uuid,
)

# Domain Layer
from .stage_graph import (
    StageGraph,
    TRADING_STAGE_GRAPH,
    BUSINESS_PHASE_GRAPH,
    graph_for,
)
from .lifecycle_domain_service import (
    EntityStatus,
    ApprovalStatus,
    TransitionReason,
    StageTransitioned,
    LifecycleDomainService,
    lifecycle_domain_service,
)

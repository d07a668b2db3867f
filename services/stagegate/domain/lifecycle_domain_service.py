"""
Lifecycle Domain Service - pure domain layer
============================================
No sessions, no commits, no logging, no side effects.
Only status rules and invariants for orchestrated entities.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class EntityStatus(str, Enum):
    DRAFT = "draft"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEPLOYED = "deployed"


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransitionReason(str, Enum):
    APPROVED = "approved"
    MANUAL_PROMOTE = "manual_promote"
    AUTO_STAGE_PROGRESSION = "auto_stage_progression"


@dataclass
class StageTransitioned:
    """Domain event - a stage transition to be appended to the audit log"""
    entity_id: str
    from_stage: str
    to_stage: str
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class LifecycleDomainService:
    """
    The only code allowed to change an entity's status.

    draft     -> in_review
    in_review -> approved | rejected
    approved  -> in_review | draft | deployed
    rejected  -> in_review   (explicit resubmission only)
    deployed  -> terminal
    """

    TERMINAL_STATES = {EntityStatus.DEPLOYED}

    ALLOWED_TRANSITIONS = {
        EntityStatus.DRAFT: {EntityStatus.IN_REVIEW},
        EntityStatus.IN_REVIEW: {EntityStatus.APPROVED, EntityStatus.REJECTED},
        EntityStatus.APPROVED: {EntityStatus.IN_REVIEW, EntityStatus.DRAFT, EntityStatus.DEPLOYED},
        EntityStatus.REJECTED: {EntityStatus.IN_REVIEW},
        EntityStatus.DEPLOYED: set(),
    }

    def change_status(self, entity, new_status: EntityStatus) -> str:
        """
        Validate and apply a status change.

        Returns:
            The previous status value

        Raises:
            ValueError: when the change is not an allowed transition
        """
        if not hasattr(entity, "_status"):
            raise ValueError("Entity must have _status attribute")

        old_status = EntityStatus(entity._status)
        new_status = EntityStatus(new_status)

        if old_status == new_status:
            raise ValueError(f"No-op status change forbidden: entity already '{old_status.value}'")

        if old_status in self.TERMINAL_STATES:
            raise ValueError(f"Cannot leave terminal status '{old_status.value}'")

        allowed = self.ALLOWED_TRANSITIONS[old_status]
        if new_status not in allowed:
            raise ValueError(
                f"Invalid status change: cannot go from '{old_status.value}' to '{new_status.value}'. "
                f"Allowed: {sorted(s.value for s in allowed) or 'none'}"
            )

        entity._status = new_status.value
        return old_status.value

    def stage_transitioned(
        self,
        entity,
        from_stage: str,
        to_stage: str,
        reason: TransitionReason,
        metadata: Optional[Dict[str, Any]] = None
    ) -> StageTransitioned:
        return StageTransitioned(
            entity_id=str(entity.id),
            from_stage=from_stage,
            to_stage=to_stage,
            reason=TransitionReason(reason).value,
            metadata=metadata or {},
        )


lifecycle_domain_service = LifecycleDomainService()

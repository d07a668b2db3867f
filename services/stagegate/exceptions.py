"""
Domain Exceptions for the Stage Lifecycle

All business-rule failures derive from BaseLifecycleException and carry a
specific message plus structured details, so callers can explain exactly
what is missing (e.g. which approver role has not signed off).
"""
from typing import Iterable


class BaseLifecycleException(Exception):
    """Base exception for all lifecycle business-logic errors"""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Serialize for API responses"""
        return {
            "error": {
                "code": self.__class__.__name__,
                "message": self.message,
                "details": self.details
            }
        }


# =============================================================================
# Stage graph misuse (caller errors, never retried)
# =============================================================================

class InvalidStage(BaseLifecycleException):
    def __init__(self, stage: str, graph: str, valid_stages: Iterable[str]):
        super().__init__(
            message=f"Invalid stage '{stage}' for {graph}",
            details={"stage": stage, "graph": graph, "valid_stages": list(valid_stages)}
        )


class InvalidStageTransition(BaseLifecycleException):
    def __init__(self, current_stage: str, requested_stage: str, reason: str = None):
        super().__init__(
            message=reason or f"Invalid stage submission from {current_stage} to {requested_stage}",
            details={"current_stage": current_stage, "requested_stage": requested_stage}
        )


class InvalidPromotionPath(BaseLifecycleException):
    def __init__(self, current_stage: str, target_stage: str, expected_stage: str | None):
        if expected_stage is None:
            message = f"Invalid promotion path. {current_stage} is the terminal stage"
        else:
            message = f"Invalid promotion path. Must promote from {current_stage} to {expected_stage}"
        super().__init__(
            message=message,
            details={
                "current_stage": current_stage,
                "target_stage": target_stage,
                "expected_stage": expected_stage,
            }
        )


# =============================================================================
# Precondition failures
# =============================================================================

class SubmissionConflict(BaseLifecycleException):
    """Another stage review is already pending for this entity"""

    def __init__(self, entity_id: str, pending_stage: str | None):
        super().__init__(
            message="Candidate already has a stage pending approval",
            details={"entity_id": entity_id, "pending_stage": pending_stage}
        )


class ApprovalNotFound(BaseLifecycleException):
    def __init__(self, entity_id: str, stage: str, role: str):
        super().__init__(
            message=f"Pending approval checkpoint not found for {role} at {stage}",
            details={"entity_id": entity_id, "stage": stage, "required_approver": role}
        )


class ApprovalIncomplete(BaseLifecycleException):
    def __init__(self, entity_id: str, stage: str, missing_roles: Iterable[str]):
        missing = list(missing_roles)
        roles = " and ".join(r.upper() if r == "ceo" else r for r in missing)
        super().__init__(
            message=f"{stage} requires {roles} approval{'s' if len(missing) > 1 else ''} before promotion",
            details={"entity_id": entity_id, "stage": stage, "missing_roles": missing}
        )


class InvalidEntityState(BaseLifecycleException):
    def __init__(self, entity_id: str, current_status: str, expected_statuses: Iterable[str], action: str):
        super().__init__(
            message=f"Cannot {action} while entity is {current_status}",
            details={
                "entity_id": entity_id,
                "current_status": current_status,
                "expected_statuses": list(expected_statuses),
            }
        )


class EntityNotFound(BaseLifecycleException):
    def __init__(self, entity_id: str):
        super().__init__(
            message="Strategy candidate not found",
            details={"entity_id": entity_id}
        )


class ProjectNotFound(BaseLifecycleException):
    def __init__(self, project_id: str):
        super().__init__(
            message="Project not found",
            details={"project_id": project_id}
        )


class ProjectPhaseNotFound(BaseLifecycleException):
    def __init__(self, project_id: str, phase_number: int):
        super().__init__(
            message="Project phase not found",
            details={"project_id": project_id, "phase_number": phase_number}
        )


class InvalidRequest(BaseLifecycleException):
    def __init__(self, message: str, errors: list = None):
        super().__init__(message=message, details={"errors": errors or []})


class UnknownAction(BaseLifecycleException):
    def __init__(self, action: str, known_actions: Iterable[str]):
        super().__init__(
            message="Unknown action",
            details={"action": action, "known_actions": sorted(known_actions)}
        )


# =============================================================================
# Infrastructure failures
# =============================================================================

class ExternalSystemError(BaseLifecycleException):
    """Broker/notifier/third-party call failed"""

    def __init__(self, system: str, message: str):
        super().__init__(
            message=f"{system}: {message}",
            details={"system": system}
        )


class PersistenceError(BaseLifecycleException):
    """Datastore operation failed. Always propagated."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            message=f"Persistence failure during {operation}: {message}",
            details={"operation": operation}
        )


class InvariantViolation(BaseLifecycleException):
    def __init__(self, invariant: str, entity_id: str = None):
        super().__init__(
            message=f"System invariant violated: {invariant}",
            details={"entity_id": entity_id, "invariant": invariant}
        )


# =============================================================================
# HTTP Status Mapping
# =============================================================================

EXCEPTION_TO_STATUS = {
    InvalidStage: 400,
    InvalidStageTransition: 400,
    InvalidPromotionPath: 400,
    InvalidRequest: 400,
    UnknownAction: 400,
    SubmissionConflict: 409,
    ApprovalIncomplete: 409,
    InvalidEntityState: 409,
    ApprovalNotFound: 404,
    EntityNotFound: 404,
    ProjectNotFound: 404,
    ProjectPhaseNotFound: 404,
    ExternalSystemError: 502,
    PersistenceError: 500,
    InvariantViolation: 500,
}

"""
Status state machine and the guards around it.
"""
import pytest

from domain.lifecycle_domain_service import EntityStatus, LifecycleDomainService, TransitionReason
from models import LifecycleEntity


def make_entity(status="draft"):
    return LifecycleEntity(
        kind="strategy_candidate",
        name="Test",
        current_stage="research",
        _status=status,
    )


class TestStatusTransitions:

    def setup_method(self):
        self.domain = LifecycleDomainService()

    @pytest.mark.parametrize("old,new", [
        ("draft", EntityStatus.IN_REVIEW),
        ("in_review", EntityStatus.APPROVED),
        ("in_review", EntityStatus.REJECTED),
        ("approved", EntityStatus.DRAFT),
        ("approved", EntityStatus.DEPLOYED),
        ("rejected", EntityStatus.IN_REVIEW),
    ])
    def test_allowed(self, old, new):
        entity = make_entity(old)
        assert self.domain.change_status(entity, new) == old
        assert entity.status == new.value

    @pytest.mark.parametrize("old,new", [
        ("draft", EntityStatus.APPROVED),
        ("rejected", EntityStatus.APPROVED),
        ("in_review", EntityStatus.DRAFT),
    ])
    def test_forbidden(self, old, new):
        entity = make_entity(old)
        with pytest.raises(ValueError, match="Invalid status change"):
            self.domain.change_status(entity, new)
        assert entity.status == old

    def test_noop_forbidden(self):
        with pytest.raises(ValueError, match="No-op"):
            self.domain.change_status(make_entity("draft"), EntityStatus.DRAFT)

    def test_deployed_is_terminal(self):
        with pytest.raises(ValueError, match="terminal"):
            self.domain.change_status(make_entity("deployed"), EntityStatus.IN_REVIEW)


class TestStatusGuard:

    def test_direct_assignment_blocked(self):
        """
        SCENARIO: Code assigns entity.status directly
        EXPECTED: RuntimeError, status unchanged
        """
        entity = make_entity()
        with pytest.raises(RuntimeError, match="Direct status assignment blocked"):
            entity.status = "approved"
        assert entity.status == "draft"


class TestTransitionEvent:

    def test_event_carries_reason_value(self):
        entity = make_entity()
        event = LifecycleDomainService().stage_transitioned(
            entity, "research", "backtest", TransitionReason.MANUAL_PROMOTE
        )
        assert event.reason == "manual_promote"
        assert event.metadata == {}
        assert event.from_stage == "research"

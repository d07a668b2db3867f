"""
Pytest Configuration and Fixtures

Every test gets its own SQLite file (aiosqlite driver), a fake broker and a
recording notifier wired into a real Orchestrator.
"""
import os
import sys

import pytest
import pytest_asyncio

# Add services/stagegate to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'services', 'stagegate'))

from broker_client import BrokerClient  # noqa: E402
from database import build_engine, build_session_factory, create_schema  # noqa: E402
from exceptions import ExternalSystemError  # noqa: E402
from infrastructure.uow import create_uow_provider  # noqa: E402
from notifier import Notifier  # noqa: E402
from orchestrator import build_orchestrator  # noqa: E402
from settings import Settings  # noqa: E402

USER_ID = "user-1"
OTHER_USER_ID = "user-2"


class FakeBrokerClient(BrokerClient):
    """In-memory broker. Set `error` to make every call fail."""

    name = "fakebroker"

    def __init__(self, orders=None, error=None):
        self.orders = list(orders or [])
        self.error = error
        self.calls = []

    async def get_orders(self, status="all", limit=500):
        self.calls.append({"status": status, "limit": limit})
        if self.error:
            raise ExternalSystemError(self.name, self.error)
        return list(self.orders)


class RecordingNotifier(Notifier):
    """Keeps notifications in memory as (event_type, payload) pairs."""

    def __init__(self):
        self.sent = []

    async def notify(self, event_type, payload):
        self.sent.append((event_type, dict(payload)))


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/stagegate.db").normalized()


@pytest_asyncio.fixture
async def engine(settings):
    engine = build_engine(settings)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def uow_provider(session_factory):
    return create_uow_provider(session_factory)


@pytest.fixture
def broker():
    return FakeBrokerClient()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def orchestrator(settings, session_factory, broker, notifier):
    return build_orchestrator(settings, session_factory, brokers={"alpaca": broker}, notifier=notifier)


@pytest_asyncio.fixture
async def project(orchestrator):
    result = await orchestrator.dispatch(
        "create_project",
        {"name": "Momentum Desk", "exchange": "alpaca", "riskLevel": "moderate"},
        USER_ID,
    )
    return result["project"]


@pytest_asyncio.fixture
async def candidate(orchestrator, project):
    result = await orchestrator.dispatch(
        "create_strategy_candidate",
        {
            "projectId": project["id"],
            "name": "Breakout A",
            "symbolUniverse": ["AAPL", "MSFT"],
            "parameters": {"strategy_type": "breakout", "lookback": 20},
        },
        USER_ID,
    )
    return result["candidate"]


async def approve_all(orchestrator, entity_id, stage, user_id=USER_ID):
    """Approve `stage` for every required role; returns the last response."""
    result = None
    for role in orchestrator.transitions.ledger.required_roles:
        result = await orchestrator.dispatch(
            "approve_stage",
            {"candidateId": entity_id, "stage": stage, "approverType": role, "approved": True},
            user_id,
        )
    return result


async def advance(orchestrator, entity_id, stage, user_id=USER_ID):
    """Submit, dual-approve and promote one stage."""
    await orchestrator.dispatch("submit_stage", {"candidateId": entity_id, "stage": stage}, user_id)
    await approve_all(orchestrator, entity_id, stage, user_id)
    return await orchestrator.dispatch(
        "promote_candidate", {"candidateId": entity_id, "targetStage": stage}, user_id
    )

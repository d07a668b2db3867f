"""
Settings loading and the periodic scheduler tick.
"""
import pytest
from sqlalchemy import select

from models import SchedulerRun
from settings import Settings

from conftest import USER_ID


class TestSettingsFromEnv:

    def test_defaults(self, monkeypatch):
        for name in ("DATABASE_URL", "LOG_LEVEL", "ALLOWED_ORIGINS", "BROKER_ORDER_LIMIT", "ALPACA_KEY_ID"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.log_level == "INFO"
        assert settings.broker_order_limit == 500
        assert settings.required_approvers == ("ceo", "user")
        assert settings.alpaca_configured is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "  sqlite+aiosqlite:///tmp/x.db ")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.test, https://b.test,")
        monkeypatch.setenv("ALPACA_BASE_URL", "https://broker.test/")
        monkeypatch.setenv("ALPACA_KEY_ID", "k")
        monkeypatch.setenv("ALPACA_SECRET_KEY", "s")
        monkeypatch.setenv("SCHEDULER_INTERVAL_MINUTES", "5")

        settings = Settings.from_env()
        assert settings.database_url == "sqlite+aiosqlite:///tmp/x.db"
        assert settings.log_level == "DEBUG"
        assert settings.allowed_origins == ("https://a.test", "https://b.test")
        assert settings.alpaca_base_url == "https://broker.test"
        assert settings.alpaca_configured is True
        assert settings.scheduler_interval_minutes == 5

    @pytest.mark.parametrize("name,value", [
        ("BROKER_ORDER_LIMIT", "lots"),
        ("BROKER_ORDER_LIMIT", "0"),
        ("LOG_LEVEL", "LOUD"),
    ])
    def test_invalid_values_fail_fast(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ValueError, match=name):
            Settings.from_env()

    def test_approver_roles_normalized(self):
        settings = Settings(required_approvers=(" CEO", "user", "")).normalized()
        assert settings.required_approvers == ("ceo", "user")

    def test_no_approver_roles(self):
        with pytest.raises(ValueError):
            Settings(required_approvers=()).normalized()


@pytest.mark.asyncio(loop_scope="function")
class TestSchedulerTick:

    async def test_tick_runs_default_jobs_for_active_projects(self, settings, orchestrator, project, session_factory):
        from periodic_tasks import run_scheduler_tick

        report = await run_scheduler_tick(settings)

        summaries = report[project["id"]]
        assert summaries["phase_task_generation"]["created"] == 1
        # no broker credentials configured for the tick
        assert summaries["reconciliation"]["skipped"] == "exchange_not_supported"

        async with session_factory() as session:
            runs = (await session.execute(
                select(SchedulerRun).where(SchedulerRun.user_id == USER_ID)
            )).scalars().all()
        assert len(runs) == 4

"""
PERIODIC TASKS - scheduler ticks for every active project
==========================================================

Scheduled tasks:
- Run the default job list for each active project (every
  SCHEDULER_INTERVAL_MINUTES)

Start with:
    celery -A periodic_tasks worker -B
"""
import asyncio

from celery import Celery

from database import build_engine, build_session_factory
from exceptions import BaseLifecycleException
from infrastructure.uow import create_uow_provider
from logging_config import get_logger, setup_logging
from orchestrator import build_orchestrator
from settings import Settings

logger = get_logger(__name__)

settings = Settings.from_env()
setup_logging(settings.log_level, settings.log_file or None, settings.json_logs)

celery_app = Celery('periodic_tasks', broker=settings.celery_broker_url)


async def run_scheduler_tick(app_settings: Settings) -> dict:
    """Run the default jobs for every active project. Returns {project_id: summaries}."""
    engine = build_engine(app_settings)
    try:
        session_factory = build_session_factory(engine)
        worker = build_orchestrator(app_settings, session_factory).worker

        async with create_uow_provider(session_factory)() as uow:
            projects = [(p.id, p.user_id) for p in await uow.projects.list_active()]

        report = {}
        for project_id, user_id in projects:
            try:
                report[str(project_id)] = await worker.run_jobs(project_id, user_id)
            except BaseLifecycleException as e:
                logger.warning("scheduler_tick_project_failed", project_id=str(project_id), error=e.message)
                report[str(project_id)] = {"error": e.message}
        return report
    finally:
        await engine.dispose()


@celery_app.task(name='run_scheduler_tick')
def scheduler_tick():
    """
    Run phase task generation, snapshots, reconciliation and stage
    progression for all active projects.
    """
    logger.info("scheduler_tick_started")
    report = asyncio.run(run_scheduler_tick(settings))
    logger.info("scheduler_tick_completed", projects=len(report))
    return report


celery_app.conf.beat_schedule = {
    'run-scheduler-tick': {
        'task': 'run_scheduler_tick',
        'schedule': settings.scheduler_interval_minutes * 60.0,
    },
}
celery_app.conf.timezone = 'UTC'


def trigger_scheduler_tick():
    """Manually trigger one scheduler tick"""
    scheduler_tick.delay()


if __name__ == '__main__':
    celery_app.start()

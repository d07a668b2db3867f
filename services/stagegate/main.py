"""
Stagegate API
=============

create_app() builds the FastAPI application. Without an injected
orchestrator, the lifespan builds engine, schema and services from
Settings; tests pass their own orchestrator instead.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.actions import router as actions_router
from database import build_engine, build_session_factory, create_schema
from logging_config import get_logger, setup_logging
from orchestrator import Orchestrator, build_orchestrator
from settings import Settings

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = None
        if orchestrator is None:
            setup_logging(settings.log_level, settings.log_file or None, settings.json_logs)
            engine = build_engine(settings)
            await create_schema(engine)
            app.state.orchestrator = build_orchestrator(settings, build_session_factory(engine))
        else:
            app.state.orchestrator = orchestrator
        logger.info("stagegate_online", actions=app.state.orchestrator.actions)
        try:
            yield
        finally:
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Stagegate", lifespan=lifespan)
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    app.include_router(actions_router)
    return app

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from coreflow.bootstrap import build_orchestrator
from coreflow.logging_setup import configure_logging
from coreflow.pending import PendingPlanCache
from coreflow.routes.orchestration_routes import router as orchestration_router
from coreflow.routes.tool_routes import router as tool_router
from coreflow.settings import get_settings
from coreflow.store import OrchestrationStore


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)

    store = OrchestrationStore(settings.db_path)
    orchestrator = build_orchestrator(settings=settings, store=store)

    app.state.settings = settings
    app.state.store = store
    app.state.orchestrator = orchestrator
    app.state.tool_registry = orchestrator.planner.registry
    app.state.pending_plans = PendingPlanCache(settings.pending_plan_ttl_sec)
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="coreflow", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(tool_router)
    app.include_router(orchestration_router)

    @app.get("/health")
    def health():
        return {"ok": True, "service": "coreflow"}

    return app


app = create_app()

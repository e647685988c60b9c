import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnel.config import settings
from funnel.database import SessionLocal, create_tables, init_engine
from funnel.logging_config import get_logger, setup_logging
from funnel.routers import operations, webhooks
from funnel.runtime import FunnelRuntime

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="Funnel Engine",
    description="Payment-driven conversation funnel orchestrator",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router)
app.include_router(operations.router)


def _is_runtime_enabled() -> bool:
    return not os.environ.get("PYTEST_CURRENT_TEST")


@app.on_event("startup")
async def start_runtime() -> None:
    if not _is_runtime_enabled():
        return
    engine = init_engine(settings.database_url, echo=settings.debug)
    create_tables(engine)
    runtime = FunnelRuntime.build(SessionLocal, settings)
    app.state.runtime = runtime
    if not settings.scheduler_enabled:
        logger.warning("Scheduler disabled, timers will not fire in this process")
        return
    recovered = await runtime.start()
    logger.info("Funnel engine started", extra={"context": {"recovered_timers": recovered}})


@app.on_event("shutdown")
async def stop_runtime() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        return
    await runtime.stop()
    app.state.runtime = None


@app.get("/health")
async def health():
    runtime = getattr(app.state, "runtime", None)
    return {
        "status": "ok",
        "scheduler": "running" if runtime is not None and runtime.scheduler.running else "stopped",
        "active_timers": runtime.scheduler.active_timers if runtime is not None else 0,
    }

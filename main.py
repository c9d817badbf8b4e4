import logging
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent.orchestrator import AssistantOrchestrator
from api.routes import router as api_router
from db.session import AsyncSessionLocal, init_models
from services.audit_service import audit_service
from services.config import settings
from services.state_checkpointer import create_checkpoint_store
from sql_guard import ExecuteSqlTool, ReadonlySandbox, SandboxTimeouts, create_readonly_pool


def configure_logging(level: str) -> None:
    """JSON logs through stdlib logging; request/conversation ids come from contextvars."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=getattr(logging, level.upper(), logging.INFO))


configure_logging(settings.log_level)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting spend assistant", port=settings.port, model=settings.ai_model,
                checkpoint_backend=settings.checkpoint_backend)

    if settings.checkpoint_backend == "postgres":
        await init_models()
    checkpoint_store = create_checkpoint_store(settings.checkpoint_backend, AsyncSessionLocal)

    pool = await create_readonly_pool(settings)
    sandbox = ReadonlySandbox(pool, SandboxTimeouts.from_settings(settings))
    app.state.orchestrator = AssistantOrchestrator(
        tool=ExecuteSqlTool.from_settings(sandbox, settings),
        checkpoint_store=checkpoint_store,
        settings=settings,
        audit=audit_service,
    )
    try:
        yield
    finally:
        app.state.orchestrator = None
        await checkpoint_store.close()
        await pool.close()
        logger.info("Spend assistant stopped")


app = FastAPI(
    title="Spend Assistant",
    description="Natural-language questions over public-sector spend data",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=settings.port)

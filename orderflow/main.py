import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import orderflow.models  # noqa: F401  registers every model on Base.metadata
from orderflow.container import build_container
from orderflow.core.config import CORS_ORIGINS, DATABASE_URL
from orderflow.core.database import Base, engine
from orderflow.core.logging_setup import configure_logging
from orderflow.core.startup_checks import ensure_migrations_applied, validate_database_environment, verify_encryption
from orderflow.middleware.observability import ObservabilityMiddleware
from orderflow.routers.meta import router as meta_router
from orderflow.routers.orders import router as orders_router
from orderflow.routers.payments import router as payments_router
from orderflow.routers.webhook import router as webhook_router
from orderflow.routers.whatsapp import router as whatsapp_router
from orderflow.services.event_bus import event_bus
from orderflow.services.event_handlers import register_event_handlers

configure_logging()

logger = logging.getLogger(__name__)
REPO_ROOT = Path(__file__).resolve().parents[1]
ALEMBIC_CONFIG_PATH = Path(os.getenv("ALEMBIC_CONFIG", str(REPO_ROOT / "alembic.ini")))


def _startup_tasks() -> None:
    validate_database_environment()
    if DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    ensure_migrations_applied(engine=engine, alembic_config_path=ALEMBIC_CONFIG_PATH)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        _startup_tasks()
        container = build_container()
        verify_encryption(container.encryption)
    except Exception:
        logger.exception("[STARTUP] startup failed")
        raise

    app.state.container = container
    event_bus.clear()
    register_event_handlers(event_bus, container.gateway)
    try:
        yield
    finally:
        event_bus.clear()
        container.close()


app = FastAPI(
    title="OrderFlow API",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)

# Routers
app.include_router(webhook_router)
app.include_router(meta_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(whatsapp_router)


@app.get("/")
def root():
    return {"status": "ok"}


@app.get("/health")
def health():
    return {"status": "healthy"}

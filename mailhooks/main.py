"""
mailhooks: FastAPI application entry-point.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mailhooks.config import settings
from mailhooks.database import Base, engine

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: ensure data dir + tables exist
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    # Import models so Base.metadata knows about them
    import mailhooks.accounts.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", settings.DATABASE_URL)

    from mailhooks.dependencies import build_engine
    from mailhooks.subscriptions.scheduler import ReconciliationScheduler

    app.state.scheduler = ReconciliationScheduler(build_engine(), config=settings)
    if settings.ENABLE_SCHEDULER:
        app.state.scheduler.start()
    else:
        logger.info("Reconciliation scheduler disabled (ENABLE_SCHEDULER=false)")

    yield
    app.state.scheduler.stop()
    logger.info("Shutting down")


app = FastAPI(
    title="mailhooks",
    description="Gmail / Outlook push subscription lifecycle and notification routing",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"service": "mailhooks", "version": "0.1.0", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# ── Register API routers ────────────────────────────────────────────────────
from mailhooks.routers.accounts import router as accounts_router  # noqa: E402
from mailhooks.routers.sync import router as sync_router  # noqa: E402
from mailhooks.routers.webhooks import router as webhooks_router  # noqa: E402

app.include_router(accounts_router, prefix="/api", tags=["Accounts"])
app.include_router(sync_router, prefix="/api", tags=["Subscription Sync"])
app.include_router(webhooks_router, prefix="/api", tags=["Webhooks"])

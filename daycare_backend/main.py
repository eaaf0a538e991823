import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from daycare_backend.config import get_settings
from daycare_backend.database import SessionLocal
from daycare_backend.app.routes import business_expenses, category_rules
from daycare_backend.app.bank_integration.clients import SyncClients
from daycare_backend.app.bank_integration.scheduler import DailySyncScheduler, build_sync_job

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Fails startup on a bad encryption key or missing Firefly token.
    # SYNC_TIMEZONE is resolved here once for the whole process.
    clients = SyncClients.from_settings(settings)
    app.state.sync_clients = clients

    scheduler = None
    if settings.is_production:
        scheduler = DailySyncScheduler(
            build_sync_job(SessionLocal, clients, settings),
            hour=settings.sync_hour,
            minute=settings.sync_minute,
            timezone=clients.timezone
        )
        scheduler.start()
    else:
        logger.info("Scheduler skipped in development mode")

    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        await clients.aclose()


app = FastAPI(
    title="Daycare API",
    description="Daycare management backend: business expense sync from SimpleFIN into Firefly III",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(category_rules.router, prefix="/api")
app.include_router(business_expenses.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}

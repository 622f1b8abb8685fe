import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, status

from app.api.v1.outbox import router as outbox_router
from app.api.v1.profiles import router as profiles_router
from app.api.v1.users import router as users_router
from app.consumers.user_event_consumer import create_user_event_consumer
from app.core.config import CONSUMER_ENABLED, PROJECT_NAME, RELAY_ENABLED, VERSION
from app.core.db import close_db, init_db
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging_config import setup_logging
from app.workers.outbox_relay import OutboxRelay

setup_logging()
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info("Starting %s v%s...", PROJECT_NAME, VERSION)
    await init_db()  # Connect to DB and generate schemas

    relay = OutboxRelay() if RELAY_ENABLED else None
    consumer = create_user_event_consumer() if CONSUMER_ENABLED else None
    if relay:
        await relay.start()
    if consumer:
        # Retries in the background until the broker is reachable; the API and relay don't wait for it
        consumer.start_in_background()

    yield

    # Stop intake first, let in-flight work finish, then release connections
    if consumer:
        await consumer.stop()
    if relay:
        await relay.stop()
    await close_db()
    log.info("%s stopped.", PROJECT_NAME)


app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

# Include routers for modular API structure
app.include_router(users_router, prefix="/api/v1/users", tags=["Users"])
app.include_router(profiles_router, prefix="/api/v1/profiles", tags=["User Profile Cache"])
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox Operations"])


setup_exception_handlers(app)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}

import logging
from logging import INFO

from tortoise import Tortoise

from app.core.config import DB_URL

# Set logging level for Tortoise ORM
logging.getLogger('tortoise').setLevel(INFO)
log = logging.getLogger(__name__)

# Define all models modules for the ORM
MODELS_MODULES = [
    "app.models.user",
    "app.models.user_profile",
    "app.models.outbox",
    "app.models.processed_event",
]


async def init_db(db_url: str = DB_URL, generate_schemas: bool = True):
    """Initializes the Tortoise ORM connection and generates schemas."""
    try:
        await Tortoise.init(
            db_url=db_url,
            modules={"models": MODELS_MODULES},
        )
        if generate_schemas:
            # Safe to call repeatedly: only missing tables are created
            await Tortoise.generate_schemas(safe=True)
        log.info("Database connection established and schemas generated.")
    except Exception:
        log.exception("FATAL ERROR: Could not connect to database.")
        # Re-raise to prevent the application from starting without a database
        raise


async def close_db():
    """Closes all database connections."""
    await Tortoise.close_connections()
    log.info("Database connections closed.")

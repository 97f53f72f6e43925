from tortoise import Tortoise
from outbox_relay.core.config import DB_URL
import logging
from logging import INFO

logger = logging.getLogger(__name__)

# Set logging level for Tortoise ORM
logging.getLogger('tortoise').setLevel(INFO)

# Define all models modules for the ORM
MODELS_MODULES = [
    "outbox_relay.models.outbox",
    "outbox_relay.models.dead_letter",
    "outbox_relay.models.cursor",
]


async def init_db(db_url: str = DB_URL, generate_schemas: bool = True):
    """Initializes the Tortoise ORM connection and optionally generates schemas."""
    try:
        await Tortoise.init(
            db_url=db_url,
            modules={"models": MODELS_MODULES},
            use_tz=True,
            timezone="UTC",
        )
        if generate_schemas:
            # Creates the outbox, dlq, cursor and lease tables if missing
            await Tortoise.generate_schemas(safe=True)
        logger.info("Database connection established.")
    except Exception:
        logger.exception("FATAL: could not connect to database")
        # Re-raise to prevent the service from starting without a database
        raise


async def close_db():
    """Closes all database connections."""
    await Tortoise.close_connections()
    logger.info("Database connections closed.")

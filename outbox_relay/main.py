import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, status
from outbox_relay.core.db import init_db, close_db
from outbox_relay.api.v1.outbox import router as outbox_router
from outbox_relay.api.v1.dead_letters import router as dead_letters_router
from outbox_relay.core.config import EMBEDDED_PROCESSOR, LOG_LEVEL, PROJECT_NAME, VERSION, ProcessorPolicy
from outbox_relay.core.exception_handlers import setup_exception_handlers
from outbox_relay.consumers.outbox_poller import OutboxPoller
from outbox_relay.services.outbox_processor import OutboxProcessor
from outbox_relay.services.sinks import build_sink

logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    await init_db()  # Connect to DB and generate schemas

    poller = None
    poller_task = None
    if EMBEDDED_PROCESSOR:
        poller = OutboxPoller(OutboxProcessor(build_sink(), ProcessorPolicy.from_env()))
        poller_task = asyncio.create_task(poller.run_forever())

    yield

    if poller is not None:
        await poller.stop()
        poller_task.cancel()
        with suppress(asyncio.CancelledError):
            await poller_task
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc"
)

# Operator endpoints; producers write to the outbox directly, not over HTTP
app.include_router(outbox_router, prefix="/api/v1/outbox", tags=["Outbox Operations"])
app.include_router(dead_letters_router, prefix="/api/v1/dead-letters", tags=["Dead Letter Queue"])


setup_exception_handlers(app)


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}

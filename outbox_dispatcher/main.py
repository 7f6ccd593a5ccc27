import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, status
from outbox_dispatcher.core.db import init_db, close_db
from outbox_dispatcher.api.v1.admin import router as admin_router
from outbox_dispatcher.core.config import (
    CONSUMER_ENDPOINTS,
    PROJECT_NAME,
    VERSION,
    DispatcherConfig,
    parse_consumer_endpoints,
)
from outbox_dispatcher.core.exception_handlers import setup_exception_handlers
from outbox_dispatcher.services.admin import AdminService
from outbox_dispatcher.stores import tortoise_stores

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
log = logging.getLogger("outbox_dispatcher")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handles startup and shutdown events."""
    log.info(f"Starting {PROJECT_NAME} v{VERSION}...")
    config = DispatcherConfig().validate()
    await init_db() # Connect to DB and generate schemas
    stores = await tortoise_stores(config.partition_count)
    app.state.admin = AdminService(stores, config, consumers=parse_consumer_endpoints(CONSUMER_ENDPOINTS))
    yield
    await close_db()
    log.info(f"{PROJECT_NAME} stopped.")

app = FastAPI(
    title=PROJECT_NAME,
    version=VERSION,
    lifespan=lifespan,
    # Configure API documentation and paths
    docs_url="/docs",
    redoc_url="/redoc"
)

app.include_router(admin_router, prefix="/api/v1/admin", tags=["Dispatcher Administration"])


setup_exception_handlers(app)

@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Simple health check endpoint."""
    return {"status": "ok", "app_name": PROJECT_NAME}

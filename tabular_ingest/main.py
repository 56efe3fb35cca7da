"""
FastAPI application entry point.

This module initializes the FastAPI application, wires the document store,
blob store, orchestrator and processing queue, and registers the routers.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports
from .core.config import settings
from .core.logging_config import configure_logging
from .db.documents import SqlDocumentStore, build_document_store
from .domain.imports.orchestrator import IngestionOrchestrator
from .domain.imports.queue import ProcessingQueue, build_queue_processor
from .integrations.storage import build_blob_store

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


async def _build_services(app: FastAPI) -> None:
    store = build_document_store(settings.document_store_backend)
    if isinstance(store, SqlDocumentStore) and os.getenv("SKIP_DB_INIT") != "1":
        await asyncio.to_thread(store.ensure_table)

    orchestrator = IngestionOrchestrator(store, build_blob_store(settings), config=settings)
    app.state.orchestrator = orchestrator

    if settings.use_processing_queue:
        app.state.queue = ProcessingQueue(
            build_queue_processor(orchestrator),
            max_concurrent=settings.queue_max_concurrent_imports,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
            max_retained_items=settings.queue_max_retained_items,
        )
    else:
        app.state.queue = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    # Tests may install their own services before startup
    if getattr(app.state, "orchestrator", None) is None:
        try:
            await _build_services(app)
        except Exception:
            logger.error("Failed to initialize import services", exc_info=True)
            raise  # Re-raise to prevent app from starting with a broken store

    queue = getattr(app.state, "queue", None)
    if queue is not None:
        queue.start()

    logger.info("Import service ready")
    yield  # Application runs here

    if queue is not None:
        await queue.stop()
    await app.state.orchestrator.wait_for_pending()


# Initialize FastAPI application
app = FastAPI(
    title="Tabular Ingest API",
    version="1.0.0",
    description="Ingests Excel and CSV uploads into a document store with inferred field types",
    lifespan=lifespan
)

allowed_origins = [origin.strip() for origin in settings.allowed_origins.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Tabular Ingest API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "tabular-ingest-api"
    }

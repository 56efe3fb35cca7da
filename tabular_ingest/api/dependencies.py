"""
Shared dependencies for the API routers.

The orchestrator and processing queue are built once in the application
lifespan and stored on ``app.state``; routers resolve them per request.
"""
from fastapi import HTTPException, Request

from tabular_ingest.domain.imports.orchestrator import IngestionOrchestrator
from tabular_ingest.domain.imports.queue import ProcessingQueue


def get_orchestrator(request: Request) -> IngestionOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Import service is not ready")
    return orchestrator


def get_queue(request: Request) -> ProcessingQueue:
    queue = getattr(request.app.state, "queue", None)
    if queue is None:
        raise HTTPException(status_code=503, detail="Processing queue is not enabled")
    return queue

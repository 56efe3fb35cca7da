"""
FastAPI routers for organizing API endpoints.

Routers stay thin: they validate requests, resolve the orchestrator or queue
from application state and translate domain errors into HTTP responses.
"""

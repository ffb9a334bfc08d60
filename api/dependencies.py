"""
FastAPI dependencies; the collaborators live on app.state and are created at startup
"""

from fastapi import Request
from ingestion.loaders.base import RecordStore
from ingestion.progress import ProgressBroadcaster
from ingestion.runner import SyncOrchestrator


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def get_broadcaster(request: Request) -> ProgressBroadcaster:
    return request.app.state.broadcaster


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator

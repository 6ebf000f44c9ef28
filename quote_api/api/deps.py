from fastapi import Request

from quote_api.core.idempotency import IdempotencyStore
from quote_api.services.coordinator import RequestCoordinator


def get_coordinator(request: Request) -> RequestCoordinator:
    """FastAPI dependency returning the coordinator built by ``create_app``."""

    return request.app.state.coordinator


def get_store(request: Request) -> IdempotencyStore:
    return request.app.state.coordinator.store

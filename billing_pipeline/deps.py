from fastapi import HTTPException, Request

from .config import Settings


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_publisher(request: Request):
    publisher = getattr(request.app.state, "publisher", None)
    if publisher is None:
        raise HTTPException(status_code=503, detail="Billing publisher not configured")
    return publisher


def get_store(request: Request):
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Order store not ready")
    return store

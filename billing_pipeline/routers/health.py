from fastapi import APIRouter, Request

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health(request: Request):
    state = request.app.state
    body = {"status": "healthy", "service": state.service_name}

    store = getattr(state, "store", None)
    if store is not None:
        db_ok = store.ping()
        body["database"] = db_ok
        if not db_ok:
            body["status"] = "degraded"

    consumer_thread = getattr(state, "consumer_thread", None)
    if consumer_thread is not None:
        consuming = consumer_thread.is_alive()
        body["consumer"] = consuming
        if not consuming:
            body["status"] = "degraded"
    return body

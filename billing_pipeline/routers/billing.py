import logging
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from ..config import Settings
from ..deps import get_publisher, get_settings
from ..publisher import SubmitOutcome, submit
from ..schemas import BillingAccepted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["billing"])

INVALID_JSON_DETAIL = "Invalid JSON format"
MISSING_FIELDS_DETAIL = "Missing required fields: user_id, number_of_items, total_amount"
PUBLISH_FAILED_DETAIL = "Error processing billing request"


@router.post("/billing", response_model=BillingAccepted)
async def create_billing(
    request: Request,
    publisher=Depends(get_publisher),
    settings: Settings = Depends(get_settings),
):
    """
    Accept a billing order and queue it for the billing worker.

    The 200 response means the order was durably queued, not that it was stored.
    """
    arrived = time.monotonic()
    logger.info("Received billing request")

    body = await request.body()
    result = await run_in_threadpool(submit, body, publisher, arrived + settings.publish_timeout)

    if result.outcome is SubmitOutcome.REJECTED_INPUT:
        detail = INVALID_JSON_DETAIL if result.reason == "invalid_json" else MISSING_FIELDS_DETAIL
        raise HTTPException(status_code=400, detail=detail)
    if result.outcome is SubmitOutcome.PUBLISH_FAILED:
        raise HTTPException(status_code=500, detail=PUBLISH_FAILED_DETAIL)

    return BillingAccepted()

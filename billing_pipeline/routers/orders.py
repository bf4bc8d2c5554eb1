import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_store
from ..errors import StoreUnavailable
from ..schemas import Order

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["orders"])


@router.get("/orders", response_model=List[Order])
def list_orders(store=Depends(get_store)):
    try:
        return store.list_orders()
    except StoreUnavailable as e:
        logger.error(f"Error retrieving orders: {e}")
        raise HTTPException(status_code=500, detail="Internal error")

import json
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, StrictStr, ValidationError

REQUIRED_FIELDS = ("user_id", "number_of_items", "total_amount")


class BillingRequest(BaseModel):
    """Wire payload of ``POST /api/billing`` and of every queued message."""

    model_config = ConfigDict(extra="ignore")

    user_id: Optional[StrictStr] = None
    number_of_items: Optional[StrictStr] = None
    total_amount: Optional[StrictStr] = None

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]


class Order(BaseModel):
    id: str
    user_id: str
    number_of_items: str
    total_amount: str


class BillingAccepted(BaseModel):
    message: str = "Message posted successfully"
    status: str = "accepted"


class InvalidPayload(ValueError):
    """``kind`` is ``"invalid_json"`` or ``"missing_fields"``."""

    def __init__(self, kind: str, detail: str):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail


def decode_json_object(raw: Union[bytes, str]) -> dict:
    """
    Raises:
        InvalidPayload: bad JSON or a document that is not an object
    """
    try:
        data = json.loads(raw)
    except ValueError as e:
        raise InvalidPayload("invalid_json", f"invalid JSON: {e}") from e

    if data is None:
        # JSON null decodes to an empty request, which then fails the field check
        return {}
    if not isinstance(data, dict):
        raise InvalidPayload("invalid_json", "invalid JSON: expected an object")
    return data


def validate_billing(data: dict) -> BillingRequest:
    """
    Raises:
        InvalidPayload: a non-string field, or an empty/missing required field
    """
    try:
        req = BillingRequest.model_validate(data)
    except ValidationError as e:
        raise InvalidPayload("invalid_json", f"invalid JSON: {e.error_count()} bad field(s)") from e

    missing = req.missing_fields()
    if missing:
        raise InvalidPayload("missing_fields", f"missing required fields: {', '.join(missing)}")
    return req


def parse_billing_payload(raw: Union[bytes, str]) -> BillingRequest:
    """Decode ``raw`` into a BillingRequest and enforce the non-empty invariant."""
    return validate_billing(decode_json_object(raw))

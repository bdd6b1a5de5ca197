"""Request and response schemas for the HTTP surface."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.schemas.base import BaseCreateSchema, BaseUpdateSchema
from app.schemas.return_record import Disposition, ReturnStatus
from app.services.return_state_machine import TransitionAction


class BaseResponseSchema(BaseModel):
    """Responses are emitted with camelCase keys."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ==================== Return records ====================

class ReturnRequestItem(BaseCreateSchema):
    """One line of a logistics return request. Unknown fields are stored as sent."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    document_no: Optional[str] = None
    ref_no: Optional[str] = None
    product_code: str = Field(..., min_length=1)
    product_name: Optional[str] = None
    quantity: float = Field(..., ge=0)
    unit: Optional[str] = None
    branch: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1)
    destination_customer: Optional[str] = None
    founder: Optional[str] = None
    reason: Optional[str] = None
    date: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ReturnRequestCreate(BaseCreateSchema):
    items: List[ReturnRequestItem] = Field(..., min_length=1)


class ReturnRecordUpdate(BaseUpdateSchema):
    """Any subset of record fields; status changes are refused."""
    pass


class TransitionRequest(BaseCreateSchema):
    action: TransitionAction
    expected_status: Optional[ReturnStatus] = None
    disposition: Optional[Disposition] = None
    notes: Optional[str] = None


class UndoRequest(BaseCreateSchema):
    secret: str
    expected_status: Optional[ReturnStatus] = None


class DispositionRequest(BaseCreateSchema):
    disposition: Disposition
    details: Dict[str, Any] = Field(default_factory=dict)


class SplitRequest(BaseCreateSchema):
    quantities: List[float] = Field(..., min_length=2)


class CancelRequest(BaseCreateSchema):
    expected_status: Optional[ReturnStatus] = None


class PickupRequest(BaseCreateSchema):
    record_ids: List[str] = Field(..., min_length=1)
    transport: Dict[str, Any] = Field(default_factory=dict)


class IntakeItemResult(BaseResponseSchema):
    index: int
    success: bool
    id: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class IntakeResponse(BaseResponseSchema):
    created: int
    results: List[IntakeItemResult]


class PickupResponse(BaseResponseSchema):
    collection_order_id: str
    moved: List[str]
    failed: Dict[str, str]


# ==================== NCR ====================

class NCRSubmitRequest(BaseCreateSchema):
    """Header fields at the top level plus the line items."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    founder: Optional[str] = None
    date: Optional[str] = None
    problem_detail: Optional[str] = None
    items: List[Dict[str, Any]] = Field(..., min_length=1)

    def header(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude={"items"}, exclude_none=True, mode="json")


class NCRUpdateRequest(BaseUpdateSchema):
    """Any subset of report fields, flat or under `item`."""
    pass


class NCRSubmitResponse(BaseResponseSchema):
    ncr_no: str
    report_ids: List[str]
    record_ids: List[str]


class NCRUpdateResponse(BaseResponseSchema):
    report: Dict[str, Any]
    synced_records: int


# ==================== Admin ====================

class CountResponse(BaseResponseSchema):
    count: int
    message: str


class CounterResponse(BaseResponseSchema):
    family: str
    counter: Optional[Dict[str, Any]] = None
    next_number: str


class HealthResponse(BaseResponseSchema):
    status: str
    app: str
    version: str
    store: str

"""
NCR (non-conformance report) documents.

Reports reach the store in two shapes:

    nested:  {"ncrNo": ..., "item": {"productCode": ..., "quantity": ...}}
    flat:    {"ncrNo": ..., "productCode": ..., "quantity": ...}

`NCRReport.from_document` normalizes both into the nested shape, which is
also the only shape written back.
"""
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic.alias_generators import to_camel

from app.schemas.base import StoreDocumentModel
from app.schemas.return_record import ProblemFlagsMixin


class NCRStatus(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"
    CANCELED = "Canceled"


class NCRItem(StoreDocumentModel):
    """The single line item carried by a report."""
    id: Optional[str] = None
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    quantity: Optional[float] = Field(default=None, ge=0)
    unit: Optional[str] = None
    customer_name: Optional[str] = None
    destination_customer: Optional[str] = None
    branch: Optional[str] = None
    price_bill: Optional[float] = None
    price_per_unit: Optional[float] = None
    price_sell: Optional[float] = None
    ref_no: Optional[str] = None
    neo_ref_no: Optional[str] = None
    expiry_date: Optional[str] = None
    problem_source: Optional[str] = None
    root_cause: Optional[str] = None
    has_cost: Optional[bool] = None
    cost_amount: Optional[float] = None
    cost_responsible: Optional[str] = None


# Store keys of item fields that may sit at the top level of a flat report
ITEM_KEYS = tuple(to_camel(name) for name in NCRItem.model_fields if name != "id")

# Keys that live on both the header and the item
SHARED_KEYS = ("problemSource", "rootCause", "hasCost", "costAmount", "costResponsible")


class NCRReport(ProblemFlagsMixin):
    """
    One reported non-conformance. Stored at `ncr_reports/<id>`.

    The id of a report created by a submission is `<ncrNo>-<n>`.
    """
    id: str
    ncr_no: Optional[str] = None
    date: Optional[str] = None
    status: NCRStatus = NCRStatus.OPEN
    founder: Optional[str] = None
    to_dept: Optional[str] = None
    copy_to: Optional[str] = None
    po_no: Optional[str] = None

    problem_source: Optional[str] = None
    problem_analysis: Optional[str] = None
    has_cost: Optional[bool] = None
    cost_amount: Optional[float] = None
    cost_responsible: Optional[str] = None

    preliminary_decision: Optional[str] = None
    preliminary_route: Optional[str] = None
    is_record_only: Optional[bool] = None
    is_field_settled: Optional[bool] = None

    item: NCRItem = Field(default_factory=NCRItem)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v):
        """Absent or unknown status reads as Open."""
        if isinstance(v, NCRStatus):
            return v
        if isinstance(v, str):
            for status in NCRStatus:
                if v.strip().lower() == status.value.lower():
                    return status
        return NCRStatus.OPEN

    @classmethod
    def from_document(cls, data: Dict[str, Any], key: Optional[str] = None) -> "NCRReport":
        payload = dict(data)
        if key is not None and not payload.get("id"):
            payload["id"] = key

        raw_item = payload.get("item")
        item = dict(raw_item) if isinstance(raw_item, dict) else {}
        for item_key in ITEM_KEYS:
            if item.get(item_key) is None and payload.get(item_key) is not None:
                item[item_key] = payload[item_key]
            if item_key not in SHARED_KEYS:
                payload.pop(item_key, None)
        payload["item"] = item

        return cls.model_validate(payload)

    @property
    def is_active(self) -> bool:
        return self.status != NCRStatus.CANCELED

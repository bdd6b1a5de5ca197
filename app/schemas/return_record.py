"""Return record document and its enumerations."""
from enum import Enum
from typing import Optional

from pydantic import Field

from app.schemas.base import StoreDocumentModel


class ReturnStatus(str, Enum):
    """Workflow status of a return record."""
    DRAFT = "Draft"
    REQUESTED = "Requested"
    # Collection / logistics track
    PICKUP_SCHEDULED = "PickupScheduled"
    COL_JOB_ACCEPTED = "COL_JobAccepted"
    COL_BRANCH_RECEIVED = "COL_BranchReceived"
    COL_CONSOLIDATED = "COL_Consolidated"
    COL_IN_TRANSIT = "COL_InTransit"
    COL_HUB_RECEIVED = "COL_HubReceived"
    RETURN_TO_SUPPLIER = "ReturnToSupplier"
    # NCR / hub track
    NCR_IN_TRANSIT = "NCR_InTransit"
    NCR_HUB_RECEIVED = "NCR_HubReceived"
    NCR_QC_COMPLETED = "NCR_QCCompleted"
    DOCUMENTED = "Documented"
    # Terminal
    COMPLETED = "Completed"
    DIRECT_RETURN = "DirectReturn"
    SETTLED_ON_FIELD = "Settled_OnField"
    CANCELED = "Canceled"


class Disposition(str, Enum):
    """Post-inspection routing category."""
    RESTOCK = "Restock"
    RTV = "RTV"
    CLAIM = "Claim"
    INTERNAL_USE = "InternalUse"
    RECYCLE = "Recycle"
    PENDING = "Pending"


class DocumentType(str, Enum):
    NCR = "NCR"
    LOGISTICS = "LOGISTICS"


# Problem-type flags shared by NCR reports and return records (store keys)
PROBLEM_FLAGS = (
    "problemDamaged",
    "problemDamagedInBox",
    "problemLost",
    "problemMixed",
    "problemWrongInv",
    "problemLate",
    "problemDuplicate",
    "problemWrong",
    "problemIncomplete",
    "problemOver",
    "problemWrongInfo",
    "problemShortExpiry",
    "problemTransportDamage",
    "problemAccident",
    "problemPOExpired",
    "problemNoBarcode",
    "problemNotOrdered",
    "problemOther",
)


class ProblemFlagsMixin(StoreDocumentModel):
    """The 18 problem-type checkboxes plus their free text."""
    problem_damaged: Optional[bool] = None
    problem_damaged_in_box: Optional[bool] = None
    problem_lost: Optional[bool] = None
    problem_mixed: Optional[bool] = None
    problem_wrong_inv: Optional[bool] = None
    problem_late: Optional[bool] = None
    problem_duplicate: Optional[bool] = None
    problem_wrong: Optional[bool] = None
    problem_incomplete: Optional[bool] = None
    problem_over: Optional[bool] = None
    problem_wrong_info: Optional[bool] = None
    problem_short_expiry: Optional[bool] = None
    problem_transport_damage: Optional[bool] = None
    problem_accident: Optional[bool] = None
    problem_po_expired: Optional[bool] = Field(default=None, alias="problemPOExpired")
    problem_no_barcode: Optional[bool] = None
    problem_not_ordered: Optional[bool] = None
    problem_other: Optional[bool] = None
    problem_other_text: Optional[str] = None
    problem_detail: Optional[str] = None


class ReturnRecord(ProblemFlagsMixin):
    """
    One physical movement of one product under one return/collection case.

    Stored at `return_records/<id>`.
    """
    id: str

    # Linkage keys
    document_no: Optional[str] = None
    ref_no: Optional[str] = None
    ncr_number: Optional[str] = None
    collection_order_id: Optional[str] = None
    neo_ref_no: Optional[str] = None

    # Workflow
    status: ReturnStatus = ReturnStatus.REQUESTED
    disposition: Optional[Disposition] = None
    document_type: Optional[DocumentType] = None

    # Product / customer
    product_code: Optional[str] = None
    product_name: Optional[str] = None
    quantity: float = Field(default=0, ge=0)
    unit: Optional[str] = None
    customer_name: Optional[str] = None
    destination_customer: Optional[str] = None
    branch: Optional[str] = None
    category: Optional[str] = None
    founder: Optional[str] = None

    # Prices
    amount: Optional[float] = None
    price_bill: Optional[float] = None
    price_per_unit: Optional[float] = None
    price_sell: Optional[float] = None

    # Root cause and cost
    problem_source: Optional[str] = None
    problem_analysis: Optional[str] = None
    root_cause: Optional[str] = None
    has_cost: Optional[bool] = None
    cost_amount: Optional[float] = None
    cost_responsible: Optional[str] = None

    # Header
    to_dept: Optional[str] = None
    copy_to: Optional[str] = None
    po_no: Optional[str] = None

    notes: Optional[str] = None
    reason: Optional[str] = None
    condition: Optional[str] = None
    preliminary_decision: Optional[str] = None
    preliminary_route: Optional[str] = None
    is_record_only: Optional[bool] = None
    is_field_settled: Optional[bool] = None

    # Disposition detail
    disposition_route: Optional[str] = None
    seller_name: Optional[str] = None
    contact_phone: Optional[str] = None
    internal_use_detail: Optional[str] = None
    claim_company: Optional[str] = None
    claim_coordinator: Optional[str] = None
    claim_phone: Optional[str] = None

    # Stage dates
    date: Optional[str] = None
    date_requested: Optional[str] = None
    date_in_transit: Optional[str] = None
    date_received: Optional[str] = None
    date_graded: Optional[str] = None
    date_documented: Optional[str] = None
    date_completed: Optional[str] = None
    control_date: Optional[str] = None

    @property
    def effective_document_no(self) -> Optional[str]:
        """documentNo, with refNo as its alias."""
        return self.document_no or self.ref_no

    @property
    def product_key(self) -> str:
        """productCode, falling back to productName."""
        return self.product_code or self.product_name or ""

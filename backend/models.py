from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum
import uuid


def _new_record_id() -> str:
    return str(uuid.uuid4())


# ============================================
# CLOSED VARIANTS: ROLES & STATUSES
# ============================================
class Role(str, Enum):
    JE = "JE"
    AEE = "AEE"
    CE = "CE"
    MD = "MD"
    ADMIN = "ADMIN"
    SUPERADMIN = "SUPERADMIN"


class ProjectStatus(str, Enum):
    SUBMITTED_FOR_APPROVAL = "Submitted for Approval"
    RESUBMITTED_FOR_APPROVAL = "Resubmitted for Approval"
    REJECTED_BY_AEE = "Rejected by AEE"
    REJECTED_BY_CE = "Rejected by CE"
    REJECTED_BY_MD = "Rejected by MD"
    ONGOING = "Ongoing"
    COMPLETED = "Completed"

    @property
    def is_rejection(self) -> bool:
        return self in REJECTION_STATUSES

    @property
    def is_pending(self) -> bool:
        return self in PENDING_STATUSES


REJECTION_STATUSES = frozenset({
    ProjectStatus.REJECTED_BY_AEE,
    ProjectStatus.REJECTED_BY_CE,
    ProjectStatus.REJECTED_BY_MD,
})

PENDING_STATUSES = frozenset({
    ProjectStatus.SUBMITTED_FOR_APPROVAL,
    ProjectStatus.RESUBMITTED_FOR_APPROVAL,
})


# ============================================
# IDENTITY
# ============================================
class Actor(BaseModel):
    """Authenticated identity performing a call, plus request metadata."""
    user_id: str
    name: str
    role: Role
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class ChangedBy(BaseModel):
    user_id: str
    name: str
    role: Role

    @classmethod
    def from_actor(cls, actor: Actor) -> "ChangedBy":
        return cls(user_id=actor.user_id, name=actor.name, role=actor.role)


class UpdatedBy(BaseModel):
    user_id: str
    user_name: str
    user_designation: str

    @classmethod
    def from_actor(cls, actor: Actor) -> "UpdatedBy":
        return cls(user_id=actor.user_id, user_name=actor.name, user_designation=actor.role.value)


# ============================================
# ATTACHMENT DESCRIPTORS (produced by file storage)
# ============================================
class SupportingDocument(BaseModel):
    file_name: str
    original_name: str
    download_url: str
    storage_path: str
    file_size: int = Field(ge=0)
    mime_type: str
    file_type: str = Field(pattern="^(document|image)$")
    uploaded_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class BillDetails(BaseModel):
    bill_number: str = ""
    bill_date: Optional[datetime] = None
    bill_description: str = Field(default="", max_length=200)


# ============================================
# HISTORY RECORDS (append-only, immutable once stored)
# ============================================
class ProgressUpdateRecord(BaseModel):
    record_id: str = Field(default_factory=_new_record_id)
    previous_progress: float = Field(ge=0, le=100)
    new_progress: float = Field(ge=0, le=100)
    progress_difference: float
    remarks: str = ""
    supporting_documents: List[SupportingDocument] = Field(default_factory=list)
    updated_by: UpdatedBy
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class FinancialUpdateRecord(BaseModel):
    record_id: str = Field(default_factory=_new_record_id)
    previous_financial_progress: int = Field(ge=0, le=100)
    new_financial_progress: int = Field(ge=0, le=100)
    progress_difference: int
    previous_bill_amount: float = Field(ge=0)
    new_bill_amount: float = Field(ge=0)
    amount_difference: float
    remarks: str = ""
    bill_details: BillDetails = Field(default_factory=BillDetails)
    supporting_documents: List[SupportingDocument] = Field(default_factory=list)
    updated_by: UpdatedBy
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class StatusHistoryEntry(BaseModel):
    record_id: str = Field(default_factory=_new_record_id)
    previous_status: ProjectStatus
    new_status: ProjectStatus
    changed_by: ChangedBy
    remarks: str = ""
    rejection_reason: Optional[str] = None
    is_automatic: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class EditableStatusHistoryEntry(BaseModel):
    record_id: str = Field(default_factory=_new_record_id)
    previous_status: bool
    new_status: bool
    changed_by: ChangedBy
    reason: str = ""
    is_automatic: bool = False
    changed_at: datetime = Field(default_factory=lambda: datetime.utcnow())


class StatusWorkflow(BaseModel):
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    approved_by: Optional[ChangedBy] = None
    rejected_by: Optional[ChangedBy] = None


# ============================================
# PROJECT AGGREGATE
# ============================================
class Project(BaseModel):
    project_id: str = Field(alias="_id")
    project_name: str
    estimated_cost: float = Field(ge=0)
    project_end_date: Optional[datetime] = None
    extension_period_for_completion: Optional[datetime] = None
    created_by: ChangedBy

    # Physical progress
    progress_percentage: float = Field(default=0, ge=0, le=100)
    progress_updates_enabled: bool = True
    last_progress_update: Optional[datetime] = None

    # Financial progress (financial_progress is derived, never set directly)
    financial_progress: int = Field(default=0, ge=0, le=100)
    bill_submitted_amount: float = Field(default=0, ge=0)
    financial_progress_updates_enabled: bool = True
    last_financial_progress_update: Optional[datetime] = None

    # Lifecycle
    status: ProjectStatus = ProjectStatus.SUBMITTED_FOR_APPROVAL
    status_workflow: StatusWorkflow = Field(default_factory=StatusWorkflow)
    is_project_editable: bool = False

    # Histories
    progress_updates: List[ProgressUpdateRecord] = Field(default_factory=list)
    financial_progress_updates: List[FinancialUpdateRecord] = Field(default_factory=list)
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    editable_status_history: List[EditableStatusHistoryEntry] = Field(default_factory=list)

    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.utcnow())
    updated_at: datetime = Field(default_factory=lambda: datetime.utcnow())

    class Config:
        populate_by_name = True


# ============================================
# REQUEST BODIES
# ============================================
class ProjectCreate(BaseModel):
    project_id: str = Field(min_length=1)
    project_name: str = Field(min_length=5, max_length=100)
    estimated_cost: float = Field(ge=0)
    project_end_date: Optional[datetime] = None
    extension_period_for_completion: Optional[datetime] = None


class StatusChangeRequest(BaseModel):
    new_status: ProjectStatus
    remarks: str = Field(default="", max_length=500)
    rejection_reason: str = Field(default="", max_length=1000)


class ProgressUpdateRequest(BaseModel):
    progress: float
    remarks: str = Field(default="", max_length=500)
    supporting_documents: List[SupportingDocument] = Field(default_factory=list)


class FinancialProgressUpdateRequest(BaseModel):
    new_bill_amount: float
    remarks: str = Field(default="", max_length=500)
    bill_details: Optional[BillDetails] = None
    supporting_documents: List[SupportingDocument] = Field(default_factory=list)


class CombinedProgressUpdateRequest(BaseModel):
    progress: Optional[float] = None
    new_bill_amount: Optional[float] = None
    remarks: str = Field(default="", max_length=500)
    bill_details: Optional[BillDetails] = None
    supporting_documents: List[SupportingDocument] = Field(default_factory=list)


class EditableStatusRequest(BaseModel):
    is_editable: bool
    reason: str = Field(default="", max_length=500)

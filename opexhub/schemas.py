"""Pydantic schemas: backend wire models and the local API's request/response bodies."""
from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

# ---------------------------------------------------------------------------
# Y/N flags
# ---------------------------------------------------------------------------


def from_yn(value: Any) -> bool:
    """Backend flags arrive as "Y"/"N" strings (older rows as real booleans)."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().upper() in ("Y", "YES", "TRUE")
    return bool(value)


def to_yn(value: bool | None) -> Literal["Y", "N"]:
    return "Y" if value else "N"


YesNo = Annotated[bool, BeforeValidator(from_yn), PlainSerializer(to_yn, return_type=str)]


def _null_as(default: Any) -> BeforeValidator:
    return BeforeValidator(lambda v: default if v is None else v)


# Backend columns that may come back as JSON null.
Text = Annotated[str, _null_as("")]
StageNumber = Annotated[int, _null_as(1)]
Flag = Annotated[bool, _null_as(True)]

ActionVerb = Literal["approved", "rejected", "dropped"]

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_DROPPED = "dropped"
TRANSACTION_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_DROPPED)


class _Wire(BaseModel):
    """Backend JSON uses camelCase; Python attributes stay snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ---------------------------------------------------------------------------
# Backend entities
# ---------------------------------------------------------------------------


class User(_Wire):
    id: int | None = None
    full_name: Text = ""
    email: Text = ""
    site: Text = ""
    discipline: Text = ""
    role: Text = ""
    role_name: Text = ""


class Initiative(_Wire):
    id: int
    title: Text = ""
    initiative_number: str | None = None
    description: Text = ""
    site: Text = ""
    discipline: Text = ""
    priority: Text = ""
    status: Text = ""
    expected_savings: float | None = None
    actual_savings: float | None = None
    budget_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    current_stage: StageNumber = 1
    current_stage_name: str | None = None
    requires_moc: YesNo = False
    requires_capex: YesNo = False
    moc_number: str | None = None
    capex_number: str | None = None
    created_by: int | None = None
    created_by_name: str | None = None
    created_by_email: str | None = None
    target_outcome: str | None = None
    target_value: float | None = None
    confidence_level: int | None = None
    estimated_capex: float | None = None
    baseline_data: str | None = None
    assumption1: str | None = None
    assumption2: str | None = None
    assumption3: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class WorkflowTransaction(_Wire):
    id: int
    initiative_id: int
    stage_number: int
    stage_name: Text = ""
    site: Text = ""
    approve_status: str = STATUS_PENDING
    comment: str | None = None
    action_by: str | None = None
    action_date: datetime | None = None
    pending_with: str | None = None
    required_role: str | None = None
    assigned_user_id: int | None = None
    assigned_user_name: str | None = None
    requires_moc: YesNo = False
    moc_number: str | None = None
    requires_capex: YesNo = False
    capex_number: str | None = None
    next_stage_name: str | None = None
    next_user: str | None = None
    next_user_email: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    is_visible: Flag = True

    @field_validator("approve_status", mode="before")
    @classmethod
    def _normalize_status(cls, v: Any) -> str:
        return (v or STATUS_PENDING).strip().lower()

    @property
    def is_pending(self) -> bool:
        return self.approve_status == STATUS_PENDING

    @property
    def version(self) -> str:
        """Last-known version token used to make stage processing conditional."""
        stamp = self.updated_at.isoformat() if self.updated_at else ""
        return f"{self.id}:{stamp}"


class MonitoringEntry(_Wire):
    id: int | None = None
    initiative_id: int | None = None
    monitoring_month: Text = ""
    kpi_description: Text = ""
    target_value: float | None = None
    achieved_value: float | None = None
    deviation: float | None = None
    deviation_percentage: float | None = None
    remarks: str | None = None
    category: str | None = None
    is_finalized: YesNo = False
    fa_approval: YesNo = False
    fa_comments: str | None = None
    entered_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


TIMELINE_COMPLETED = "COMPLETED"


class TimelineEntry(_Wire):
    id: int | None = None
    stage_name: Text = ""
    planned_start_date: date | None = None
    planned_end_date: date | None = None
    actual_start_date: date | None = None
    actual_end_date: date | None = None
    status: Text = "PENDING"
    responsible_person: str | None = None
    remarks: str | None = None
    site_lead_approval: YesNo = False
    initiative_lead_approval: YesNo = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def completed(self) -> bool:
        return (self.status or "").upper() == TIMELINE_COMPLETED


class InitiativeFile(_Wire):
    id: int
    file_name: Text = ""
    file_type: str | None = None
    file_size: int | None = None
    uploaded_at: datetime | None = None


class CurrentPendingStage(_Wire):
    stage_number: int | None = None
    stage_name: str | None = None
    pending_with: str | None = None
    required_role: str | None = None


# ---------------------------------------------------------------------------
# Backend requests
# ---------------------------------------------------------------------------


class ProcessStageRequest(_Wire):
    transaction_id: int
    action: ActionVerb
    remarks: str
    assigned_user_id: int | None = None
    moc_number: str | None = None
    capex_number: str | None = None
    requires_moc: Literal["Y", "N"] | None = None
    requires_capex: Literal["Y", "N"] | None = None


class BatchFAApproval(_Wire):
    entry_ids: list[int]
    fa_comments: str | None = None


# ---------------------------------------------------------------------------
# Local API bodies
# ---------------------------------------------------------------------------


class LoginIn(BaseModel):
    email: str
    password: str


class SessionOut(BaseModel):
    authenticated: bool
    user: User | None = None


class ActionIn(BaseModel):
    transaction_id: int
    action: ActionVerb
    comment: str = ""
    assigned_user_id: int | None = None
    moc_required: bool | None = None
    moc_number: str = ""
    capex_required: bool | None = None
    capex_number: str = ""
    selected_entry_ids: list[int] = []
    fa_comments: str = ""
    # Toggle the selection against every eligible F&A entry.
    select_all: bool = False


class ActionResultOut(BaseModel):
    message: str
    stage_number: int
    action: ActionVerb
    redirect: str | None = None
    redirect_message: str | None = None
    transaction: dict[str, Any] | None = None


class TransactionRowOut(BaseModel):
    id: int
    stage_number: int
    stage_name: str
    status: str
    actor: str
    action_date: str | None = None
    assigned_lead: str | None = None
    next_user: str | None = None
    comment: str | None = None
    actionable: bool = False


class WorkflowPanelOut(BaseModel):
    initiative_id: int
    title: str
    site: str
    current_stage: int
    current_stage_name: str
    progress: int
    show_workflow_tab: bool
    transactions: list[TransactionRowOut] = []
    actionable: TransactionRowOut | None = None
    form: dict[str, Any] | None = None

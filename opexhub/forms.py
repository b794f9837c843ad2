"""Stage-specific approval forms.

``FORMS`` maps a stage number to a ``StageForm`` strategy: what panel to
render, what blocks approval, which actions are offered and which extra
fields go on the wire.  Stages without an entry get the plain info form.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from opexhub.formatting import format_datetime
from opexhub.schemas import Initiative, MonitoringEntry, TimelineEntry, User, to_yn
from opexhub.stages import (
    STAGE_ASSIGN_LEAD,
    STAGE_CLOSURE,
    STAGE_CMO_REVIEW,
    STAGE_FA_VALIDATION,
    STAGE_MOC_CAPEX,
    STAGE_MONITORING,
    STAGE_PROGRESS_REVIEW,
    STAGE_TIMELINE,
    stage_description,
    stage_name,
)

APPROVE = "approved"
REJECT = "rejected"
DROP = "dropped"

COMMENT_REQUIRED = "A comment is required"


class FormInvalid(Exception):
    """The requested action cannot be submitted in the form's current state."""

    def __init__(self, reasons: list[str]):
        super().__init__("; ".join(reasons))
        self.reasons = reasons


@dataclass
class FormState:
    """What the user has typed/selected for the actionable transaction."""
    comment: str = ""
    assigned_user_id: int | None = None
    moc_required: bool | None = None
    moc_number: str = ""
    capex_required: bool | None = None
    capex_number: str = ""
    selected_entry_ids: set[int] = field(default_factory=set)
    fa_comments: str = ""

    @property
    def remarks(self) -> str:
        return (self.comment or "").strip()


@dataclass
class StageContext:
    """Data a stage panel needs beyond the transaction itself."""
    initiative: Initiative | None = None
    lead_candidates: list[User] = field(default_factory=list)
    timeline_completed: bool = False
    monitoring_finalized: bool = False
    fa_entries: list[MonitoringEntry] = field(default_factory=list)
    progress_entries: list[TimelineEntry] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def eligible_entry_ids(self) -> set[int]:
        return {e.id for e in self.fa_entries if e.id is not None}


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class StageForm:
    panel = "info"
    can_reject = True
    can_drop = False
    # Which StageContext pieces the panel needs loaded.
    needs: tuple[str, ...] = ()

    def describe(self, number: int, context: StageContext) -> dict[str, Any]:
        return {
            "panel": self.panel,
            "stage_number": number,
            "stage_name": stage_name(number),
            "description": stage_description(number),
            "actions": list(allowed_actions(number)),
        }

    def approve_blockers(self, state: FormState, context: StageContext) -> list[str]:
        return []

    def build_payload(self, state: FormState) -> dict[str, Any]:
        """Extra ``ProcessStageRequest`` fields sent with an approval."""
        return {}


class InfoForm(StageForm):
    pass


class AssignLeadForm(StageForm):
    panel = "assign_lead"
    needs = ("lead_candidates",)

    def describe(self, number, context):
        out = super().describe(number, context)
        out["candidates"] = [
            {"id": u.id, "full_name": u.full_name, "email": u.email}
            for u in context.lead_candidates
        ]
        return out

    def approve_blockers(self, state, context):
        if state.assigned_user_id is None:
            return ["Select an Initiative Lead"]
        ids = {u.id for u in context.lead_candidates}
        if ids and state.assigned_user_id not in ids:
            return ["Selected user is not an Initiative Lead for this site"]
        return []

    def build_payload(self, state):
        return {"assigned_user_id": state.assigned_user_id}


class MocCapexForm(StageForm):
    panel = "moc_capex"

    def approve_blockers(self, state, context):
        reasons = []
        for label, required, number in (
            ("MOC", state.moc_required, state.moc_number),
            ("CAPEX", state.capex_required, state.capex_number),
        ):
            if required is None:
                reasons.append(f"Choose whether {label} is required")
            elif required and not (number or "").strip():
                reasons.append(f"{label} number is required")
        return reasons

    def build_payload(self, state):
        payload: dict[str, Any] = {
            "requires_moc": to_yn(state.moc_required),
            "requires_capex": to_yn(state.capex_required),
        }
        if state.moc_required and state.moc_number.strip():
            payload["moc_number"] = state.moc_number.strip()
        if state.capex_required and state.capex_number.strip():
            payload["capex_number"] = state.capex_number.strip()
        return payload


class TimelineGateForm(StageForm):
    panel = "timeline_gate"
    needs = ("timeline_completed",)

    def describe(self, number, context):
        out = super().describe(number, context)
        out["all_completed"] = context.timeline_completed
        out["redirect"] = "/timeline-tracker"
        return out

    def approve_blockers(self, state, context):
        if not context.timeline_completed:
            return ["All timeline entries must be completed before approval"]
        return []


class ProgressReviewForm(StageForm):
    panel = "progress_review"
    needs = ("progress_entries",)

    def describe(self, number, context):
        out = super().describe(number, context)
        out["entries"] = [
            {
                "id": e.id,
                "stage_name": e.stage_name,
                "status": e.status,
                "planned_end_date": format_datetime(e.planned_end_date),
                "responsible_person": e.responsible_person,
            }
            for e in context.progress_entries
        ]
        return out


class CmoReviewForm(StageForm):
    panel = "cmo_review"
    can_drop = True


class MonitoringGateForm(StageForm):
    panel = "monitoring_gate"
    needs = ("monitoring_finalized",)

    def describe(self, number, context):
        out = super().describe(number, context)
        out["all_finalized"] = context.monitoring_finalized
        out["redirect"] = "/monthly-monitoring"
        return out

    def approve_blockers(self, state, context):
        if not context.monitoring_finalized:
            return ["All monthly monitoring entries must be finalized before approval"]
        return []


class FAValidationForm(StageForm):
    panel = "fa_validation"
    needs = ("fa_entries",)

    def describe(self, number, context):
        out = super().describe(number, context)
        out["entries"] = [
            {
                "id": e.id,
                "monitoring_month": e.monitoring_month,
                "kpi_description": e.kpi_description,
                "target_value": e.target_value,
                "achieved_value": e.achieved_value,
            }
            for e in context.fa_entries
        ]
        return out

    def approve_blockers(self, state, context):
        eligible = context.eligible_entry_ids
        if eligible and not (state.selected_entry_ids & eligible):
            return ["Select at least one monitoring entry to approve"]
        return []


class ClosureForm(StageForm):
    panel = "closure"
    can_reject = False


FORMS: dict[int, StageForm] = {
    STAGE_ASSIGN_LEAD: AssignLeadForm(),
    STAGE_MOC_CAPEX: MocCapexForm(),
    STAGE_TIMELINE: TimelineGateForm(),
    STAGE_PROGRESS_REVIEW: ProgressReviewForm(),
    STAGE_CMO_REVIEW: CmoReviewForm(),
    STAGE_MONITORING: MonitoringGateForm(),
    STAGE_FA_VALIDATION: FAValidationForm(),
    STAGE_CLOSURE: ClosureForm(),
}

_INFO = InfoForm()


def form_for_stage(number: int) -> StageForm:
    return FORMS.get(number, _INFO)


def allowed_actions(number: int) -> tuple[str, ...]:
    form = form_for_stage(number)
    actions = [APPROVE]
    if form.can_reject:
        actions.append(REJECT)
    if form.can_drop:
        actions.append(DROP)
    return tuple(actions)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@dataclass
class Evaluation:
    enabled: dict[str, bool]
    blockers: dict[str, list[str]]

    def can(self, action: str) -> bool:
        return self.enabled.get(action, False)

    def as_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "blockers": self.blockers}


def evaluate(number: int, state: FormState, context: StageContext) -> Evaluation:
    """Which submit controls are enabled, and why the others are not."""
    form = form_for_stage(number)
    enabled: dict[str, bool] = {}
    blockers: dict[str, list[str]] = {}
    for action in allowed_actions(number):
        reasons = [] if state.remarks else [COMMENT_REQUIRED]
        if action == APPROVE:
            reasons += form.approve_blockers(state, context)
        enabled[action] = not reasons
        blockers[action] = reasons
    return Evaluation(enabled=enabled, blockers=blockers)


def check_action(number: int, action: str, state: FormState, context: StageContext) -> None:
    if action not in allowed_actions(number):
        raise FormInvalid([f"Action '{action}' is not available at stage {number}"])
    result = evaluate(number, state, context)
    if not result.can(action):
        raise FormInvalid(result.blockers[action])


def toggle_select_all(state: FormState, context: StageContext) -> set[int]:
    """Select every eligible entry, or clear the selection if all are already selected."""
    eligible = context.eligible_entry_ids
    if eligible and state.selected_entry_ids >= eligible:
        state.selected_entry_ids = set()
    else:
        state.selected_entry_ids = set(eligible)
    return state.selected_entry_ids

"""In-memory demo data source.

Enabled with ``OPEXHUB_DEMO=1``.  Exposes the read/write surface of
``OpexClient`` that the panel, dispatcher and file routes use, so the whole
workflow can be walked through without a backend.  Processing a stage
advances the demo initiative the way the backend would.
"""
from __future__ import annotations

import itertools
import logging
from datetime import UTC, date, datetime

from opexhub.client import ApiError, AuthenticationRequired, ConflictError, validate_upload
from opexhub.schemas import (
    STATUS_APPROVED,
    BatchFAApproval,
    CurrentPendingStage,
    Initiative,
    InitiativeFile,
    MonitoringEntry,
    ProcessStageRequest,
    TimelineEntry,
    User,
    WorkflowTransaction,
    from_yn,
)
from opexhub.session import SessionStore
from opexhub.stages import (
    ROLE_CTSD,
    ROLE_FA,
    ROLE_HOD,
    ROLE_IL,
    ROLE_SH,
    ROLE_STLD,
    STAGE_ASSIGN_LEAD,
    STAGE_CLOSURE,
    TOTAL_STAGES,
    progress_for_stage,
    roles_for_stage,
    stage_name,
)

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def _demo_users() -> list[User]:
    return [
        User(id=1, email="rajesh.lead@godeepak.com", full_name="Rajesh Kumar", site="NDS",
             discipline="OP", role=ROLE_IL, role_name="Initiative Lead"),
        User(id=2, email="priya.hod@godeepak.com", full_name="Priya Sharma", site="NDS",
             discipline="EG", role=ROLE_HOD, role_name="Head of Department"),
        User(id=3, email="amit.stld@godeepak.com", full_name="Amit Patel", site="NDS",
             discipline="QA", role=ROLE_STLD, role_name="Site TSD Lead"),
        User(id=4, email="sunita.sh@godeepak.com", full_name="Sunita Rao", site="NDS",
             discipline="OP", role=ROLE_SH, role_name="Site Head"),
        User(id=5, email="deepika.corp@godeepak.com", full_name="Deepika Singh", site="NDS",
             discipline="SF", role=ROLE_CTSD, role_name="Corporate TSD"),
        User(id=6, email="vikram.fa@godeepak.com", full_name="Vikram Mehta", site="NDS",
             discipline="FA", role=ROLE_FA, role_name="Site F&A"),
        User(id=7, email="anil.lead@godeepak.com", full_name="Anil Verma", site="NDS",
             discipline="MT", role=ROLE_IL, role_name="Initiative Lead"),
        User(id=8, email="david.env@godeepak.com", full_name="David Chen", site="TCD",
             discipline="EV", role=ROLE_IL, role_name="Initiative Lead"),
    ]


class DemoBackend:
    def __init__(self, session: SessionStore):
        self.session = session
        self._ids = itertools.count(100)
        self.users = _demo_users()
        now = _now()
        self.initiatives: dict[int, Initiative] = {
            1: Initiative(
                id=1, title="Energy Optimization in Reactor Unit",
                initiative_number="NDS/25/OP/AB/001", site="NDS", discipline="OP",
                priority="High", status="In Progress", expected_savings=850000,
                budget_type="BUDGETED", current_stage=3,
                current_stage_name=stage_name(3), created_by_name="Rajesh Kumar",
                created_by_email="rajesh.lead@godeepak.com",
                description="Advanced energy monitoring and optimization in the main reactor unit "
                            "to reduce energy consumption by 15%.",
                target_outcome="Reduce energy consumption by 15%",
                estimated_capex=520000, created_at=now, updated_at=now,
            ),
        }
        self._transactions: list[WorkflowTransaction] = []
        for number in (1, 2):
            self._transactions.append(WorkflowTransaction(
                id=next(self._ids), initiative_id=1, stage_number=number,
                stage_name=stage_name(number), site="NDS", approve_status=STATUS_APPROVED,
                action_by=self._user_for(number, "NDS").email, action_date=now,
                comment="Approved", created_at=now, updated_at=now,
            ))
        self._open_stage(self.initiatives[1], 3)
        self.timeline: dict[int, list[TimelineEntry]] = {1: [
            TimelineEntry(id=1, stage_name="Initial Assessment & Data Collection",
                          planned_start_date=date(2025, 1, 15), planned_end_date=date(2025, 1, 30),
                          status="COMPLETED", responsible_person="Rajesh Kumar"),
            TimelineEntry(id=2, stage_name="Technology Selection",
                          planned_start_date=date(2025, 2, 1), planned_end_date=date(2025, 2, 28),
                          status="IN_PROGRESS", responsible_person="Rajesh Kumar"),
        ]}
        self.monitoring: dict[int, list[MonitoringEntry]] = {1: [
            MonitoringEntry(id=1, initiative_id=1, monitoring_month="2025-04",
                            kpi_description="Energy savings", target_value=70000,
                            achieved_value=72000, is_finalized=True),
            MonitoringEntry(id=2, initiative_id=1, monitoring_month="2025-05",
                            kpi_description="Energy savings", target_value=70000,
                            achieved_value=65000, is_finalized=False),
        ]}
        self.files: dict[int, tuple[InitiativeFile, bytes, int]] = {}

    async def aclose(self) -> None:
        pass

    # -- helpers ------------------------------------------------------------

    def _user_for(self, number: int, site: str) -> User | None:
        roles = roles_for_stage(number) or {ROLE_HOD}
        for u in self.users:
            if u.role in roles and u.site == site:
                return u
        return None

    def _open_stage(self, initiative: Initiative, number: int, assignee: User | None = None) -> None:
        user = assignee or self._user_for(number, initiative.site)
        now = _now()
        self._transactions.append(WorkflowTransaction(
            id=next(self._ids), initiative_id=initiative.id, stage_number=number,
            stage_name=stage_name(number), site=initiative.site,
            pending_with=user.email if user else None,
            required_role=next(iter(sorted(roles_for_stage(number))), None),
            created_at=now, updated_at=now,
        ))
        initiative.current_stage = number
        initiative.current_stage_name = stage_name(number)

    def _initiative(self, initiative_id: int) -> Initiative:
        init = self.initiatives.get(initiative_id)
        if init is None:
            raise ApiError(404, "Initiative not found")
        return init

    # -- auth ---------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> tuple[str, User]:
        for u in self.users:
            if u.email.lower() == (email or "").strip().lower():
                token = f"demo-{u.id}"
                self.session.save(token, u)
                return token, u
        raise AuthenticationRequired(401, "Invalid email or password")

    def sign_out(self) -> None:
        self.session.clear()

    # -- initiatives / users --------------------------------------------------

    async def list_initiatives(self, *, status=None, site=None, search=None, page=None, size=None):
        rows = list(self.initiatives.values())
        if site:
            rows = [i for i in rows if i.site == site]
        if status:
            rows = [i for i in rows if i.status == status]
        if search:
            rows = [i for i in rows if search.lower() in i.title.lower()]
        return rows

    async def get_initiative(self, initiative_id: int) -> Initiative:
        return self._initiative(initiative_id)

    async def users_by_site(self, site: str) -> list[User]:
        return [u for u in self.users if u.site == site]

    async def initiative_leads(self, site: str) -> list[User]:
        return [u for u in self.users if u.site == site and u.role == ROLE_IL]

    # -- workflow -----------------------------------------------------------

    async def visible_transactions(self, initiative_id: int) -> list[WorkflowTransaction]:
        return [t for t in self._transactions if t.initiative_id == initiative_id and t.is_visible]

    async def transactions(self, initiative_id: int) -> list[WorkflowTransaction]:
        return [t for t in self._transactions if t.initiative_id == initiative_id]

    async def pending_transactions(self, role: str, site: str | None = None) -> list[WorkflowTransaction]:
        return [t for t in self._transactions
                if t.is_pending and role in roles_for_stage(t.stage_number)
                and (site is None or t.site == site)]

    async def current_pending_stage(self, initiative_id: int) -> CurrentPendingStage | None:
        for t in self._transactions:
            if t.initiative_id == initiative_id and t.is_pending:
                return CurrentPendingStage(stage_number=t.stage_number, stage_name=t.stage_name,
                                           pending_with=t.pending_with, required_role=t.required_role)
        return None

    async def progress(self, initiative_id: int) -> int | None:
        return progress_for_stage(self._initiative(initiative_id).current_stage)

    async def process_stage(self, request: ProcessStageRequest,
                            version: str | None = None) -> WorkflowTransaction:
        tx = next((t for t in self._transactions if t.id == request.transaction_id), None)
        if tx is None:
            raise ApiError(404, "Transaction not found")
        if not tx.is_pending or (version is not None and version != tx.version):
            raise ConflictError(409, "Transaction was already processed")
        user = self.session.user
        now = _now()
        tx.approve_status = request.action
        tx.comment = request.remarks
        tx.action_by = user.email if user else None
        tx.action_date = now
        tx.updated_at = now

        init = self._initiative(tx.initiative_id)
        init.updated_at = now
        log.debug("Demo: stage %s of initiative %s -> %s", tx.stage_number, init.id, request.action)
        if request.action == "rejected":
            init.status = "Rejected"
            return tx
        if request.action == "dropped":
            init.status = "Dropped"
            return tx

        assignee = None
        if tx.stage_number == STAGE_ASSIGN_LEAD and request.assigned_user_id is not None:
            assignee = next((u for u in self.users if u.id == request.assigned_user_id), None)
            tx.assigned_user_id = request.assigned_user_id
            tx.assigned_user_name = assignee.full_name if assignee else None
        if request.requires_moc is not None:
            init.requires_moc = from_yn(request.requires_moc)
            init.moc_number = request.moc_number
        if request.requires_capex is not None:
            init.requires_capex = from_yn(request.requires_capex)
            init.capex_number = request.capex_number

        if tx.stage_number >= STAGE_CLOSURE:
            init.status = "Completed"
            return tx
        nxt = tx.stage_number + 1
        if assignee is None and ROLE_IL in roles_for_stage(nxt):
            assignee = self._assigned_lead(init.id)
        self._open_stage(init, min(nxt, TOTAL_STAGES), assignee)
        return tx

    def _assigned_lead(self, initiative_id: int) -> User | None:
        for t in self._transactions:
            if t.initiative_id == initiative_id and t.assigned_user_id is not None:
                return next((u for u in self.users if u.id == t.assigned_user_id), None)
        return None

    # -- monitoring / timeline ------------------------------------------------

    async def monitoring_entries(self, initiative_id: int) -> list[MonitoringEntry]:
        return list(self.monitoring.get(initiative_id, []))

    async def finalized_pending_fa(self, initiative_id: int) -> list[MonitoringEntry]:
        return [e for e in self.monitoring.get(initiative_id, []) if e.is_finalized and not e.fa_approval]

    async def all_monitoring_finalized(self, initiative_id: int) -> bool:
        entries = self.monitoring.get(initiative_id, [])
        return bool(entries) and all(e.is_finalized for e in entries)

    async def batch_fa_approval(self, approval: BatchFAApproval) -> list[MonitoringEntry]:
        wanted = set(approval.entry_ids)
        approved = []
        for entries in self.monitoring.values():
            for e in entries:
                if e.id in wanted:
                    e.fa_approval = True
                    e.fa_comments = approval.fa_comments
                    approved.append(e)
        return approved

    async def timeline_entries(self, initiative_id: int) -> list[TimelineEntry]:
        return list(self.timeline.get(initiative_id, []))

    async def progress_monitoring_entries(self, initiative_id: int) -> list[TimelineEntry]:
        return list(self.timeline.get(initiative_id, []))

    async def all_timeline_completed(self, initiative_id: int) -> bool:
        entries = self.timeline.get(initiative_id, [])
        return bool(entries) and all(e.completed for e in entries)

    # -- files --------------------------------------------------------------

    async def upload_files(self, initiative_id: int,
                           files: list[tuple[str, bytes, str | None]]) -> list[InitiativeFile]:
        self._initiative(initiative_id)
        stored = []
        for name, content, ctype in files:
            ctype = validate_upload(name, content, ctype)
            meta = InitiativeFile(id=next(self._ids), file_name=name, file_type=ctype,
                                  file_size=len(content), uploaded_at=_now())
            self.files[meta.id] = (meta, content, initiative_id)
            stored.append(meta)
        return stored

    async def list_files(self, initiative_id: int) -> list[InitiativeFile]:
        return [meta for meta, _, owner in self.files.values() if owner == initiative_id]

    async def download_file(self, file_id: int) -> tuple[str, bytes, str]:
        if file_id not in self.files:
            raise ApiError(404, "File not found")
        meta, content, _ = self.files[file_id]
        return meta.file_name, content, meta.file_type or "application/octet-stream"

    async def delete_file(self, file_id: int) -> None:
        if self.files.pop(file_id, None) is None:
            raise ApiError(404, "File not found")

    async def initiative_form_report(self, initiative_id: int) -> tuple[str, bytes, str]:
        raise ApiError(501, "Reports are not available in demo mode")

    async def detailed_excel_report(self, site=None, year=None) -> tuple[str, bytes, str]:
        raise ApiError(501, "Reports are not available in demo mode")

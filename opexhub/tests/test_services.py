"""Tests for panel loading, gate-check failures and the demo data source."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from opexhub.cache import QueryCache
from opexhub.client import ApiError, AuthenticationRequired, ConflictError
from opexhub.config import Settings
from opexhub.demo import DemoBackend
from opexhub.forms import FormState
from opexhub.schemas import ActionIn, Initiative, MonitoringEntry, ProcessStageRequest, User, WorkflowTransaction
from opexhub.services import AccessDenied, load_workflow_panel, make_backend, process_action
from opexhub.session import MemorySessionStore


def _backend(stage, *, progress=None, pending_with="me@godeepak.com"):
    b = MagicMock()
    b.get_initiative = AsyncMock(return_value=Initiative(id=1, title="Steam trap audit", site="NDS",
                                                         current_stage=stage))
    b.visible_transactions = AsyncMock(return_value=[
        WorkflowTransaction(id=30, initiative_id=1, stage_number=stage, pending_with=pending_with),
    ])
    b.progress = AsyncMock(return_value=progress)
    b.initiative_leads = AsyncMock(return_value=[])
    return b


ME = User(id=5, email="me@godeepak.com", role="IL", site="NDS")


class TestWorkflowPanel:
    @pytest.mark.asyncio
    async def test_failed_timeline_check_keeps_gate_closed(self):
        backend = _backend(6)
        backend.all_timeline_completed = AsyncMock(side_effect=ApiError(500, "Timeline service down"))
        panel = await load_workflow_panel(backend, QueryCache(), 1, ME, FormState(comment="done"))
        assert panel.form["panel"] == "timeline_gate"
        assert panel.form["all_completed"] is False
        assert panel.form["gate_errors"] == {"timeline_completed": "Timeline service down"}
        assert panel.form["evaluation"]["enabled"] == {"approved": False, "rejected": True}

    @pytest.mark.asyncio
    async def test_passing_monitoring_check_opens_gate(self):
        backend = _backend(9)
        backend.all_monitoring_finalized = AsyncMock(return_value=True)
        panel = await load_workflow_panel(backend, QueryCache(), 1, ME, FormState(comment="done"))
        assert panel.form["evaluation"]["enabled"]["approved"] is True
        assert "gate_errors" not in panel.form

    @pytest.mark.asyncio
    async def test_progress_falls_back_to_stage(self):
        panel = await load_workflow_panel(_backend(4, progress=None), QueryCache(), 1, ME)
        assert panel.progress == 36
        panel = await load_workflow_panel(_backend(4, progress=50), QueryCache(), 1, ME)
        assert panel.progress == 50

    @pytest.mark.asyncio
    async def test_progress_error_falls_back_to_stage(self):
        backend = _backend(11)
        backend.progress = AsyncMock(side_effect=ApiError(503, "down"))
        panel = await load_workflow_panel(backend, QueryCache(), 1, ME)
        assert panel.progress == 100

    @pytest.mark.asyncio
    async def test_401_during_gate_check_propagates(self):
        backend = _backend(9)
        backend.all_monitoring_finalized = AsyncMock(side_effect=AuthenticationRequired(401, "expired"))
        with pytest.raises(AuthenticationRequired):
            await load_workflow_panel(backend, QueryCache(), 1, ME)

    @pytest.mark.asyncio
    async def test_reads_are_cached(self):
        backend = _backend(3, pending_with=None)
        cache = QueryCache()
        await load_workflow_panel(backend, cache, 1, ME)
        await load_workflow_panel(backend, cache, 1, ME)
        backend.get_initiative.assert_awaited_once()
        backend.visible_transactions.assert_awaited_once()


class TestProcessAction:
    @pytest.mark.asyncio
    async def test_viewer_denied_before_any_call(self):
        backend = _backend(3)
        viewer = User(email="me@godeepak.com", role="VIEWER", site="NDS")
        with pytest.raises(AccessDenied):
            await process_action(backend, QueryCache(), 1, viewer,
                                 ActionIn(transaction_id=30, action="approved", comment="x"))
        backend.get_initiative.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_transaction_denied(self):
        backend = _backend(5)
        with pytest.raises(AccessDenied):
            await process_action(backend, QueryCache(), 1, ME,
                                 ActionIn(transaction_id=999, action="approved", comment="x"))

    @pytest.mark.asyncio
    async def test_same_role_cannot_take_over_someone_elses_transaction(self):
        backend = _backend(3, pending_with="amit.stld@godeepak.com")
        backend.process_stage = AsyncMock()
        other_lead = User(id=9, email="tcd.stld@godeepak.com", role="STLD", site="TCD")
        panel = await load_workflow_panel(backend, QueryCache(), 1, other_lead)
        assert panel.actionable is None
        assert panel.form is None
        with pytest.raises(AccessDenied):
            await process_action(backend, QueryCache(), 1, other_lead,
                                 ActionIn(transaction_id=30, action="approved", comment="x"))
        backend.process_stage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unassigned_transaction_open_to_stage_role(self):
        backend = _backend(3, pending_with=None)
        backend.process_stage = AsyncMock(return_value=None)
        lead = User(id=9, email="tcd.stld@godeepak.com", role="STLD", site="NDS")
        result = await process_action(backend, QueryCache(), 1, lead,
                                      ActionIn(transaction_id=30, action="approved", comment="ok"))
        assert result.message == "Stage approved successfully"

    @pytest.mark.asyncio
    async def test_select_all_sends_every_eligible_entry(self):
        backend = _backend(10)
        backend.finalized_pending_fa = AsyncMock(return_value=[
            MonitoringEntry(id=4, is_finalized=True), MonitoringEntry(id=5, is_finalized=True),
        ])
        backend.batch_fa_approval = AsyncMock(return_value=[])
        backend.process_stage = AsyncMock(return_value=None)
        fa = User(id=6, email="me@godeepak.com", role="F&A", site="NDS")
        result = await process_action(backend, QueryCache(), 1, fa,
                                      ActionIn(transaction_id=30, action="approved", comment="Checked",
                                               select_all=True))
        approval = backend.batch_fa_approval.await_args.args[0]
        assert approval.entry_ids == [4, 5]
        assert result.message == "F&A validation completed successfully"


class TestDemoBackend:
    @pytest.mark.asyncio
    async def test_serves_data_without_backend(self):
        demo = DemoBackend(MemorySessionStore())
        init = await demo.get_initiative(1)
        assert init.title == "Energy Optimization in Reactor Unit"
        rows = await demo.visible_transactions(1)
        assert [t.stage_number for t in rows] == [1, 2, 3]
        assert await demo.all_timeline_completed(1) is False
        assert [e.id for e in await demo.finalized_pending_fa(1)] == [1]

    @pytest.mark.asyncio
    async def test_second_submission_conflicts(self):
        demo = DemoBackend(MemorySessionStore())
        await demo.sign_in("amit.stld@godeepak.com", "x")
        pending = [t for t in await demo.visible_transactions(1) if t.is_pending][0]
        req = ProcessStageRequest(transaction_id=pending.id, action="approved", remarks="ok")
        await demo.process_stage(req, version=pending.version)
        with pytest.raises(ConflictError):
            await demo.process_stage(req, version=pending.version)

    def test_make_backend_honours_demo_flag(self, tmp_path):
        session = MemorySessionStore()
        settings = Settings(home_dir=tmp_path, demo_mode=True, api_url="http://x/api")
        assert isinstance(make_backend(settings, session), DemoBackend)

"""Tests for the action dispatcher: payloads, F&A batch, invalidation, redirects."""
from __future__ import annotations

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from opexhub.cache import QueryCache
from opexhub.client import ApiError, ConflictError
from opexhub.dispatcher import ActionDispatcher, WORKFLOW_FAMILIES
from opexhub.forms import FormInvalid, FormState, StageContext
from opexhub.schemas import MonitoringEntry, User, WorkflowTransaction


def _tx(stage, id=7, pending_with="me@godeepak.com"):
    return WorkflowTransaction(id=id, initiative_id=1, stage_number=stage, pending_with=pending_with,
                               updated_at=datetime(2025, 3, 1, 9, 0, 0))


def _user(role):
    return User(id=5, email="me@godeepak.com", role=role, site="NDS")


@pytest.fixture()
def backend():
    b = MagicMock()
    b.process_stage = AsyncMock(return_value=None)
    b.batch_fa_approval = AsyncMock(return_value=[])
    return b


@pytest.fixture()
def cache():
    c = QueryCache()
    c.set(("visible-workflow-transactions", 1), ["stale"])
    c.set(("workflow-transactions", 1), ["stale"])
    c.set(("progress-percentage", 1), 36)
    c.set(("initiatives", 1), "stale")
    c.set(("monthly-monitoring", 1, "finalized-pending-fa"), ["stale"])
    c.set(("initiative-leads", "NDS"), ["kept"])
    return c


def _sent(backend):
    request = backend.process_stage.await_args.args[0]
    return request.to_wire()


class TestAssignLeadScenario:
    @pytest.mark.asyncio
    async def test_payload_and_invalidation(self, backend, cache):
        state = FormState(comment="Approved, proceed", assigned_user_id=42)
        context = StageContext(lead_candidates=[User(id=42, role="IL", site="NDS")])
        result = await ActionDispatcher(backend, cache).dispatch(_tx(4), "approved", state, context, _user("SH"))

        assert _sent(backend) == {
            "transactionId": 7, "action": "approved",
            "remarks": "Approved, proceed", "assignedUserId": 42,
        }
        assert ("visible-workflow-transactions", 1) not in cache
        assert ("workflow-transactions", 1) not in cache
        assert ("progress-percentage", 1) not in cache
        assert ("initiatives", 1) not in cache
        assert ("initiative-leads", "NDS") in cache
        assert result.message == "Stage approved successfully"
        assert result.redirect is None

    @pytest.mark.asyncio
    async def test_sends_version_for_conditional_processing(self, backend, cache):
        state = FormState(comment="ok", assigned_user_id=42)
        await ActionDispatcher(backend, cache).dispatch(_tx(4), "approved", state, StageContext(), _user("SH"))
        assert backend.process_stage.await_args.kwargs["version"] == "7:2025-03-01T09:00:00"


class TestActions:
    @pytest.mark.asyncio
    async def test_drop_at_cmo_review(self, backend, cache):
        state = FormState(comment="Move to next FY")
        result = await ActionDispatcher(backend, cache).dispatch(_tx(8), "dropped", state, StageContext(), _user("CTSD"))
        assert _sent(backend) == {"transactionId": 7, "action": "dropped", "remarks": "Move to next FY"}
        assert result.message == "Initiative dropped to next FY"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", [1, 2, 3, 4, 5, 6, 7, 9, 10, 11])
    async def test_drop_elsewhere_is_refused(self, backend, cache, stage):
        with pytest.raises(FormInvalid):
            await ActionDispatcher(backend, cache).dispatch(
                _tx(stage), "dropped", FormState(comment="x"), StageContext(), _user("IL"))
        backend.process_stage.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reject_sends_no_stage_fields(self, backend, cache):
        state = FormState(comment="Not viable", moc_required=True, moc_number="MOC-1")
        await ActionDispatcher(backend, cache).dispatch(_tx(5), "rejected", state, StageContext(), _user("IL"))
        assert _sent(backend) == {"transactionId": 7, "action": "rejected", "remarks": "Not viable"}

    @pytest.mark.asyncio
    async def test_moc_capex_wire_values(self, backend, cache):
        state = FormState(comment=" ok ", moc_required=True, moc_number="MOC-1", capex_required=False)
        await ActionDispatcher(backend, cache).dispatch(_tx(5), "approved", state, StageContext(), _user("IL"))
        assert _sent(backend) == {
            "transactionId": 7, "action": "approved", "remarks": "ok",
            "requiresMoc": "Y", "mocNumber": "MOC-1", "requiresCapex": "N",
        }

    @pytest.mark.asyncio
    async def test_empty_comment_sends_nothing(self, backend, cache):
        with pytest.raises(FormInvalid):
            await ActionDispatcher(backend, cache).dispatch(
                _tx(3), "approved", FormState(comment="  "), StageContext(), _user("STLD"))
        backend.process_stage.assert_not_awaited()
        assert ("visible-workflow-transactions", 1) in cache


class TestFABatch:
    @pytest.mark.asyncio
    async def test_batch_before_process(self, backend, cache):
        calls = []
        backend.batch_fa_approval.side_effect = lambda body: calls.append(("batch", body.to_wire()))
        backend.process_stage.side_effect = lambda req, version=None: calls.append(("process", req.to_wire()))
        context = StageContext(fa_entries=[MonitoringEntry(id=i, is_finalized=True) for i in (1, 2, 3)])
        state = FormState(comment="Validated", selected_entry_ids={3, 1})

        result = await ActionDispatcher(backend, cache).dispatch(_tx(10), "approved", state, context, _user("F&A"))

        assert calls[0] == ("batch", {"entryIds": [1, 3], "faComments": "Validated"})
        assert calls[1][0] == "process"
        assert ("monthly-monitoring", 1, "finalized-pending-fa") not in cache
        assert result.message == "F&A validation completed successfully"

    @pytest.mark.asyncio
    async def test_fa_comment_overrides_workflow_comment(self, backend, cache):
        context = StageContext(fa_entries=[MonitoringEntry(id=1, is_finalized=True)])
        state = FormState(comment="Validated", fa_comments="Numbers match ledger", selected_entry_ids={1})
        await ActionDispatcher(backend, cache).dispatch(_tx(10), "approved", state, context, _user("F&A"))
        body = backend.batch_fa_approval.await_args.args[0]
        assert body.fa_comments == "Numbers match ledger"

    @pytest.mark.asyncio
    async def test_no_eligible_entries_skips_batch(self, backend, cache):
        await ActionDispatcher(backend, cache).dispatch(
            _tx(10), "approved", FormState(comment="Nothing to validate"), StageContext(), _user("F&A"))
        backend.batch_fa_approval.assert_not_awaited()
        backend.process_stage.assert_awaited_once()


class TestRedirects:
    @pytest.mark.asyncio
    async def test_timeline_stage_approved_by_lead(self, backend, cache):
        result = await ActionDispatcher(backend, cache).dispatch(
            _tx(6), "approved", FormState(comment="done"), StageContext(timeline_completed=True), _user("IL"))
        assert result.redirect == "/timeline-tracker"
        assert result.redirect_message == "Redirecting to Timeline Tracker..."

    @pytest.mark.asyncio
    async def test_monitoring_stage_approved_by_site_lead(self, backend, cache):
        result = await ActionDispatcher(backend, cache).dispatch(
            _tx(9), "approved", FormState(comment="done"), StageContext(monitoring_finalized=True), _user("STLD"))
        assert result.redirect == "/monthly-monitoring"

    @pytest.mark.asyncio
    async def test_reject_never_redirects(self, backend, cache):
        result = await ActionDispatcher(backend, cache).dispatch(
            _tx(6), "rejected", FormState(comment="redo"), StageContext(), _user("IL"))
        assert result.redirect is None
        assert result.message == "Stage rejected"


class TestFailures:
    @pytest.mark.asyncio
    async def test_backend_error_propagates_and_keeps_state(self, backend, cache):
        backend.process_stage.side_effect = ApiError(500, "Workflow engine unavailable")
        state = FormState(comment="Approved, proceed", assigned_user_id=42)
        with pytest.raises(ApiError, match="Workflow engine unavailable"):
            await ActionDispatcher(backend, cache).dispatch(_tx(4), "approved", state, StageContext(), _user("SH"))
        assert state.comment == "Approved, proceed"
        assert state.assigned_user_id == 42
        assert ("visible-workflow-transactions", 1) in cache

    @pytest.mark.asyncio
    async def test_conflict_propagates_and_drops_stale_snapshot(self, backend, cache):
        backend.process_stage.side_effect = ConflictError(409, "Already processed")
        with pytest.raises(ConflictError):
            await ActionDispatcher(backend, cache).dispatch(
                _tx(3), "approved", FormState(comment="ok"), StageContext(), _user("STLD"))
        assert ("visible-workflow-transactions", 1) not in cache
        assert ("initiatives", 1) not in cache
        assert ("initiative-leads", "NDS") in cache

    def test_workflow_families(self):
        assert set(WORKFLOW_FAMILIES) >= {
            "workflow-transactions", "visible-workflow-transactions", "progress-percentage", "initiatives",
        }

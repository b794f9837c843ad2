"""Shared workflow logic for the OpEx Hub web app and MCP server."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from opexhub.cache import QueryCache
from opexhub.client import ApiError, AuthenticationRequired, OpexClient
from opexhub.config import Settings, get_settings
from opexhub.demo import DemoBackend
from opexhub.dispatcher import ActionDispatcher, DispatchResult
from opexhub.formatting import format_currency_lakhs, format_datetime
from opexhub.forms import FormState, StageContext, evaluate, form_for_stage, toggle_select_all
from opexhub.schemas import ActionIn, Initiative, User, WorkflowPanelOut, WorkflowTransaction
from opexhub.session import SessionStore
from opexhub.stages import ROLE_VIEWER, progress_for_stage, role_name, stage_name
from opexhub.workflow import build_transaction_views, can_act_on, can_show_workflow_tab, find_actionable_transaction

log = logging.getLogger(__name__)


class AccessDenied(ApiError):
    def __init__(self, message: str = "Access denied"):
        super().__init__(403, message)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def make_backend(settings: Settings, session: SessionStore,
                 transport: httpx.AsyncBaseTransport | None = None) -> OpexClient | DemoBackend:
    if settings.demo_mode:
        log.info("Demo mode: serving built-in sample data, no backend calls")
        return DemoBackend(session)
    return OpexClient(
        settings.api_url, session,
        timeout=settings.request_timeout_seconds,
        transport=transport,
        max_upload_bytes=settings.max_upload_bytes,
    )


def make_cache(settings: Settings | None = None) -> QueryCache:
    settings = settings or get_settings()
    return QueryCache(ttl_for=settings.ttl_for)


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def initiative_summary(init: Initiative) -> dict[str, Any]:
    return {
        "id": init.id,
        "title": init.title,
        "initiative_number": init.initiative_number,
        "site": init.site,
        "status": init.status,
        "priority": init.priority,
        "current_stage": init.current_stage,
        "current_stage_name": init.current_stage_name or stage_name(init.current_stage),
        "expected_savings": format_currency_lakhs(init.expected_savings),
        "requires_moc": init.requires_moc,
        "requires_capex": init.requires_capex,
    }


def transaction_summary(tx: WorkflowTransaction) -> dict[str, Any]:
    return {
        "id": tx.id,
        "initiative_id": tx.initiative_id,
        "stage_number": tx.stage_number,
        "stage_name": tx.stage_name or stage_name(tx.stage_number),
        "site": tx.site,
        "status": tx.approve_status,
        "pending_with": tx.pending_with,
        "required_role": role_name(tx.required_role) if tx.required_role else None,
        "created_at": format_datetime(tx.created_at),
    }


def state_from_action(body: ActionIn) -> FormState:
    return FormState(
        comment=body.comment,
        assigned_user_id=body.assigned_user_id,
        moc_required=body.moc_required,
        moc_number=body.moc_number,
        capex_required=body.capex_required,
        capex_number=body.capex_number,
        selected_entry_ids=set(body.selected_entry_ids),
        fa_comments=body.fa_comments,
    )


# ---------------------------------------------------------------------------
# Cached reads
# ---------------------------------------------------------------------------


async def get_initiative(backend, cache: QueryCache, initiative_id: int) -> Initiative:
    return await cache.get_or_fetch(("initiatives", initiative_id),
                                    lambda: backend.get_initiative(initiative_id))


async def get_transactions(backend, cache: QueryCache, initiative_id: int) -> list[WorkflowTransaction]:
    return await cache.get_or_fetch(("visible-workflow-transactions", initiative_id),
                                    lambda: backend.visible_transactions(initiative_id))


async def get_progress(backend, cache: QueryCache, initiative: Initiative) -> int:
    """Backend progress percentage, or the stage-derived value when it has none."""
    try:
        value = await cache.get_or_fetch(("progress-percentage", initiative.id),
                                         lambda: backend.progress(initiative.id))
    except AuthenticationRequired:
        raise
    except (ApiError, httpx.HTTPError) as exc:
        log.warning("Progress lookup failed for initiative %s: %s", initiative.id, exc)
        value = None
    return value if value is not None else progress_for_stage(initiative.current_stage)


async def load_stage_context(backend, cache: QueryCache, initiative: Initiative,
                             transaction: WorkflowTransaction) -> StageContext:
    """Fetch whatever the transaction's stage panel needs.

    A failed gate check is logged and leaves the gate closed; the error text is
    kept on the context so the panel can show it.
    """
    context = StageContext(initiative=initiative)
    iid = initiative.id
    loaders = {
        "lead_candidates": (("initiative-leads", initiative.site),
                            lambda: backend.initiative_leads(initiative.site)),
        "timeline_completed": (("timeline-validation", iid),
                               lambda: backend.all_timeline_completed(iid)),
        "monitoring_finalized": (("monitoring-validation", iid),
                                 lambda: backend.all_monitoring_finalized(iid)),
        "fa_entries": (("monthly-monitoring", iid, "finalized-pending-fa"),
                       lambda: backend.finalized_pending_fa(iid)),
        "progress_entries": (("progress-monitoring", iid),
                             lambda: backend.progress_monitoring_entries(iid)),
    }
    for need in form_for_stage(transaction.stage_number).needs:
        key, fetch = loaders[need]
        try:
            setattr(context, need, await cache.get_or_fetch(key, fetch))
        except AuthenticationRequired:
            raise
        except (ApiError, httpx.HTTPError) as exc:
            log.warning("Could not load %s for initiative %s: %s", need, iid, exc)
            context.errors[need] = getattr(exc, "message", None) or str(exc)
    return context


# ---------------------------------------------------------------------------
# Workflow panel
# ---------------------------------------------------------------------------


async def load_workflow_panel(backend, cache: QueryCache, initiative_id: int, user: User | None,
                              state: FormState | None = None) -> WorkflowPanelOut:
    initiative = await get_initiative(backend, cache, initiative_id)
    transactions = await get_transactions(backend, cache, initiative_id)
    actionable = find_actionable_transaction(transactions, user)
    if actionable is not None and not can_act_on(actionable, user):
        actionable = None
    rows = build_transaction_views(transactions, actionable)

    form = None
    if actionable is not None:
        context = await load_stage_context(backend, cache, initiative, actionable)
        number = actionable.stage_number
        form = form_for_stage(number).describe(number, context)
        form["transaction_id"] = actionable.id
        form["evaluation"] = evaluate(number, state or FormState(), context).as_dict()
        if context.errors:
            form["gate_errors"] = context.errors

    actionable_row = next((r for r in rows if r.actionable), None)
    return WorkflowPanelOut(
        initiative_id=initiative.id,
        title=initiative.title,
        site=initiative.site,
        current_stage=initiative.current_stage,
        current_stage_name=initiative.current_stage_name or stage_name(initiative.current_stage),
        progress=await get_progress(backend, cache, initiative),
        show_workflow_tab=can_show_workflow_tab(user, initiative, actionable),
        transactions=[r.as_dict() for r in rows],
        actionable=actionable_row.as_dict() if actionable_row else None,
        form=form,
    )


async def process_action(backend, cache: QueryCache, initiative_id: int, user: User | None,
                         body: ActionIn) -> DispatchResult:
    """Validate and submit one action on the user's actionable transaction."""
    if user is None or user.role == ROLE_VIEWER:
        raise AccessDenied()
    initiative = await get_initiative(backend, cache, initiative_id)
    transactions = await get_transactions(backend, cache, initiative_id)
    actionable = find_actionable_transaction(transactions, user)
    if actionable is None or actionable.id != body.transaction_id or not can_act_on(actionable, user):
        raise AccessDenied("This transaction is not awaiting your action")
    context = await load_stage_context(backend, cache, initiative, actionable)
    state = state_from_action(body)
    if body.select_all:
        toggle_select_all(state, context)
    dispatcher = ActionDispatcher(backend, cache)
    return await dispatcher.dispatch(actionable, body.action, state, context, user)


async def pending_for_user(backend, user: User) -> list[dict[str, Any]]:
    """Pending transactions across initiatives for the user's role and site."""
    if not user.role or user.role == ROLE_VIEWER:
        return []
    rows = await backend.pending_transactions(user.role, user.site or None)
    return [transaction_summary(t) for t in sorted(rows, key=lambda t: (t.initiative_id, t.stage_number))]

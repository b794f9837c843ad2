from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import lru_cache

import httpx
from mcp.server.fastmcp import FastMCP

from opexhub import services
from opexhub.cache import QueryCache
from opexhub.client import UNREACHABLE, ApiError
from opexhub.config import get_settings
from opexhub.forms import FormInvalid
from opexhub.schemas import ActionIn
from opexhub.session import SessionStore
from opexhub.stages import ROLE_NAMES, catalog

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _backend():
    settings = get_settings()
    return services.make_backend(settings, SessionStore(settings.session_file))


@lru_cache(maxsize=1)
def _cache() -> QueryCache:
    return services.make_cache(get_settings())


@asynccontextmanager
async def opexhub_lifespan(server: FastMCP) -> AsyncIterator[None]:
    yield
    if _backend.cache_info().currsize:
        await _backend().aclose()


mcp = FastMCP(
    "OpEx Hub",
    instructions=(
        "OpEx Hub tracks operational-excellence initiatives through an eleven-stage "
        "approval workflow. Sign in first with sign_in(email, password). Use "
        "pending_approvals() to see what awaits you, get_workflow(initiative_id) for the "
        "tracker and the stage form, then process_stage(...) to approve, reject or drop."
    ),
    lifespan=opexhub_lifespan,
    json_response=True,
)


def _not_signed_in() -> dict:
    return {"error": "Not signed in. Call sign_in(email, password) first."}


def _error(exc: Exception) -> dict:
    if isinstance(exc, ApiError):
        return {"error": exc.message}
    log.warning("OpEx backend unreachable: %s", exc)
    return {"error": UNREACHABLE}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("opexhub://overview")
def opexhub_overview() -> str:
    """Overview of the OpEx Hub workflow: stages, roles and actions."""
    return json.dumps({
        "system": "OpEx Hub - initiative approval workflow",
        "stages": catalog(),
        "roles": ROLE_NAMES,
        "actions": {
            "approved": "Move the initiative to the next stage.",
            "rejected": "Reject at this stage (not offered at closure).",
            "dropped": "Drop to next FY; only at stage 8, Periodic Status Review with CMO.",
        },
        "rules": [
            "A non-blank comment is required for every action.",
            "Stage 4 needs assigned_user_id of an Initiative Lead at the initiative's site.",
            "Stage 5 needs moc_required and capex_required; a 'yes' needs its number.",
            "Stage 6 approval waits until every timeline entry is completed.",
            "Stage 9 approval waits until every monthly monitoring entry is finalized.",
            "Stage 10 approval needs at least one selected entry when any are eligible.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Session
# ---------------------------------------------------------------------------


@mcp.tool()
async def sign_in(email: str, password: str) -> dict:
    """Sign in to the OpEx backend; the token is stored for later calls."""
    try:
        _, user = await _backend().sign_in(email, password)
    except (ApiError, httpx.HTTPError) as exc:
        return _error(exc)
    _cache().clear()
    return {"signed_in": True, "user": user.model_dump()}


@mcp.tool()
def sign_out() -> dict:
    """Forget the stored token."""
    _backend().sign_out()
    _cache().clear()
    return {"signed_in": False}


# ---------------------------------------------------------------------------
# Tools: Workflow
# ---------------------------------------------------------------------------


@mcp.tool()
def list_stages() -> list[dict]:
    """The eleven workflow stages with descriptions and the roles that act on each."""
    return catalog()


@mcp.tool()
async def get_workflow(initiative_id: int) -> dict:
    """Tracker rows for an initiative plus the stage form for the transaction awaiting you."""
    backend = _backend()
    user = backend.session.user
    if user is None:
        return _not_signed_in()
    try:
        panel = await services.load_workflow_panel(backend, _cache(), initiative_id, user)
    except (ApiError, httpx.HTTPError) as exc:
        if isinstance(exc, ApiError) and exc.status == 404:
            return {"error": f"Initiative {initiative_id} not found"}
        return _error(exc)
    return panel.model_dump()


@mcp.tool()
async def pending_approvals() -> list[dict] | dict:
    """Transactions pending for your role at your site."""
    backend = _backend()
    user = backend.session.user
    if user is None:
        return _not_signed_in()
    try:
        return await services.pending_for_user(backend, user)
    except (ApiError, httpx.HTTPError) as exc:
        return _error(exc)


@mcp.tool()
async def process_stage(
    initiative_id: int, transaction_id: int, action: str, comment: str,
    assigned_user_id: int | None = None,
    moc_required: bool | None = None, moc_number: str = "",
    capex_required: bool | None = None, capex_number: str = "",
    selected_entry_ids: list[int] | None = None, fa_comments: str = "",
    select_all: bool = False,
) -> dict:
    """Approve, reject or drop the transaction awaiting you.

    Args:
        initiative_id: Initiative the transaction belongs to.
        transaction_id: The actionable transaction id from get_workflow().
        action: approved, rejected or dropped (dropped only at stage 8).
        comment: Required remarks for the action.
        assigned_user_id: Stage 4 only, the Initiative Lead to assign.
        moc_required / moc_number: Stage 5 MOC decision and reference number.
        capex_required / capex_number: Stage 5 CAPEX decision and reference number.
        selected_entry_ids: Stage 10 monitoring entries to F&A-approve.
        select_all: Stage 10, select every eligible entry (toggles off if all are
            already in selected_entry_ids).
        fa_comments: Stage 10 comment for the batch (defaults to comment).
    """
    backend = _backend()
    user = backend.session.user
    if user is None:
        return _not_signed_in()
    try:
        body = ActionIn(
            transaction_id=transaction_id, action=action, comment=comment,
            assigned_user_id=assigned_user_id,
            moc_required=moc_required, moc_number=moc_number,
            capex_required=capex_required, capex_number=capex_number,
            selected_entry_ids=selected_entry_ids or [], fa_comments=fa_comments,
            select_all=select_all,
        )
    except ValueError as exc:
        return {"error": f"Invalid action: {exc}"}
    try:
        result = await services.process_action(backend, _cache(), initiative_id, user, body)
    except FormInvalid as exc:
        return {"error": str(exc), "reasons": exc.reasons}
    except (ApiError, httpx.HTTPError) as exc:
        return _error(exc)
    return {
        "message": result.message,
        "stage_number": result.stage_number,
        "action": result.action,
        "redirect": result.redirect,
    }


# ---------------------------------------------------------------------------
# Tools: Initiatives
# ---------------------------------------------------------------------------


@mcp.tool()
async def list_initiatives(status: str | None = None, site: str | None = None,
                           search: str | None = None, limit: int = 20) -> list[dict] | dict:
    """List initiatives, optionally filtered by status, site or free-text search."""
    backend = _backend()
    if backend.session.user is None:
        return _not_signed_in()
    try:
        rows = await backend.list_initiatives(status=status, site=site, search=search,
                                              page=0, size=max(1, min(limit, 200)))
    except (ApiError, httpx.HTTPError) as exc:
        return _error(exc)
    return [services.initiative_summary(i) for i in rows]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the OpEx Hub MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()

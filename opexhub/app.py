from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from functools import lru_cache

import httpx
from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import Response

from opexhub import services
from opexhub.cache import QueryCache
from opexhub.client import UNREACHABLE, ApiError, AuthenticationRequired, ConflictError, FileRejected
from opexhub.config import get_settings
from opexhub.forms import FormInvalid
from opexhub.schemas import (
    ActionIn,
    ActionResultOut,
    InitiativeFile,
    LoginIn,
    SessionOut,
    User,
    WorkflowPanelOut,
)
from opexhub.session import SessionStore
from opexhub.stages import catalog

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_backend.cache_info().currsize:
        await get_backend().aclose()


app = FastAPI(
    title="OpEx Hub",
    version="0.1.0",
    description=(
        "Workflow front-end for OpEx Hub initiatives. Shows the approval tracker, "
        "the stage form for the transaction awaiting you, and submits approve, "
        "reject and drop-to-next-FY actions to the OpEx backend."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Session", "description": "Sign in and out of the OpEx backend."},
        {"name": "Workflow", "description": "Stage catalog, approval panel and stage actions."},
        {"name": "Initiatives", "description": "Initiative lookups."},
        {"name": "Files", "description": "Initiative attachments (5MB per file, allow-listed types)."},
        {"name": "Reports", "description": "Report downloads passed through from the backend."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def get_backend():
    settings = get_settings()
    return services.make_backend(settings, SessionStore(settings.session_file))


@lru_cache(maxsize=1)
def get_cache() -> QueryCache:
    return services.make_cache(get_settings())


def current_user(backend=Depends(get_backend)) -> User | None:
    return backend.session.user


def require_user(user: User | None = Depends(current_user)) -> User:
    if user is None:
        raise HTTPException(401, {"message": "Sign in required", "login": "/"})
    return user


@contextmanager
def backend_errors(not_found: str | None = None):
    """Translate client/dispatcher exceptions into HTTP responses."""
    try:
        yield
    except AuthenticationRequired as exc:
        raise HTTPException(401, {"message": exc.message, "login": exc.login_path}) from exc
    except ConflictError as exc:
        raise HTTPException(409, exc.message) from exc
    except FormInvalid as exc:
        raise HTTPException(422, {"message": str(exc), "reasons": exc.reasons}) from exc
    except FileRejected as exc:
        raise HTTPException(400, exc.message) from exc
    except ApiError as exc:
        if exc.status == 404 and not_found:
            raise HTTPException(404, not_found) from exc
        status = exc.status if 400 <= exc.status < 600 else 502
        log.warning("Backend call failed (%s): %s", exc.status, exc.message)
        raise HTTPException(status, exc.message) from exc
    except httpx.HTTPError as exc:
        log.warning("OpEx backend unreachable: %s", exc)
        raise HTTPException(502, UNREACHABLE) from exc


def _attachment(name: str, content: bytes, media_type: str) -> Response:
    return Response(content, media_type=media_type,
                    headers={"Content-Disposition": f'attachment; filename="{name}"'})


# ---------------------------------------------------------------------------
# Routes: Session
# ---------------------------------------------------------------------------


@app.post("/api/session", response_model=SessionOut, response_model_by_alias=False,
          tags=["Session"], summary="Sign in")
async def login(body: LoginIn, backend=Depends(get_backend), cache: QueryCache = Depends(get_cache)):
    with backend_errors():
        _, user = await backend.sign_in(body.email, body.password)
    cache.clear()
    return SessionOut(authenticated=True, user=user)


@app.get("/api/session", response_model=SessionOut, response_model_by_alias=False,
         tags=["Session"], summary="Current session")
async def session_info(user: User | None = Depends(current_user)):
    return SessionOut(authenticated=user is not None, user=user)


@app.delete("/api/session", tags=["Session"], summary="Sign out and forget the stored token")
async def logout(backend=Depends(get_backend), cache: QueryCache = Depends(get_cache)):
    backend.sign_out()
    cache.clear()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Workflow
# ---------------------------------------------------------------------------


@app.get("/api/stages", tags=["Workflow"], summary="The eleven workflow stages and who acts on each")
async def list_stages():
    return catalog()


@app.get("/api/initiatives/{initiative_id}/workflow", response_model=WorkflowPanelOut,
         tags=["Workflow"], summary="Tracker rows plus the form for the transaction awaiting you")
async def workflow_panel(initiative_id: int, backend=Depends(get_backend),
                         cache: QueryCache = Depends(get_cache), user: User = Depends(require_user)):
    with backend_errors(not_found="Initiative not found"):
        return await services.load_workflow_panel(backend, cache, initiative_id, user)


@app.post("/api/initiatives/{initiative_id}/workflow/actions", response_model=ActionResultOut,
          tags=["Workflow"], summary="Approve, reject or drop the transaction awaiting you")
async def workflow_action(initiative_id: int, body: ActionIn, backend=Depends(get_backend),
                          cache: QueryCache = Depends(get_cache), user: User = Depends(require_user)):
    with backend_errors(not_found="Initiative not found"):
        result = await services.process_action(backend, cache, initiative_id, user, body)
    return ActionResultOut(
        message=result.message,
        stage_number=result.stage_number,
        action=result.action,
        redirect=result.redirect,
        redirect_message=result.redirect_message,
        transaction=services.transaction_summary(result.transaction) if result.transaction else None,
    )


@app.get("/api/pending", tags=["Workflow"], summary="Transactions pending for your role at your site")
async def pending(backend=Depends(get_backend), user: User = Depends(require_user)):
    with backend_errors():
        return await services.pending_for_user(backend, user)


# ---------------------------------------------------------------------------
# Routes: Initiatives
# ---------------------------------------------------------------------------


@app.get("/api/initiatives", tags=["Initiatives"], summary="List initiatives")
async def list_initiatives(
    status: str | None = None,
    site: str | None = None,
    search: str | None = None,
    page: int = Query(0, ge=0),
    size: int = Query(20, ge=1, le=200),
    backend=Depends(get_backend),
    user: User = Depends(require_user),
):
    with backend_errors():
        rows = await backend.list_initiatives(status=status, site=site, search=search, page=page, size=size)
    return [services.initiative_summary(i) for i in rows]


@app.get("/api/initiatives/{initiative_id}", tags=["Initiatives"], summary="Initiative summary")
async def get_initiative(initiative_id: int, backend=Depends(get_backend),
                         cache: QueryCache = Depends(get_cache), user: User = Depends(require_user)):
    with backend_errors(not_found="Initiative not found"):
        init = await services.get_initiative(backend, cache, initiative_id)
    return services.initiative_summary(init)


# ---------------------------------------------------------------------------
# Routes: Files
# ---------------------------------------------------------------------------


@app.get("/api/initiatives/{initiative_id}/files", response_model=list[InitiativeFile],
         response_model_by_alias=False, tags=["Files"], summary="List files attached to an initiative")
async def list_files(initiative_id: int, backend=Depends(get_backend), user: User = Depends(require_user)):
    with backend_errors(not_found="Initiative not found"):
        return await backend.list_files(initiative_id)


@app.post("/api/initiatives/{initiative_id}/files", response_model=list[InitiativeFile],
          response_model_by_alias=False, status_code=201, tags=["Files"], summary="Upload files to an initiative")
async def upload_files(initiative_id: int, files: list[UploadFile] = File(...),
                       backend=Depends(get_backend), user: User = Depends(require_user)):
    parts = [(f.filename or "upload", await f.read(), f.content_type) for f in files]
    with backend_errors(not_found="Initiative not found"):
        return await backend.upload_files(initiative_id, parts)


@app.get("/api/files/{file_id}", tags=["Files"], summary="Download a file")
async def download_file(file_id: int, backend=Depends(get_backend), user: User = Depends(require_user)):
    with backend_errors(not_found="File not found"):
        name, content, media_type = await backend.download_file(file_id)
    return _attachment(name, content, media_type)


@app.delete("/api/files/{file_id}", tags=["Files"], summary="Delete a file")
async def delete_file(file_id: int, backend=Depends(get_backend), user: User = Depends(require_user)):
    with backend_errors(not_found="File not found"):
        await backend.delete_file(file_id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Reports
# ---------------------------------------------------------------------------


@app.get("/api/initiatives/{initiative_id}/report", tags=["Reports"],
         summary="Download the initiative form (DOCX)")
async def initiative_form_report(initiative_id: int, backend=Depends(get_backend),
                                 user: User = Depends(require_user)):
    with backend_errors(not_found="Initiative not found"):
        name, content, media_type = await backend.initiative_form_report(initiative_id)
    return _attachment(name, content, media_type)


@app.get("/api/reports/detailed-excel", tags=["Reports"], summary="Download the detailed Excel report")
async def detailed_excel_report(site: str | None = None, year: str | None = None,
                                backend=Depends(get_backend), user: User = Depends(require_user)):
    with backend_errors():
        name, content, media_type = await backend.detailed_excel_report(site=site, year=year)
    return _attachment(name, content, media_type)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("opexhub.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()

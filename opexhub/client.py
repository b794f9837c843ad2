"""Async REST client for the OpEx backend.

Every call goes through ``OpexClient._request`` which attaches the bearer
token, maps HTTP failures onto the exception taxonomy below, and clears the
stored session on a 401.  ``{success, message, data}`` envelopes are
unwrapped; bare JSON bodies are returned as-is.
"""
from __future__ import annotations

import logging
import mimetypes
import re
from typing import Any
from urllib.parse import unquote

import httpx

from opexhub.schemas import (
    BatchFAApproval,
    CurrentPendingStage,
    Initiative,
    InitiativeFile,
    MonitoringEntry,
    ProcessStageRequest,
    TimelineEntry,
    User,
    WorkflowTransaction,
)
from opexhub.session import SessionStore

log = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong"
UNREACHABLE = "Could not reach the OpEx backend"

MAX_UPLOAD_BYTES = 5 * 1024 * 1024

ALLOWED_UPLOAD_TYPES = frozenset({
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/plain",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/bmp",
})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ApiError(Exception):
    """Non-2xx answer from the backend (or a failed envelope)."""

    def __init__(self, status: int, message: str = GENERIC_ERROR):
        super().__init__(message)
        self.status = status
        self.message = message


class AuthenticationRequired(ApiError):
    """401: the stored token has already been cleared; sign in again."""

    login_path = "/"


class ConflictError(ApiError):
    """The transaction moved on since it was loaded (409/412)."""


class FileRejected(ApiError):
    """Upload refused before any request was made."""

    def __init__(self, message: str):
        super().__init__(400, message)


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return GENERIC_ERROR
    if isinstance(body, dict):
        return body.get("message") or body.get("error") or GENERIC_ERROR
    return GENERIC_ERROR


def filename_from_disposition(header: str | None, default: str) -> str:
    if not header:
        return default
    # RFC 5987 form wins over the plain one.
    match = re.search(r"filename\*=(?:[\w-]+'[\w-]*')?\"?([^\";]+)", header, re.IGNORECASE)
    if match:
        return unquote(match.group(1).strip())
    match = re.search(r'filename="?([^";]+)"?', header, re.IGNORECASE)
    if match:
        return match.group(1).strip()
    return default


def validate_upload(filename: str, content: bytes, content_type: str | None = None,
                    max_bytes: int = MAX_UPLOAD_BYTES) -> str:
    """Check size and MIME type; return the content type to send."""
    if len(content) > max_bytes:
        raise FileRejected(f"{filename} exceeds the {max_bytes // (1024 * 1024)}MB limit")
    ctype = (content_type or mimetypes.guess_type(filename)[0] or "").lower()
    if ctype not in ALLOWED_UPLOAD_TYPES:
        raise FileRejected(f"{filename}: file type {ctype or 'unknown'} is not allowed")
    return ctype


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class OpexClient:
    def __init__(
        self,
        base_url: str,
        session: SessionStore,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        max_upload_bytes: int = MAX_UPLOAD_BYTES,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session
        self.max_upload_bytes = max_upload_bytes
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> OpexClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- plumbing -----------------------------------------------------------

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {}
        token = self.session.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, path: str, *, params: dict | None = None,
                       json: Any = None, files: Any = None,
                       headers: dict[str, str] | None = None) -> httpx.Response:
        if params:
            params = {k: v for k, v in params.items() if v is not None and v != ""}
        resp = await self._http.request(
            method, path, params=params or None, json=json, files=files,
            headers=self._headers(headers),
        )
        log.debug("%s %s -> %s", method, path, resp.status_code)
        if resp.status_code == 401:
            log.warning("Backend answered 401 for %s %s, clearing stored session", method, path)
            self.session.clear()
            raise AuthenticationRequired(401, _error_message(resp))
        if resp.status_code in (409, 412):
            raise ConflictError(resp.status_code, _error_message(resp))
        if resp.is_error:
            raise ApiError(resp.status_code, _error_message(resp))
        return resp

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        resp = await self._request(method, path, **kwargs)
        if not resp.content:
            return None
        body = resp.json()
        if isinstance(body, dict) and "success" in body and "data" in body:
            if not body["success"]:
                raise ApiError(resp.status_code, body.get("message") or GENERIC_ERROR)
            return body["data"]
        return body

    async def _download(self, path: str, default_name: str, params: dict | None = None) -> tuple[str, bytes, str]:
        resp = await self._request("GET", path, params=params)
        name = filename_from_disposition(resp.headers.get("content-disposition"), default_name)
        ctype = resp.headers.get("content-type", "application/octet-stream")
        return name, resp.content, ctype

    # -- auth ---------------------------------------------------------------

    async def sign_in(self, email: str, password: str) -> tuple[str, User]:
        data = await self._json("POST", "/auth/signin", json={"email": email, "password": password})
        token = data.get("token") or data.get("accessToken")
        if not token:
            raise ApiError(500, "Sign-in response carried no token")
        user = User.model_validate(data.get("user") or data)
        self.session.save(token, user)
        return token, user

    def sign_out(self) -> None:
        self.session.clear()

    async def sign_up(self, user_data: dict) -> Any:
        return await self._json("POST", "/auth/signup", json=user_data)

    async def send_reset_code(self, email: str) -> Any:
        return await self._json("POST", "/auth/password-reset/send-code", json={"email": email})

    async def verify_reset_code(self, email: str, code: str) -> Any:
        return await self._json("POST", "/auth/password-reset/verify-code",
                                json={"email": email, "code": code})

    async def reset_password(self, email: str, code: str, new_password: str) -> Any:
        return await self._json("POST", "/auth/password-reset/reset-password",
                                json={"email": email, "code": code, "newPassword": new_password})

    # -- initiatives --------------------------------------------------------

    async def list_initiatives(self, *, status: str | None = None, site: str | None = None,
                               search: str | None = None, page: int | None = None,
                               size: int | None = None) -> list[Initiative]:
        data = await self._json("GET", "/initiatives", params={
            "status": status, "site": site, "search": search, "page": page, "size": size,
        })
        rows = data.get("content", []) if isinstance(data, dict) else (data or [])
        return [Initiative.model_validate(r) for r in rows]

    async def get_initiative(self, initiative_id: int) -> Initiative:
        return Initiative.model_validate(await self._json("GET", f"/initiatives/{initiative_id}"))

    async def create_initiative(self, payload: dict) -> Initiative:
        return Initiative.model_validate(await self._json("POST", "/initiatives", json=payload))

    async def update_initiative(self, initiative_id: int, payload: dict) -> Initiative:
        return Initiative.model_validate(
            await self._json("PUT", f"/initiatives/{initiative_id}", json=payload))

    # -- users --------------------------------------------------------------

    async def get_user(self, user_id: int) -> User:
        return User.model_validate(await self._json("GET", f"/users/{user_id}"))

    async def users_by_site(self, site: str) -> list[User]:
        return [User.model_validate(u) for u in await self._json("GET", f"/users/site/{site}") or []]

    async def users_by_role(self, role: str) -> list[User]:
        return [User.model_validate(u) for u in await self._json("GET", f"/users/role/{role}") or []]

    async def initiative_leads(self, site: str) -> list[User]:
        return [User.model_validate(u)
                for u in await self._json("GET", f"/users/initiative-leads/{site}") or []]

    # -- workflow transactions ----------------------------------------------

    async def transactions(self, initiative_id: int) -> list[WorkflowTransaction]:
        rows = await self._json("GET", f"/workflow-transactions/initiative/{initiative_id}") or []
        return [WorkflowTransaction.model_validate(r) for r in rows]

    async def visible_transactions(self, initiative_id: int) -> list[WorkflowTransaction]:
        rows = await self._json("GET", f"/workflow-transactions/visible/{initiative_id}") or []
        return [WorkflowTransaction.model_validate(r) for r in rows]

    async def pending_transactions(self, role: str, site: str | None = None) -> list[WorkflowTransaction]:
        path = (f"/workflow-transactions/pending/{site}/{role}" if site
                else f"/workflow-transactions/pending/{role}")
        return [WorkflowTransaction.model_validate(r) for r in await self._json("GET", path) or []]

    async def current_pending_stage(self, initiative_id: int) -> CurrentPendingStage | None:
        data = await self._json("GET", f"/workflow-transactions/current-pending/{initiative_id}")
        return CurrentPendingStage.model_validate(data) if data else None

    async def progress(self, initiative_id: int) -> int | None:
        data = await self._json("GET", f"/workflow-transactions/progress/{initiative_id}")
        return int(data) if data is not None else None

    async def process_stage(self, request: ProcessStageRequest,
                            version: str | None = None) -> WorkflowTransaction | None:
        headers = {"If-Match": f'"{version}"'} if version else None
        data = await self._json(
            "POST", f"/workflow-transactions/{request.transaction_id}/process",
            json=request.to_wire(), headers=headers,
        )
        if isinstance(data, dict) and "id" in data and "stageNumber" in data:
            return WorkflowTransaction.model_validate(data)
        return None

    async def ready_for_closure(self) -> list[WorkflowTransaction]:
        rows = await self._json("GET", "/workflow-transactions/ready-for-closure") or []
        return [WorkflowTransaction.model_validate(r) for r in rows]

    # -- monthly monitoring -------------------------------------------------

    async def monitoring_entries(self, initiative_id: int) -> list[MonitoringEntry]:
        rows = await self._json("GET", f"/monthly-monitoring/{initiative_id}") or []
        return [MonitoringEntry.model_validate(r) for r in rows]

    async def monitoring_entries_for_month(self, initiative_id: int, month: str) -> list[MonitoringEntry]:
        rows = await self._json("GET", f"/monthly-monitoring/{initiative_id}/month/{month}") or []
        return [MonitoringEntry.model_validate(r) for r in rows]

    async def finalized_pending_fa(self, initiative_id: int) -> list[MonitoringEntry]:
        rows = await self._json("GET", f"/monthly-monitoring/{initiative_id}/finalized-pending-fa") or []
        return [MonitoringEntry.model_validate(r) for r in rows]

    async def all_monitoring_finalized(self, initiative_id: int) -> bool:
        return bool(await self._json("GET", f"/monthly-monitoring/validation/{initiative_id}/all-finalized"))

    async def batch_fa_approval(self, approval: BatchFAApproval) -> Any:
        return await self._json("POST", "/monthly-monitoring/batch-fa-approval", json=approval.to_wire())

    # -- timeline tracker ---------------------------------------------------

    async def timeline_entries(self, initiative_id: int) -> list[TimelineEntry]:
        rows = await self._json("GET", f"/timeline-tracker/{initiative_id}") or []
        return [TimelineEntry.model_validate(r) for r in rows]

    async def progress_monitoring_entries(self, initiative_id: int) -> list[TimelineEntry]:
        rows = await self._json("GET", f"/timeline-tracker/progress-monitoring/{initiative_id}") or []
        return [TimelineEntry.model_validate(r) for r in rows]

    async def all_timeline_completed(self, initiative_id: int) -> bool:
        return bool(await self._json("GET", f"/timeline-tracker/validation/{initiative_id}/all-completed"))

    # -- files --------------------------------------------------------------

    async def upload_files(self, initiative_id: int,
                           files: list[tuple[str, bytes, str | None]]) -> list[InitiativeFile]:
        """Upload ``(filename, content, content_type)`` triples after validating each one."""
        parts = []
        for name, content, ctype in files:
            parts.append(("files", (name, content, validate_upload(name, content, ctype, self.max_upload_bytes))))
        data = await self._json("POST", f"/files/upload/{initiative_id}", files=parts)
        return [InitiativeFile.model_validate(f) for f in data or []]

    async def list_files(self, initiative_id: int) -> list[InitiativeFile]:
        return [InitiativeFile.model_validate(f)
                for f in await self._json("GET", f"/files/initiative/{initiative_id}") or []]

    async def download_file(self, file_id: int) -> tuple[str, bytes, str]:
        return await self._download(f"/files/download/{file_id}", f"file-{file_id}")

    async def delete_file(self, file_id: int) -> None:
        await self._request("DELETE", f"/files/{file_id}")

    # -- reports ------------------------------------------------------------

    async def initiative_form_report(self, initiative_id: int) -> tuple[str, bytes, str]:
        return await self._download(f"/reports/export/initiative-form/{initiative_id}", "initiative-form.docx")

    async def detailed_excel_report(self, site: str | None = None,
                                    year: str | None = None) -> tuple[str, bytes, str]:
        return await self._download("/reports/export/detailed-excel", "detailed-report.xlsx",
                                    params={"site": site, "year": year})

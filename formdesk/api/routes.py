"""
FastAPI routes for the formdesk backend.

Endpoints:
- POST   /templates                       — create a template
- GET    /templates                       — list the caller's templates
- GET    /templates/public                — browse active public templates
- GET    /templates/{id}                  — get one template
- PATCH  /templates/{id}                  — partial update
- PUT    /templates/{id}/status           — activate / deactivate
- DELETE /templates/{id}                  — delete with its responses
- POST   /templates/{id}/responses        — submit a complete value map
- GET    /templates/{id}/responses        — list responses (owner or admin)
- GET    /responses/{id}                  — get one response
- POST   /templates/{id}/sessions         — start a fill-out session
- GET    /sessions/{sid}                  — current page, values and errors
- POST   /sessions/{sid}/values           — set field values
- POST   /sessions/{sid}/toggle           — toggle one checkbox-group option
- POST   /sessions/{sid}/next|back|submit — wizard navigation
- DELETE /sessions/{sid}                  — drop a session
- POST   /paginate                        — split a field list into pages
- POST   /validate-template               — dry-run template checks
- POST   /assignments, /assignments/bulk  — assign templates to users
- GET    /users/{user_id}/assignments     — a user's assignments
- GET    /assignments/token/{token}       — resolve a survey token
- PUT    /assignments/token/{token}/status
- POST   /mail/assignments                — e-mail an invitation
- GET    /schemas, /schemas/{filename}    — bundled example templates
- GET    /health                          — health check

The caller is identified by the X-User-Id and X-User-Role headers set by
the upstream auth gateway; requests without X-User-Id are anonymous.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import TypeAdapter, ValidationError
from pydantic.alias_generators import to_snake

from formdesk.core.assignments import AssignmentStatus, Recipient
from formdesk.core.builder import check_template, format_validation_error
from formdesk.core.errors import (
    AuthoringError,
    FormAlreadySubmittedError,
    FormClosedError,
    FormDeskError,
    FormValidationError,
    NotFoundError,
    PermissionDeniedError,
    StoreError,
    UnknownFieldError,
)
from formdesk.core.identity import CallerContext, Role
from formdesk.core.pagination import paginate
from formdesk.core.schema import CamelModel, FieldDefinition, Template
from formdesk.core.session import Session

logger = logging.getLogger(__name__)

router = APIRouter()

# These will be injected by the app factory
_service = None
_session_store = None
_assignments = None

SCHEMAS_DIR = Path(__file__).parent.parent / "schemas"

_field_list_adapter = TypeAdapter(list[FieldDefinition])


def configure_routes(service, session_store, assignment_service=None):
    """Inject the form service, session store and assignment service.

    Called by the app factory during startup.
    """
    global _service, _session_store, _assignments
    _service = service
    _session_store = session_store
    _assignments = assignment_service


# --- Error mapping ---


def status_for(error: FormDeskError) -> int:
    """HTTP status code for a core error."""
    if isinstance(error, AuthoringError):
        return 400
    if isinstance(error, (FormValidationError, UnknownFieldError)):
        return 422
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, PermissionDeniedError):
        return 403
    if isinstance(error, (FormClosedError, FormAlreadySubmittedError)):
        return 409
    if isinstance(error, StoreError):
        return 503
    return 500


@contextmanager
def _http_errors() -> Iterator[None]:
    """Translate core errors raised inside a route into HTTPExceptions."""
    try:
        yield
    except FormDeskError as e:
        status = status_for(e)
        if status >= 500:
            logger.error("Request failed: %s", e, exc_info=True)
        detail: Any = str(e)
        if isinstance(e, AuthoringError):
            detail = {"message": "Invalid template", "errors": e.problems}
        elif isinstance(e, FormValidationError):
            detail = {"message": "Validation failed", "errors": e.errors}
        elif isinstance(e, UnknownFieldError):
            detail = {"message": "Validation failed", "errors": {e.field_key: "Unknown field"}}
        raise HTTPException(status_code=status, detail=detail) from e


def _require_configured() -> None:
    if _service is None or _session_store is None:
        raise HTTPException(status_code=500, detail="Server not properly configured")


def get_caller(request: Request) -> CallerContext:
    """Caller identity from the gateway headers."""
    x_user_id = request.headers.get("x-user-id")
    x_user_role = request.headers.get("x-user-role")
    if not x_user_id:
        return CallerContext.anonymous()
    role = Role.ADMIN if (x_user_role or "").strip().lower() == Role.ADMIN.value else Role.USER
    return CallerContext(user_id=x_user_id, role=role, authenticated=True)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _parse_template(payload: dict[str, Any]) -> Template:
    try:
        return Template.model_validate(payload)
    except ValidationError as e:
        raise AuthoringError(format_validation_error(e)) from e


# --- Request Models ---


class TemplateStatusRequest(CamelModel):
    is_active: bool


class SubmitRequest(CamelModel):
    values: dict[str, Any]
    respondent_email: str | None = None


class StartSessionRequest(CamelModel):
    respondent_email: str | None = None


class SetValuesRequest(CamelModel):
    values: dict[str, Any]


class ToggleOptionRequest(CamelModel):
    field_key: str
    option_value: Any
    checked: bool


class PaginateRequest(CamelModel):
    fields: list[dict[str, Any]]


class ValidateTemplateRequest(CamelModel):
    template: dict[str, Any]


class AssignRequest(CamelModel):
    template_id: str
    user_id: str
    email: str | None = None
    name: str | None = None


class BulkAssignRequest(CamelModel):
    template_id: str
    recipients: list[Recipient]


class AssignmentStatusRequest(CamelModel):
    status: AssignmentStatus


class SendInvitationRequest(CamelModel):
    assignment_id: str


# --- Templates ---


@router.post("/templates", status_code=201)
async def create_template(payload: dict[str, Any], request: Request):
    _require_configured()
    caller = get_caller(request)
    with _http_errors():
        template = _service.create_template(caller, _parse_template(payload))
    return _dump(template)


@router.get("/templates")
async def list_my_templates(request: Request):
    _require_configured()
    caller = get_caller(request)
    with _http_errors():
        templates = _service.list_my_templates(caller)
    return {"templates": [_dump(t) for t in templates]}


@router.get("/templates/public")
async def list_public_templates(page: int = 1, limit: int = 10, search: str | None = None):
    _require_configured()
    with _http_errors():
        result = _service.list_public_templates(page=page, limit=limit, search=search)
    return {
        "templates": [_dump(t) for t in result["templates"]],
        "total": result["total"],
        "page": result["page"],
        "totalPages": result["total_pages"],
    }


@router.get("/templates/{template_id}")
async def get_template(template_id: str, request: Request):
    _require_configured()
    with _http_errors():
        template = _service.get_template(get_caller(request), template_id)
    return _dump(template)


@router.patch("/templates/{template_id}")
async def update_template(template_id: str, changes: dict[str, Any], request: Request):
    """Partial update; keys may be camelCase or snake_case."""
    _require_configured()
    normalized = {to_snake(key): value for key, value in changes.items()}
    with _http_errors():
        template = _service.update_template(get_caller(request), template_id, normalized)
    return _dump(template)


@router.put("/templates/{template_id}/status")
async def set_template_status(template_id: str, body: TemplateStatusRequest, request: Request):
    _require_configured()
    with _http_errors():
        template = _service.set_active(get_caller(request), template_id, body.is_active)
    return _dump(template)


@router.delete("/templates/{template_id}")
async def delete_template(template_id: str, request: Request):
    _require_configured()
    with _http_errors():
        _service.delete_template(get_caller(request), template_id)
    return {"success": True}


# --- Responses ---


@router.post("/templates/{template_id}/responses", status_code=201)
async def submit_response(template_id: str, body: SubmitRequest, request: Request):
    _require_configured()
    with _http_errors():
        response_id = _service.submit_response(
            get_caller(request),
            template_id,
            body.values,
            respondent_email=body.respondent_email,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    return {"responseId": response_id}


@router.get("/templates/{template_id}/responses")
async def list_responses(template_id: str, request: Request):
    _require_configured()
    with _http_errors():
        records = _service.list_responses(get_caller(request), template_id)
    return {"responses": [_dump(r) for r in records]}


@router.get("/responses/{response_id}")
async def get_response(response_id: str, request: Request):
    _require_configured()
    with _http_errors():
        record = _service.get_response(get_caller(request), response_id)
    return _dump(record)


# --- Fill-out sessions ---


def _session_view(session_id: str, session: Session) -> dict[str, Any]:
    runtime = session.runtime
    return {
        "sessionId": session_id,
        "templateId": runtime.template.id,
        "status": runtime.status.value,
        "pageIndex": runtime.page_index,
        "pageCount": runtime.page_count,
        "isFirstPage": runtime.is_first_page,
        "isLastPage": runtime.is_last_page,
        "fields": [_dump(f) for f in runtime.current_fields],
        "values": runtime.values,
        "errors": runtime.errors,
        "responseId": runtime.submission_result,
    }


def _get_owned_session(session_id: str, caller: CallerContext) -> Session:
    """Look up a session; only its starter (or an admin) may drive it."""
    session = _session_store.get_session(session_id)
    if session.owner_id is not None and not caller.can_manage(session.owner_id):
        raise PermissionDeniedError("Session belongs to another user")
    return session


@router.post("/templates/{template_id}/sessions", status_code=201)
async def start_session(
    template_id: str,
    request: Request,
    body: StartSessionRequest | None = None,
):
    _require_configured()
    caller = get_caller(request)
    respondent_email = body.respondent_email if body else None
    with _http_errors():
        runtime = _service.start_runtime(caller, template_id, respondent_email=respondent_email)
        session_id, session = _session_store.create_session(
            runtime, owner_id=caller.user_id if caller.authenticated else None
        )
    logger.info("Session %s started for template %s", session_id, template_id)
    return _session_view(session_id, session)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    _require_configured()
    with _http_errors():
        session = _get_owned_session(session_id, get_caller(request))
    return _session_view(session_id, session)


@router.post("/sessions/{session_id}/values")
async def set_session_values(session_id: str, body: SetValuesRequest, request: Request):
    _require_configured()
    with _http_errors():
        session = _get_owned_session(session_id, get_caller(request))
        session.runtime.set_values(body.values)
    return _session_view(session_id, session)


@router.post("/sessions/{session_id}/toggle")
async def toggle_session_option(session_id: str, body: ToggleOptionRequest, request: Request):
    _require_configured()
    with _http_errors():
        session = _get_owned_session(session_id, get_caller(request))
        try:
            session.runtime.toggle_option(body.field_key, body.option_value, body.checked)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
    return _session_view(session_id, session)


@router.post("/sessions/{session_id}/next")
async def next_page(session_id: str, request: Request):
    _require_configured()
    with _http_errors():
        session = _get_owned_session(session_id, get_caller(request))
        ok = session.runtime.next()
    return {"ok": ok, **_session_view(session_id, session)}


@router.post("/sessions/{session_id}/back")
async def previous_page(session_id: str, request: Request):
    _require_configured()
    with _http_errors():
        session = _get_owned_session(session_id, get_caller(request))
        session.runtime.back()
    return {"ok": True, **_session_view(session_id, session)}


@router.post("/sessions/{session_id}/submit")
async def submit_session(session_id: str, request: Request):
    _require_configured()
    with _http_errors():
        session = _get_owned_session(session_id, get_caller(request))
        ok = session.runtime.submit()
    return {"ok": ok, **_session_view(session_id, session)}


@router.delete("/sessions/{session_id}")
async def delete_session(session_id: str, request: Request):
    _require_configured()
    with _http_errors():
        _get_owned_session(session_id, get_caller(request))
    deleted = _session_store.delete_session(session_id)
    return {
        "success": deleted,
        "message": "Session deleted" if deleted else "Session not found",
    }


# --- Authoring helpers ---


@router.post("/paginate")
async def paginate_fields(body: PaginateRequest):
    """Split a field list into wizard pages."""
    with _http_errors():
        try:
            fields = _field_list_adapter.validate_python(body.fields)
        except ValidationError as e:
            raise AuthoringError(format_validation_error(e)) from e
    pages = paginate(fields)
    return {
        "pageCount": len(pages),
        "pages": [[_dump(f) for f in page] for page in pages],
    }


@router.post("/validate-template")
async def validate_template(body: ValidateTemplateRequest):
    """Report every save-time problem of a template without saving it."""
    try:
        check_template(_parse_template(body.template))
    except AuthoringError as e:
        return {"valid": False, "errors": e.problems}
    return {"valid": True, "errors": []}


# --- Assignments ---


def _require_assignments() -> None:
    if _assignments is None:
        raise HTTPException(status_code=500, detail="Assignments are not configured")


@router.post("/assignments", status_code=201)
async def assign_template(body: AssignRequest, request: Request):
    _require_assignments()
    with _http_errors():
        assignment, created = _assignments.assign(
            get_caller(request), body.template_id, body.user_id, body.email, body.name
        )
    return {"assignment": _dump(assignment), "created": created}


@router.post("/assignments/bulk")
async def bulk_assign_template(body: BulkAssignRequest, request: Request):
    _require_assignments()
    with _http_errors():
        results = _assignments.bulk_assign(get_caller(request), body.template_id, body.recipients)
    return {
        "results": [_dump(r) for r in results],
        "successCount": sum(1 for r in results if r.status == "success"),
    }


@router.get("/users/{user_id}/assignments")
async def list_user_assignments(user_id: str, request: Request):
    _require_assignments()
    with _http_errors():
        assignments = _assignments.list_for_user(get_caller(request), user_id)
    return {"assignments": [_dump(a) for a in assignments]}


@router.get("/assignments/token/{token}")
async def resolve_survey_token(token: str, request: Request):
    _require_assignments()
    with _http_errors():
        assignment = _assignments.validate_token(get_caller(request), token)
    return _dump(assignment)


@router.put("/assignments/token/{token}/status")
async def update_assignment_status(token: str, body: AssignmentStatusRequest):
    _require_assignments()
    with _http_errors():
        assignment = _assignments.update_status(token, body.status)
    return _dump(assignment)


@router.post("/mail/assignments")
async def send_assignment_invitation(body: SendInvitationRequest, request: Request):
    _require_assignments()
    with _http_errors():
        result = await _assignments.send_invitation(get_caller(request), body.assignment_id)
    if not result.success:
        raise HTTPException(status_code=502, detail=f"Failed to send email: {result.error}")
    return {"success": True, "message": "Invitation sent"}


# --- Example templates ---


@router.get("/schemas")
async def list_schemas():
    """List the bundled example templates (.json)."""
    schemas = []
    if SCHEMAS_DIR.exists():
        for path in sorted(SCHEMAS_DIR.glob("*.json")):
            try:
                template = Template.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping example template %s: %s", path.name, e)
                continue
            schemas.append({
                "filename": path.name,
                "title": template.title or path.stem,
                "fieldCount": len(template.input_fields),
            })
    return {"schemas": schemas}


@router.get("/schemas/{filename}")
async def get_schema(filename: str):
    """Get one example template by filename."""
    path = SCHEMAS_DIR / filename
    if path.parent != SCHEMAS_DIR or not path.exists():
        raise HTTPException(status_code=404, detail=f"Schema '{filename}' not found")

    try:
        template = Template.model_validate_json(path.read_text(encoding="utf-8"))
    except OSError:
        raise HTTPException(status_code=500, detail=f"Error reading schema file '{filename}'")
    except ValidationError as e:
        raise HTTPException(status_code=500, detail=f"Invalid schema file '{filename}': {e}")
    return _dump(template)


# --- Health ---


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    session_count = _session_store.count() if _session_store else 0
    return {
        "status": "healthy",
        "active_sessions": session_count,
    }
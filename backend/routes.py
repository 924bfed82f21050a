"""
PROJECT TRACKING API ROUTES

Routes for:
- Project registration and lookup
- Status workflow (submit / approve / reject / resubmit / complete)
- Physical, financial and combined progress updates
- Editable lock
- Paginated histories and the progress summary

All routes require authentication. Mutating routes accept an optional
Idempotency-Key header; a retried request with the same key returns the
original outcome instead of applying twice.
"""

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import logging

from auth import get_current_actor
from models import (
    Actor, CombinedProgressUpdateRequest, EditableStatusRequest,
    FinancialProgressUpdateRequest, ProgressUpdateRequest, ProjectCreate,
    StatusChangeRequest,
)
from project_service import MutationResult, ProjectLifecycleService
from tracking_engine.errors import (
    AuthorizationError, BusinessRuleViolation, ConflictError, NotFoundError,
    ProjectEngineError, TransientError, ValidationError,
    INVALID_VALUE,
)
from tracking_engine.views import DEFAULT_PAGE_SIZE, project_view

logger = logging.getLogger(__name__)

# Router
projects_router = APIRouter(prefix="/api/projects", tags=["Project Tracking"])

ERROR_STATUS_CODES = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (BusinessRuleViolation, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def get_service(request: Request) -> ProjectLifecycleService:
    return request.app.state.project_service


# =============================================================================
# ERROR MAPPING
# =============================================================================

def status_code_for(error: ProjectEngineError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def engine_error_handler(request: Request, exc: ProjectEngineError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.info(f"[API] {request.method} {request.url.path} -> {status_code} {exc.code}")
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, **exc.to_dict()})
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [{"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=jsonable_encoder({
            "success": False,
            "code": INVALID_VALUE,
            "message": "Request validation failed",
            "details": {"errors": errors},
        })
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ProjectEngineError, engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)


# =============================================================================
# RESPONSE SHAPING
# =============================================================================

def _respond(message: str, data: Any) -> Dict[str, Any]:
    return {"success": True, "message": message, "data": jsonable_encoder(data)}


def _mutation_data(result: MutationResult) -> Dict[str, Any]:
    data = {"project": project_view(result.project), "replayed": result.replayed}

    for name in ("record", "progress_record", "financial_record", "history_entry", "editable_entry"):
        value = getattr(result, name)
        if value is not None:
            data[name] = value

    if result.status_change is not None:
        data["status_change"] = {
            "occurred": result.status_change.occurred,
            "message": result.status_change.message,
            "previous_status": result.status_change.previous_status,
            "new_status": result.status_change.new_status,
        }
    if result.updates_applied:
        data["updates_applied"] = result.updates_applied
    if result.advisories:
        data["advisories"] = result.advisories
    return data


# =============================================================================
# PROJECTS
# =============================================================================

@projects_router.post("", status_code=status.HTTP_201_CREATED)
async def create_project(
    payload: ProjectCreate,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    project = await service.create_project(payload, actor)
    return _respond("Project created successfully", project_view(project))


@projects_router.get("/{project_id}")
async def get_project(
    project_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    project = await service.get_project(project_id)
    return _respond("Project retrieved successfully", project_view(project))


# =============================================================================
# STATUS WORKFLOW
# =============================================================================

@projects_router.put("/{project_id}/status")
async def change_status(
    project_id: str,
    payload: StatusChangeRequest,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    result = await service.change_status(
        project_id,
        payload.new_status,
        actor,
        remarks=payload.remarks,
        rejection_reason=payload.rejection_reason,
        idempotency_key=idempotency_key
    )
    return _respond(result.message, _mutation_data(result))


@projects_router.get("/{project_id}/status/history")
async def get_status_history(
    project_id: str,
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    history = await service.get_status_history(project_id, page, page_size)
    return _respond("Status history retrieved successfully", history)


# =============================================================================
# PROGRESS
# =============================================================================

@projects_router.put("/{project_id}/progress")
async def update_progress(
    project_id: str,
    payload: ProgressUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    result = await service.add_progress_update(
        project_id,
        payload.progress,
        actor,
        remarks=payload.remarks,
        documents=payload.supporting_documents,
        idempotency_key=idempotency_key
    )
    return _respond(result.message, _mutation_data(result))


@projects_router.get("/{project_id}/progress/history")
async def get_progress_history(
    project_id: str,
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    history = await service.get_progress_history(project_id, page, page_size)
    return _respond("Progress history retrieved successfully", history)


@projects_router.put("/{project_id}/financial-progress")
async def update_financial_progress(
    project_id: str,
    payload: FinancialProgressUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    result = await service.add_financial_progress_update(
        project_id,
        payload.new_bill_amount,
        actor,
        remarks=payload.remarks,
        bill_details=payload.bill_details,
        documents=payload.supporting_documents,
        idempotency_key=idempotency_key
    )
    return _respond(result.message, _mutation_data(result))


@projects_router.get("/{project_id}/financial-progress/history")
async def get_financial_progress_history(
    project_id: str,
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    history = await service.get_financial_progress_history(project_id, page, page_size)
    return _respond("Financial progress history retrieved successfully", history)


@projects_router.put("/{project_id}/progress/combined")
async def update_combined_progress(
    project_id: str,
    payload: CombinedProgressUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    result = await service.update_combined_progress(
        project_id,
        actor,
        new_progress=payload.progress,
        new_bill_amount=payload.new_bill_amount,
        remarks=payload.remarks,
        bill_details=payload.bill_details,
        documents=payload.supporting_documents,
        idempotency_key=idempotency_key
    )
    return _respond(result.message, _mutation_data(result))


@projects_router.get("/{project_id}/progress-summary")
async def get_progress_summary(
    project_id: str,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    summary = await service.get_progress_summary(project_id, actor)
    return _respond("Progress summary retrieved successfully", summary)


# =============================================================================
# EDITABLE LOCK
# =============================================================================

@projects_router.put("/{project_id}/editable-status")
async def set_editable_status(
    project_id: str,
    payload: EditableStatusRequest,
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    result = await service.set_editable_lock(
        project_id,
        payload.is_editable,
        actor,
        reason=payload.reason,
        idempotency_key=idempotency_key
    )
    return _respond(result.message, _mutation_data(result))


@projects_router.get("/{project_id}/editable-status/history")
async def get_editable_status_history(
    project_id: str,
    page: int = Query(1),
    page_size: int = Query(DEFAULT_PAGE_SIZE),
    actor: Actor = Depends(get_current_actor),
    service: ProjectLifecycleService = Depends(get_service)
):
    history = await service.get_editable_status_history(project_id, page, page_size)
    return _respond("Editable status history retrieved successfully", history)

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from dealflow.context import get_correlation_id
from dealflow.core.auth import AuthUser, get_current_user as get_auth_user
from dealflow.core.database import get_db
from dealflow.crm.import_export import import_export_service
from dealflow.crm.promotion import PromotionRejectedError, promotion_service
from dealflow.crm.registry import field_registry
from dealflow.crm.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldReorderRequest,
    FieldSectionAssignRequest,
    FormSectionRead,
    FormSectionUpdate,
    InvestorCreate,
    InvestorRead,
    InvestorUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    PromoteLeadRequest,
    PromoteLeadResponse,
)
from dealflow.crm.seed import field_seed_helper
from dealflow.crm.service import ActorUser, investor_service, lead_service

fields_router = APIRouter(prefix="/api/crm", tags=["crm.fields"])
leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
investors_router = APIRouter(prefix="/api/crm", tags=["crm.investors"])
import_export_router = APIRouter(prefix="/api/crm", tags=["crm.import_export"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    detail = exc.detail
    message = str(detail.get("message", "request failed")) if isinstance(detail, dict) else str(detail)
    return error_response(request, status_code=exc.status_code, code=code, message=message, details=detail)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(user_id=auth_user.sub, roles=list(auth_user.roles), correlation_id=correlation_id)


def _csv_response(content: str, filename: str) -> Response:
    return Response(
        content=content.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# field registry


@fields_router.get("/fields/{entity_type}", response_model=list[FieldDefinitionRead])
def list_field_definitions(
    request: Request,
    entity_type: str,
    include_inactive: bool = Query(default=True),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return field_registry.list_fields(db, entity_type, include_inactive=include_inactive)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_list_failed")


@fields_router.post("/fields/{entity_type}", response_model=FieldDefinitionRead, status_code=status.HTTP_201_CREATED)
def create_field_definition(
    request: Request,
    entity_type: str,
    dto: FieldDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        return field_registry.create_field(db, entity_type, dto, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_create_failed")


@fields_router.post("/fields/{entity_type}/reorder", response_model=list[FieldDefinitionRead])
def reorder_field_definitions(
    request: Request,
    entity_type: str,
    dto: FieldReorderRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return field_registry.reorder_fields(db, entity_type, dto.field_ids, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_reorder_failed")


@fields_router.post("/fields/{entity_type}/assign-sections", response_model=list[FieldDefinitionRead])
def assign_field_sections(
    request: Request,
    entity_type: str,
    dto: FieldSectionAssignRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return field_registry.assign_sections(db, entity_type, dto.fields, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_assign_sections_failed")


@fields_router.get("/fields/{entity_type}/{field_id}", response_model=FieldDefinitionRead)
def get_field_definition(
    request: Request,
    entity_type: str,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        return field_registry.get_field(db, entity_type, field_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_get_failed")


@fields_router.put("/fields/{entity_type}/{field_id}", response_model=FieldDefinitionRead)
def update_field_definition(
    request: Request,
    entity_type: str,
    field_id: int,
    dto: FieldDefinitionUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        return field_registry.update_field(db, entity_type, field_id, dto, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_update_failed")


@fields_router.post("/fields/{entity_type}/{field_id}/toggle", response_model=FieldDefinitionRead)
def toggle_field_definition(
    request: Request,
    entity_type: str,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldDefinitionRead | JSONResponse:
    try:
        return field_registry.toggle_field(db, entity_type, field_id, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_toggle_failed")


@fields_router.delete("/fields/{entity_type}/{field_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_field_definition(
    request: Request,
    entity_type: str,
    field_id: int,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        field_registry.delete_field(db, entity_type, field_id, user.user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_delete_failed")


@fields_router.get("/form-sections/{entity_type}", response_model=list[FormSectionRead])
def list_form_sections(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FormSectionRead] | JSONResponse:
    try:
        return field_registry.list_sections(db, entity_type)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_form_sections_list_failed")


@fields_router.post("/form-sections/{entity_type}", response_model=list[FormSectionRead])
def update_form_sections(
    request: Request,
    entity_type: str,
    dto: list[FormSectionUpdate],
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FormSectionRead] | JSONResponse:
    try:
        return field_registry.update_sections(db, entity_type, dto, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_form_sections_update_failed")


@fields_router.post("/seeds/{entity_type}", response_model=list[FieldDefinitionRead])
def seed_system_fields(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FieldDefinitionRead] | JSONResponse:
    try:
        return field_seed_helper.ensure_defaults(db, entity_type)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_fields_seed_failed")


# leads


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_create_failed")


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_records(db, status_filter=status_filter, q=q, limit=limit, offset=offset)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_list_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_record(db, lead_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_get_failed")


@leads_router.put("/leads/{lead_id}", response_model=LeadRead)
def update_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        lead_service.delete_record(db, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_delete_failed")


@leads_router.post("/leads/{lead_id}/promote", response_model=PromoteLeadResponse, status_code=status.HTTP_201_CREATED)
def promote_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: PromoteLeadRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PromoteLeadResponse | JSONResponse:
    try:
        return promotion_service.promote(db, user, lead_id, dto.description)
    except PromotionRejectedError as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="crm_lead_promote_failed",
            message=exc.message,
            details=exc.details(),
        )
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_lead_promote_failed")


# investors


@investors_router.post("/investors", response_model=InvestorRead, status_code=status.HTTP_201_CREATED)
def create_investor(
    request: Request,
    dto: InvestorCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        return investor_service.create_investor(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_investor_create_failed")


@investors_router.get("/investors", response_model=list[InvestorRead])
def list_investors(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    q: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[InvestorRead] | JSONResponse:
    try:
        return investor_service.list_records(db, status_filter=status_filter, q=q, limit=limit, offset=offset)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_investor_list_failed")


@investors_router.get("/investors/{investor_id}", response_model=InvestorRead)
def get_investor(
    request: Request,
    investor_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        return investor_service.get_record(db, investor_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_investor_get_failed")


@investors_router.put("/investors/{investor_id}", response_model=InvestorRead)
def update_investor(
    request: Request,
    investor_id: uuid.UUID,
    dto: InvestorUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InvestorRead | JSONResponse:
    try:
        return investor_service.update_investor(db, user, investor_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_investor_update_failed")


@investors_router.delete("/investors/{investor_id}", status_code=status.HTTP_204_NO_CONTENT, response_model=None)
def delete_investor(
    request: Request,
    investor_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        investor_service.delete_record(db, user, investor_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_investor_delete_failed")


# import / export


@import_export_router.post("/import/{entity_type}", response_model=dict[str, Any])
def import_records_csv(
    request: Request,
    entity_type: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, Any] | JSONResponse:
    try:
        content = file.file.read()
        result = import_export_service.import_csv(db, user, entity_type, content)
        return result.to_response()
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_import_failed")


@import_export_router.get("/export/{entity_type}/template", response_model=None)
def export_records_template(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        content = import_export_service.export_template(db, entity_type)
        return _csv_response(content, f"{entity_type}s-import-template.csv")
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_export_template_failed")


@import_export_router.get("/export/{entity_type}", response_model=None)
def export_records_csv(
    request: Request,
    entity_type: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response | JSONResponse:
    try:
        content = import_export_service.export_csv(db, entity_type)
        return _csv_response(content, f"{entity_type}s-export-{date.today().isoformat()}.csv")
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_export_failed")

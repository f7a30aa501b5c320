from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from callgenie.calls.schemas import (
    AgentCreate,
    AgentRead,
    BatchCallCreated,
    BatchCallRead,
    BatchCallRequest,
    BulkLeadsRequest,
    BulkUpsertResult,
    CallLeadRequest,
    Envelope,
    LeadRead,
    LeadUpdate,
    LeadWithCallsRead,
)
from callgenie.calls.service import ActorUser, AgentService, CallService, LeadService
from callgenie.context import get_correlation_id
from callgenie.core.auth import AuthUser, get_current_user as get_auth_user
from callgenie.core.database import get_db
from callgenie.core.errors import error_response
from callgenie.voice.client import VoiceCallClient, get_voice_client
from callgenie.voice.errors import VoiceProviderError


logger = logging.getLogger("app.calls")

calls_router = APIRouter(prefix="/api/calls", tags=["calls"])
leads_router = APIRouter(prefix="/api/leads", tags=["leads"])
agents_router = APIRouter(prefix="/api/agents", tags=["agents"])

lead_service = LeadService()
agent_service = AgentService()
call_service = CallService(lead_service, agent_service)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    if auth_user.is_anonymous:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return ActorUser(
        user_id=auth_user.sub,
        roles=set(auth_user.roles),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )


def _server_error(request: Request, message: str, exc: Exception) -> JSONResponse:
    logger.exception(message, extra={"path": request.url.path, "error": str(exc)})
    return error_response(request, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, message=message)


def _provider_error(request: Request, message: str, exc: VoiceProviderError) -> JSONResponse:
    logger.error(message, extra={"operation": exc.operation, "error": str(exc)})
    return error_response(
        request,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        message=message,
        error=str(exc),
    )


@calls_router.post("", response_model=Envelope[dict[str, Any]])
def call_lead(
    request: Request,
    dto: CallLeadRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    voice_client: VoiceCallClient = Depends(get_voice_client),
) -> Envelope[dict[str, Any]] | JSONResponse:
    try:
        provider_call = call_service.initiate_call(db, user, voice_client, dto)
        return Envelope(message="Call initiated successfully", data=provider_call)
    except HTTPException as exc:
        return error_response(request, status_code=exc.status_code, message=str(exc.detail))
    except VoiceProviderError as exc:
        return _provider_error(request, "Failed to initiate call", exc)
    except SQLAlchemyError as exc:
        return _server_error(request, "Failed to initiate call", exc)


@calls_router.post("/batch", response_model=Envelope[BatchCallCreated], status_code=status.HTTP_201_CREATED)
def create_batch_call(
    request: Request,
    dto: BatchCallRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    voice_client: VoiceCallClient = Depends(get_voice_client),
) -> Envelope[BatchCallCreated] | JSONResponse:
    try:
        created = call_service.create_batch_call(db, user, voice_client, dto)
        return Envelope(message="Batch call created successfully", data=created)
    except HTTPException as exc:
        return error_response(request, status_code=exc.status_code, message=str(exc.detail))
    except VoiceProviderError as exc:
        return _provider_error(request, "Failed to create batch call", exc)
    except SQLAlchemyError as exc:
        return _server_error(request, "Failed to create batch call", exc)


@calls_router.get("/batches", response_model=Envelope[list[BatchCallRead]])
def list_batch_calls(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[list[BatchCallRead]] | JSONResponse:
    try:
        return Envelope(data=call_service.list_batch_calls(db, user))
    except SQLAlchemyError as exc:
        return _server_error(request, "Failed to fetch batch calls", exc)


@calls_router.get("/{call_id}", response_model=Envelope[dict[str, Any]])
def get_call(
    request: Request,
    call_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
    voice_client: VoiceCallClient = Depends(get_voice_client),
) -> Envelope[dict[str, Any]] | JSONResponse:
    try:
        return Envelope(data=call_service.get_call_detail(db, user, voice_client, call_id))
    except HTTPException as exc:
        return error_response(request, status_code=exc.status_code, message=str(exc.detail))
    except VoiceProviderError as exc:
        return _provider_error(request, "Failed to fetch call details", exc)
    except SQLAlchemyError as exc:
        return _server_error(request, "Failed to fetch call details", exc)


@leads_router.get("", response_model=Envelope[list[LeadWithCallsRead]])
def list_leads(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[list[LeadWithCallsRead]] | JSONResponse:
    try:
        return Envelope(data=lead_service.list_leads(db, user))
    except SQLAlchemyError as exc:
        return _server_error(request, "Failed to fetch leads", exc)


@leads_router.post("/bulk", response_model=Envelope[BulkUpsertResult])
def bulk_create_leads(
    request: Request,
    dto: BulkLeadsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[BulkUpsertResult] | JSONResponse:
    try:
        result = lead_service.bulk_upsert(db, user, dto)
        return Envelope(message=f"Successfully saved {result.saved_count} leads", data=result)
    except HTTPException as exc:
        return error_response(request, status_code=exc.status_code, message=str(exc.detail))
    except SQLAlchemyError as exc:
        db.rollback()
        return _server_error(request, "Failed to save leads", exc)


@leads_router.put("/{phone_or_id}", response_model=Envelope[LeadRead])
def update_lead(
    request: Request,
    phone_or_id: str,
    dto: LeadUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[LeadRead] | JSONResponse:
    try:
        lead = lead_service.update_lead(db, user, phone_or_id, dto)
        return Envelope(message="Lead updated successfully", data=lead)
    except HTTPException as exc:
        return error_response(request, status_code=exc.status_code, message=str(exc.detail))
    except SQLAlchemyError as exc:
        db.rollback()
        return _server_error(request, "Failed to update lead", exc)


@leads_router.delete("/{phone_or_id}", response_model=Envelope[None])
def delete_lead(
    request: Request,
    phone_or_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[None] | JSONResponse:
    try:
        lead_service.delete_lead(db, user, phone_or_id)
        return Envelope(message="Lead deleted successfully")
    except HTTPException as exc:
        return error_response(request, status_code=exc.status_code, message=str(exc.detail))
    except SQLAlchemyError as exc:
        db.rollback()
        return _server_error(request, "Failed to delete lead", exc)


@agents_router.post("", response_model=Envelope[AgentRead], status_code=status.HTTP_201_CREATED)
def create_agent(
    request: Request,
    dto: AgentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[AgentRead] | JSONResponse:
    try:
        return Envelope(message="Agent created successfully", data=agent_service.create_agent(db, user, dto))
    except SQLAlchemyError as exc:
        db.rollback()
        return _server_error(request, "Failed to create agent", exc)


@agents_router.get("", response_model=Envelope[list[AgentRead]])
def list_agents(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Envelope[list[AgentRead]] | JSONResponse:
    try:
        return Envelope(data=agent_service.list_agents(db, user))
    except SQLAlchemyError as exc:
        return _server_error(request, "Failed to fetch agents", exc)

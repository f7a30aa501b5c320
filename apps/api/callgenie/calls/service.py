from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import Select, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from callgenie.calls.models import Agent, BatchCall, Call, Lead
from callgenie.calls.schemas import (
    AgentCreate,
    AgentRead,
    BatchCallCreated,
    BatchCallRead,
    BatchCallRequest,
    BulkLeadsRequest,
    BulkUpsertResult,
    CallLeadRequest,
    LeadRead,
    LeadUpdate,
    LeadWithCallsRead,
)
from callgenie.core.config import get_settings
from callgenie.metrics import observe_call_detail_lookup, observe_leads_upserted
from callgenie.voice.client import VoiceCallClient


logger = logging.getLogger("app.calls")

INITIAL_CALL_STATUS = "registered"


@dataclass
class ActorUser:
    user_id: str
    roles: set[str] = field(default_factory=set)
    correlation_id: str | None = None


@dataclass
class CallRoute:
    """Caller id and provider agent used for an outbound call."""

    from_number: str
    provider_agent_id: str
    agent_id: uuid.UUID | None = None


def _parse_lead_id(identifier: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(identifier)
    except ValueError:
        return None


class AgentService:
    def create_agent(self, session: Session, actor_user: ActorUser, dto: AgentCreate) -> AgentRead:
        agent = Agent(name=dto.name, phone_number=dto.phone_number, provider_agent_id=dto.provider_agent_id)
        session.add(agent)
        session.commit()
        logger.info("agent.created", extra={"operation": "create_agent"})
        return AgentRead.model_validate(agent)

    def list_agents(self, session: Session, actor_user: ActorUser) -> list[AgentRead]:
        agents = session.scalars(select(Agent).order_by(Agent.created_at.desc())).all()
        return [AgentRead.model_validate(agent) for agent in agents]

    def resolve_route(self, session: Session, agent_id: uuid.UUID | None) -> CallRoute:
        """Pick the caller id and provider agent, falling back to the configured defaults."""
        settings = get_settings()
        if agent_id is None:
            return CallRoute(from_number=settings.default_from_number, provider_agent_id=settings.agent_id)

        agent = session.get(Agent, agent_id)
        if agent is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Agent not found")
        return CallRoute(from_number=agent.phone_number, provider_agent_id=agent.provider_agent_id, agent_id=agent.id)


class LeadService:
    def find_by_phone(self, session: Session, actor_user: ActorUser, phone_number: str) -> Lead | None:
        return session.scalar(
            select(Lead)
            .where(Lead.owner_user_id == actor_user.user_id, Lead.phone_number == phone_number)
            .order_by(Lead.created_at.asc())
            .limit(1)
        )

    def upsert_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        phone_number: str,
        name: str | None,
        email: str | None,
    ) -> Lead:
        """Create the lead on first contact, or refresh name and email on repeat contact."""
        lead = self.find_by_phone(session, actor_user, phone_number)
        if lead is None:
            lead = Lead(name=name, email=email, phone_number=phone_number, owner_user_id=actor_user.user_id)
            session.add(lead)
        else:
            lead.name = name or lead.name
            if email is not None:
                lead.email = email
        session.flush()
        return lead

    def list_leads(self, session: Session, actor_user: ActorUser) -> list[LeadWithCallsRead]:
        leads = session.scalars(
            select(Lead)
            .where(Lead.owner_user_id == actor_user.user_id)
            .options(selectinload(Lead.calls))
            .order_by(Lead.created_at.desc())
        ).all()
        return [LeadWithCallsRead.model_validate(lead) for lead in leads]

    def bulk_upsert(self, session: Session, actor_user: ActorUser, dto: BulkLeadsRequest) -> BulkUpsertResult:
        if not dto.leads:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="leads array is required")

        result = BulkUpsertResult()
        for item in dto.leads:
            if not item.phone_number or not item.name:
                result.skipped_count += 1
                continue

            values: dict[str, Any] = {"name": item.name}
            if item.email is not None:
                values["email"] = item.email
            if item.address is not None:
                values["address"] = item.address
            if item.lead_type is not None:
                values["lead_type"] = item.lead_type

            lead = self.find_by_phone(session, actor_user, item.phone_number)
            if lead is None:
                lead = Lead(phone_number=item.phone_number, owner_user_id=actor_user.user_id, **values)
                session.add(lead)
                session.flush()
                result.inserted_count += 1
                result.inserted_ids.append(lead.id)
                continue

            result.matched_count += 1
            changed = False
            for attr, value in values.items():
                if getattr(lead, attr) != value:
                    setattr(lead, attr, value)
                    changed = True
            if changed:
                session.flush()
                result.modified_count += 1

        session.commit()
        observe_leads_upserted(result.inserted_count, result.modified_count)
        logger.info("leads.bulk_upserted", extra={"count": result.saved_count, "operation": "bulk_upsert"})
        return result

    def update_lead(self, session: Session, actor_user: ActorUser, identifier: str, dto: LeadUpdate) -> LeadRead:
        lead = session.scalar(self._owned_lead_query(actor_user, identifier))
        if lead is None:
            logger.info("lead.update_missed", extra={"operation": "update_lead"})
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")

        payload = dto.model_dump(exclude_unset=True)
        for attr in ("name", "phone_number"):
            if not payload.get(attr):
                payload.pop(attr, None)
        for attr, value in payload.items():
            setattr(lead, attr, value)

        session.commit()
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def delete_lead(self, session: Session, actor_user: ActorUser, identifier: str) -> None:
        lead = session.scalar(self._owned_lead_query(actor_user, identifier))
        if lead is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lead not found")

        # Calls keep their lead_id after the lead is gone.
        lead_id = lead.id
        session.delete(lead)
        session.commit()
        logger.info("lead.deleted", extra={"lead_id": str(lead_id)})

    @staticmethod
    def _owned_lead_query(actor_user: ActorUser, identifier: str) -> Select[tuple[Lead]]:
        stmt = select(Lead).where(Lead.owner_user_id == actor_user.user_id)
        lead_id = _parse_lead_id(identifier)
        if lead_id is not None:
            return stmt.where(Lead.id == lead_id)
        return stmt.where(Lead.phone_number == identifier).order_by(Lead.created_at.asc()).limit(1)


class CallService:
    def __init__(self, lead_service: LeadService, agent_service: AgentService) -> None:
        self.lead_service = lead_service
        self.agent_service = agent_service

    def initiate_call(
        self,
        session: Session,
        actor_user: ActorUser,
        client: VoiceCallClient,
        dto: CallLeadRequest,
    ) -> dict[str, Any]:
        if not dto.name or not dto.email or not dto.phone_number:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="name, email, and phone_number are required",
            )

        route = self.agent_service.resolve_route(session, dto.agent_id)
        lead = self.lead_service.upsert_contact(
            session,
            actor_user,
            phone_number=dto.phone_number,
            name=dto.name,
            email=dto.email,
        )
        session.commit()

        provider_call = client.create_phone_call(
            from_number=route.from_number,
            to_number=dto.phone_number,
            agent_id=route.provider_agent_id,
            dynamic_variables={
                "name": dto.name,
                "email": dto.email,
                "phone_number": dto.phone_number,
                "subject": dto.subject or "",
            },
        )

        try:
            call = Call(
                provider_call_id=provider_call.get("call_id"),
                lead_id=lead.id,
                status=INITIAL_CALL_STATUS,
            )
            session.add(call)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "call.record_failed",
                extra={"call_id": provider_call.get("call_id"), "lead_id": str(lead.id), "error": str(exc)},
            )
        else:
            logger.info("call.initiated", extra={"call_id": call.provider_call_id, "lead_id": str(lead.id)})

        return provider_call

    def get_call_detail(
        self,
        session: Session,
        actor_user: ActorUser,
        client: VoiceCallClient,
        call_id: str,
    ) -> dict[str, Any]:
        """Answer from the stored call once it has analysis, otherwise refresh it from the provider."""
        if not call_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="call_id is required")

        call = session.scalar(select(Call).where(Call.provider_call_id == call_id))
        if call is not None and call.analysis is not None:
            observe_call_detail_lookup("store")
            logger.info("call.detail", extra={"call_id": call_id, "source": "store"})
            return self._to_provider_shape(call)

        observe_call_detail_lookup("provider")
        provider_call = client.retrieve_call(call_id)
        if call is not None:
            self._apply_provider_state(call, provider_call)
            session.commit()
        logger.info("call.detail", extra={"call_id": call_id, "source": "provider"})
        return provider_call

    def create_batch_call(
        self,
        session: Session,
        actor_user: ActorUser,
        client: VoiceCallClient,
        dto: BatchCallRequest,
    ) -> BatchCallCreated:
        if not dto.leads:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="leads (non-empty array) are required",
            )

        route = self.agent_service.resolve_route(session, dto.agent_id)
        tasks: list[dict[str, Any]] = []
        lead_ids: list[str] = []
        for item in dto.leads:
            if not item.phone_number:
                continue
            if not item.name and self.lead_service.find_by_phone(session, actor_user, item.phone_number) is None:
                continue

            lead = self.lead_service.upsert_contact(
                session,
                actor_user,
                phone_number=item.phone_number,
                name=item.name,
                email=item.email,
            )
            lead_ids.append(str(lead.id))
            task: dict[str, Any] = {
                "to_number": lead.phone_number,
                "retell_llm_dynamic_variables": {
                    key: value
                    for key, value in {
                        "name": lead.name,
                        "email": lead.email,
                        "phone_number": lead.phone_number,
                    }.items()
                    if value is not None
                },
            }
            if route.provider_agent_id:
                task["override_agent_id"] = route.provider_agent_id
            tasks.append(task)

        if not tasks:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No valid leads provided")
        session.commit()

        provider_batch = client.create_batch_call(
            from_number=route.from_number,
            tasks=tasks,
            name=dto.name,
            trigger_timestamp=dto.trigger_timestamp,
        )

        # The provider already accepted the batch at this point.
        try:
            batch_call = BatchCall(
                owner_user_id=actor_user.user_id,
                agent_id=route.agent_id,
                provider_batch_call_id=provider_batch.get("batch_call_id"),
                name=dto.name,
                expected_calls=len(tasks),
                lead_ids=lead_ids,
            )
            session.add(batch_call)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "call.batch_record_failed",
                extra={"batch_call_id": provider_batch.get("batch_call_id"), "count": len(tasks), "error": str(exc)},
            )
            return BatchCallCreated(batch_call=None, provider=provider_batch)

        logger.info(
            "call.batch_created",
            extra={"batch_call_id": batch_call.provider_batch_call_id, "count": len(tasks)},
        )
        return BatchCallCreated(batch_call=BatchCallRead.model_validate(batch_call), provider=provider_batch)

    def list_batch_calls(self, session: Session, actor_user: ActorUser) -> list[BatchCallRead]:
        batch_calls = session.scalars(
            select(BatchCall)
            .where(BatchCall.owner_user_id == actor_user.user_id)
            .order_by(BatchCall.created_at.desc())
        ).all()
        return [BatchCallRead.model_validate(item) for item in batch_calls]

    @staticmethod
    def _apply_provider_state(call: Call, provider_call: dict[str, Any]) -> None:
        call.status = provider_call.get("call_status") or call.status
        call.analysis = provider_call.get("call_analysis")
        call.transcript = provider_call.get("transcript")
        call.recording_url = provider_call.get("recording_url")
        call.duration_ms = provider_call.get("duration_ms")
        call_cost = provider_call.get("call_cost")
        call.cost = call_cost.get("combined_cost") if isinstance(call_cost, dict) else None
        if provider_call.get("call_type") == "phone_call":
            call.from_number = provider_call.get("from_number")
            call.to_number = provider_call.get("to_number")

    @staticmethod
    def _to_provider_shape(call: Call) -> dict[str, Any]:
        return {
            "call_id": call.provider_call_id,
            "call_status": call.status,
            "call_analysis": call.analysis,
            "transcript": call.transcript,
            "duration_ms": call.duration_ms,
            "from_number": call.from_number,
            "to_number": call.to_number,
            "call_cost": {"combined_cost": call.cost},
            "recording_url": call.recording_url,
        }

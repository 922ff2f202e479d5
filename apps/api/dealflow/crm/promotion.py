from __future__ import annotations

import logging
import uuid
from enum import Enum

from opentelemetry import trace
from sqlalchemy.orm import Session

from dealflow import audit, events, metrics
from dealflow.core.config import get_settings
from dealflow.crm.models import CRMInvestor, CRMLead, CRMUserAssignment, utcnow
from dealflow.crm.registry import SYSTEM_FIELD_NAMES, FieldRegistryService, field_registry
from dealflow.crm.schemas import PromoteLeadResponse
from dealflow.crm.service import ActorUser, InvestorService, LeadService, investor_service, lead_service
from dealflow.crm.store import AttributeStore, attribute_store


logger = logging.getLogger("dealflow.crm.promotion")
tracer = trace.get_tracer("dealflow.crm.promotion")

PROMOTED_LEAD_STATUS = "won"
NEW_INVESTOR_STATUS = "potential"


class PromotionReason(str, Enum):
    JUSTIFICATION_TOO_SHORT = "JUSTIFICATION_TOO_SHORT"
    LEAD_NOT_FOUND = "LEAD_NOT_FOUND"
    ALREADY_PROMOTED = "ALREADY_PROMOTED"
    PHONE_CONFLICT = "PHONE_CONFLICT"


class PromotionRejectedError(Exception):
    def __init__(self, reason: PromotionReason, message: str, investor_id: uuid.UUID | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.investor_id = investor_id

    @property
    def status_code(self) -> int:
        return 404 if self.reason == PromotionReason.LEAD_NOT_FOUND else 400

    def details(self) -> dict[str, str]:
        payload = {"reason": self.reason.value}
        if self.investor_id is not None:
            payload["investor_id"] = str(self.investor_id)
        return payload


class PromotionService:
    """Turns a lead into an investor, carrying over custom values that share a field name.

    Preconditions are checked before any write, and the whole promotion commits once.
    """

    def __init__(
        self,
        leads: LeadService | None = None,
        investors: InvestorService | None = None,
        registry: FieldRegistryService | None = None,
        store: AttributeStore | None = None,
    ) -> None:
        self.leads = leads or lead_service
        self.investors = investors or investor_service
        self.registry = registry or field_registry
        self.store = store or attribute_store

    def check_preconditions(self, session: Session, lead_id: uuid.UUID, description: str) -> CRMLead:
        minimum = get_settings().promotion_min_justification_length
        if len((description or "").strip()) < minimum:
            raise PromotionRejectedError(
                PromotionReason.JUSTIFICATION_TOO_SHORT,
                f"Description must be at least {minimum} characters",
            )

        lead = session.get(CRMLead, lead_id)
        if lead is None:
            raise PromotionRejectedError(PromotionReason.LEAD_NOT_FOUND, "Lead not found")

        existing = self.investors.find_by_lead(session, lead.id)
        if existing is not None:
            raise PromotionRejectedError(
                PromotionReason.ALREADY_PROMOTED,
                "This lead has already been converted to an investor",
                investor_id=existing.id,
            )

        if lead.phone and self.investors.natural_key_conflicts(session, {"phone": lead.phone}):
            raise PromotionRejectedError(
                PromotionReason.PHONE_CONFLICT,
                "An investor with this phone number already exists",
            )
        return lead

    def promote(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, description: str) -> PromoteLeadResponse:
        with tracer.start_as_current_span("crm.promote_lead") as span:
            span.set_attribute("crm.lead_id", str(lead_id))
            try:
                lead = self.check_preconditions(session, lead_id, description)
            except PromotionRejectedError as exc:
                span.set_attribute("crm.promotion.reason", exc.reason.value)
                metrics.observe_promotion(exc.reason.value.lower())
                logger.info(
                    "promotion.rejected",
                    extra={"entity_type": "lead", "entity_id": str(lead_id), "reason": exc.reason.value},
                )
                raise

            try:
                investor, unmapped = self._apply(session, actor_user, lead, description.strip())
                session.commit()
            except Exception:
                session.rollback()
                metrics.observe_promotion("failed")
                logger.exception("promotion.failed", extra={"entity_type": "lead", "entity_id": str(lead_id)})
                raise

            span.set_attribute("crm.investor_id", str(investor.id))
            span.set_attribute("crm.promotion.unmapped_count", len(unmapped))

        metrics.observe_promotion("promoted")
        for name in unmapped:
            metrics.observe_promotion_unmapped_field(name)
        if unmapped:
            logger.warning(
                "promotion.unmapped_fields",
                extra={"entity_type": "lead", "entity_id": str(lead_id), "unmapped_fields": unmapped},
            )
        logger.info(
            "promotion.completed",
            extra={"entity_type": "lead", "entity_id": str(lead_id), "investor_id": str(investor.id)},
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.lead.promoted",
                "lead_id": str(lead_id),
                "investor_id": str(investor.id),
                "unmapped_fields": unmapped,
                "occurred_at": utcnow().isoformat(),
                "correlation_id": actor_user.correlation_id,
                "actor_user_id": actor_user.user_id,
            }
        )
        return PromoteLeadResponse(
            success=True,
            investor_id=investor.id,
            message="Lead successfully converted to investor",
            unmapped_fields=unmapped,
        )

    def _apply(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: CRMLead,
        description: str,
    ) -> tuple[CRMInvestor, list[str]]:
        investor = CRMInvestor(
            lead_id=lead.id,
            full_name=lead.full_name,
            email=lead.email,
            phone=lead.phone,
            source=lead.source or "other",
            status=NEW_INVESTOR_STATUS,
            priority=lead.priority or "medium",
            notes=description,
        )
        session.add(investor)
        session.flush()

        investor_fields = self.registry.list_active_fields(session, "investor")
        by_name = {definition.name: definition for definition in investor_fields}
        unmapped: list[str] = []
        for value in self.store.get_values(session, "lead", lead.id):
            name = value.field.name
            if name in SYSTEM_FIELD_NAMES or value.field.is_system_field:
                continue
            target = by_name.get(name)
            if target is None or target.is_system_field:
                unmapped.append(name)
                continue
            if value.value:
                # stored text is copied as-is; both kinds share the codec's storage format
                self.store.upsert_value(session, "investor", investor.id, target.id, value.value)

        assignment = self.leads.active_assignment(session, lead.id)
        if assignment is not None:
            session.add(
                CRMUserAssignment(
                    user_id=assignment.user_id,
                    entity_type="investor",
                    entity_id=investor.id,
                    assigned_by=actor_user.user_id,
                    is_active=True,
                )
            )

        subject = "Lead converted to Investor"
        self.leads.add_activity(
            session,
            lead.id,
            activity_type="converted",
            subject=subject,
            body=description,
            performed_by=actor_user.user_id,
        )
        self.investors.add_activity(
            session,
            investor.id,
            activity_type="converted",
            subject=subject,
            body=description,
            performed_by=actor_user.user_id,
        )

        before = {"status": lead.status}
        lead.status = PROMOTED_LEAD_STATUS
        lead.updated_at = utcnow()
        session.flush()

        self.store.refresh_system_mirrors(session, "lead", lead, self.registry.list_active_fields(session, "lead"))
        self.store.refresh_system_mirrors(session, "investor", investor, investor_fields)

        audit.record(
            actor_user.user_id,
            "lead",
            str(lead.id),
            "promote",
            before,
            {"status": lead.status, "investor_id": str(investor.id)},
            actor_user.correlation_id,
        )
        return investor, unmapped


promotion_service = PromotionService()

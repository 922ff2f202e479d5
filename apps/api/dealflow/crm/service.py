from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, ClassVar

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy import Select, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealflow import audit, events
from dealflow.core.config import get_settings
from dealflow.crm import codec
from dealflow.crm.models import CRMActivity, CRMFieldDefinition, CRMInvestor, CRMLead, CRMUserAssignment, utcnow
from dealflow.crm.registry import FieldRegistryService, field_registry, is_system_field
from dealflow.crm.schemas import (
    InvestorCreate,
    InvestorRead,
    InvestorUpdate,
    LeadCreate,
    LeadRead,
    LeadUpdate,
)
from dealflow.crm.store import AttributeStore, attribute_store


logger = logging.getLogger("dealflow.crm.records")


@dataclass
class ActorUser:
    user_id: str
    roles: list[str] = field(default_factory=list)
    correlation_id: str | None = None


@dataclass
class NaturalKeyConflict:
    field: str
    value: str
    message: str


def constraint_field(exc: IntegrityError) -> str | None:
    """Best-effort column name for a unique violation, from the constraint name or message."""
    text = str(exc.orig) if exc.orig is not None else str(exc)
    for column in ("email", "phone", "lead_id"):
        if f"_{column}" in text or f".{column}" in text:
            return column
    return None


class RecordService:
    entity_type: ClassVar[str]
    model: ClassVar[type[Any]]
    read_model: ClassVar[type[BaseModel]]
    label: ClassVar[str]
    static_fields: ClassVar[tuple[str, ...]]
    defaults: ClassVar[dict[str, str]]

    def __init__(
        self,
        registry: FieldRegistryService | None = None,
        store: AttributeStore | None = None,
    ) -> None:
        self.registry = registry or field_registry
        self.store = store or attribute_store

    # lookups

    def get_entity(self, session: Session, entity_id: uuid.UUID) -> Any:
        entity = session.get(self.model, entity_id)
        if entity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{self.label} not found")
        return entity

    def find_by_natural_key(self, session: Session, values: dict[str, Any]) -> Any | None:
        raise NotImplementedError

    def natural_key_conflicts(
        self,
        session: Session,
        values: dict[str, Any],
        exclude_id: uuid.UUID | None = None,
    ) -> list[NaturalKeyConflict]:
        raise NotImplementedError

    def active_assignment(self, session: Session, entity_id: uuid.UUID) -> CRMUserAssignment | None:
        return session.scalar(
            select(CRMUserAssignment)
            .where(
                CRMUserAssignment.entity_type == self.entity_type,
                CRMUserAssignment.entity_id == entity_id,
                CRMUserAssignment.is_active.is_(True),
            )
            .order_by(CRMUserAssignment.created_at.desc())
        )

    def to_read(self, session: Session, entity: Any) -> BaseModel:
        read = self.read_model.model_validate(entity)
        assignment = self.active_assignment(session, entity.id)
        return read.model_copy(
            update={
                "custom_fields": self.store.get_display_values(session, self.entity_type, entity.id),
                "assigned_to": assignment.user_id if assignment is not None else None,
            }
        )

    # reads

    def get_record(self, session: Session, entity_id: uuid.UUID) -> BaseModel:
        return self.to_read(session, self.get_entity(session, entity_id))

    def list_records(
        self,
        session: Session,
        *,
        status_filter: str | None = None,
        q: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[BaseModel]:
        stmt: Select[tuple[Any]] = select(self.model)
        if status_filter:
            stmt = stmt.where(self.model.status == status_filter)
        if q:
            pattern = f"%{q.strip()}%"
            stmt = stmt.where(
                or_(self.model.full_name.ilike(pattern), self.model.email.ilike(pattern), self.model.phone.ilike(pattern))
            )
        stmt = stmt.order_by(self.model.created_at.desc()).offset(offset).limit(limit)
        return [self.to_read(session, entity) for entity in session.scalars(stmt).all()]

    # writes

    def create_record(self, session: Session, actor_user: ActorUser, dto: BaseModel) -> BaseModel:
        fields = self.registry.list_active_fields(session, self.entity_type)
        payload = dto.model_dump(exclude={"custom_fields", "assigned_to"})
        system_values, custom_values = self._split_custom_fields(fields, dto.custom_fields)
        native = self._native_values(payload, system_values, fill_defaults=True)

        self._validate(fields, native, custom_values)
        self._raise_on_conflicts(self.natural_key_conflicts(session, native))

        entity = self.model(**native)
        try:
            session.add(entity)
            session.flush()
            self.store.replace_all_values(
                session,
                self.entity_type,
                entity.id,
                self._encoded(fields, custom_values),
            )
            self.store.refresh_system_mirrors(session, self.entity_type, entity, fields)
            if dto.assigned_to:
                self._assign(session, actor_user, entity.id, dto.assigned_to)
            after = self._snapshot(entity)
            audit.record(actor_user.user_id, self.entity_type, str(entity.id), "create", None, after, actor_user.correlation_id)
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise self._conflict_from_integrity_error(exc, native) from exc
        except Exception:
            session.rollback()
            raise

        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"crm.{self.entity_type}.created",
                "entity_type": self.entity_type,
                "entity_id": str(entity.id),
                "occurred_at": utcnow().isoformat(),
                "correlation_id": actor_user.correlation_id,
            }
        )
        logger.info("record.created", extra={"entity_type": self.entity_type, "entity_id": str(entity.id)})
        return self.to_read(session, entity)

    def update_record(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        dto: BaseModel,
    ) -> BaseModel:
        entity = self.get_entity(session, entity_id)
        before = self._snapshot(entity)
        fields = self.registry.list_active_fields(session, self.entity_type)
        payload = dto.model_dump(exclude_unset=True, exclude={"custom_fields", "assigned_to"})
        system_values, custom_values = self._split_custom_fields(fields, dto.custom_fields)
        native = self._native_values(payload, system_values, fill_defaults=False)
        if native.get("full_name") is None:
            native.pop("full_name", None)

        merged = {**before, **native}
        self._validate(fields, merged, custom_values)
        self._raise_on_conflicts(self.natural_key_conflicts(session, native, exclude_id=entity.id))

        try:
            for key, value in native.items():
                setattr(entity, key, value)
            entity.updated_at = utcnow()
            session.flush()
            # full replace: values missing from the payload are removed
            self.store.replace_all_values(session, self.entity_type, entity.id, self._encoded(fields, custom_values))
            self.store.refresh_system_mirrors(session, self.entity_type, entity, fields)
            if "assigned_to" in dto.model_fields_set:
                self._assign(session, actor_user, entity.id, dto.assigned_to)
            audit.record(
                actor_user.user_id,
                self.entity_type,
                str(entity.id),
                "update",
                before,
                self._snapshot(entity),
                actor_user.correlation_id,
            )
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise self._conflict_from_integrity_error(exc, native) from exc
        except Exception:
            session.rollback()
            raise

        session.refresh(entity)
        return self.to_read(session, entity)

    def delete_record(self, session: Session, actor_user: ActorUser, entity_id: uuid.UUID) -> None:
        entity = self.get_entity(session, entity_id)
        before = self._snapshot(entity)
        try:
            # crm_field_value is shared by every record kind, so no FK can cascade this
            self.store.delete_values_for_entity(session, self.entity_type, entity.id)
            for assignment in session.scalars(
                select(CRMUserAssignment).where(
                    CRMUserAssignment.entity_type == self.entity_type,
                    CRMUserAssignment.entity_id == entity.id,
                )
            ).all():
                session.delete(assignment)
            session.delete(entity)
            audit.record(actor_user.user_id, self.entity_type, str(entity_id), "delete", before, None, actor_user.correlation_id)
            session.commit()
        except Exception:
            session.rollback()
            raise

    def apply_static_values(self, entity: Any, values: dict[str, Any]) -> None:
        for key in self.static_fields:
            if key in values and values[key] not in (None, ""):
                setattr(entity, key, values[key])

    def add_activity(
        self,
        session: Session,
        entity_id: uuid.UUID,
        *,
        activity_type: str,
        subject: str,
        body: str | None,
        performed_by: str | None,
        completed: bool = True,
    ) -> CRMActivity:
        now = utcnow()
        activity = CRMActivity(
            entity_type=self.entity_type,
            entity_id=entity_id,
            activity_type=activity_type,
            subject=subject,
            body=body,
            status="completed" if completed else "open",
            performed_by=performed_by,
            completed_at=now if completed else None,
        )
        session.add(activity)
        session.flush()
        return activity

    # helpers

    def _split_custom_fields(
        self,
        fields: list[CRMFieldDefinition],
        custom_fields: dict[str, Any],
    ) -> tuple[dict[str, Any], dict[int, Any]]:
        system_values: dict[str, Any] = {}
        custom_values: dict[int, Any] = {}
        unknown: list[str] = []
        for key, value in (custom_fields or {}).items():
            definition = self.registry.resolve_field_key(fields, key)
            if definition is None:
                unknown.append(key)
            elif is_system_field(definition):
                system_values[definition.name] = value
            else:
                custom_values[definition.id] = value
        if unknown:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"unknown custom fields: {', '.join(sorted(unknown))}",
            )
        return system_values, custom_values

    def _native_values(
        self,
        payload: dict[str, Any],
        system_values: dict[str, Any],
        *,
        fill_defaults: bool,
    ) -> dict[str, Any]:
        native = {key: value for key, value in payload.items() if key in self.static_fields}
        for name, value in system_values.items():
            if not codec.is_blank(value):
                native[name] = str(value).strip()
        for key in ("email", "phone"):
            if isinstance(native.get(key), str):
                native[key] = native[key].strip() or None
        if fill_defaults:
            for key, default in self.defaults.items():
                if codec.is_blank(native.get(key)):
                    native[key] = default
        else:
            for key in self.defaults:
                if key in native and codec.is_blank(native[key]):
                    native.pop(key)
        return native

    def _validate(
        self,
        fields: list[CRMFieldDefinition],
        native: dict[str, Any],
        custom_values: dict[int, Any],
    ) -> None:
        strict = get_settings().strict_choice_validation
        errors: list[dict[str, str]] = []
        missing: list[str] = []
        for definition in fields:
            if is_system_field(definition):
                raw = native.get(definition.name)
                if codec.is_blank(raw):
                    continue
            else:
                raw = custom_values.get(definition.id)
            error = codec.validate_value(definition, raw, strict_choices=strict)
            if error is not None:
                errors.append(error.to_dict())
                if error.kind == codec.ValidationKind.REQUIRED_MISSING:
                    missing.append(definition.label)
                continue
            for token in codec.unknown_choice_tokens(definition, raw):
                logger.warning(
                    "field.unknown_option",
                    extra={"entity_type": self.entity_type, "field_name": definition.name, "error": token},
                )
        if errors:
            message = "Missing required fields" if missing and len(missing) == len(errors) else "Validation failed"
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"message": message, "errors": errors, "missingFields": missing},
            )

    def _encoded(self, fields: list[CRMFieldDefinition], custom_values: dict[int, Any]) -> dict[int, str | None]:
        by_id = {definition.id: definition for definition in fields}
        return {field_id: codec.encode(by_id[field_id], raw) for field_id, raw in custom_values.items()}

    def _raise_on_conflicts(self, conflicts: list[NaturalKeyConflict]) -> None:
        if conflicts:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=conflicts[0].message)

    def _conflict_from_integrity_error(self, exc: IntegrityError, values: dict[str, Any]) -> HTTPException:
        column = constraint_field(exc)
        if column in ("email", "phone"):
            return HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=self._conflict_message(column, str(values.get(column) or "")),
            )
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"{self.label} conflicts with an existing record")

    def _conflict_message(self, column: str, value: str) -> str:
        noun = "email" if column == "email" else "phone number"
        article = "An" if self.entity_type == "investor" else "A"
        return f"{article} {self.entity_type} with this {noun} already exists"

    def _assign(self, session: Session, actor_user: ActorUser, entity_id: uuid.UUID, user_id: str | None) -> None:
        current = self.active_assignment(session, entity_id)
        if current is not None:
            if user_id and current.user_id == user_id:
                return
            current.is_active = False
        if user_id:
            session.add(
                CRMUserAssignment(
                    user_id=user_id,
                    entity_type=self.entity_type,
                    entity_id=entity_id,
                    assigned_by=actor_user.user_id,
                    is_active=True,
                )
            )
        session.flush()

    def _snapshot(self, entity: Any) -> dict[str, Any]:
        return {key: getattr(entity, key) for key in self.static_fields}


class LeadService(RecordService):
    entity_type = "lead"
    model = CRMLead
    read_model = LeadRead
    label = "Lead"
    static_fields = ("full_name", "email", "phone", "source", "status", "priority", "notes_text")
    defaults = {"source": "website", "status": "new"}

    def find_by_natural_key(self, session: Session, values: dict[str, Any]) -> CRMLead | None:
        email = values.get("email")
        if not email:
            return None
        return session.scalar(select(CRMLead).where(CRMLead.email == email))

    def natural_key_conflicts(
        self,
        session: Session,
        values: dict[str, Any],
        exclude_id: uuid.UUID | None = None,
    ) -> list[NaturalKeyConflict]:
        conflicts: list[NaturalKeyConflict] = []
        for column in ("email", "phone"):
            value = values.get(column)
            if not value:
                continue
            stmt = select(CRMLead.id).where(getattr(CRMLead, column) == value)
            if exclude_id is not None:
                stmt = stmt.where(CRMLead.id != exclude_id)
            if session.scalar(stmt) is not None:
                conflicts.append(NaturalKeyConflict(column, str(value), self._conflict_message(column, str(value))))
        return conflicts

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        return self.create_record(session, actor_user, dto)  # type: ignore[return-value]

    def update_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        return self.update_record(session, actor_user, lead_id, dto)  # type: ignore[return-value]


class InvestorService(RecordService):
    entity_type = "investor"
    model = CRMInvestor
    read_model = InvestorRead
    label = "Investor"
    static_fields = (
        "full_name",
        "email",
        "phone",
        "company",
        "position",
        "source",
        "status",
        "priority",
        "budget",
        "timeline",
        "notes",
    )
    defaults = {"source": "other", "status": "potential"}

    def find_by_natural_key(self, session: Session, values: dict[str, Any]) -> CRMInvestor | None:
        email = values.get("email")
        if email:
            match = session.scalar(
                select(CRMInvestor).where(CRMInvestor.email == email).order_by(CRMInvestor.created_at.asc())
            )
            if match is not None:
                return match
        phone = values.get("phone")
        if phone:
            return session.scalar(select(CRMInvestor).where(CRMInvestor.phone == phone))
        return None

    def find_by_lead(self, session: Session, lead_id: uuid.UUID) -> CRMInvestor | None:
        return session.scalar(select(CRMInvestor).where(CRMInvestor.lead_id == lead_id))

    def natural_key_conflicts(
        self,
        session: Session,
        values: dict[str, Any],
        exclude_id: uuid.UUID | None = None,
    ) -> list[NaturalKeyConflict]:
        phone = values.get("phone")
        if not phone:
            return []
        stmt = select(CRMInvestor.id).where(CRMInvestor.phone == phone)
        if exclude_id is not None:
            stmt = stmt.where(CRMInvestor.id != exclude_id)
        if session.scalar(stmt) is None:
            return []
        return [NaturalKeyConflict("phone", str(phone), self._conflict_message("phone", str(phone)))]

    def create_investor(self, session: Session, actor_user: ActorUser, dto: InvestorCreate) -> InvestorRead:
        return self.create_record(session, actor_user, dto)  # type: ignore[return-value]

    def update_investor(
        self,
        session: Session,
        actor_user: ActorUser,
        investor_id: uuid.UUID,
        dto: InvestorUpdate,
    ) -> InvestorRead:
        return self.update_record(session, actor_user, investor_id, dto)  # type: ignore[return-value]


lead_service = LeadService()
investor_service = InvestorService()
RECORD_SERVICES: dict[str, RecordService] = {"lead": lead_service, "investor": investor_service}


def record_service_for(entity_type: str) -> RecordService:
    service = RECORD_SERVICES.get(entity_type)
    if service is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid entity_type")
    return service

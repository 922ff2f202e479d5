from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from fastapi import HTTPException, status
from sqlalchemy import Select, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from dealflow import audit
from dealflow.crm.codec import CHOICE_TYPES
from dealflow.crm.models import CRMFieldDefinition, CRMFieldOption, CRMFieldValue, CRMFormSection, utcnow
from dealflow.crm.schemas import (
    FieldDefinitionCreate,
    FieldDefinitionRead,
    FieldDefinitionUpdate,
    FieldOptionInput,
    FieldSectionAssignment,
    FormSectionRead,
    FormSectionUpdate,
)


logger = logging.getLogger("dealflow.crm.fields")

ENTITY_TYPES = ("lead", "investor")
SYSTEM_FIELD_NAMES = frozenset({"source", "status", "priority"})
FIELD_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def validate_entity_type(entity_type: str) -> None:
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="invalid entity_type")


def is_system_field(field: CRMFieldDefinition) -> bool:
    """Fields whose data lives in a native record column."""
    return field.is_system_field or field.name in SYSTEM_FIELD_NAMES


def exclude_system_fields(fields: Iterable[CRMFieldDefinition]) -> list[CRMFieldDefinition]:
    return [field for field in fields if not is_system_field(field)]


def _definition_snapshot(definition: CRMFieldDefinition) -> dict[str, object]:
    return {
        "name": definition.name,
        "label": definition.label,
        "field_type": definition.field_type,
        "is_required": definition.is_required,
        "is_active": definition.is_active,
        "section_key": definition.section_key,
        "sort_order": definition.sort_order,
        "options": [option.value for option in definition.options],
    }


class FieldRegistryService:
    def list_active_fields(self, session: Session, entity_type: str) -> list[CRMFieldDefinition]:
        validate_entity_type(entity_type)
        stmt = self._base_query(entity_type).where(CRMFieldDefinition.is_active.is_(True))
        return list(session.scalars(stmt).all())

    def list_fields(self, session: Session, entity_type: str, include_inactive: bool = True) -> list[FieldDefinitionRead]:
        validate_entity_type(entity_type)
        stmt = self._base_query(entity_type)
        if not include_inactive:
            stmt = stmt.where(CRMFieldDefinition.is_active.is_(True))
        return [FieldDefinitionRead.model_validate(item) for item in session.scalars(stmt).all()]

    def get_definition(self, session: Session, entity_type: str, field_id: int) -> CRMFieldDefinition:
        validate_entity_type(entity_type)
        definition = session.scalar(
            select(CRMFieldDefinition)
            .where(CRMFieldDefinition.entity_type == entity_type, CRMFieldDefinition.id == field_id)
            .options(selectinload(CRMFieldDefinition.options))
        )
        if definition is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="field definition not found")
        return definition

    def get_field(self, session: Session, entity_type: str, field_id: int) -> FieldDefinitionRead:
        return FieldDefinitionRead.model_validate(self.get_definition(session, entity_type, field_id))

    def resolve_field_key(
        self,
        fields: Iterable[CRMFieldDefinition],
        key: str | int,
    ) -> CRMFieldDefinition | None:
        """Find a definition by numeric id (int or digit string) or by system field name."""
        candidates = list(fields)
        raw = str(key).strip()
        if raw.isdigit():
            field_id = int(raw)
            for definition in candidates:
                if definition.id == field_id:
                    return definition
            return None
        for definition in candidates:
            if definition.name == raw and is_system_field(definition):
                return definition
        return None

    def create_field(
        self,
        session: Session,
        entity_type: str,
        dto: FieldDefinitionCreate,
        actor_user_id: str,
    ) -> FieldDefinitionRead:
        validate_entity_type(entity_type)
        name = dto.name.strip()
        if not FIELD_NAME_RE.match(name):
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="name must be snake_case")
        if name in SYSTEM_FIELD_NAMES:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"{name} is a system field name")
        if dto.options and dto.field_type not in CHOICE_TYPES:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="options are only allowed for choice fields",
            )

        existing = session.scalar(
            select(CRMFieldDefinition.id).where(
                CRMFieldDefinition.entity_type == entity_type,
                CRMFieldDefinition.name == name,
            )
        )
        if existing is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="field definition already exists")
        label = dto.label.strip()
        self._ensure_label_available(session, entity_type, label)

        definition = CRMFieldDefinition(
            entity_type=entity_type,
            name=name,
            label=label,
            field_type=dto.field_type,
            is_required=dto.is_required,
            is_active=dto.is_active,
            is_system_field=False,
            section_key=dto.section_key,
            sort_order=self._next_sort_order(session, entity_type),
            placeholder=dto.placeholder or None,
            help_text=dto.help_text or None,
            default_value=dto.default_value or None,
        )
        if dto.field_type in CHOICE_TYPES and dto.options:
            definition.options = self._build_options(dto.options)
        session.add(definition)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="field definition already exists")

        audit.record(actor_user_id, f"{entity_type}_field", str(definition.id), "create", None, _definition_snapshot(definition))
        session.commit()
        session.refresh(definition)
        logger.info("field.created", extra={"entity_type": entity_type, "field_id": definition.id, "field_name": name})
        return FieldDefinitionRead.model_validate(definition)

    def update_field(
        self,
        session: Session,
        entity_type: str,
        field_id: int,
        dto: FieldDefinitionUpdate,
        actor_user_id: str,
    ) -> FieldDefinitionRead:
        definition = self.get_definition(session, entity_type, field_id)
        before = _definition_snapshot(definition)
        payload = dto.model_dump(exclude_unset=True)

        field_type = payload.get("field_type") or definition.field_type
        if definition.is_system_field and field_type != definition.field_type:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Cannot change the type of system fields",
            )
        if payload.get("label") is not None:
            payload["label"] = payload["label"].strip()
            if payload["label"] != definition.label:
                self._ensure_label_available(session, entity_type, payload["label"], exclude_id=definition.id)
        for key in ["label", "field_type", "is_required", "is_active", "section_key", "placeholder", "help_text", "default_value"]:
            if key not in payload:
                continue
            if payload[key] is None and key in {"label", "field_type", "is_required", "is_active"}:
                continue
            setattr(definition, key, payload[key])

        if "options" in payload:
            # option lists are replaced wholesale, never diffed
            definition.options.clear()
            session.flush()
            if field_type in CHOICE_TYPES and dto.options:
                definition.options.extend(self._build_options(dto.options))
        elif field_type not in CHOICE_TYPES and definition.options:
            definition.options.clear()

        definition.updated_at = utcnow()
        session.add(definition)
        session.flush()
        audit.record(actor_user_id, f"{entity_type}_field", str(definition.id), "update", before, _definition_snapshot(definition))
        session.commit()
        session.refresh(definition)
        return FieldDefinitionRead.model_validate(definition)

    def toggle_field(self, session: Session, entity_type: str, field_id: int, actor_user_id: str) -> FieldDefinitionRead:
        definition = self.get_definition(session, entity_type, field_id)
        definition.is_active = not definition.is_active
        definition.updated_at = utcnow()
        audit.record(
            actor_user_id,
            f"{entity_type}_field",
            str(definition.id),
            "toggle",
            {"is_active": not definition.is_active},
            {"is_active": definition.is_active},
        )
        session.commit()
        session.refresh(definition)
        return FieldDefinitionRead.model_validate(definition)

    def delete_field(self, session: Session, entity_type: str, field_id: int, actor_user_id: str) -> None:
        definition = self.get_definition(session, entity_type, field_id)
        if definition.is_system_field:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot delete system fields")

        before = _definition_snapshot(definition)
        session.execute(delete(CRMFieldValue).where(CRMFieldValue.field_id == definition.id))
        session.delete(definition)
        audit.record(actor_user_id, f"{entity_type}_field", str(field_id), "delete", before, None)
        session.commit()
        logger.info("field.deleted", extra={"entity_type": entity_type, "field_id": field_id, "field_name": before["name"]})

    def reorder_fields(
        self,
        session: Session,
        entity_type: str,
        field_ids: list[int],
        actor_user_id: str,
    ) -> list[FieldDefinitionRead]:
        validate_entity_type(entity_type)
        definitions = {
            item.id: item
            for item in session.scalars(
                select(CRMFieldDefinition).where(
                    CRMFieldDefinition.entity_type == entity_type,
                    CRMFieldDefinition.id.in_(field_ids),
                )
            ).all()
        }
        missing = [field_id for field_id in field_ids if field_id not in definitions]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"unknown field ids: {', '.join(str(item) for item in missing)}",
            )
        for index, field_id in enumerate(field_ids):
            definitions[field_id].sort_order = index
        audit.record(actor_user_id, f"{entity_type}_field", "*", "reorder", None, {"field_ids": field_ids})
        session.commit()
        return self.list_fields(session, entity_type)

    def assign_sections(
        self,
        session: Session,
        entity_type: str,
        assignments: list[FieldSectionAssignment],
        actor_user_id: str,
    ) -> list[FieldDefinitionRead]:
        validate_entity_type(entity_type)
        for assignment in assignments:
            definition = self.get_definition(session, entity_type, assignment.id)
            definition.section_key = assignment.section_key or None
        audit.record(
            actor_user_id,
            f"{entity_type}_field",
            "*",
            "assign_sections",
            None,
            {str(item.id): item.section_key for item in assignments},
        )
        session.commit()
        return self.list_fields(session, entity_type)

    def list_sections(self, session: Session, entity_type: str) -> list[FormSectionRead]:
        validate_entity_type(entity_type)
        rows = session.scalars(
            select(CRMFormSection)
            .where(CRMFormSection.entity_type == entity_type)
            .order_by(CRMFormSection.sort_order.asc(), CRMFormSection.id.asc())
        ).all()
        return [FormSectionRead.model_validate(row) for row in rows]

    def update_sections(
        self,
        session: Session,
        entity_type: str,
        updates: list[FormSectionUpdate],
        actor_user_id: str,
    ) -> list[FormSectionRead]:
        validate_entity_type(entity_type)
        for update in updates:
            section = session.scalar(
                select(CRMFormSection).where(CRMFormSection.entity_type == entity_type, CRMFormSection.id == update.id)
            )
            if section is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"form section not found: {update.id}")
            for key, value in update.model_dump(exclude_unset=True, exclude={"id"}).items():
                setattr(section, key, value)
        audit.record(actor_user_id, f"{entity_type}_form_section", "*", "update", None, {"count": len(updates)})
        session.commit()
        return self.list_sections(session, entity_type)

    def _base_query(self, entity_type: str) -> Select[tuple[CRMFieldDefinition]]:
        return (
            select(CRMFieldDefinition)
            .where(CRMFieldDefinition.entity_type == entity_type)
            .options(selectinload(CRMFieldDefinition.options))
            .order_by(CRMFieldDefinition.sort_order.asc(), CRMFieldDefinition.id.asc())
        )

    def _ensure_label_available(
        self,
        session: Session,
        entity_type: str,
        label: str,
        exclude_id: int | None = None,
    ) -> None:
        """CSV columns are keyed by label, so labels are unique per entity type."""
        stmt = select(CRMFieldDefinition.id).where(
            CRMFieldDefinition.entity_type == entity_type,
            CRMFieldDefinition.label == label,
        )
        if exclude_id is not None:
            stmt = stmt.where(CRMFieldDefinition.id != exclude_id)
        if session.scalar(stmt) is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"a field labelled {label} already exists")

    def _next_sort_order(self, session: Session, entity_type: str) -> int:
        current = session.scalar(
            select(func.max(CRMFieldDefinition.sort_order)).where(CRMFieldDefinition.entity_type == entity_type)
        )
        return (current or 0) + 1

    def _build_options(self, options: list[FieldOptionInput]) -> list[CRMFieldOption]:
        seen: set[str] = set()
        built: list[CRMFieldOption] = []
        for index, option in enumerate(options):
            value = option.value.strip()
            if value in seen:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"duplicate option value: {value}",
                )
            seen.add(value)
            built.append(
                CRMFieldOption(value=value, label=option.label.strip(), sort_order=index, is_active=option.is_active)
            )
        return built


field_registry = FieldRegistryService()

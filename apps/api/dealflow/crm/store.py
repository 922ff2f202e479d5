from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from dealflow.crm import codec
from dealflow.crm.models import CRMFieldDefinition, CRMFieldValue, utcnow
from dealflow.crm.registry import SYSTEM_FIELD_NAMES


class AttributeStore:
    """Custom field values, one row per (record, field definition).

    Writes only flush; the calling service owns the commit so a full-record
    replace and the record update land in the same transaction.
    """

    def get_values(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> list[CRMFieldValue]:
        stmt = (
            select(CRMFieldValue)
            .where(CRMFieldValue.entity_type == entity_type, CRMFieldValue.entity_id == entity_id)
            .options(selectinload(CRMFieldValue.field).selectinload(CRMFieldDefinition.options))
            .order_by(CRMFieldValue.id.asc())
        )
        return list(session.scalars(stmt).all())

    def get_display_values(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> dict[str, Any]:
        """Values keyed the way record payloads address them: field id, or name for system fields."""
        output: dict[str, Any] = {}
        for row in self.get_values(session, entity_type, entity_id):
            key = row.field.name if row.field.is_system_field else str(row.field_id)
            output[key] = codec.read_value(row.field, row.value)
        return output

    def upsert_value(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        field_id: int,
        formatted: str | None,
    ) -> CRMFieldValue | None:
        existing = session.scalar(
            select(CRMFieldValue).where(CRMFieldValue.entity_id == entity_id, CRMFieldValue.field_id == field_id)
        )
        if formatted is None or formatted == "":
            if existing is not None:
                session.delete(existing)
                session.flush()
            return None

        if existing is None:
            existing = CRMFieldValue(entity_type=entity_type, entity_id=entity_id, field_id=field_id, value=formatted)
        else:
            existing.value = formatted
            existing.updated_at = utcnow()
        session.add(existing)
        session.flush()
        return existing

    def replace_all_values(
        self,
        session: Session,
        entity_type: str,
        entity_id: uuid.UUID,
        values: Mapping[int, str | None],
    ) -> list[CRMFieldValue]:
        self.delete_values_for_entity(session, entity_type, entity_id)
        rows = [
            CRMFieldValue(entity_type=entity_type, entity_id=entity_id, field_id=field_id, value=formatted)
            for field_id, formatted in values.items()
            if formatted is not None and formatted != ""
        ]
        session.add_all(rows)
        session.flush()
        return rows

    def delete_values_for_entity(self, session: Session, entity_type: str, entity_id: uuid.UUID) -> int:
        existing = session.scalars(
            select(CRMFieldValue).where(CRMFieldValue.entity_type == entity_type, CRMFieldValue.entity_id == entity_id)
        ).all()
        for row in existing:
            session.delete(row)
        session.flush()
        return len(existing)

    def refresh_system_mirrors(
        self,
        session: Session,
        entity_type: str,
        entity: Any,
        fields: Iterable[CRMFieldDefinition],
    ) -> None:
        """Copy native source/status/priority columns into their field value rows."""
        for field in fields:
            if not field.is_system_field or field.name not in SYSTEM_FIELD_NAMES:
                continue
            native = getattr(entity, field.name, None)
            formatted = None if codec.is_blank(native) else codec.encode(field, native)
            self.upsert_value(session, entity_type, entity.id, field.id, formatted)


attribute_store = AttributeStore()

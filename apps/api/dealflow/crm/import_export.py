from __future__ import annotations

import csv
import io
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealflow import events, metrics
from dealflow.core.config import get_settings
from dealflow.crm import codec
from dealflow.crm.models import CRMFieldDefinition, utcnow
from dealflow.crm.registry import FieldRegistryService, exclude_system_fields, field_registry, validate_entity_type
from dealflow.crm.service import ActorUser, RecordService, constraint_field, record_service_for
from dealflow.crm.store import AttributeStore, attribute_store


logger = logging.getLogger("dealflow.crm.import")
tracer = trace.get_tracer("dealflow.crm.import_export")

IMPORT_STATIC_FIELDS: dict[str, tuple[str, ...]] = {
    "lead": ("full_name", "email", "phone", "source", "status", "priority", "notes_text"),
    "investor": (
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
    ),
}

EXPORT_STATIC_COLUMNS: dict[str, tuple[str, ...]] = {
    "lead": (
        "full_name",
        "email",
        "phone",
        "source",
        "status",
        "priority",
        "assigned_to",
        "notes_text",
        "created_at",
        "updated_at",
    ),
    "investor": (
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
        "assigned_to",
        "notes",
        "created_at",
        "updated_at",
    ),
}

TEMPLATE_EXAMPLE_ROWS: dict[str, tuple[dict[str, str], dict[str, str]]] = {
    "lead": (
        {
            "full_name": "John Doe",
            "email": "john.doe@example.com",
            "phone": "+905551234567",
            "source": "website",
            "status": "new",
            "priority": "high",
            "notes_text": "Interested in our premium package",
        },
        {
            "full_name": "Jane Smith",
            "email": "jane.smith@example.com",
            "phone": "+905559876543",
            "source": "referral",
            "status": "contacted",
            "priority": "medium",
            "notes_text": "Follow up next week",
        },
    ),
    "investor": (
        {
            "full_name": "John",
            "email": "john.investor@example.com",
            "phone": "+905551234567",
            "company": "Tech Corp Inc.",
            "position": "CEO",
            "source": "referral",
            "status": "active",
            "priority": "high",
            "budget": "$100,000",
            "timeline": "Q1 2025",
            "notes": "Interested in Series A funding",
        },
        {
            "full_name": "Jane",
            "email": "jane.capital@example.com",
            "phone": "+905559876543",
            "company": "Venture Partners",
            "position": "Managing Partner",
            "source": "social_media",
            "status": "interested",
            "priority": "medium",
            "budget": "$250,000",
            "timeline": "Q2 2025",
            "notes": "Focus on SaaS investments",
        },
    ),
}


@dataclass
class ImportRowError:
    row: int
    field: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "field": self.field, "message": self.message}


@dataclass
class ImportResult:
    total_rows: int = 0
    success_count: int = 0
    errors: list[ImportRowError] = field(default_factory=list)
    missing_columns: list[str] = field(default_factory=list)
    unknown_columns: list[str] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def success(self) -> bool:
        return self.error_count == 0

    def to_response(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "totalRows": self.total_rows,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "errors": [error.to_dict() for error in self.errors],
            "missingColumns": self.missing_columns,
            "unknownColumns": self.unknown_columns,
        }


def read_csv(content: bytes | str) -> tuple[list[str], list[dict[str, str]]]:
    """Header and data rows of an RFC 4180 file; cells are trimmed and blank lines dropped."""
    text = content.decode("utf-8-sig") if isinstance(content, bytes) else content.lstrip("\ufeff")
    reader = csv.DictReader(io.StringIO(text, newline=""))
    header = [name.strip() for name in (reader.fieldnames or [])]
    if not header:
        return [], []
    reader.fieldnames = header

    rows: list[dict[str, str]] = []
    for raw_row in reader:
        # DictReader stores overflow cells under the None key
        row = {
            key: (value.strip() if isinstance(value, str) else "")
            for key, value in raw_row.items()
            if key is not None
        }
        if all(value == "" for value in row.values()):
            continue
        rows.append(row)
    return header, rows


def write_csv(fieldnames: list[str], rows: list[dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.DictWriter(
        output,
        fieldnames=fieldnames,
        extrasaction="ignore",
        quoting=csv.QUOTE_MINIMAL,
        lineterminator="\n",
    )
    writer.writeheader()
    for row in rows:
        writer.writerow(row)
    return output.getvalue()


def check_header(header: list[str], expected: list[str]) -> tuple[list[str], list[str]]:
    present = set(header)
    wanted = set(expected)
    missing = [column for column in expected if column not in present]
    unknown = [column for column in header if column not in wanted]
    return missing, unknown


def _template_value(definition: CRMFieldDefinition) -> str:
    options = codec.active_option_values(definition)
    field_type = definition.field_type
    if field_type == "text":
        return f"Example {definition.label}"
    if field_type == "textarea":
        return f"This is an example for {definition.label}"
    if field_type == "email":
        return "example@email.com"
    if field_type == "phone":
        return "+905551234567"
    if field_type == "url":
        return "https://example.com"
    if field_type == "number":
        return "100"
    if field_type == "date":
        return "2025-01-15"
    if field_type in codec.SINGLE_CHOICE_TYPES:
        return options[0] if options else "Option 1"
    if field_type in codec.MULTI_CHOICE_TYPES:
        return codec.CSV_MULTI_VALUE_JOINER.join(options[:2]) if options else "Option 1; Option 2"
    return "Example value"


class ImportExportService:
    def __init__(
        self,
        registry: FieldRegistryService | None = None,
        store: AttributeStore | None = None,
    ) -> None:
        self.registry = registry or field_registry
        self.store = store or attribute_store

    def dynamic_fields(self, session: Session, entity_type: str) -> list[CRMFieldDefinition]:
        return exclude_system_fields(self.registry.list_active_fields(session, entity_type))

    def expected_columns(self, session: Session, entity_type: str) -> list[str]:
        validate_entity_type(entity_type)
        labels = [definition.label for definition in self.dynamic_fields(session, entity_type)]
        return list(IMPORT_STATIC_FIELDS[entity_type]) + labels

    # import

    def import_csv(self, session: Session, actor_user: ActorUser, entity_type: str, content: bytes | str) -> ImportResult:
        validate_entity_type(entity_type)
        settings = get_settings()
        records = record_service_for(entity_type)

        try:
            header, rows = read_csv(content)
        except (UnicodeDecodeError, csv.Error) as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"unreadable CSV file: {exc}") from exc
        if not header:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="CSV file has no header row")
        if len(rows) > settings.import_max_rows:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"CSV file exceeds {settings.import_max_rows} rows",
            )

        all_fields = self.registry.list_active_fields(session, entity_type)
        dynamic_fields = exclude_system_fields(all_fields)
        by_label: dict[str, CRMFieldDefinition] = {}
        for definition in dynamic_fields:
            by_label.setdefault(definition.label, definition)

        missing, unknown = check_header(header, self.expected_columns(session, entity_type))
        result = ImportResult(total_rows=len(rows), missing_columns=missing, unknown_columns=unknown)
        started = time.perf_counter()
        failed_rows = 0
        field_errors = 0

        with tracer.start_as_current_span("crm.import") as span:
            span.set_attribute("crm.entity_type", entity_type)
            span.set_attribute("crm.import.total_rows", len(rows))

            for index, row in enumerate(rows, start=2):
                row_errors: list[ImportRowError] = []
                completed = False
                try:
                    completed = self._import_row(
                        session,
                        actor_user,
                        records,
                        index,
                        row,
                        all_fields,
                        by_label,
                        row_errors,
                        strict_choices=settings.strict_choice_validation,
                    )
                    if completed:
                        session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    completed = False
                    column = constraint_field(exc)
                    if column in ("email", "phone"):
                        row_errors.append(ImportRowError(index, column, f"Duplicate {column}: {row.get(column, '')}"))
                    else:
                        row_errors.append(ImportRowError(index, "general", str(exc.orig or exc)))
                except HTTPException as exc:
                    session.rollback()
                    completed = False
                    row_errors.append(ImportRowError(index, "general", str(exc.detail)))
                except Exception as exc:
                    session.rollback()
                    completed = False
                    row_errors.append(ImportRowError(index, "general", str(exc)))

                if completed:
                    result.success_count += 1
                else:
                    failed_rows += 1
                field_errors += len(row_errors)
                for error in row_errors:
                    logger.warning(
                        "import.row_failed" if not completed else "import.field_rejected",
                        extra={"entity_type": entity_type, "row": error.row, "field": error.field, "error": error.message},
                    )
                result.errors.extend(row_errors)

            span.set_attribute("crm.import.success_count", result.success_count)
            span.set_attribute("crm.import.error_count", result.error_count)

        metrics.observe_import_batch(
            entity_type,
            success_rows=result.success_count,
            failed_rows=failed_rows,
            field_errors=field_errors,
            duration=time.perf_counter() - started,
        )
        logger.info(
            "import.completed",
            extra={
                "entity_type": entity_type,
                "total_rows": result.total_rows,
                "success_count": result.success_count,
                "error_count": result.error_count,
            },
        )
        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": "crm.import.completed",
                "entity_type": entity_type,
                "total_rows": result.total_rows,
                "success_count": result.success_count,
                "error_count": result.error_count,
                "occurred_at": utcnow().isoformat(),
                "correlation_id": actor_user.correlation_id,
                "actor_user_id": actor_user.user_id,
            }
        )
        return result

    def _import_row(
        self,
        session: Session,
        actor_user: ActorUser,
        records: RecordService,
        index: int,
        row: dict[str, str],
        all_fields: list[CRMFieldDefinition],
        by_label: dict[str, CRMFieldDefinition],
        row_errors: list[ImportRowError],
        *,
        strict_choices: bool,
    ) -> bool:
        entity_type = records.entity_type
        static = {key: row[key] for key in IMPORT_STATIC_FIELDS[entity_type] if row.get(key)}

        if entity_type == "lead" and not static.get("email"):
            row_errors.append(ImportRowError(index, "email", "Email is required"))
            return False
        if entity_type == "investor" and not static.get("email") and not static.get("phone"):
            row_errors.append(ImportRowError(index, "email/phone", "Either email or phone is required"))
            return False

        entity = records.find_by_natural_key(session, static)
        conflicts = records.natural_key_conflicts(session, static, exclude_id=entity.id if entity is not None else None)
        if conflicts:
            for conflict in conflicts:
                row_errors.append(ImportRowError(index, conflict.field, f"Duplicate {conflict.field}: {conflict.value}"))
            return False

        if entity is None:
            entity = records.model(**{**records.defaults, "full_name": "", **static})
            session.add(entity)
        else:
            records.apply_static_values(entity, static)
            entity.updated_at = utcnow()
        session.flush()

        for label, definition in by_label.items():
            # an absent column reads as blank: required fields still fail, nothing is written
            raw = row.get(label, "")
            error = codec.validate_value(definition, raw, strict_choices=strict_choices)
            if error is not None:
                row_errors.append(ImportRowError(index, definition.label, error.message))
                continue
            if codec.is_blank(raw):
                continue
            for token in codec.unknown_choice_tokens(definition, raw):
                logger.warning(
                    "field.unknown_option",
                    extra={"entity_type": entity_type, "row": index, "field_name": definition.name, "error": token},
                )
            self.store.upsert_value(session, entity_type, entity.id, definition.id, codec.encode(definition, raw))

        self.store.refresh_system_mirrors(session, entity_type, entity, all_fields)
        return True

    # export

    def export_csv(self, session: Session, entity_type: str) -> str:
        validate_entity_type(entity_type)
        records = record_service_for(entity_type)
        dynamic_fields = self.dynamic_fields(session, entity_type)
        static_columns = list(EXPORT_STATIC_COLUMNS[entity_type])
        fieldnames = static_columns + [definition.label for definition in dynamic_fields]

        entities = session.scalars(select(records.model).order_by(records.model.created_at.desc())).all()
        rows: list[dict[str, Any]] = []
        with tracer.start_as_current_span("crm.export") as span:
            span.set_attribute("crm.entity_type", entity_type)
            for entity in entities:
                row: dict[str, Any] = {}
                for column in static_columns:
                    if column == "assigned_to":
                        assignment = records.active_assignment(session, entity.id)
                        row[column] = assignment.user_id if assignment is not None else ""
                    elif column in ("created_at", "updated_at"):
                        row[column] = getattr(entity, column).isoformat()
                    else:
                        row[column] = getattr(entity, column) or ""
                stored = {value.field_id: value.value for value in self.store.get_values(session, entity_type, entity.id)}
                for definition in dynamic_fields:
                    row[definition.label] = codec.format_for_csv(definition, stored.get(definition.id))
                rows.append(row)
            span.set_attribute("crm.export.row_count", len(rows))

        metrics.observe_export_rows(entity_type, len(rows))
        return write_csv(fieldnames, rows)

    def export_template(self, session: Session, entity_type: str) -> str:
        validate_entity_type(entity_type)
        dynamic_fields = self.dynamic_fields(session, entity_type)
        fieldnames = self.expected_columns(session, entity_type)
        rows = []
        for example in TEMPLATE_EXAMPLE_ROWS[entity_type]:
            row = dict(example)
            for definition in dynamic_fields:
                row.setdefault(definition.label, _template_value(definition))
            rows.append(row)
        return write_csv(fieldnames, rows)


import_export_service = ImportExportService()

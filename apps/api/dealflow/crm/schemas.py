from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


EntityType = Literal["lead", "investor"]
FieldType = Literal[
    "text",
    "textarea",
    "email",
    "phone",
    "url",
    "number",
    "date",
    "select",
    "multiselect",
    "multiselect_dropdown",
]


class FieldOptionInput(BaseModel):
    value: str = Field(min_length=1)
    label: str = Field(min_length=1)
    is_active: bool = True


class FieldOptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    value: str
    label: str
    sort_order: int
    is_active: bool


class FieldDefinitionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    label: str = Field(min_length=1)
    field_type: FieldType = Field(alias="type")
    is_required: bool = False
    is_active: bool = True
    section_key: str | None = None
    placeholder: str | None = None
    help_text: str | None = None
    default_value: str | None = None
    options: list[FieldOptionInput] | None = None

    model_config = ConfigDict(populate_by_name=True)


class FieldDefinitionUpdate(BaseModel):
    label: str | None = Field(default=None, min_length=1)
    field_type: FieldType | None = Field(default=None, alias="type")
    is_required: bool | None = None
    is_active: bool | None = None
    section_key: str | None = None
    placeholder: str | None = None
    help_text: str | None = None
    default_value: str | None = None
    options: list[FieldOptionInput] | None = None

    model_config = ConfigDict(populate_by_name=True)


class FieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    name: str
    label: str
    field_type: str
    is_required: bool
    is_active: bool
    is_system_field: bool
    section_key: str | None
    sort_order: int
    placeholder: str | None
    help_text: str | None
    default_value: str | None
    options: list[FieldOptionRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class FieldReorderRequest(BaseModel):
    field_ids: list[int] = Field(alias="fieldIds", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class FieldSectionAssignment(BaseModel):
    id: int
    section_key: str | None = None


class FieldSectionAssignRequest(BaseModel):
    fields: list[FieldSectionAssignment] = Field(min_length=1)


class FormSectionUpdate(BaseModel):
    id: int
    name: str | None = Field(default=None, min_length=1)
    is_visible: bool | None = None
    is_default_open: bool | None = None
    sort_order: int | None = None


class FormSectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    section_key: str
    name: str
    is_visible: bool
    is_default_open: bool
    sort_order: int


class _RecordPayload(BaseModel):
    """Static columns plus ``customFields`` keyed by field id or system field name."""

    custom_fields: dict[str, Any] = Field(default_factory=dict, alias="customFields")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("custom_fields", mode="before")
    @classmethod
    def _stringify_keys(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return {str(key): item for key, item in value.items()}
        return value


class LeadCreate(_RecordPayload):
    full_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    status: str | None = None
    priority: str | None = None
    notes_text: str | None = None
    assigned_to: str | None = None


class LeadUpdate(_RecordPayload):
    full_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    source: str | None = None
    status: str | None = None
    priority: str | None = None
    notes_text: str | None = None
    assigned_to: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    full_name: str
    email: str | None
    phone: str | None
    source: str
    status: str
    priority: str | None
    notes_text: str | None
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class InvestorCreate(_RecordPayload):
    full_name: str = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    source: str | None = None
    status: str | None = None
    priority: str | None = None
    budget: str | None = None
    timeline: str | None = None
    notes: str | None = None
    assigned_to: str | None = None


class InvestorUpdate(_RecordPayload):
    full_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    source: str | None = None
    status: str | None = None
    priority: str | None = None
    budget: str | None = None
    timeline: str | None = None
    notes: str | None = None
    assigned_to: str | None = None


class InvestorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    full_name: str
    email: str | None
    phone: str | None
    company: str | None
    position: str | None
    source: str
    status: str
    priority: str | None
    budget: str | None
    timeline: str | None
    notes: str | None
    created_at: datetime
    updated_at: datetime
    assigned_to: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class PromoteLeadRequest(BaseModel):
    description: str = ""


class PromoteLeadResponse(BaseModel):
    success: bool = True
    investor_id: UUID = Field(serialization_alias="investorId")
    message: str
    unmapped_fields: list[str] = Field(default_factory=list, serialization_alias="unmappedFields")


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    entity_id: UUID
    activity_type: str
    subject: str | None
    body: str | None
    status: str
    performed_by: str | None
    completed_at: datetime | None
    created_at: datetime

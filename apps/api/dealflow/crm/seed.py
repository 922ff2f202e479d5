from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealflow.crm.models import CRMFieldDefinition, CRMFieldOption, CRMFormSection
from dealflow.crm.registry import FieldRegistryService, field_registry, validate_entity_type
from dealflow.crm.schemas import FieldDefinitionRead


logger = logging.getLogger("dealflow.crm.fields")

SOURCE_OPTIONS = [
    ("website", "Website"),
    ("social_media", "Social Media"),
    ("referral", "Referral"),
    ("cold_call", "Cold Call"),
    ("email", "Email"),
    ("event", "Event"),
    ("other", "Other"),
    ("telegram", "Telegram"),
    ("whatsapp", "WhatsApp"),
]

STATUS_OPTIONS = {
    "lead": [
        ("new", "New"),
        ("contacted", "Contacted"),
        ("qualified", "Qualified"),
        ("proposal", "Proposal"),
        ("negotiation", "Negotiation"),
        ("closed_won", "Closed Won"),
        ("closed_lost", "Closed Lost"),
        ("won", "Won"),
    ],
    "investor": [
        ("potential", "Potential"),
        ("contacted", "Contacted"),
        ("interested", "Interested"),
        ("committed", "Committed"),
        ("active", "Active"),
        ("inactive", "Inactive"),
    ],
}

PRIORITY_OPTIONS = [
    ("low", "Low"),
    ("normal", "Normal"),
    ("medium", "Medium"),
    ("high", "High"),
    ("urgent", "Urgent"),
]

SYSTEM_FIELD_SECTION = {"lead": "lead_details", "investor": "investor_information"}

FORM_SECTIONS = {
    "lead": [
        ("contact_information", "Contact Information", True),
        ("company_information", "Company Information", True),
        ("lead_details", "Lead Details", True),
        ("custom_fields", "Additional Information", False),
    ],
    "investor": [
        ("investor_information", "Investor Information", True),
        ("investment_details", "Investment Details", True),
    ],
}


class FieldSeedHelper:
    """Creates the source/status/priority system fields and default form sections when absent."""

    def __init__(self, registry: FieldRegistryService) -> None:
        self._registry = registry

    def system_field_defaults(self, entity_type: str) -> list[tuple[str, str, list[tuple[str, str]]]]:
        return [
            ("source", "Source", SOURCE_OPTIONS),
            ("status", "Status", STATUS_OPTIONS[entity_type]),
            ("priority", "Priority", PRIORITY_OPTIONS),
        ]

    def ensure_defaults(self, session: Session, entity_type: str) -> list[FieldDefinitionRead]:
        validate_entity_type(entity_type)

        existing_sections = set(
            session.scalars(select(CRMFormSection.section_key).where(CRMFormSection.entity_type == entity_type)).all()
        )
        for sort_order, (section_key, name, is_default_open) in enumerate(FORM_SECTIONS[entity_type], start=1):
            if section_key in existing_sections:
                continue
            session.add(
                CRMFormSection(
                    entity_type=entity_type,
                    section_key=section_key,
                    name=name,
                    is_visible=True,
                    is_default_open=is_default_open,
                    sort_order=sort_order,
                )
            )

        existing_fields = set(
            session.scalars(select(CRMFieldDefinition.name).where(CRMFieldDefinition.entity_type == entity_type)).all()
        )
        created: list[str] = []
        for offset, (name, label, options) in enumerate(self.system_field_defaults(entity_type)):
            if name in existing_fields:
                continue
            session.add(
                CRMFieldDefinition(
                    entity_type=entity_type,
                    name=name,
                    label=label,
                    field_type="select",
                    is_required=False,
                    is_active=True,
                    is_system_field=True,
                    section_key=SYSTEM_FIELD_SECTION[entity_type],
                    sort_order=100 + offset,
                    options=[
                        CRMFieldOption(value=value, label=option_label, sort_order=index, is_active=True)
                        for index, (value, option_label) in enumerate(options)
                    ],
                )
            )
            created.append(name)

        session.commit()
        if created:
            logger.info("field.seeded", extra={"entity_type": entity_type, "field_name": ",".join(created)})

        return [
            FieldDefinitionRead.model_validate(definition)
            for definition in self._registry.list_active_fields(session, entity_type)
            if definition.is_system_field
        ]


field_seed_helper = FieldSeedHelper(field_registry)

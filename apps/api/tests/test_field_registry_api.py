from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow import audit, events
from dealflow.core.config import get_settings
from dealflow.core.database import Base, get_db
from dealflow.crm.api import get_current_user
from dealflow.crm.models import CRMFieldOption, CRMFieldValue
from dealflow.crm.service import ActorUser
from dealflow.main import app


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id="admin-1", roles=["admin"], correlation_id="fields-corr-1")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_field(client: TestClient, entity_type: str, **overrides: object) -> dict:
    payload: dict[str, object] = {"name": "company_name", "label": "Company Name", "type": "text"}
    payload.update(overrides)
    response = client.post(f"/api/crm/fields/{entity_type}", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_seeding_creates_system_fields_and_sections_once(client: TestClient) -> None:
    first = client.post("/api/crm/seeds/lead")
    assert first.status_code == 200
    names = [item["name"] for item in first.json()]
    assert names == ["source", "status", "priority"]
    assert all(item["is_system_field"] for item in first.json())
    assert all(item["section_key"] == "lead_details" for item in first.json())
    status_options = [option["value"] for option in first.json()[1]["options"]]
    assert "new" in status_options and "won" in status_options

    second = client.post("/api/crm/seeds/lead")
    assert second.status_code == 200
    assert [item["id"] for item in second.json()] == [item["id"] for item in first.json()]

    sections = client.get("/api/crm/form-sections/lead")
    assert sections.status_code == 200
    assert [item["section_key"] for item in sections.json()] == [
        "contact_information",
        "company_information",
        "lead_details",
        "custom_fields",
    ]
    assert sections.json()[3]["is_default_open"] is False


def test_create_field_appends_to_sort_order_and_records_audit(client: TestClient) -> None:
    client.post("/api/crm/seeds/investor")
    created = _create_field(
        client,
        "investor",
        name="investment_focus",
        label="Investment Focus",
        type="multiselect",
        options=[{"value": "stocks", "label": "Stocks"}, {"value": "crypto", "label": "Crypto"}],
    )
    assert created["field_type"] == "multiselect"
    assert created["is_system_field"] is False
    assert created["sort_order"] == 103
    assert [option["value"] for option in created["options"]] == ["stocks", "crypto"]

    entries = audit.entries_for("investor_field", str(created["id"]))
    assert entries and entries[0]["action"] == "create"
    assert entries[0]["actor_user_id"] == "admin-1"


@pytest.mark.parametrize(
    ("payload", "status_code", "message"),
    [
        ({"name": "Company Name", "label": "Company", "type": "text"}, 422, "name must be snake_case"),
        ({"name": "status", "label": "Status", "type": "select"}, 409, "status is a system field name"),
        (
            {"name": "notes_extra", "label": "Notes", "type": "text", "options": [{"value": "a", "label": "A"}]},
            422,
            "options are only allowed for choice fields",
        ),
        (
            {
                "name": "stage",
                "label": "Stage",
                "type": "select",
                "options": [{"value": "a", "label": "A"}, {"value": "a", "label": "Again"}],
            },
            422,
            "duplicate option value: a",
        ),
    ],
)
def test_create_field_rejections(client: TestClient, payload: dict, status_code: int, message: str) -> None:
    response = client.post("/api/crm/fields/lead", json=payload)
    assert response.status_code == status_code
    body = response.json()
    assert body["code"] == "crm_fields_create_failed"
    assert body["message"] == message
    assert body["correlation_id"]


def test_duplicate_name_conflicts_but_other_kind_is_independent(client: TestClient) -> None:
    _create_field(client, "lead")
    duplicate = client.post("/api/crm/fields/lead", json={"name": "company_name", "label": "Again", "type": "text"})
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "field definition already exists"

    _create_field(client, "investor")


def test_duplicate_label_within_a_kind_conflicts(client: TestClient) -> None:
    _create_field(client, "lead")
    duplicate = client.post(
        "/api/crm/fields/lead", json={"name": "company_title", "label": " Company Name ", "type": "text"}
    )
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "a field labelled Company Name already exists"

    _create_field(client, "investor", name="company_title")

    other = _create_field(client, "lead", name="job_title", label="Job Title")
    relabel = client.put(f"/api/crm/fields/lead/{other['id']}", json={"label": "Company Name"})
    assert relabel.status_code == 409
    assert relabel.json()["code"] == "crm_fields_update_failed"

    same = client.put(f"/api/crm/fields/lead/{other['id']}", json={"label": "Job Title "})
    assert same.status_code == 200, same.text
    assert same.json()["label"] == "Job Title"


def test_unknown_entity_type_is_rejected(client: TestClient) -> None:
    response = client.get("/api/crm/fields/contact")
    assert response.status_code == 422
    assert response.json()["code"] == "crm_fields_list_failed"
    assert response.json()["message"] == "invalid entity_type"


def test_update_replaces_options_wholesale(client: TestClient, db_session: Session) -> None:
    created = _create_field(
        client,
        "lead",
        name="stage",
        label="Stage",
        type="select",
        options=[{"value": "cold", "label": "Cold"}, {"value": "warm", "label": "Warm"}],
    )

    updated = client.put(
        f"/api/crm/fields/lead/{created['id']}",
        json={"label": "Deal Stage", "options": [{"value": "hot", "label": "Hot"}]},
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body["label"] == "Deal Stage"
    assert [option["value"] for option in body["options"]] == ["hot"]

    stored = db_session.scalars(select(CRMFieldOption.value).where(CRMFieldOption.field_id == created["id"])).all()
    assert stored == ["hot"]


def test_system_field_type_cannot_change_and_cannot_be_deleted(client: TestClient) -> None:
    seeded = client.post("/api/crm/seeds/lead").json()
    status_field = next(item for item in seeded if item["name"] == "status")

    retype = client.put(f"/api/crm/fields/lead/{status_field['id']}", json={"type": "text"})
    assert retype.status_code == 422
    assert retype.json()["message"] == "Cannot change the type of system fields"

    relabel = client.put(f"/api/crm/fields/lead/{status_field['id']}", json={"label": "Lead Status"})
    assert relabel.status_code == 200
    assert relabel.json()["label"] == "Lead Status"

    deleted = client.delete(f"/api/crm/fields/lead/{status_field['id']}")
    assert deleted.status_code == 403
    assert deleted.json()["message"] == "Cannot delete system fields"


def test_toggle_hides_field_from_active_listing(client: TestClient) -> None:
    created = _create_field(client, "lead")

    toggled = client.post(f"/api/crm/fields/lead/{created['id']}/toggle")
    assert toggled.status_code == 200
    assert toggled.json()["is_active"] is False

    active = client.get("/api/crm/fields/lead", params={"include_inactive": "false"})
    assert [item["id"] for item in active.json()] == []
    everything = client.get("/api/crm/fields/lead")
    assert [item["id"] for item in everything.json()] == [created["id"]]

    restored = client.post(f"/api/crm/fields/lead/{created['id']}/toggle")
    assert restored.json()["is_active"] is True


def test_reorder_and_assign_sections(client: TestClient) -> None:
    first = _create_field(client, "lead", name="company_name", label="Company Name")
    second = _create_field(client, "lead", name="website", label="Website", type="url")

    reordered = client.post("/api/crm/fields/lead/reorder", json={"fieldIds": [second["id"], first["id"]]})
    assert reordered.status_code == 200
    assert [item["id"] for item in reordered.json()] == [second["id"], first["id"]]

    unknown = client.post("/api/crm/fields/lead/reorder", json={"fieldIds": [second["id"], 9999]})
    assert unknown.status_code == 404
    assert unknown.json()["message"] == "unknown field ids: 9999"

    assigned = client.post(
        "/api/crm/fields/lead/assign-sections",
        json={"fields": [{"id": first["id"], "section_key": "company_information"}, {"id": second["id"]}]},
    )
    assert assigned.status_code == 200
    by_id = {item["id"]: item for item in assigned.json()}
    assert by_id[first["id"]]["section_key"] == "company_information"
    assert by_id[second["id"]]["section_key"] is None


def test_update_form_sections(client: TestClient) -> None:
    client.post("/api/crm/seeds/investor")
    sections = client.get("/api/crm/form-sections/investor").json()

    updated = client.post(
        "/api/crm/form-sections/investor",
        json=[{"id": sections[1]["id"], "name": "Investment", "is_visible": False, "sort_order": 0}],
    )
    assert updated.status_code == 200
    body = updated.json()
    assert body[0]["section_key"] == "investment_details"
    assert body[0]["name"] == "Investment"
    assert body[0]["is_visible"] is False

    missing = client.post("/api/crm/form-sections/investor", json=[{"id": 9999, "name": "Nope"}])
    assert missing.status_code == 404


def test_delete_field_removes_its_values(client: TestClient, db_session: Session) -> None:
    created = _create_field(client, "lead")
    lead = client.post(
        "/api/crm/leads",
        json={"full_name": "Ada Lovelace", "email": "ada@dealflow.io", "customFields": {str(created["id"]): "Analytical"}},
    )
    assert lead.status_code == 201, lead.text

    deleted = client.delete(f"/api/crm/fields/lead/{created['id']}")
    assert deleted.status_code == 204
    assert db_session.scalars(select(CRMFieldValue).where(CRMFieldValue.field_id == created["id"])).all() == []

    fetched = client.get(f"/api/crm/leads/{lead.json()['id']}")
    assert fetched.json()["custom_fields"] == {}

    missing = client.get(f"/api/crm/fields/lead/{created['id']}")
    assert missing.status_code == 404
    assert missing.json()["message"] == "field definition not found"

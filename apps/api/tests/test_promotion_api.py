from __future__ import annotations

import uuid
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
from dealflow.crm.models import CRMActivity, CRMInvestor, CRMLead
from dealflow.crm.promotion import promotion_service
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
        return ActorUser(user_id="closer-1", roles=["user"], correlation_id="promote-corr-1")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_field(client: TestClient, entity_type: str, payload: dict) -> int:
    response = client.post(f"/api/crm/fields/{entity_type}", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture()
def field_ids(client: TestClient) -> dict[str, int]:
    client.post("/api/crm/seeds/lead")
    client.post("/api/crm/seeds/investor")
    products = {
        "name": "products",
        "label": "Products",
        "type": "multiselect",
        "options": [{"value": "stocks", "label": "Stocks"}, {"value": "crypto", "label": "Crypto"}],
    }
    return {
        "lead_company": _create_field(client, "lead", {"name": "company_name", "label": "Company Name", "type": "text"}),
        "lead_products": _create_field(client, "lead", products),
        "lead_score": _create_field(client, "lead", {"name": "lead_score", "label": "Lead Score", "type": "number"}),
        "investor_company": _create_field(
            client, "investor", {"name": "company_name", "label": "Company", "type": "text"}
        ),
        "investor_products": _create_field(client, "investor", products),
    }


def _create_lead(client: TestClient, field_ids: dict[str, int], **overrides: object) -> dict:
    payload: dict[str, object] = {
        "full_name": "Grace Hopper",
        "email": "grace@example.com",
        "phone": "+905557770000",
        "source": "referral",
        "assigned_to": "rep-7",
        "customFields": {
            str(field_ids["lead_company"]): "Acme",
            str(field_ids["lead_products"]): ["stocks", "crypto"],
            str(field_ids["lead_score"]): "87",
        },
    }
    payload.update(overrides)
    response = client.post("/api/crm/leads", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_promote_lead_creates_investor_and_carries_values(
    client: TestClient, db_session: Session, field_ids: dict[str, int]
) -> None:
    lead = _create_lead(client, field_ids)

    response = client.post(f"/api/crm/leads/{lead['id']}/promote", json={"description": "Signed the term sheet"})
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Lead successfully converted to investor"
    assert body["unmappedFields"] == ["lead_score"]
    investor_id = body["investorId"]

    investor = client.get(f"/api/crm/investors/{investor_id}").json()
    assert investor["full_name"] == "Grace Hopper"
    assert investor["phone"] == "+905557770000"
    assert investor["lead_id"] == lead["id"]
    assert investor["status"] == "potential"
    assert investor["priority"] == "medium"
    assert investor["source"] == "referral"
    assert investor["notes"] == "Signed the term sheet"
    assert investor["assigned_to"] == "rep-7"
    assert investor["custom_fields"][str(field_ids["investor_company"])] == "Acme"
    assert investor["custom_fields"][str(field_ids["investor_products"])] == ["stocks", "crypto"]
    assert investor["custom_fields"]["status"] == "potential"

    promoted_lead = client.get(f"/api/crm/leads/{lead['id']}").json()
    assert promoted_lead["status"] == "won"
    assert promoted_lead["custom_fields"]["status"] == "won"

    activities = db_session.scalars(select(CRMActivity).order_by(CRMActivity.entity_type)).all()
    assert [(item.entity_type, item.activity_type, item.status) for item in activities] == [
        ("investor", "converted", "completed"),
        ("lead", "converted", "completed"),
    ]
    assert all(item.subject == "Lead converted to Investor" for item in activities)
    assert all(item.performed_by == "closer-1" for item in activities)

    entries = audit.entries_for("lead", lead["id"])
    assert entries[-1]["action"] == "promote"
    assert entries[-1]["before"] == {"status": "new"}

    promoted = [item for item in events.published_events if item["event_type"] == "crm.lead.promoted"]
    assert promoted[0]["investor_id"] == investor_id
    assert promoted[0]["correlation_id"] == "promote-corr-1"


def test_promoting_twice_returns_existing_investor(client: TestClient, field_ids: dict[str, int]) -> None:
    lead = _create_lead(client, field_ids)
    first = client.post(f"/api/crm/leads/{lead['id']}/promote", json={"description": "Ready to invest"})
    assert first.status_code == 201

    second = client.post(f"/api/crm/leads/{lead['id']}/promote", json={"description": "Ready to invest"})
    assert second.status_code == 400
    body = second.json()
    assert body["code"] == "crm_lead_promote_failed"
    assert body["message"] == "This lead has already been converted to an investor"
    assert body["details"] == {"reason": "ALREADY_PROMOTED", "investor_id": first.json()["investorId"]}


def test_short_description_is_checked_before_the_lead(client: TestClient) -> None:
    response = client.post(f"/api/crm/leads/{uuid.uuid4()}/promote", json={"description": " ok "})
    assert response.status_code == 400
    assert response.json()["message"] == "Description must be at least 3 characters"
    assert response.json()["details"] == {"reason": "JUSTIFICATION_TOO_SHORT"}


def test_missing_lead_is_not_found(client: TestClient) -> None:
    response = client.post(f"/api/crm/leads/{uuid.uuid4()}/promote", json={"description": "Long enough"})
    assert response.status_code == 404
    assert response.json()["message"] == "Lead not found"
    assert response.json()["details"] == {"reason": "LEAD_NOT_FOUND"}


def test_phone_already_used_by_an_investor(client: TestClient, db_session: Session, field_ids: dict[str, int]) -> None:
    existing = client.post("/api/crm/investors", json={"full_name": "Other Fund", "phone": "+905557770000"})
    assert existing.status_code == 201, existing.text
    lead = _create_lead(client, field_ids)

    response = client.post(f"/api/crm/leads/{lead['id']}/promote", json={"description": "Wants in"})
    assert response.status_code == 400
    assert response.json()["message"] == "An investor with this phone number already exists"
    assert response.json()["details"] == {"reason": "PHONE_CONFLICT"}
    assert len(db_session.scalars(select(CRMInvestor)).all()) == 1
    assert client.get(f"/api/crm/leads/{lead['id']}").json()["status"] == "new"


def test_failed_promotion_leaves_nothing_behind(
    client: TestClient,
    db_session: Session,
    field_ids: dict[str, int],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    lead = _create_lead(client, field_ids)

    def boom(*args: object, **kwargs: object) -> None:
        raise RuntimeError("activity store unavailable")

    monkeypatch.setattr(promotion_service.investors, "add_activity", boom)
    actor = ActorUser(user_id="closer-1")
    with pytest.raises(RuntimeError):
        promotion_service.promote(db_session, actor, uuid.UUID(lead["id"]), "Signed the term sheet")

    db_session.expire_all()
    assert db_session.scalars(select(CRMInvestor)).all() == []
    assert db_session.scalars(select(CRMActivity)).all() == []
    stored_lead = db_session.get(CRMLead, uuid.UUID(lead["id"]))
    assert stored_lead is not None and stored_lead.status == "new"
    assert client.get(f"/api/crm/leads/{lead['id']}").json()["custom_fields"]["status"] == "new"

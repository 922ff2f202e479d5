from __future__ import annotations

import csv
import io
import os
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from dealflow.core.config import get_settings
from dealflow.core.database import Base, get_db
from dealflow.crm.api import get_current_user as crm_get_current_user
from dealflow.crm.service import ActorUser
from dealflow.main import app
from dealflow.otel import setup_inmemory_otel


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
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            roles=["user"],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/leads",
        json={"full_name": "Span Lead", "email": "span@example.com"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_import_span_reports_row_counts(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["full_name", "email"])
    writer.writerow(["One", "one@example.com"])
    writer.writerow(["Two", ""])
    response = client.post(
        "/api/crm/import/lead",
        files={"file": ("leads.csv", output.getvalue().encode("utf-8"), "text/csv")},
    )
    assert response.status_code == 200

    import_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.import"]
    assert import_spans
    attributes = import_spans[-1].attributes
    assert attributes.get("crm.entity_type") == "lead"
    assert attributes.get("crm.import.total_rows") == 2
    assert attributes.get("crm.import.success_count") == 1
    assert attributes.get("crm.import.error_count") == 1


def test_promotion_span_links_lead_and_investor(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    lead = client.post("/api/crm/leads", json={"full_name": "Span Lead", "email": "promote-span@example.com"}).json()
    response = client.post(f"/api/crm/leads/{lead['id']}/promote", json={"description": "Traced promotion"})
    assert response.status_code == 201

    promote_spans = [span for span in span_exporter.get_finished_spans() if span.name == "crm.promote_lead"]
    assert promote_spans
    attributes = promote_spans[-1].attributes
    assert attributes.get("crm.lead_id") == lead["id"]
    assert attributes.get("crm.investor_id") == response.json()["investorId"]

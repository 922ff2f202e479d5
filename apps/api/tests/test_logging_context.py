from __future__ import annotations

import csv
import io
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealflow.core.config import get_settings
from dealflow.core.database import Base, get_db
from dealflow.crm.api import get_current_user as crm_get_current_user
from dealflow.crm.service import ActorUser
from dealflow.logging import JsonLogFormatter
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
    yield
    get_settings.cache_clear()


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "dealflow.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/leads/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_import_failures_are_logged_with_row_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["full_name", "email"])
    writer.writerow(["No Email", ""])
    response = client.post(
        "/api/crm/import/lead",
        files={"file": ("leads.csv", output.getvalue().encode("utf-8"), "text/csv")},
        headers={"X-Correlation-Id": "import-log-1"},
    )
    assert response.status_code == 200
    assert response.json()["errorCount"] == 1

    failed = [record for record in caplog.records if record.name == "dealflow.crm.import" and record.getMessage() == "import.row_failed"]
    assert failed
    assert getattr(failed[0], "row", None) == 2
    assert getattr(failed[0], "field", None) == "email"
    assert getattr(failed[0], "entity_type", None) == "lead"

    completed = [record for record in caplog.records if record.getMessage() == "import.completed"]
    assert completed and getattr(completed[0], "total_rows", None) == 1


def test_json_formatter_keeps_known_fields_and_truncates_errors() -> None:
    record = logging.makeLogRecord(
        {
            "name": "dealflow.crm.import",
            "levelname": "WARNING",
            "msg": "import.row_failed",
            "row": 7,
            "error": "x" * 600,
            "secret": "should not appear",
            "correlation_id": "fmt-1",
        }
    )
    payload = JsonLogFormatter().format(record)
    assert '"row": 7' in payload
    assert '"correlation_id": "fmt-1"' in payload
    assert "should not appear" not in payload
    assert "x" * 500 in payload and "x" * 501 not in payload

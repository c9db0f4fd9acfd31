from __future__ import annotations

import copy
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from api_service.main import app
from api_service.storage import Storage, get_engine, reset_storage

DAILY_REMINDER_STEP: dict[str, Any] = {
    "trigger": {"type": "immediate"},
    "message_type": "text",
    "content": {"text": "Good morning! Time for your medication."},
}

MEDICATION_CHECK_STEP: dict[str, Any] = {
    "trigger": {"type": "delay", "value": "30"},
    "message_type": "text",
    "content": {"text": "Did you take your medication?"},
    "requires_action": True,
    "feedback": {
        "question": "Taken?",
        "buttons": [
            {"label": "Done", "value": "done", "action": "complete"},
            {"label": "Later", "value": "later", "action": "postpone"},
            {"label": "Skip", "value": "skip", "action": "skip"},
        ],
    },
}


@pytest.fixture(autouse=True)
def allow_storage_reset(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ALLOW_STORAGE_RESET", "1")


@pytest.fixture(autouse=True)
def isolated_database(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Point every test at its own SQLite file."""
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'api_service.db'}")
    monkeypatch.delenv("API_SERVICE_DB_URL", raising=False)
    monkeypatch.delenv("PROTOCOL_TIMEZONE", raising=False)
    get_engine.cache_clear()
    yield
    get_engine().dispose()
    get_engine.cache_clear()


@pytest.fixture()
def storage() -> Storage:
    reset_storage()
    return Storage(get_engine())


@pytest.fixture()
def client() -> Iterator[TestClient]:
    reset_storage()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def daily_meds_steps() -> list[dict[str, Any]]:
    """Fresh payloads for a reminder step followed by an action step."""
    return copy.deepcopy([DAILY_REMINDER_STEP, MEDICATION_CHECK_STEP])


@pytest.fixture()
def active_protocol_id(client: TestClient, daily_meds_steps: list[dict[str, Any]]) -> str:
    """Daily Meds protocol, created and activated through the API."""
    response = client.post(
        "/v1/protocols",
        json={
            "name": "Daily Meds",
            "description": "Morning reminder and check-in",
            "steps": daily_meds_steps,
        },
        headers={"X-Operator-ID": "nurse-1"},
    )
    assert response.status_code == 200
    protocol_id = response.json()["id"]
    assert client.post(f"/v1/protocols/{protocol_id}/activate").status_code == 200
    return protocol_id


@pytest.fixture()
def patient_id(client: TestClient) -> str:
    response = client.post(
        "/v1/patients", json={"display_name": "Ann", "real_name": "Ann Lee"}
    )
    assert response.status_code == 200
    return response.json()["id"]

from __future__ import annotations

import csv
import io
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import create_engine

from api_service.dependencies import get_storage
from api_service.main import app
from api_service.storage import Storage


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _assign_and_start(client: TestClient, patient_id: str, protocol_id: str) -> str:
    response = client.post(
        "/v1/assignments", json={"patient_id": patient_id, "protocol_id": protocol_id}
    )
    assert response.status_code == 200
    assignment_id = response.json()["id"]
    assert client.post(f"/v1/assignments/{assignment_id}/start").status_code == 200
    return assignment_id


def _record(client: TestClient, assignment_id: str, **payload: Any) -> Any:
    return client.post(f"/v1/assignments/{assignment_id}/events", json=payload)


class TestPatients:
    def test_create_list_and_stats(self, client: TestClient, patient_id: str) -> None:
        client.post("/v1/patients", json={"display_name": "Bo"})

        listing = client.get("/v1/patients").json()
        stats = client.get("/v1/patients/stats").json()

        assert listing["total"] == 2
        assert patient_id in [item["id"] for item in listing["patients"]]
        assert stats == {"total": 2, "active": 2, "inactive": 0}

    def test_update_status(self, client: TestClient, patient_id: str) -> None:
        response = client.put(
            f"/v1/patients/{patient_id}/status", json={"status": "inactive"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "inactive"
        inactive = client.get("/v1/patients", params={"status": "inactive"}).json()
        assert [item["id"] for item in inactive["patients"]] == [patient_id]

    def test_update_status_unknown_patient(self, client: TestClient) -> None:
        response = client.put(
            "/v1/patients/patient-missing/status", json={"status": "inactive"}
        )

        assert response.status_code == 404

    def test_create_requires_display_name(self, client: TestClient) -> None:
        assert client.post("/v1/patients", json={"display_name": ""}).status_code == 422


class TestProtocols:
    def test_create_records_operator_and_steps(
        self, client: TestClient, daily_meds_steps: list[dict[str, Any]]
    ) -> None:
        response = client.post(
            "/v1/protocols",
            json={"name": "Daily Meds", "steps": daily_meds_steps},
            headers={"X-Operator-ID": "nurse-7"},
        )

        data = response.json()
        assert response.status_code == 200
        assert data["id"].startswith("proto-")
        assert data["status"] == "draft"
        assert data["created_by"] == "nurse-7"
        assert data["total_steps"] == 2
        assert [step["order"] for step in data["steps"]] == [1, 2]
        assert data["steps"][1]["feedback"]["buttons"][1]["action"] == "postpone"

    def test_create_rejects_foreign_content_fields(self, client: TestClient) -> None:
        response = client.post(
            "/v1/protocols",
            json={
                "name": "Bad",
                "steps": [
                    {
                        "trigger": {"type": "immediate"},
                        "message_type": "text",
                        "content": {"text": "hi", "image_url": "https://x.org/a.png"},
                    }
                ],
            },
        )

        body = response.json()
        assert response.status_code == 422
        assert body["code"] == "validation_error"
        assert "image_url" in body["violations"][0]

    def test_validate_reports_violations(self, client: TestClient) -> None:
        protocol_id = client.post("/v1/protocols", json={"name": "Empty"}).json()["id"]

        result = client.get(f"/v1/protocols/{protocol_id}/validate").json()

        assert result == {
            "is_valid": False,
            "errors": ["protocol must have at least one step"],
        }

    def test_activate_invalid_protocol(self, client: TestClient) -> None:
        protocol_id = client.post("/v1/protocols", json={"name": "Empty"}).json()["id"]

        response = client.post(f"/v1/protocols/{protocol_id}/activate")

        body = response.json()
        assert response.status_code == 422
        assert body["violations"] == ["protocol must have at least one step"]
        assert body["retryable"] is False
        assert client.get(f"/v1/protocols/{protocol_id}").json()["status"] == "draft"

    def test_activate_twice_conflicts(
        self, client: TestClient, active_protocol_id: str
    ) -> None:
        response = client.post(f"/v1/protocols/{active_protocol_id}/activate")

        assert response.status_code == 409
        assert response.json()["code"] == "invalid_state"

    def test_update_header_and_status(
        self, client: TestClient, active_protocol_id: str
    ) -> None:
        response = client.put(
            f"/v1/protocols/{active_protocol_id}",
            json={"name": "Daily Meds v2", "status": "paused"},
        )

        assert response.status_code == 200
        assert response.json()["name"] == "Daily Meds v2"
        assert response.json()["status"] == "paused"

    def test_list_filters_and_pagination(
        self, client: TestClient, active_protocol_id: str
    ) -> None:
        client.post("/v1/protocols", json={"name": "Draft one"})

        active = client.get("/v1/protocols", params={"status": "active"}).json()
        by_operator = client.get("/v1/protocols", params={"created_by": "nurse-1"}).json()

        assert [item["id"] for item in active["protocols"]] == [active_protocol_id]
        assert by_operator["total"] == 1
        assert client.get("/v1/protocols", params={"limit": 0}).status_code == 400
        assert client.get("/v1/protocols", params={"limit": 1000}).status_code == 400

    def test_missing_protocol(self, client: TestClient) -> None:
        response = client.get("/v1/protocols/proto-missing")

        assert response.status_code == 404
        assert client.get("/v1/protocols/proto-missing/validate").status_code == 404

    def test_delete(self, client: TestClient) -> None:
        protocol_id = client.post("/v1/protocols", json={"name": "Temp"}).json()["id"]

        assert client.delete(f"/v1/protocols/{protocol_id}").status_code == 204
        assert client.delete(f"/v1/protocols/{protocol_id}").status_code == 404

    def test_delete_with_assignments_conflicts(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        _assign_and_start(client, patient_id, active_protocol_id)

        assert client.delete(f"/v1/protocols/{active_protocol_id}").status_code == 409

    def test_back_to_draft_refused_while_runs_are_open(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)
        _record(client, assignment_id, step_index=1, kind="sent")

        refused = client.put(
            f"/v1/protocols/{active_protocol_id}", json={"status": "draft"}
        )

        assert refused.status_code == 409
        assert refused.json()["code"] == "invalid_state"
        protocol = client.get(f"/v1/protocols/{active_protocol_id}").json()
        assert protocol["status"] == "active"
        locked = client.delete(f"/v1/protocols/{active_protocol_id}/steps/2")
        assert locked.status_code == 409

        client.post(f"/v1/assignments/{assignment_id}/complete")
        reopened = client.put(
            f"/v1/protocols/{active_protocol_id}", json={"status": "draft"}
        )

        assert reopened.status_code == 200
        assert reopened.json()["status"] == "draft"


class TestSteps:
    def test_add_move_and_remove(
        self, client: TestClient, daily_meds_steps: list[dict[str, Any]]
    ) -> None:
        protocol_id = client.post("/v1/protocols", json={"name": "Edit me"}).json()["id"]
        reminder, check = daily_meds_steps

        client.post(f"/v1/protocols/{protocol_id}/steps", json=reminder)
        added = client.post(f"/v1/protocols/{protocol_id}/steps", json=check).json()
        assert [step["requires_action"] for step in added["steps"]] == [False, True]

        moved = client.post(
            f"/v1/protocols/{protocol_id}/steps/2/move", json={"direction": "up"}
        ).json()
        assert moved["moved"] is True
        assert [step["requires_action"] for step in moved["steps"]] == [True, False]

        boundary = client.post(
            f"/v1/protocols/{protocol_id}/steps/1/move", json={"direction": "up"}
        ).json()
        assert boundary["moved"] is False

        removed = client.delete(f"/v1/protocols/{protocol_id}/steps/1").json()
        assert [step["order"] for step in removed["steps"]] == [1]
        assert removed["steps"][0]["requires_action"] is False

    def test_update_single_step(
        self, client: TestClient, daily_meds_steps: list[dict[str, Any]]
    ) -> None:
        protocol_id = client.post(
            "/v1/protocols", json={"name": "Edit me", "steps": daily_meds_steps}
        ).json()["id"]
        edited = {
            "trigger": {"type": "scheduled", "value": "21:00"},
            "message_type": "link",
            "content": {"link_url": "https://example.org", "link_text": "Read"},
        }

        response = client.put(f"/v1/protocols/{protocol_id}/steps/1", json=edited)

        steps = response.json()["steps"]
        assert steps[0]["message_type"] == "link"
        assert steps[0]["trigger"] == {"type": "scheduled", "value": "21:00"}
        assert len(steps) == 2

    def test_replace_all_steps(
        self, client: TestClient, daily_meds_steps: list[dict[str, Any]]
    ) -> None:
        protocol_id = client.post(
            "/v1/protocols", json={"name": "Edit me", "steps": daily_meds_steps}
        ).json()["id"]

        response = client.put(
            f"/v1/protocols/{protocol_id}/steps", json=daily_meds_steps[:1]
        )

        body = response.json()
        assert response.status_code == 200
        assert body["removed"] == [2]
        assert body["updated"] == []
        listing = client.get(f"/v1/protocols/{protocol_id}/steps").json()
        assert [step["order"] for step in listing["steps"]] == [1]

    def test_unknown_step_is_not_found(self, client: TestClient) -> None:
        protocol_id = client.post("/v1/protocols", json={"name": "Edit me"}).json()["id"]

        response = client.delete(f"/v1/protocols/{protocol_id}/steps/3")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_active_protocol_steps_are_locked(
        self, client: TestClient, active_protocol_id: str
    ) -> None:
        response = client.delete(f"/v1/protocols/{active_protocol_id}/steps/1")

        assert response.status_code == 409


class TestAssignments:
    def test_assign_start_and_fetch(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        data = client.get(f"/v1/assignments/{assignment_id}").json()
        listing = client.get(f"/v1/protocols/{active_protocol_id}/assignments").json()

        assert data["status"] == "active"
        assert data["current_step_index"] == 1
        assert data["total_steps"] == 2
        assert data["next_fire_at"] is not None
        assert [item["id"] for item in listing["assignments"]] == [assignment_id]

    def test_assign_draft_protocol_conflicts(
        self, client: TestClient, patient_id: str
    ) -> None:
        protocol_id = client.post("/v1/protocols", json={"name": "Draft"}).json()["id"]

        response = client.post(
            "/v1/assignments", json={"patient_id": patient_id, "protocol_id": protocol_id}
        )

        assert response.status_code == 409

    def test_assign_twice_conflicts(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        _assign_and_start(client, patient_id, active_protocol_id)

        response = client.post(
            "/v1/assignments",
            json={"patient_id": patient_id, "protocol_id": active_protocol_id},
        )

        assert response.status_code == 409

    def test_assign_unknown_patient(
        self, client: TestClient, active_protocol_id: str
    ) -> None:
        response = client.post(
            "/v1/assignments",
            json={"patient_id": "patient-missing", "protocol_id": active_protocol_id},
        )

        assert response.status_code == 404

    def test_pause_resume_complete(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        paused = client.post(f"/v1/assignments/{assignment_id}/pause").json()
        assert paused["status"] == "paused"
        assert client.post(f"/v1/assignments/{assignment_id}/pause").status_code == 409
        assert client.post(f"/v1/assignments/{assignment_id}/resume").status_code == 200

        completed = client.post(f"/v1/assignments/{assignment_id}/complete").json()
        assert completed["status"] == "completed"
        assert completed["next_fire_at"] is None
        assert completed["version"] == 4

    def test_unknown_action_is_rejected(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        assert client.post(f"/v1/assignments/{assignment_id}/restart").status_code == 422

    def test_due_listing(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        future = client.get(
            "/v1/assignments/due", params={"now": "2999-01-01T00:00:00Z"}
        ).json()
        past = client.get(
            "/v1/assignments/due", params={"now": "2000-01-01T00:00:00Z"}
        ).json()

        assert [item["id"] for item in future["assignments"]] == [assignment_id]
        assert past["assignments"] == []

    def test_delete_assignment(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        assert client.delete(f"/v1/assignments/{assignment_id}").status_code == 204
        assert client.get(f"/v1/assignments/{assignment_id}").status_code == 404


class TestEvents:
    def test_sent_event_advances_informational_step(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        response = _record(
            client,
            assignment_id,
            step_index=1,
            kind="sent",
            timestamp="2024-05-01T08:00:00Z",
        )

        body = response.json()
        assert response.status_code == 200
        assert body["advanced"] is True
        assert body["event"]["id"].startswith("evt-")
        assert body["assignment"]["current_step_index"] == 2
        assert _parse(body["assignment"]["next_fire_at"]) == _parse(
            "2024-05-01T08:30:00Z"
        )

    def test_out_of_order_event_conflicts(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)

        response = _record(client, assignment_id, step_index=2, kind="sent")

        assert response.status_code == 409

    def test_unknown_button_value_is_rejected(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)
        _record(client, assignment_id, step_index=1, kind="sent")
        _record(client, assignment_id, step_index=2, kind="sent")

        response = _record(
            client, assignment_id, step_index=2, kind="responded", value="maybe"
        )

        assert response.status_code == 422
        events = client.get(f"/v1/assignments/{assignment_id}/events").json()["events"]
        assert [item["kind"] for item in events] == ["sent", "sent"]

    def test_event_for_unknown_assignment(self, client: TestClient) -> None:
        response = _record(client, "asg-missing", step_index=1, kind="sent")

        assert response.status_code == 404

    def test_event_while_paused_conflicts(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)
        client.post(f"/v1/assignments/{assignment_id}/pause")

        response = _record(client, assignment_id, step_index=1, kind="sent")

        assert response.status_code == 409


class TestReports:
    def test_protocol_adherence_and_dashboard(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)
        _record(client, assignment_id, step_index=1, kind="sent")

        report = client.get(
            f"/v1/reports/protocols/{active_protocol_id}/adherence"
        ).json()
        dashboard = client.get("/v1/reports/dashboard").json()
        patients = client.get("/v1/reports/patients").json()["patients"]

        assert report["total_patients"] == 1
        assert report["active_assignments"] == 1
        assert [item["sent_count"] for item in report["step_metrics"]] == [1, 0]
        assert dashboard["active_protocols"] == 1
        assert dashboard["overall_adherence_rate"] == 50.0
        assert patients[0]["overall_adherence_rate"] == 50.0
        assert patients[0]["last_interaction"] is not None

    def test_adherence_for_unknown_protocol(self, client: TestClient) -> None:
        response = client.get("/v1/reports/protocols/proto-missing/adherence")

        assert response.status_code == 404

    def test_export_csv_and_json(
        self, client: TestClient, active_protocol_id: str, patient_id: str
    ) -> None:
        assignment_id = _assign_and_start(client, patient_id, active_protocol_id)
        _record(client, assignment_id, step_index=1, kind="sent")

        csv_response = client.get(
            "/v1/reports/export", params={"protocol_id": active_protocol_id}
        )
        json_response = client.get("/v1/reports/export", params={"format": "json"})

        assert csv_response.headers["content-type"].startswith("text/csv")
        rows = list(csv.DictReader(io.StringIO(csv_response.text)))
        assert rows[0]["protocol_name"] == "Daily Meds"
        assert rows[0]["event_kind"] == "sent"
        assert json_response.json()[0]["patient_name"] == "Ann"

    def test_export_rejects_unknown_format(self, client: TestClient) -> None:
        response = client.get("/v1/reports/export", params={"format": "xml"})

        assert response.status_code == 422


class TestErrorMapping:
    def test_store_unavailable_is_retryable(
        self, client: TestClient, tmp_path: Path
    ) -> None:
        engine = create_engine(f"sqlite:///{tmp_path / 'missing' / 'db.sqlite'}")
        app.dependency_overrides[get_storage] = lambda: Storage(engine)

        response = client.get("/v1/patients")

        assert response.status_code == 503
        assert response.headers["retry-after"] == "1"
        assert response.json()["retryable"] is True
        assert response.json()["code"] == "store_unavailable"

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("get", "/v1/protocols/proto-missing"),
            ("get", "/v1/assignments/asg-missing"),
            ("put", "/v1/patients/patient-missing/status"),
        ],
    )
    def test_missing_resources_share_error_body(
        self, client: TestClient, method: str, path: str
    ) -> None:
        if method == "put":
            response = client.put(path, json={"status": "inactive"})
        else:
            response = client.get(path)

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"
        assert set(response.json()) == {"detail", "code", "violations", "retryable"}
        assert response.json()["retryable"] is False

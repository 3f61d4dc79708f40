"""
API tests through the FastAPI gateway.
"""
import pytest
from fastapi.testclient import TestClient

from gateway.src.main import app, status_code_for
from kernel.src.errors import (
    CapacityExceeded, EligibilityDenied, InvalidStateError, NotFoundError, ValidationFailure
)
from safety.src.trust_safety_service import get_trust_safety_service

APPEAL_REASON = ("The session was played on a school computer whose input driver was "
                 "misreported as automation software by the client.")


def headers(user_id, role="player"):
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def client(staffed_service):
    app.dependency_overrides[get_trust_safety_service] = lambda: staffed_service
    yield TestClient(app)
    app.dependency_overrides.clear()


def submit_bot_session(client, bot_telemetry, user_id="player-1"):
    response = client.post("/v1/anti-cheat/validate-solution",
                           json={"session_id": "sess-1", "telemetry": bot_telemetry},
                           headers=headers(user_id))
    assert response.status_code == 200
    return response.json()


def review_case(client, case_id, reviewer_id, role, verdict="confirmed_cheat"):
    assert client.post(f"/v1/admin/anti-cheat/reviews/{case_id}/start",
                       headers=headers(reviewer_id, role)).status_code == 200
    response = client.post(f"/v1/admin/anti-cheat/reviews/{case_id}/submit", json={
        "verdict": verdict, "confidence": 0.95,
        "reasoning": "Flat forty millisecond move timings across the session",
    }, headers=headers(reviewer_id, role))
    assert response.status_code == 200
    return response.json()


class TestErrorMapping:
    @pytest.mark.parametrize("error,status", [
        (NotFoundError("case_not_found"), 404),
        (InvalidStateError("invalid_state"), 409),
        (ValidationFailure("reasoning_too_short"), 422),
        (EligibilityDenied("duplicate_appeal"), 403),
        (CapacityExceeded("reviewer_at_capacity"), 429),
    ])
    def test_status_codes(self, error, status):
        assert status_code_for(error) == status

    def test_error_body(self, client):
        response = client.get("/v1/anti-cheat/appeals/APL-missing", headers=headers("player-1"))
        assert response.status_code == 404
        assert response.json() == {
            "error": "NotFoundError",
            "reason": "appeal_not_found",
            "message": "Appeal APL-missing not found",
            "details": {"appeal_id": "APL-missing"},
        }


class TestAuth:
    def test_missing_identity(self, client, human_telemetry):
        response = client.post("/v1/anti-cheat/validate-solution",
                               json={"session_id": "sess-1", "telemetry": human_telemetry})
        assert response.status_code == 401

    def test_player_cannot_read_review_queue(self, client):
        response = client.get("/v1/admin/anti-cheat/reviews", headers=headers("player-1"))
        assert response.status_code == 403

    def test_reviewer_cannot_register_staff(self, client):
        response = client.post("/v1/admin/anti-cheat/reviewers",
                               json={"staff_id": "rev-2", "tier": "reviewer"},
                               headers=headers("rev-1", "reviewer"))
        assert response.status_code == 403

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"


class TestValidateSolution:
    def test_human_session_passes(self, client, human_telemetry):
        response = client.post("/v1/anti-cheat/validate-solution",
                               json={"session_id": "sess-1", "telemetry": human_telemetry},
                               headers=headers("player-1"))
        body = response.json()
        assert body["valid"] is True
        assert body["case_id"] is None
        assert body["detection"]["severity"] == "low"

    def test_bot_session_opens_case(self, client, bot_telemetry):
        body = submit_bot_session(client, bot_telemetry)
        assert body["valid"] is False
        assert body["detection"]["severity"] == "critical"

        case = client.get(f"/v1/admin/anti-cheat/reviews/{body['case_id']}",
                          headers=headers("rev-1", "reviewer")).json()
        assert case["priority"] == "urgent"
        assert case["assigned_reviewer"] == "rev-1"

    def test_own_detections(self, client, bot_telemetry):
        submit_bot_session(client, bot_telemetry)
        body = client.get("/v1/anti-cheat/detections", headers=headers("player-1")).json()
        assert body["total"] == 1
        other = client.get("/v1/anti-cheat/detections", headers=headers("player-2")).json()
        assert other["total"] == 0

    def test_malformed_telemetry(self, client):
        response = client.post("/v1/anti-cheat/validate-solution",
                               json={"session_id": "sess-1", "telemetry": {"moves": []}},
                               headers=headers("player-1"))
        assert response.status_code == 422
        assert response.json()["reason"] == "invalid_telemetry"


class TestReviewAndAppealFlow:
    def test_two_step_review_then_auto_approved_appeal(self, client, bot_telemetry, staffed_service):
        case_id = submit_bot_session(client, bot_telemetry)["case_id"]

        first = review_case(client, case_id, "rev-1", "reviewer")
        assert first["status"] == "assigned"
        assert first["assigned_reviewer"] == "senior-1"

        done = review_case(client, case_id, "senior-1", "senior")
        assert done["status"] == "completed"
        assert staffed_service.enforcement.is_banned("player-1")

        response = client.post("/v1/anti-cheat/appeals", json={
            "case_id": case_id,
            "reason": APPEAL_REASON,
            "evidence": {"type": "procedural_error", "description": "Driver report", "confidence": 0.95},
        }, headers=headers("player-1"))
        assert response.status_code == 200
        appeal = response.json()
        assert appeal["status"] == "approved"
        assert not staffed_service.enforcement.is_banned("player-1")

        duplicate = client.post("/v1/anti-cheat/appeals", json={
            "case_id": case_id, "reason": APPEAL_REASON,
            "evidence": {"type": "new_evidence"},
        }, headers=headers("player-1"))
        assert duplicate.status_code == 403
        assert duplicate.json()["reason"] == "duplicate_appeal"

    def test_wrong_reviewer_conflicts(self, client, bot_telemetry):
        case_id = submit_bot_session(client, bot_telemetry)["case_id"]
        response = client.post(f"/v1/admin/anti-cheat/reviews/{case_id}/submit", json={
            "verdict": "legitimate", "confidence": 0.9, "reasoning": "Looks like a normal player",
        }, headers=headers("senior-1", "senior"))
        assert response.status_code == 409
        assert response.json()["reason"] == "not_assigned_reviewer"

    def test_escalate_case(self, client, bot_telemetry):
        case_id = submit_bot_session(client, bot_telemetry)["case_id"]
        response = client.post(f"/v1/admin/anti-cheat/reviews/{case_id}/escalate",
                               json={"reason": "Needs expert eyes", "target_level": "expert"},
                               headers=headers("rev-1", "reviewer"))
        assert response.status_code == 200
        assert response.json()["assigned_reviewer"] == "expert-1"

    def test_queue_for_tier(self, client, bot_telemetry, staffed_service):
        staffed_service.reviewers.deactivate("rev-1")
        submit_bot_session(client, bot_telemetry)
        body = client.get("/v1/admin/anti-cheat/reviews", params={"queue_tier": "reviewer"},
                          headers=headers("rev-1", "reviewer")).json()
        assert body["total"] == 1


class TestReports:
    def test_report_vote_and_resolve(self, client):
        response = client.post("/v1/anti-cheat/reports", json={
            "reported_user_id": "player-9",
            "report_type": "griefing",
            "reason": "Blocking the board",
            "description": "Keeps undoing every shared move in the co-op puzzle.",
        }, headers=headers("player-1"))
        assert response.status_code == 200
        report_id = response.json()["report_id"]

        closed = client.post(f"/v1/anti-cheat/reports/{report_id}/votes", json={"vote": "cheat"},
                             headers=headers("player-2"))
        assert closed.status_code == 409
        assert closed.json()["reason"] == "voting_closed"

        resolved = client.post(f"/v1/admin/anti-cheat/reports/{report_id}/resolve", json={
            "action_type": "restrict", "reasoning": "Griefing confirmed", "duration": "1d",
        }, headers=headers("mod-senior", "moderator"))
        assert resolved.status_code == 200
        assert resolved.json()["status"] == "resolved"

    def test_short_description_rejected(self, client):
        response = client.post("/v1/anti-cheat/reports", json={
            "reported_user_id": "player-9", "report_type": "cheating",
            "reason": "Fast", "description": "Too fast",
        }, headers=headers("player-1"))
        assert response.status_code == 422
        assert response.json()["reason"] == "description_too_short"

    def test_unknown_report_type_is_request_error(self, client):
        response = client.post("/v1/anti-cheat/reports", json={
            "reported_user_id": "player-9", "report_type": "rudeness",
            "reason": "Rude", "description": "Was extremely rude in the lobby chat.",
        }, headers=headers("player-1"))
        assert response.status_code == 422


class TestAdmin:
    def test_register_reviewer(self, client, staffed_service):
        response = client.post("/v1/admin/anti-cheat/reviewers",
                               json={"staff_id": "rev-2", "tier": "reviewer", "max_load": 5},
                               headers=headers("admin-1", "admin"))
        assert response.status_code == 200
        assert staffed_service.reviewers.get("rev-2").max_load == 5

    def test_sweep_escalates_overdue(self, client, bot_telemetry, staffed_service):
        staffed_service.reviewers.deactivate("rev-1")
        case_id = submit_bot_session(client, bot_telemetry)["case_id"]

        response = client.post("/v1/admin/anti-cheat/sweeps", json={"now": "2026-03-03T10:00:00"},
                               headers=headers("admin-1", "admin"))
        assert response.status_code == 200
        body = response.json()
        assert body["escalated_case_ids"] == [case_id]
        assert body["ran_at"] == "2026-03-03T10:00:00+00:00"

    def test_analytics(self, client, bot_telemetry):
        submit_bot_session(client, bot_telemetry)
        body = client.get("/v1/admin/anti-cheat/analytics", headers=headers("mod-junior", "moderator")).json()
        assert body["statistics"]["detections"] == 1
        assert body["dashboard"]["accuracy"]["cheat_detections"] == 1

    def test_analytics_unknown_period(self, client):
        response = client.get("/v1/admin/anti-cheat/analytics", params={"period": "decade"},
                              headers=headers("admin-1", "admin"))
        assert response.status_code == 422

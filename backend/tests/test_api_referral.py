"""Tests for the referral endpoints (/api/referral/*)."""

from __future__ import annotations

import pytest

REFERRAL_BODY = {
    "subject_ref": "patient-001",
    "subject_initials": "J.D.",
    "subject_city": "Utrecht",
    "pathways": ["physio"],
    "urgency": "urgent",
    "notes": "Mobility after hip surgery",
    "created_by": "coordinator-7",
    "intake": {"diagnosis": "hip replacement"},
    "candidates": [
        {"candidate_id": "cand-a", "email": "a@practice.example", "name": "Practice A"},
        {"candidate_id": "cand-b", "email": "b@practice.example", "name": "Practice B"},
        {"candidate_id": "cand-c", "email": "c@practice.example", "name": "Practice C"},
    ],
}


@pytest.fixture(name="invite_tokens")
def invite_tokens_fixture(client, notifier) -> dict[str, str]:
    resp = client.post("/api/referral", json=REFERRAL_BODY)
    assert resp.status_code == 201, resp.text
    return {c: notifier.last_link_secret(f"{c[-1]}@practice.example") for c in ("cand-a", "cand-b", "cand-c")}


class TestCreate:
    def test_create_counts_delivered(self, client, notifier):
        notifier.fail_for.add("c@practice.example")
        resp = client.post("/api/referral", json=REFERRAL_BODY)
        assert resp.status_code == 201
        data = resp.json()
        assert data["success"] is True
        assert data["invites_sent"] == 2

    def test_too_many_candidates(self, client):
        candidates = [
            {"candidate_id": f"cand-{n}", "email": f"p{n}@practice.example", "name": f"Practice {n}"}
            for n in range(6)
        ]
        resp = client.post("/api/referral", json={**REFERRAL_BODY, "candidates": candidates})
        assert resp.status_code == 400
        assert resp.json() == {"success": False, "error": "Invalid request"}

    def test_duplicate_candidates(self, client):
        candidates = [REFERRAL_BODY["candidates"][0]] * 2
        resp = client.post("/api/referral", json={**REFERRAL_BODY, "candidates": candidates})
        assert resp.status_code == 400

    def test_unknown_urgency(self, client):
        resp = client.post("/api/referral", json={**REFERRAL_BODY, "urgency": "whenever"})
        assert resp.status_code == 400


class TestView:
    def test_view_open_referral(self, client, invite_tokens):
        resp = client.post("/api/referral/view", json={"invite_token": invite_tokens["cand-a"]})
        assert resp.status_code == 200
        data = resp.json()
        assert data["can_accept"] is True
        assert data["is_accepted_by_me"] is False
        assert data["invite_status"] == "viewed"
        assert data["accepted_by_info"] is None
        assert data["referral"]["subject_initials"] == "J.D."
        assert data["referral"]["urgency"] == "urgent"
        assert "intake" not in data["referral"]

    def test_unknown_invite(self, client):
        resp = client.post("/api/referral/view", json={"invite_token": "nope"})
        assert resp.status_code == 404


class TestAccept:
    def test_first_accept_wins(self, client, invite_tokens):
        resp = client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-b"]})
        assert resp.status_code == 200
        assert resp.json()["success"] is True

        resp = client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-c"]})
        assert resp.status_code == 409
        data = resp.json()
        assert data["success"] is False
        assert data["already_accepted"] is True
        assert data["accepted_by_me"] is False
        assert data["accepted_by_name"] == "Practice B"

    def test_views_after_accept(self, client, invite_tokens):
        client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-b"]})

        loser = client.post("/api/referral/view", json={"invite_token": invite_tokens["cand-c"]}).json()
        assert loser["can_accept"] is False
        assert loser["accepted_by_info"]["name"] == "Practice B"

        winner = client.post("/api/referral/view", json={"invite_token": invite_tokens["cand-b"]}).json()
        assert winner["is_accepted_by_me"] is True
        assert winner["accepted_by_info"] is None
        assert winner["referral"]["status"] == "accepted"

    def test_accept_twice(self, client, invite_tokens):
        client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-a"]})
        resp = client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-a"]})
        assert resp.status_code == 409
        assert resp.json()["accepted_by_me"] is True
        assert resp.json()["error"] == "You have already accepted this referral"


class TestDecline:
    def test_decline(self, client, invite_tokens):
        resp = client.post("/api/referral/decline", json={"invite_token": invite_tokens["cand-a"]})
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

        resp = client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-a"]})
        assert resp.status_code == 409

    def test_decline_after_other_won(self, client, invite_tokens):
        client.post("/api/referral/accept", json={"invite_token": invite_tokens["cand-b"]})
        resp = client.post("/api/referral/decline", json={"invite_token": invite_tokens["cand-a"]})
        assert resp.status_code == 410

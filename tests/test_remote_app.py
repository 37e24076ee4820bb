"""Tests for the knowledge service HTTP API."""

from conftest import auth_headers


def create_proposal(http, team_id, user="member-1", **body):
    body.setdefault("rule", "Log with structured fields")
    return http.post(f"/teams/{team_id}/proposals", json=body, headers=auth_headers(user))


class TestAuth:
    """Tests for bearer authentication."""

    def test_missing_token(self, http, service):
        resp = http.get(f"/teams/{service.team_id}/knowledge")
        assert resp.status_code in (401, 403)

    def test_invalid_token(self, http, service):
        resp = http.get(
            f"/teams/{service.team_id}/knowledge",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
        assert resp.status_code == 401

    def test_non_member(self, http, service):
        resp = http.get(f"/teams/{service.team_id}/knowledge", headers=auth_headers("outsider"))
        assert resp.status_code == 403
        assert resp.json()["code"] == "forbidden"

    def test_non_member_unknown_proposal(self, http, service):
        """Outsiders get 403 rather than 404 for proposals that do not exist."""
        resp = http.get(
            f"/teams/{service.team_id}/proposals/prop_missing", headers=auth_headers("outsider")
        )
        assert resp.status_code == 403


class TestTeams:
    """Tests for team management endpoints."""

    def test_create_team_and_add_member(self, http):
        resp = http.post("/teams", json={"name": "Mobile"}, headers=auth_headers("lead"))
        assert resp.status_code == 201
        team_id = resp.json()["id"]

        resp = http.post(
            f"/teams/{team_id}/members", json={"userId": "dev"}, headers=auth_headers("lead")
        )
        assert resp.status_code == 201

        resp = http.get(f"/teams/{team_id}/proposals", headers=auth_headers("dev"))
        assert resp.status_code == 200
        assert resp.json() == {"proposals": [], "count": 0}


class TestProposalEndpoints:
    """Tests for proposal endpoints."""

    def test_create_then_repeat(self, http, service):
        first = create_proposal(http, service.team_id, localId="proposal_x")
        assert first.status_code == 201
        assert first.json()["created"] is True

        again = create_proposal(http, service.team_id, localId="proposal_x")
        assert again.status_code == 200
        assert again.json()["created"] is False
        assert again.json()["proposal"]["id"] == first.json()["proposal"]["id"]

    def test_invalid_category(self, http, service):
        resp = create_proposal(http, service.team_id, category="vibes")
        assert resp.status_code == 400
        assert resp.json()["code"] == "invalid_input"

    def test_vote_and_decide(self, http, service):
        team = service.team_id
        proposal_id = create_proposal(http, team).json()["proposal"]["id"]

        resp = http.post(
            f"/teams/{team}/proposals/{proposal_id}/vote",
            json={"vote": "approve"},
            headers=auth_headers("member-2"),
        )
        assert resp.status_code == 200
        assert resp.json()["votes"] == {"approve": 1, "reject": 0}

        resp = http.post(
            f"/teams/{team}/proposals/{proposal_id}/decide",
            json={"decision": "approved"},
            headers=auth_headers("member-2"),
        )
        assert resp.status_code == 403

        resp = http.post(
            f"/teams/{team}/proposals/{proposal_id}/decide",
            json={"decision": "approved", "reason": "Consensus"},
            headers=auth_headers("admin-1"),
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "approved"
        assert resp.json()["knowledgeId"]

        knowledge = http.get(f"/teams/{team}/knowledge", headers=auth_headers("member-1")).json()
        assert knowledge["count"] == 1

    def test_closed_and_invalid_state(self, http, service):
        team = service.team_id
        proposal_id = create_proposal(http, team).json()["proposal"]["id"]
        http.post(
            f"/teams/{team}/proposals/{proposal_id}/decide",
            json={"decision": "rejected"},
            headers=auth_headers("admin-1"),
        )

        resp = http.post(
            f"/teams/{team}/proposals/{proposal_id}/vote",
            json={"vote": "approve"},
            headers=auth_headers("member-1"),
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "proposal_closed"

        resp = http.post(
            f"/teams/{team}/proposals/{proposal_id}/decide",
            json={"decision": "approved"},
            headers=auth_headers("admin-1"),
        )
        assert resp.status_code == 409
        assert resp.json()["code"] == "invalid_state"

    def test_not_found(self, http, service):
        resp = http.post(
            f"/teams/{service.team_id}/proposals/prop_missing/vote",
            json={"vote": "approve"},
            headers=auth_headers("member-1"),
        )
        assert resp.status_code == 404

    def test_invalid_vote(self, http, service):
        proposal_id = create_proposal(http, service.team_id).json()["proposal"]["id"]
        resp = http.post(
            f"/teams/{service.team_id}/proposals/{proposal_id}/vote",
            json={"vote": "yes"},
            headers=auth_headers("member-1"),
        )
        assert resp.status_code == 400

    def test_invalid_since(self, http, service):
        resp = http.get(
            f"/teams/{service.team_id}/knowledge",
            params={"since": "yesterday"},
            headers=auth_headers("member-1"),
        )
        assert resp.status_code == 400


class TestMemoryEndpoints:
    """Tests for shared memory endpoints."""

    def test_push_pull_sync(self, http, service):
        team = service.team_id
        resp = http.post(
            f"/teams/{team}/memory",
            json={"facts": [{"factId": "f1", "fact": "Use uv", "tags": ["tooling"]}]},
            headers=auth_headers("member-1"),
        )
        assert resp.json()["added"] == 1

        pulled = http.get(f"/teams/{team}/memory", headers=auth_headers("member-2")).json()
        assert pulled["count"] == 1

        resp = http.post(
            f"/teams/{team}/memory/sync",
            json={"proposals": [{"localId": "proposal_s", "rule": "Sync rule"}]},
            headers=auth_headers("member-1"),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["pushed"]["proposals"][0]["localId"] == "proposal_s"
        assert body["pulled"]["facts"][0]["factId"] == "f1"

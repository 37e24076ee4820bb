"""Tests for sync between the local store and the team service."""

from unittest.mock import patch

import httpx

from flow_memory._config import TeamConfig
from flow_memory._sync import SyncResult
from flow_memory.errors import RemoteError
from flow_memory.memory_manager import MemoryManager
from flow_memory.utils import utc_now


def remote_id_of(mm, local_id):
    return mm.store.get_proposal(local_id)["remote_id"]


class TestSyncResult:
    """Tests for the sync summary."""

    def test_to_dict(self):
        result = SyncResult(pushed=2, cursor_before="a", cursor_after="b")
        data = result.to_dict()
        assert data["success"] is True
        assert data["pushed"] == 2
        assert data["cursorAdvanced"] is True
        assert data["lastSyncTimestamp"] == "b"

    def test_errors_mean_failure(self):
        assert SyncResult(errors=["boom"]).success is False


class TestPull:
    """Tests for pulling team knowledge."""

    def test_pull_is_idempotent(self, team_mm, service):
        """A second sync with nothing new pulls nothing and keeps the cursor."""
        service.add_knowledge("admin-1", service.team_id, "Use UTC timestamps", "decision")

        first = team_mm.sync()
        assert first["success"] is True
        assert first["pulled"] == 1
        assert first["cursorAdvanced"] is True

        second = team_mm.sync()
        assert second["success"] is True
        assert second["pulled"] == 0
        assert second["cursorAdvanced"] is False
        assert second["lastSyncTimestamp"] == first["lastSyncTimestamp"]

        facts = team_mm.list_facts(scope="team")
        assert len(facts) == 1
        assert facts[0]["fact"] == "Use UTC timestamps"
        assert facts[0]["category"] == "decision"
        assert facts[0]["hasEmbedding"] is True

    def test_only_newer_knowledge_pulled(self, team_mm, service):
        service.add_knowledge("admin-1", service.team_id, "First rule", "general")
        team_mm.sync()
        service.add_knowledge("admin-1", service.team_id, "Second rule", "general")

        result = team_mm.sync()
        assert result["pulled"] == 1
        assert {f["fact"] for f in team_mm.list_facts(scope="team")} == {"First rule", "Second rule"}

    def test_pulled_knowledge_is_recalled(self, team_mm, service):
        service.add_knowledge("admin-1", service.team_id, "Run database migrations in CI", "pattern")
        team_mm.sync()
        results = team_mm.recall_facts("database")
        assert results[0]["fact"] == "Run database migrations in CI"
        assert results[0]["scope"] == "team"

    def test_pull_failure_keeps_cursor(self, team_mm, service):
        """A failed pull reports an error and leaves the cursor where it was."""
        service.add_knowledge("admin-1", service.team_id, "First rule", "general")
        cursor = team_mm.sync()["lastSyncTimestamp"]
        service.add_knowledge("admin-1", service.team_id, "Second rule", "general")

        client = team_mm.reconciler.client
        with patch.object(
            client, "list_knowledge", side_effect=RemoteError("service down", retryable=True)
        ):
            failed = team_mm.sync()
        assert failed["success"] is False
        assert failed["errors"]
        assert failed["cursorAdvanced"] is False
        assert team_mm.reconciler.cursor == cursor

        recovered = team_mm.sync()
        assert recovered["success"] is True
        assert recovered["pulled"] == 1

    def test_transport_error_reported(self, team_mm, service):
        """A dropped connection is reported as a failed pass, not raised."""
        service.add_knowledge("admin-1", service.team_id, "First rule", "general")
        cursor = team_mm.sync()["lastSyncTimestamp"]
        service.add_knowledge("admin-1", service.team_id, "Second rule", "general")

        http = team_mm.reconciler.client._client
        with patch.object(
            http, "request", side_effect=httpx.ReadError("connection reset by peer")
        ):
            failed = team_mm.sync()
        assert failed["success"] is False
        assert failed["errors"]
        assert team_mm.reconciler.cursor == cursor

        assert team_mm.sync()["pulled"] == 1


class TestPush:
    """Tests for pushing local proposals and votes."""

    def test_push_marks_synced(self, team_mm, service):
        local = team_mm.propose_team_rule("Review migrations before merging", rationale="Safety")
        result = team_mm.sync()
        assert result["pushed"] == 1

        remote = service.list_proposals("admin-1", service.team_id)
        assert len(remote) == 1
        assert remote[0]["localId"] == local["id"]
        assert remote[0]["createdBy"] == "member-1"
        assert remote_id_of(team_mm, local["id"]) == remote[0]["id"]

        again = team_mm.sync()
        assert again["pushed"] == 0
        assert len(service.list_proposals("admin-1", service.team_id)) == 1

    def test_team_fact_proposal_pushed(self, team_mm, service):
        stored = team_mm.remember_fact("Deploy from main only", category="decision", scope="team")
        assert stored["proposalCreated"] is True

        team_mm.sync()
        remote = service.list_proposals("admin-1", service.team_id)
        assert [p["rule"] for p in remote] == ["Deploy from main only"]
        assert remote[0]["category"] == "decision"

    def test_one_bad_proposal_does_not_block_others(self, team_mm, service):
        """A proposal the service rejects is recorded; the rest still push."""
        team_mm.store.insert_proposal(
            {
                "id": "proposal_bad",
                "rule": "Rule with an unknown category",
                "category": "vibes",
                "created_by": "member-1",
                "created_at": "2024-01-01T00:00:00+00:00",
            }
        )
        good = team_mm.propose_team_rule("A perfectly valid rule")

        result = team_mm.sync()
        assert result["success"] is True
        assert result["pushed"] == 1
        assert [f["id"] for f in result["pushFailures"]] == ["proposal_bad"]

        bad = team_mm.store.get_proposal("proposal_bad")
        assert bad["synced"] == 0
        assert bad["push_error"]
        assert remote_id_of(team_mm, good["id"])

    def test_push_network_failure_keeps_cursor(self, team_mm, service):
        team_mm.propose_team_rule("Rule that cannot be pushed yet")
        client = team_mm.reconciler.client
        with patch.object(
            client, "create_proposal", side_effect=RemoteError("timeout", retryable=True)
        ):
            result = team_mm.sync()

        assert result["success"] is False
        assert result["cursorAdvanced"] is False
        assert team_mm.reconciler.cursor is None
        assert team_mm.sync_status()["pendingProposals"] == 1

        assert team_mm.sync()["pushed"] == 1

    def test_votes_forwarded(self, team_mm, service):
        local = team_mm.propose_team_rule("Squash merge feature branches")
        team_mm.sync()

        team_mm.vote_proposal(local["id"], "approve", "Keeps history clean")
        result = team_mm.sync()
        assert result["votesPushed"] == 1

        remote = service.get_proposal("admin-1", service.team_id, remote_id_of(team_mm, local["id"]))
        assert remote["votes"] == {"approve": 1, "reject": 0}
        assert remote["voteDetails"][0]["userId"] == "member-1"
        assert team_mm.sync_status()["pendingVotes"] == 0

    def test_vote_on_closed_proposal_settles(self, team_mm, service):
        """A vote that reaches an already-decided proposal is dropped."""
        local = team_mm.propose_team_rule("Adopt trunk-based development")
        team_mm.sync()
        team_mm.vote_proposal(local["id"], "reject")
        service.decide("admin-1", service.team_id, remote_id_of(team_mm, local["id"]), "approved")

        result = team_mm.sync()
        assert result["success"] is True
        assert result["votesPushed"] == 0
        assert team_mm.sync_status()["pendingVotes"] == 0


class TestDecisions:
    """Tests for applying remote decisions locally."""

    def test_decision_applied(self, team_mm, service):
        local = team_mm.propose_team_rule("Use feature flags for risky changes")
        team_mm.sync()
        service.decide(
            "admin-1", service.team_id, remote_id_of(team_mm, local["id"]), "approved", "Agreed"
        )

        result = team_mm.sync()
        assert result["proposalUpdates"] == 1
        assert result["pulled"] == 1

        proposal = team_mm.store.get_proposal(local["id"])
        assert proposal["status"] == "approved"
        assert proposal["decided_by"] == "admin-1"
        assert proposal["decision_reason"] == "Agreed"
        assert team_mm.get_pending_proposals() == []

    def test_rejection_applied(self, team_mm, service):
        local = team_mm.propose_team_rule("Ban all comments")
        team_mm.sync()
        service.decide("admin-1", service.team_id, remote_id_of(team_mm, local["id"]), "rejected")

        result = team_mm.sync()
        assert result["proposalUpdates"] == 1
        assert result["pulled"] == 0
        assert team_mm.store.get_proposal(local["id"])["status"] == "rejected"


class TestCombinedSync:
    """Tests for the single round-trip sync mode."""

    def test_combined(self, team_mm, service):
        service.add_knowledge("admin-1", service.team_id, "Tag releases with semver", "pattern")
        local = team_mm.propose_team_rule("Document public functions")

        first = team_mm.sync(combined=True)
        assert first["success"] is True
        assert first["pushed"] == 1
        assert first["pulled"] == 1
        assert remote_id_of(team_mm, local["id"])

        second = team_mm.sync(combined=True)
        assert second["pushed"] == 0
        assert second["pulled"] == 0
        assert second["cursorAdvanced"] is False


class TestStatus:
    """Tests for sync status reporting."""

    def test_status(self, team_mm):
        team_mm.propose_team_rule("Keep functions small")
        status = team_mm.sync_status()
        assert status["teamEnabled"] is True
        assert status["pendingProposals"] == 1
        assert status["lastSyncTimestamp"] is None
        assert status["lastSyncAt"] is None

        before = utc_now()
        team_mm.sync()
        status = team_mm.sync_status()
        assert status["pendingProposals"] == 0
        assert status["lastSyncAt"] >= before

    def test_disabled(self, temp_mm):
        result = temp_mm.sync()
        assert result["success"] is False
        assert result["code"] == "team_disabled"
        assert temp_mm.sync_status()["teamEnabled"] is False

    def test_insecure_api_url(self, tmp_path, stub_embedder):
        team = TeamConfig(
            enabled=True, team_id="team_1", token="t", api_url="http://api.example.com"
        )
        with MemoryManager(project_root=tmp_path, embedder=stub_embedder, team=team) as mm:
            result = mm.sync()
            assert mm.get_pending_proposals(include_remote=True) == []
        assert result["success"] is False
        assert result["code"] == "invalid_input"
        assert "HTTPS" in result["error"]

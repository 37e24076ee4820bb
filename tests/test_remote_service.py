"""Tests for the remote knowledge service core."""

import threading

import pytest

from flow_memory.errors import Forbidden, InvalidState, NotFound, ProposalClosed, ValidationError
from flow_memory.remote.service import KnowledgeService


def propose(service, user="member-1", rule="Prefer composition over inheritance", **extra):
    proposal, _ = service.create_proposal(user, service.team_id, {"rule": rule, **extra})
    return proposal


class TestMembership:
    """Tests for membership gating."""

    def test_non_member_forbidden_everywhere(self, service):
        """Outsiders get Forbidden, never NotFound, even for unknown IDs."""
        team = service.team_id
        with pytest.raises(Forbidden):
            service.list_knowledge("outsider", team)
        with pytest.raises(Forbidden):
            service.get_proposal("outsider", team, "prop_does_not_exist")
        with pytest.raises(Forbidden):
            service.cast_vote("outsider", team, "prop_does_not_exist", "approve")
        with pytest.raises(Forbidden):
            service.create_proposal("outsider", team, {"rule": "x"})
        with pytest.raises(Forbidden):
            service.pull_memory("outsider", team)

    def test_unknown_team_forbidden(self, service):
        with pytest.raises(Forbidden):
            service.list_proposals("member-1", "team_unknown")

    def test_decide_requires_admin(self, service):
        proposal = propose(service)
        with pytest.raises(Forbidden):
            service.decide("member-1", service.team_id, proposal["id"], "approved")

    def test_add_member_requires_admin(self, service):
        with pytest.raises(Forbidden):
            service.add_member("member-1", service.team_id, "someone")

    def test_creator_is_admin(self):
        svc = KnowledgeService()
        team = svc.create_team("founder", "Core")
        assert svc.require_member(team["id"], "founder") == "admin"
        svc.close()


class TestProposals:
    """Tests for proposal creation and listing."""

    def test_create_defaults(self, service):
        proposal = propose(service)
        assert proposal["status"] == "pending"
        assert proposal["category"] == "pattern"
        assert proposal["votes"] == {"approve": 0, "reject": 0}
        assert proposal["createdBy"] == "member-1"

    def test_repeat_local_id_returns_existing(self, service):
        """Pushing the same localId twice does not create a duplicate."""
        first, created = service.create_proposal(
            "member-1", service.team_id, {"rule": "Use UTC", "localId": "proposal_1"}
        )
        second, created_again = service.create_proposal(
            "member-1", service.team_id, {"rule": "Use UTC", "localId": "proposal_1"}
        )
        assert created is True
        assert created_again is False
        assert first["id"] == second["id"]
        assert len(service.list_proposals("member-1", service.team_id)) == 1

    def test_same_rule_different_members_not_deduplicated(self, service):
        propose(service, "member-1", "Use UTC", localId="proposal_1")
        propose(service, "member-2", "Use UTC", localId="proposal_1")
        assert len(service.list_proposals("admin-1", service.team_id)) == 2

    def test_empty_rule_rejected(self, service):
        with pytest.raises(ValidationError):
            service.create_proposal("member-1", service.team_id, {"rule": "  "})

    def test_get_proposal_details(self, service):
        proposal = propose(service)
        service.cast_vote("member-2", service.team_id, proposal["id"], "approve", "yes")

        detail = service.get_proposal("member-2", service.team_id, proposal["id"])
        assert detail["userVote"] == "approve"
        assert detail["userRole"] == "member"
        assert detail["voteDetails"][0]["comment"] == "yes"

        with pytest.raises(NotFound):
            service.get_proposal("member-2", service.team_id, "prop_missing")

    def test_invalid_since(self, service):
        with pytest.raises(ValidationError):
            service.list_proposals("member-1", service.team_id, since="last tuesday")


class TestVoting:
    """Tests for vote casting."""

    def test_vote_change_tally(self, service):
        """approve then reject: approve back to its prior count, reject +1, one vote total."""
        proposal = propose(service)
        team = service.team_id
        before = service.get_proposal("admin-1", team, proposal["id"])["votes"]

        first = service.cast_vote("member-2", team, proposal["id"], "approve")
        assert first["previousVote"] is None
        assert first["votes"] == {"approve": before["approve"] + 1, "reject": before["reject"]}

        second = service.cast_vote("member-2", team, proposal["id"], "reject")
        assert second["previousVote"] == "approve"
        assert second["changed"] is True
        assert second["votes"] == {"approve": before["approve"], "reject": before["reject"] + 1}

        details = service.get_proposal("admin-1", team, proposal["id"])["voteDetails"]
        assert [d["userId"] for d in details].count("member-2") == 1

    def test_same_vote_twice(self, service):
        proposal = propose(service)
        service.cast_vote("member-2", service.team_id, proposal["id"], "approve")
        result = service.cast_vote("member-2", service.team_id, proposal["id"], "approve")
        assert result["changed"] is False
        assert result["votes"] == {"approve": 1, "reject": 0}

    def test_vote_missing_proposal(self, service):
        with pytest.raises(NotFound):
            service.cast_vote("member-1", service.team_id, "prop_missing", "approve")

    def test_invalid_vote(self, service):
        proposal = propose(service)
        with pytest.raises(ValidationError):
            service.cast_vote("member-1", service.team_id, proposal["id"], "yes")

    def test_concurrent_votes_not_lost(self, service):
        """Many members voting at once all land in the tally."""
        team = service.team_id
        voters = [f"voter-{i}" for i in range(12)]
        for voter in voters:
            service.add_member("admin-1", team, voter)
        proposal = propose(service)

        def vote(voter):
            service.cast_vote(voter, team, proposal["id"], "approve")
            service.cast_vote(voter, team, proposal["id"], "reject")

        threads = [threading.Thread(target=vote, args=(v,)) for v in voters]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        tally = service.get_proposal("admin-1", team, proposal["id"])["votes"]
        assert tally == {"approve": 0, "reject": len(voters)}


class TestDecisions:
    """Tests for the proposal state machine."""

    def test_approve_creates_knowledge(self, service):
        proposal = propose(service, category="decision")
        decided = service.decide("admin-1", service.team_id, proposal["id"], "approved", "Agreed")

        assert decided["status"] == "approved"
        assert decided["decidedBy"] == "admin-1"
        assert decided["decisionReason"] == "Agreed"

        knowledge = service.list_knowledge("member-1", service.team_id)
        assert len(knowledge) == 1
        assert knowledge[0]["id"] == decided["knowledgeId"]
        assert knowledge[0]["fact"] == proposal["rule"]
        assert knowledge[0]["category"] == "decision"
        assert knowledge[0]["fromProposal"] == proposal["id"]

    def test_reject_creates_no_knowledge(self, service):
        proposal = propose(service)
        service.decide("admin-1", service.team_id, proposal["id"], "rejected")
        assert service.list_knowledge("member-1", service.team_id) == []

    def test_terminality(self, service):
        """After approval, decide and vote fail and change nothing."""
        team = service.team_id
        proposal = propose(service)
        service.decide("admin-1", team, proposal["id"], "approved")
        snapshot = service.get_proposal("admin-1", team, proposal["id"])

        with pytest.raises(InvalidState):
            service.decide("admin-1", team, proposal["id"], "rejected")
        with pytest.raises(InvalidState):
            service.decide("admin-1", team, proposal["id"], "approved")
        with pytest.raises(ProposalClosed):
            service.cast_vote("member-1", team, proposal["id"], "approve")

        after = service.get_proposal("admin-1", team, proposal["id"])
        assert after["status"] == "approved"
        assert after["votes"] == snapshot["votes"]
        assert after["decidedAt"] == snapshot["decidedAt"]
        assert len(service.list_knowledge("admin-1", team)) == 1

    def test_vote_change_after_close(self, service):
        team = service.team_id
        proposal = propose(service)
        service.cast_vote("member-1", team, proposal["id"], "approve")
        service.decide("admin-1", team, proposal["id"], "rejected")
        with pytest.raises(ProposalClosed):
            service.cast_vote("member-1", team, proposal["id"], "reject")
        assert service.get_proposal("admin-1", team, proposal["id"])["votes"] == {
            "approve": 1,
            "reject": 0,
        }

    def test_invalid_decision(self, service):
        proposal = propose(service)
        with pytest.raises(ValidationError):
            service.decide("admin-1", service.team_id, proposal["id"], "maybe")

    def test_decide_missing(self, service):
        with pytest.raises(NotFound):
            service.decide("admin-1", service.team_id, "prop_missing", "approved")

    def test_decided_since_filter(self, service):
        team = service.team_id
        first = propose(service, rule="Rule one")
        decided = service.decide("admin-1", team, first["id"], "approved")
        second = propose(service, rule="Rule two")
        service.decide("admin-1", team, second["id"], "rejected")
        propose(service, rule="Still pending")

        updates = service.list_proposals("member-1", team, since=decided["decidedAt"], decided=True)
        assert [p["id"] for p in updates] == [second["id"]]

        everything = service.list_proposals("member-1", team, decided=True)
        assert [p["id"] for p in everything] == [first["id"], second["id"]]

    def test_timestamps_taken_under_write_lock(self, service, monkeypatch):
        """A decision committed later never carries an earlier decidedAt."""
        import flow_memory.remote.service as service_module

        held = []
        real_utc_now = service_module.utc_now

        def try_acquire(free):
            if service._lock.acquire(blocking=False):
                service._lock.release()
                free.append(True)

        def stamp_if_locked():
            # RLock is reentrant, so check ownership from another thread
            free = []
            thread = threading.Thread(target=try_acquire, args=(free,))
            thread.start()
            thread.join()
            held.append(not free)
            return real_utc_now()

        team = service.team_id
        proposal = propose(service)
        monkeypatch.setattr(service_module, "utc_now", stamp_if_locked)

        service.cast_vote("member-1", team, proposal["id"], "approve")
        service.decide("admin-1", team, proposal["id"], "approved")
        service.add_knowledge("admin-1", team, "Direct rule", "pattern")
        service.push_memory("member-1", team, [{"factId": "f1", "fact": "Shared"}])

        assert held
        assert all(held)


class TestKnowledge:
    """Tests for direct knowledge entries."""

    def test_admin_add(self, service):
        entry = service.add_knowledge("admin-1", service.team_id, "Deploy on Tuesdays", "decision")
        assert entry["fromProposal"] is None
        assert service.list_knowledge("member-1", service.team_id, category="decision")[0]["id"] == entry["id"]

    def test_member_cannot_add(self, service):
        with pytest.raises(Forbidden):
            service.add_knowledge("member-1", service.team_id, "Nope", "general")

    def test_since(self, service):
        first = service.add_knowledge("admin-1", service.team_id, "First", "general")
        second = service.add_knowledge("admin-1", service.team_id, "Second", "general")
        newer = service.list_knowledge("member-1", service.team_id, since=first["approvedAt"])
        assert [k["id"] for k in newer] == [second["id"]]


class TestSharedMemory:
    """Tests for shared team memory."""

    def test_push_and_pull(self, service):
        team = service.team_id
        result = service.push_memory(
            "member-1",
            team,
            [
                {"factId": "f1", "fact": "Use uv", "relevanceScore": 0.9, "tags": ["tooling"]},
                {"factId": "f2", "fact": "Use ruff", "relevanceScore": 0.4},
                {"factId": "f3"},
            ],
        )
        assert result["added"] == 2
        assert len(result["errors"]) == 1

        again = service.push_memory("member-2", team, [{"factId": "f2", "fact": "Use ruff format"}])
        assert again == {"added": 0, "updated": 1, "errors": []}

        pulled = service.pull_memory("member-2", team)
        assert pulled["count"] == 2
        assert pulled["facts"][0]["factId"] == "f1"
        assert pulled["facts"][0]["tags"] == ["tooling"]


class TestCombinedSync:
    """Tests for the combined sync round trip."""

    def test_push_then_pull(self, service):
        team = service.team_id
        approved = propose(service, "member-2", "Team rule")
        service.decide("admin-1", team, approved["id"], "approved")

        result = service.sync(
            "member-1",
            team,
            proposals=[{"localId": "proposal_a", "rule": "New rule"}, {"localId": "proposal_b", "rule": ""}],
        )
        assert [m["localId"] for m in result["pushed"]["proposals"]] == ["proposal_a"]
        assert result["pushed"]["errors"][0]["localId"] == "proposal_b"
        assert [k["fact"] for k in result["pulled"]["knowledge"]] == ["Team rule"]
        assert result["pulled"]["proposalUpdates"][0]["id"] == approved["id"]
        assert result["syncTimestamp"]

        # Re-pushing the same local ID maps to the same remote proposal
        repeat = service.sync("member-1", team, proposals=[{"localId": "proposal_a", "rule": "New rule"}])
        assert repeat["pushed"]["proposals"][0]["remoteId"] == result["pushed"]["proposals"][0]["remoteId"]
        assert repeat["pushed"]["proposals"][0]["created"] is False

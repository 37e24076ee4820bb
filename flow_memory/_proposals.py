"""Proposal creation and voting on the local side.

A proposal moves ``pending -> approved`` or ``pending -> rejected`` exactly
once. Votes are kept as a per-voter list; tallies are always computed from that
list on read.
"""

import logging
from typing import Any

from flow_memory._config import TeamConfig
from flow_memory._store import FACT_CATEGORIES, VOTE_CHOICES, LocalStore
from flow_memory.errors import NotFound, ProposalClosed, TeamDisabled, ValidationError
from flow_memory.utils import generate_id, utc_now

logger = logging.getLogger(__name__)

DECISIONS = frozenset({"approved", "rejected"})
DEFAULT_PROPOSAL_CATEGORY = "pattern"
LOCAL_VOTER = "local"


def tally_votes(votes: list[dict[str, Any]]) -> dict[str, int]:
    """Count approve and reject votes from a per-voter list."""
    counts = {"approve": 0, "reject": 0}
    for vote in votes:
        if vote.get("vote") in counts:
            counts[vote["vote"]] += 1
    return counts


def validate_vote(vote: str) -> str:
    """Ensure a vote is "approve" or "reject".

    Raises:
        ValidationError: For any other value.
    """
    if vote not in VOTE_CHOICES:
        raise ValidationError('Vote must be "approve" or "reject"')
    return vote


def validate_decision(decision: str) -> str:
    """Ensure a decision is "approved" or "rejected".

    Raises:
        ValidationError: For any other value.
    """
    if decision not in DECISIONS:
        raise ValidationError('Decision must be "approved" or "rejected"')
    return decision


def validate_category(category: str | None, default: str) -> str:
    """Return the category, or the default when empty.

    Raises:
        ValidationError: If the category is not a known fact category.
    """
    category = category or default
    if category not in FACT_CATEGORIES:
        allowed = ", ".join(sorted(FACT_CATEGORIES))
        raise ValidationError(f"Invalid category '{category}'. Must be one of: {allowed}")
    return category


class ProposalEngine:
    """Creates team proposals and records votes in the local store."""

    def __init__(self, store: LocalStore, team: TeamConfig) -> None:
        """Initialize the proposal engine.

        Args:
            store: Local store holding proposals and votes.
            team: Team configuration; team operations fail if it is inactive.
        """
        self.store = store
        self.team = team

    def require_team(self) -> None:
        """Raise TeamDisabled unless team features are configured."""
        if not self.team.active:
            raise TeamDisabled(
                "Team features are not configured. Use scope 'local' for local-only storage."
            )

    def build(
        self,
        rule: str,
        category: str | None = None,
        rationale: str | None = None,
        source_context: str | None = None,
        fact_id: str | None = None,
    ) -> dict[str, Any]:
        """Build a new pending proposal record without storing it."""
        if not rule or not rule.strip():
            raise ValidationError("rule cannot be empty")
        return {
            "id": generate_id("proposal"),
            "rule": rule.strip(),
            "category": validate_category(category, DEFAULT_PROPOSAL_CATEGORY),
            "rationale": rationale or "",
            "source_context": source_context,
            "created_by": self.team.user_id,
            "fact_id": fact_id,
            "created_at": utc_now(),
        }

    def propose(
        self,
        rule: str,
        category: str | None = None,
        rationale: str | None = None,
        source_context: str | None = None,
    ) -> dict[str, Any]:
        """Create a pending proposal that the next sync will push.

        Raises:
            TeamDisabled: If no team is configured.
            ValidationError: If the rule is empty or the category unknown.
        """
        self.require_team()
        proposal = self.build(rule, category, rationale, source_context)
        self.store.insert_proposal(proposal)
        logger.debug("Created proposal %s", proposal["id"])
        return proposal

    def with_votes(self, proposal: dict[str, Any]) -> dict[str, Any]:
        """Attach the per-voter list and computed tally to a proposal row."""
        votes = self.store.list_votes(proposal["id"])
        return {
            "id": proposal["id"],
            "remoteId": proposal.get("remote_id"),
            "rule": proposal["rule"],
            "category": proposal["category"],
            "rationale": proposal.get("rationale") or "",
            "sourceContext": proposal.get("source_context"),
            "status": proposal["status"],
            "synced": bool(proposal.get("synced")),
            "createdBy": proposal.get("created_by"),
            "createdAt": proposal["created_at"],
            "decidedAt": proposal.get("decided_at"),
            "decidedBy": proposal.get("decided_by"),
            "decisionReason": proposal.get("decision_reason"),
            "votes": [
                {
                    "userId": v["user_id"],
                    "vote": v["vote"],
                    "comment": v["comment"],
                    "timestamp": v["voted_at"],
                }
                for v in votes
            ],
            "tally": tally_votes(votes),
        }

    def pending(self) -> list[dict[str, Any]]:
        """List local pending proposals, newest first."""
        return [self.with_votes(p) for p in self.store.list_proposals(status="pending")]

    def vote(self, proposal_id: str, vote: str, comment: str | None = None) -> dict[str, Any]:
        """Record this member's vote on a proposal.

        Re-voting replaces the member's earlier vote. The vote is forwarded to
        the team on the next sync.

        Raises:
            TeamDisabled: If no team is configured.
            ValidationError: If the vote is not "approve" or "reject".
            NotFound: If the proposal does not exist locally.
            ProposalClosed: If the proposal has already been decided.
        """
        self.require_team()
        validate_vote(vote)

        proposal = self.store.get_proposal(proposal_id)
        if proposal is None:
            raise NotFound(f"Proposal not found: {proposal_id}")
        if proposal["status"] != "pending":
            raise ProposalClosed(f"Proposal {proposal_id} is already {proposal['status']}")

        voter = self.team.user_id or LOCAL_VOTER
        try:
            previous = self.store.upsert_vote(proposal["id"], voter, vote, comment or "")
        except LookupError:
            raise ProposalClosed(f"Proposal {proposal_id} is no longer pending") from None

        return {
            "success": True,
            "voteRecorded": True,
            "previousVote": previous,
            "changed": previous is not None and previous != vote,
        }

"""Sync reconciler between the local store and the team knowledge service.

A sync pass runs four steps: push unsynced proposals (and queued votes), pull
Knowledge approved after the cursor, pull proposal decisions made after the
cursor, then advance the cursor. The cursor only moves when no step failed,
so a failed pass is simply retried from the same point next time. A single
rejected proposal is recorded against that proposal and does not count as a
failed step.
No store transaction is held across a network call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from flow_memory._config import TeamConfig
from flow_memory._embedding import EmbeddingPool
from flow_memory._store import LocalStore
from flow_memory.errors import (
    FlowMemoryError,
    ProposalClosed,
    RemoteError,
    TeamDisabled,
)
from flow_memory.remote.client import TeamClient
from flow_memory.utils import normalize_timestamp, utc_now

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_sync_timestamp"
LAST_SYNC_AT_KEY = "last_sync_at"


@dataclass
class SyncResult:
    """Result of a sync operation."""

    pushed: int = 0
    pulled: int = 0
    proposal_updates: int = 0
    votes_pushed: int = 0
    push_failures: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cursor_before: str | None = None
    cursor_after: str | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def advanced(self) -> bool:
        return self.cursor_after != self.cursor_before

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "pushed": self.pushed,
            "pulled": self.pulled,
            "proposalUpdates": self.proposal_updates,
            "votesPushed": self.votes_pushed,
            "pushFailures": self.push_failures,
            "errors": self.errors,
            "lastSyncTimestamp": self.cursor_after,
            "cursorAdvanced": self.advanced,
        }


class SyncReconciler:
    """Pushes local proposals and votes, pulls Knowledge and decisions."""

    def __init__(
        self,
        store: LocalStore,
        team: TeamConfig,
        embeddings: EmbeddingPool | None = None,
        client: TeamClient | None = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            store: Local store to reconcile.
            team: Team configuration; syncing fails with TeamDisabled if inactive.
            embeddings: Pool used to embed pulled Knowledge (stored without a
                vector if None or if embedding fails).
            client: Team API client; built from ``team`` on first use if None.
        """
        self.store = store
        self.team = team
        self.embeddings = embeddings
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> TeamClient:
        if not self.team.active:
            raise TeamDisabled("Team sync is not configured")
        if self._client is None:
            self._client = TeamClient(
                self.team.api_url, self.team.token, team_id=self.team.team_id
            )
        return self._client

    def _key(self, name: str) -> str:
        return f"{name}:{self.team.team_id}"

    @property
    def cursor(self) -> str | None:
        return self.store.get_state(self._key(CURSOR_KEY))

    def sync(self, combined: bool = False) -> SyncResult:
        """Run one sync pass.

        Network and service failures never raise; they are reported in
        ``SyncResult.errors`` and leave the cursor where it was.

        Args:
            combined: Use the single push-then-pull round trip endpoint.

        Raises:
            TeamDisabled: If team features are not configured.
        """
        client = self.client
        result = SyncResult(cursor_before=self.cursor)
        result.cursor_after = result.cursor_before

        if combined:
            high_water = self._sync_combined(client, result)
        else:
            self._push_proposals(client, result)
            self._push_votes(client, result)
            high_water = self._pull(client, result)

        if high_water is not None and not result.errors:
            self._advance(result, high_water)

        if result.errors:
            logger.warning("Sync finished with errors: %s", "; ".join(result.errors))
        else:
            logger.info(
                "Sync complete: pushed %d, pulled %d, %d proposal updates",
                result.pushed, result.pulled, result.proposal_updates,
            )
        return result

    def _advance(self, result: SyncResult, high_water: str) -> None:
        """Record a successful pass and move the cursor forward if data arrived."""
        if high_water and (result.cursor_before is None or high_water > result.cursor_before):
            self.store.set_state(self._key(CURSOR_KEY), high_water)
            result.cursor_after = high_water
        self.store.set_state(self._key(LAST_SYNC_AT_KEY), utc_now())

    # Push

    def _push_proposals(self, client: TeamClient, result: SyncResult) -> None:
        for proposal in self.store.unsynced_proposals():
            if proposal.get("remote_id"):
                self.store.mark_proposal_synced(proposal["id"], proposal["remote_id"])
                continue
            try:
                response = client.create_proposal(
                    proposal["rule"],
                    category=proposal["category"],
                    rationale=proposal["rationale"],
                    source_context=proposal["source_context"],
                    local_id=proposal["id"],
                )
            except RemoteError as e:
                self._record_push_failure(result, proposal["id"], e)
                if e.retryable:
                    result.errors.append(f"Push failed: {e}")
                    return
                continue
            except FlowMemoryError as e:
                self._record_push_failure(result, proposal["id"], e)
                continue
            self.store.mark_proposal_synced(proposal["id"], response["proposal"]["id"])
            result.pushed += 1

    def _record_push_failure(self, result: SyncResult, proposal_id: str, error: Exception) -> None:
        logger.warning("Failed to push proposal %s: %s", proposal_id, error)
        self.store.record_push_error(proposal_id, str(error))
        result.push_failures.append({"id": proposal_id, "error": str(error)})

    def _push_votes(self, client: TeamClient, result: SyncResult) -> None:
        for vote in self.store.unsynced_votes():
            try:
                client.vote(vote["remote_id"], vote["vote"], vote["comment"] or None)
            except ProposalClosed:
                # Decided before our vote arrived; nothing left to forward
                logger.info("Proposal %s closed before vote was forwarded", vote["remote_id"])
            except RemoteError as e:
                if e.retryable:
                    result.errors.append(f"Vote push failed: {e}")
                    return
                logger.warning("Failed to push vote on %s: %s", vote["remote_id"], e)
                result.push_failures.append({"id": vote["proposal_id"], "error": str(e)})
                continue
            except FlowMemoryError as e:
                logger.warning("Failed to push vote on %s: %s", vote["remote_id"], e)
                result.push_failures.append({"id": vote["proposal_id"], "error": str(e)})
                continue
            else:
                result.votes_pushed += 1
            self.store.mark_vote_synced(vote["proposal_id"], vote["user_id"], vote["voted_at"])

    # Pull

    def _pull(self, client: TeamClient, result: SyncResult) -> str | None:
        """Pull Knowledge and decisions since the cursor.

        Returns:
            The new high-water mark, or None if either pull failed.
        """
        since = result.cursor_before
        high_water = since or ""
        ok = True

        try:
            knowledge = client.list_knowledge(since=since)
        except FlowMemoryError as e:
            result.errors.append(f"Knowledge pull failed: {e}")
            ok = False
        else:
            high_water = max(high_water, self._merge_knowledge(knowledge, result))

        try:
            updates = client.list_proposals(since=since, decided=True)
        except FlowMemoryError as e:
            result.errors.append(f"Proposal update pull failed: {e}")
            ok = False
        else:
            high_water = max(high_water, self._apply_decisions(updates, result))

        return high_water if ok else None

    def _merge_knowledge(self, knowledge: list[dict[str, Any]], result: SyncResult) -> str:
        high_water = ""
        for entry in knowledge:
            approved_at = normalize_timestamp(entry.get("approvedAt")) or ""
            high_water = max(high_water, approved_at)
            if self.store.has_knowledge(entry["id"]):
                continue
            embedding = self.embeddings.try_embed(entry["fact"]) if self.embeddings else None
            if self.store.insert_knowledge_fact(entry, embedding):
                result.pulled += 1
        return high_water

    def _apply_decisions(self, updates: list[dict[str, Any]], result: SyncResult) -> str:
        high_water = ""
        for update in updates:
            decided_at = normalize_timestamp(update.get("decidedAt")) or ""
            high_water = max(high_water, decided_at)
            changed = self.store.apply_proposal_decision(
                update["id"],
                update["status"],
                update.get("decidedAt"),
                decided_by=update.get("decidedBy"),
                reason=update.get("decisionReason"),
                local_id=update.get("localId"),
            )
            if changed:
                result.proposal_updates += 1
        return high_water

    # Combined round trip

    def _sync_combined(self, client: TeamClient, result: SyncResult) -> str | None:
        pending = []
        for proposal in self.store.unsynced_proposals():
            if proposal.get("remote_id"):
                self.store.mark_proposal_synced(proposal["id"], proposal["remote_id"])
            else:
                pending.append(proposal)

        try:
            response = client.sync(
                [
                    {
                        "localId": p["id"],
                        "rule": p["rule"],
                        "category": p["category"],
                        "rationale": p["rationale"],
                        "sourceContext": p["source_context"],
                    }
                    for p in pending
                ],
                since=result.cursor_before,
            )
        except FlowMemoryError as e:
            result.errors.append(f"Sync failed: {e}")
            return None

        pushed = response.get("pushed", {})
        for mapping in pushed.get("proposals", []):
            self.store.mark_proposal_synced(mapping["localId"], mapping["remoteId"])
            result.pushed += 1
        for failure in pushed.get("errors", []):
            self._record_push_failure(result, failure["localId"], Exception(failure["error"]))

        self._push_votes(client, result)

        pulled = response.get("pulled", {})
        high_water = max(
            result.cursor_before or "",
            self._merge_knowledge(pulled.get("knowledge", []), result),
            self._apply_decisions(pulled.get("proposalUpdates", []), result),
        )
        return high_water

    def close(self) -> None:
        """Close the API client if this reconciler created it."""
        if self._owns_client and self._client is not None:
            self._client.close()
            self._client = None

    # Status

    def remote_pending(self) -> list[dict[str, Any]]:
        """Fetch the team's pending proposals from the service."""
        return self.client.list_proposals(status="pending")

    def vote_remote(
        self, proposal_id: str, vote: str, comment: str | None = None
    ) -> dict[str, Any]:
        """Vote directly on a team proposal that has no local copy.

        Raises:
            NotFound: If the team has no such proposal.
            ProposalClosed: If the proposal has already been decided.
            RemoteError: If the service cannot be reached.
        """
        response = self.client.vote(proposal_id, vote, comment)
        logger.info("Forwarded vote on remote proposal %s", proposal_id)
        return {
            "success": True,
            "voteRecorded": True,
            "previousVote": response.get("previousVote"),
            "changed": bool(response.get("changed")),
            "tally": response.get("votes"),
        }

    def status(self) -> dict[str, Any]:
        """Report queued local work and the cursor."""
        return {
            "teamEnabled": self.team.active,
            "pendingProposals": len(self.store.unsynced_proposals()),
            "pendingVotes": self.store.count_unsynced_votes(),
            "lastSyncTimestamp": self.cursor if self.team.team_id else None,
            "lastSyncAt": (
                self.store.get_state(self._key(LAST_SYNC_AT_KEY)) if self.team.team_id else None
            ),
        }

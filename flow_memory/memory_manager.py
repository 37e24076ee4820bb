"""Core memory management: the tool-call API over the local store."""

import logging
from pathlib import Path
from typing import Any

from flow_memory._config import ConfigManager, TeamConfig, resolve_project_root
from flow_memory._embedding import Embedder, EmbeddingPool, EmbeddingService
from flow_memory._prd import assemble_context, chunk_prd, order_for_context
from flow_memory._proposals import ProposalEngine
from flow_memory._retrieval import Candidate, SemanticRetriever, VectorIndex
from flow_memory._store import FACT_CATEGORIES, FACT_SCOPES, LocalStore
from flow_memory._sync import SyncReconciler
from flow_memory.errors import (
    FlowMemoryError,
    NotFound,
    ValidationError,
    error_result,
)
from flow_memory.remote.client import TeamClient
from flow_memory.utils import generate_id, utc_now

logger = logging.getLogger(__name__)


class MemoryManager:
    """Stores, recalls and shares facts and PRD context for one project."""

    DB_FILENAME = "local.db"

    # Input size limits
    MAX_FACT_LENGTH = 10_000
    MAX_PRD_LENGTH = 1_000_000

    # Defaults for retrieval
    DEFAULT_RECALL_LIMIT = 5
    DEFAULT_LIST_LIMIT = 50
    DEFAULT_CONTEXT_TOKENS = 1000
    DEFAULT_PROJECT_ID = "default"

    def __init__(
        self,
        project_root: str | Path | None = None,
        embedder: Embedder | None = None,
        team: TeamConfig | None = None,
        client: TeamClient | None = None,
        index: VectorIndex | None = None,
        embed_timeout: float | None = None,
    ):
        """Initialize the memory manager.

        Args:
            project_root: Project directory; defaults to FLOW_MEMORY_PROJECT_ROOT
                or the current directory.
            embedder: Embedding capability; sentence-transformers if None.
            team: Team configuration; read from config.json if None.
            client: Team API client; built from the team configuration if None.
            index: Vector index for ranking; exact linear scan if None.
            embed_timeout: Per-call embedding timeout in seconds.
        """
        self.project_root = resolve_project_root(project_root)
        self.config = ConfigManager(self.project_root)
        self.team = team if team is not None else self.config.team_config()

        self.memory_path = self.config.workflow_path / "memory"
        self.store = LocalStore(self.memory_path / self.DB_FILENAME)
        self.embeddings = EmbeddingPool(embedder or EmbeddingService(), timeout=embed_timeout)
        self.retriever = SemanticRetriever(index)
        self.proposals = ProposalEngine(self.store, self.team)
        self.reconciler = SyncReconciler(self.store, self.team, self.embeddings, client)

    # Facts

    def remember_fact(
        self,
        fact: str,
        category: str = "general",
        scope: str = "local",
        model: str | None = None,
        source_context: str | None = None,
    ) -> dict[str, Any]:
        """Store a fact with its embedding.

        A team-scope fact also creates a pending team proposal in the same
        transaction. If team features are off, the fact is kept locally and
        a warning is returned.

        Args:
            fact: The fact text.
            category: One of the fact categories.
            scope: "local" or "team".
            model: Optional AI model the fact applies to.
            source_context: Free-text note on where the fact came from.

        Returns:
            ``{success, id, stored, scope, hasEmbedding, proposalCreated}``,
            plus ``proposalId`` or ``warning`` when applicable.
        """
        try:
            text = self._validate_fact(fact, category, scope)
        except ValidationError as e:
            return error_result(e)

        embedding = self.embeddings.try_embed(text)
        record = {
            "id": generate_id("fact"),
            "fact": text,
            "category": category,
            "scope": scope,
            "model": model,
            "embedding": embedding,
            "source_context": source_context,
            "created_at": utc_now(),
        }
        result: dict[str, Any] = {
            "success": True,
            "id": record["id"],
            "stored": True,
            "scope": scope,
            "hasEmbedding": embedding is not None,
            "proposalCreated": False,
        }

        proposal = None
        if scope == "team":
            if self.team.active:
                proposal = self.proposals.build(
                    text, category, source_context=source_context, fact_id=record["id"]
                )
            else:
                record["scope"] = "local"
                result["scope"] = "local"
                result["warning"] = "Team features are not configured; fact stored locally only."

        self.store.insert_fact(record, proposal)
        if proposal is not None:
            result["proposalCreated"] = True
            result["proposalId"] = proposal["id"]
        return result

    def _validate_fact(self, fact: str, category: str, scope: str) -> str:
        if not isinstance(fact, str) or not fact.strip():
            raise ValidationError("fact cannot be empty")
        if len(fact) > self.MAX_FACT_LENGTH:
            raise ValidationError(f"fact exceeds maximum length of {self.MAX_FACT_LENGTH}")
        if category not in FACT_CATEGORIES:
            allowed = ", ".join(sorted(FACT_CATEGORIES))
            raise ValidationError(f"Invalid category '{category}'. Must be one of: {allowed}")
        if scope not in FACT_SCOPES:
            raise ValidationError(f"Invalid scope '{scope}'. Must be 'local' or 'team'")
        return fact.strip()

    def recall_facts(
        self,
        query: str,
        category: str | None = None,
        limit: int = DEFAULT_RECALL_LIMIT,
        include_team: bool = True,
        model: str | None = None,
    ) -> list[dict[str, Any]]:
        """Rank stored facts by semantic similarity to a query.

        Facts without an embedding are still returned, after every fact that
        has one, with relevance 0.

        Args:
            query: Natural-language query.
            category: Optional category filter.
            limit: Maximum number of results.
            include_team: Include team-scope facts.
            model: Optional model filter; facts without a model always match.

        Returns:
            ``[{id, fact, category, scope, model, relevance, createdAt}]``, best first.
        """
        facts = self.store.list_facts(
            category=category,
            scope=None if include_team else "local",
            model=model,
        )
        if not facts:
            return []

        query_vector = self.embeddings.try_embed(query) if query and query.strip() else None
        candidates = [Candidate(f["id"], f["embedding"], f["created_at"], f) for f in facts]
        ranked = self.retriever.rank(query_vector, candidates, limit=max(limit, 0))

        return [
            {
                "id": scored.item["id"],
                "fact": scored.item["fact"],
                "category": scored.item["category"],
                "scope": scored.item["scope"],
                "model": scored.item["model"],
                "relevance": scored.relevance,
                "createdAt": scored.item["created_at"],
            }
            for scored in ranked
        ]

    def forget_fact(self, fact_id: str) -> dict[str, Any]:
        """Hard-delete a fact.

        Returns:
            ``{deleted: bool}``.
        """
        deleted = self.store.delete_fact(fact_id)
        if deleted:
            self.retriever.forget([fact_id])
        return {"deleted": deleted}

    def list_facts(
        self,
        scope: str | None = None,
        category: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[dict[str, Any]]:
        """List stored facts, newest first."""
        return [
            {
                "id": f["id"],
                "fact": f["fact"],
                "category": f["category"],
                "scope": f["scope"],
                "model": f["model"],
                "sourceContext": f["source_context"],
                "hasEmbedding": f["embedding"] is not None,
                "createdAt": f["created_at"],
            }
            for f in self.store.list_facts(category=category, scope=scope, limit=limit)
        ]

    # Proposals

    def propose_team_rule(
        self,
        rule: str,
        category: str | None = None,
        rationale: str | None = None,
        source_context: str | None = None,
    ) -> dict[str, Any]:
        """Create a pending team proposal.

        Returns:
            ``{success, id, status}``, or an error result (``team_disabled``
            when no team is configured).
        """
        try:
            proposal = self.proposals.propose(rule, category, rationale, source_context)
        except FlowMemoryError as e:
            return error_result(e)
        return {"success": True, "id": proposal["id"], "status": "pending"}

    def get_pending_proposals(self, include_remote: bool = False) -> list[dict[str, Any]]:
        """List pending proposals.

        Args:
            include_remote: Also fetch the team's pending proposals from the
                service (skipped with a warning if it cannot be reached).
        """
        proposals = self.proposals.pending()
        for proposal in proposals:
            proposal["source"] = "local"
        if not include_remote or not self.team.active:
            return proposals

        try:
            remote = self.reconciler.remote_pending()
        except FlowMemoryError as e:
            logger.warning("Could not fetch remote proposals: %s", e)
            return proposals

        known = {p["remoteId"] for p in proposals if p["remoteId"]}
        for p in remote:
            if p["id"] in known:
                continue
            proposals.append(
                {
                    "id": p["id"],
                    "remoteId": p["id"],
                    "rule": p["rule"],
                    "category": p["category"],
                    "rationale": p.get("rationale") or "",
                    "sourceContext": p.get("sourceContext"),
                    "status": p["status"],
                    "synced": True,
                    "createdBy": p.get("createdBy"),
                    "createdAt": p.get("createdAt"),
                    "decidedAt": None,
                    "decidedBy": None,
                    "decisionReason": None,
                    "votes": [],
                    "tally": p.get("votes") or {"approve": 0, "reject": 0},
                    "source": "remote",
                }
            )
        return proposals

    def vote_proposal(
        self, proposal_id: str, vote: str, comment: str | None = None
    ) -> dict[str, Any]:
        """Vote on a proposal; re-voting replaces the earlier vote.

        Proposals known only to the team service (listed with
        ``include_remote``) are voted on directly over the API.

        Returns:
            ``{success, voteRecorded, previousVote, changed}`` or an error result.
        """
        try:
            return self.proposals.vote(proposal_id, vote, comment)
        except NotFound:
            # Not held locally; the team service may still know it
            try:
                return self.reconciler.vote_remote(proposal_id, vote, comment)
            except FlowMemoryError as e:
                return error_result(e)
        except FlowMemoryError as e:
            return error_result(e)

    # PRD context

    def store_prd(
        self,
        content: str,
        project_id: str = DEFAULT_PROJECT_ID,
        sections: list[str] | None = None,
    ) -> dict[str, Any]:
        """Chunk, embed and store a PRD, replacing the project's previous one.

        Args:
            content: Markdown PRD text.
            project_id: Project the PRD belongs to.
            sections: Optional section titles to keep (case-insensitive).

        Returns:
            ``{success, stored, projectId, chunks, sections, embedded}`` or an
            error result if the content cannot be chunked.
        """
        try:
            if isinstance(content, str) and len(content) > self.MAX_PRD_LENGTH:
                raise ValidationError(f"PRD exceeds maximum length of {self.MAX_PRD_LENGTH}")
            chunks = chunk_prd(content)
        except FlowMemoryError as e:
            return error_result(e)

        if sections:
            wanted = {s.strip().lower() for s in sections}
            chunks = [c for c in chunks if c.section.lower() in wanted]

        titles = list(dict.fromkeys(c.section for c in chunks))
        if not chunks:
            return {
                "success": True,
                "stored": False,
                "projectId": project_id,
                "chunks": 0,
                "sections": [],
                "embedded": 0,
            }

        vectors = self.embeddings.embed_many([c.content for c in chunks])
        rows = [
            {
                "id": generate_id("chunk"),
                "section": chunk.section,
                "content": chunk.content,
                "chunk_type": chunk.chunk_type,
                "embedding": vector,
            }
            for chunk, vector in zip(chunks, vectors)
        ]

        previous = [c["id"] for c in self.store.list_prd_chunks(project_id)]
        self.store.replace_prd_chunks(project_id, rows)
        self.retriever.forget(previous)

        return {
            "success": True,
            "stored": True,
            "projectId": project_id,
            "chunks": len(rows),
            "sections": titles,
            "embedded": sum(1 for v in vectors if v is not None),
        }

    def get_prd_context(
        self,
        task_description: str,
        max_tokens: int = DEFAULT_CONTEXT_TOKENS,
        project_id: str | None = None,
    ) -> dict[str, Any]:
        """Assemble the PRD chunks most relevant to a task within a token budget.

        Args:
            task_description: What the caller is about to work on.
            max_tokens: Budget for the whole context string (about 4 chars per token).
            project_id: Restrict to one project's PRD; all projects if None.

        Returns:
            ``{success, context, topRelevance, chunksIncluded}``.
        """
        chunks = self.store.list_prd_chunks(project_id)
        ordered = []
        if chunks:
            query_vector = (
                self.embeddings.try_embed(task_description)
                if task_description and task_description.strip()
                else None
            )
            candidates = [Candidate(c["id"], c["embedding"], c["created_at"], c) for c in chunks]
            ordered = order_for_context(self.retriever.rank(query_vector, candidates))

        result = assemble_context(ordered, max_tokens)
        return {
            "success": True,
            "context": result.context,
            "topRelevance": result.top_relevance,
            "chunksIncluded": result.chunks_included,
        }

    def list_prds(self) -> list[dict[str, Any]]:
        return [
            {"projectId": row["project_id"], "chunks": row["chunks"], "createdAt": row["created_at"]}
            for row in self.store.list_prds()
        ]

    def delete_prd(self, project_id: str) -> dict[str, Any]:
        previous = [c["id"] for c in self.store.list_prd_chunks(project_id)]
        deleted = self.store.delete_prd(project_id)
        self.retriever.forget(previous)
        return {"deleted": deleted}

    def clear_prds(self) -> dict[str, Any]:
        previous = [c["id"] for c in self.store.list_prd_chunks()]
        cleared = self.store.clear_prds()
        self.retriever.forget(previous)
        return {"cleared": cleared}

    # Maintenance

    def reembed_missing(self) -> dict[str, int]:
        """Retry embedding for facts and PRD chunks stored without a vector.

        Returns:
            Counts of re-embedded and still-failing items.
        """
        reembedded = 0
        failed = 0

        facts = self.store.facts_missing_embedding()
        for fact, vector in zip(facts, self.embeddings.embed_many([f["fact"] for f in facts])):
            if vector is None:
                failed += 1
                continue
            self.store.update_fact_embedding(fact["id"], vector)
            reembedded += 1

        chunks = self.store.chunks_missing_embedding()
        for chunk, vector in zip(chunks, self.embeddings.embed_many([c["content"] for c in chunks])):
            if vector is None:
                failed += 1
                continue
            self.store.update_chunk_embedding(chunk["id"], vector)
            reembedded += 1

        logger.info("Re-embedded %d items, %d still failing", reembedded, failed)
        return {"reembedded": reembedded, "failed": failed}

    def get_memory_stats(self) -> dict[str, Any]:
        """Get counts for facts, proposals and PRD chunks, plus team sync state."""
        stats = self.store.stats()
        status = self.reconciler.status()
        stats["teamEnabled"] = status["teamEnabled"]
        stats["lastSync"] = status["lastSyncAt"]
        return stats

    # Team sync

    def sync(self, combined: bool = False) -> dict[str, Any]:
        """Run one sync pass with the team service.

        Returns:
            The sync summary, or an error result (``team_disabled`` when no
            team is configured, ``invalid_input`` for an insecure API URL).
        """
        try:
            return self.reconciler.sync(combined=combined).to_dict()
        except FlowMemoryError as e:
            return error_result(e)

    def sync_status(self) -> dict[str, Any]:
        """Report queued proposals and votes and the sync cursor."""
        return self.reconciler.status()

    def close(self) -> None:
        """Release the worker pool, API client and database connections."""
        self.embeddings.shutdown()
        self.reconciler.close()
        self.store.close()

    def __enter__(self) -> "MemoryManager":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

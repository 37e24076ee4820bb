"""Remote knowledge service: team-scoped knowledge, proposals and votes.

Every operation takes the calling user and the target team. Membership is
checked before anything else, so non-members always get ``Forbidden`` and never
learn whether a team or proposal exists. Votes are one row per
``(proposal, user)``; changing a vote is a single conditional update on the
voter's previous value. Decisions are guarded by a ``status = 'pending'``
condition, and approval creates the Knowledge entry in the same transaction,
keyed by the proposal ID.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from flow_memory._proposals import (
    DEFAULT_PROPOSAL_CATEGORY,
    tally_votes,
    validate_category,
    validate_decision,
    validate_vote,
)
from flow_memory.errors import Forbidden, InvalidState, NotFound, ProposalClosed, ValidationError
from flow_memory.utils import generate_id, normalize_timestamp, utc_now

logger = logging.getLogger(__name__)

ROLES = frozenset({"admin", "member"})
MAX_PULL_LIMIT = 500


class KnowledgeService:
    """Multi-tenant team knowledge backend on SQLite."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        """Open the service database.

        Args:
            db_path: SQLite path, or ":memory:" for an in-process instance.
        """
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS teams (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    created_by TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS team_members (
                    team_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'member',
                    joined_at TEXT NOT NULL,
                    PRIMARY KEY (team_id, user_id)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS proposals (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    rule TEXT NOT NULL,
                    category TEXT NOT NULL,
                    rationale TEXT NOT NULL DEFAULT '',
                    source_context TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_by TEXT NOT NULL,
                    local_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    decided_by TEXT,
                    decided_at TEXT,
                    decision_reason TEXT,
                    UNIQUE (team_id, created_by, local_id)
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_proposals_team_status ON proposals(team_id, status)"
            )
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS votes (
                    proposal_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    vote TEXT NOT NULL,
                    comment TEXT NOT NULL DEFAULT '',
                    voted_at TEXT NOT NULL,
                    PRIMARY KEY (proposal_id, user_id)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS knowledge (
                    id TEXT PRIMARY KEY,
                    team_id TEXT NOT NULL,
                    fact TEXT NOT NULL,
                    category TEXT NOT NULL,
                    model_specific TEXT,
                    created_by TEXT NOT NULL,
                    approved_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    from_proposal TEXT UNIQUE
                )
            """)
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_knowledge_team ON knowledge(team_id, approved_at)"
            )
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS shared_memory (
                    team_id TEXT NOT NULL,
                    fact_id TEXT NOT NULL,
                    fact TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'general',
                    relevance_score REAL NOT NULL DEFAULT 0.5,
                    scope TEXT NOT NULL DEFAULT 'team',
                    source TEXT NOT NULL DEFAULT 'member',
                    source_user_id TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (team_id, fact_id)
                )
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self.conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def _query(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self.conn.execute(sql, params).fetchall()]

    def _query_one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return dict(row) if row else None

    # Membership

    def _role(self, team_id: str, user_id: str) -> str | None:
        row = self._query_one(
            "SELECT role FROM team_members WHERE team_id = ? AND user_id = ?",
            (team_id, user_id),
        )
        return row["role"] if row else None

    def require_member(self, team_id: str, user_id: str) -> str:
        """Return the caller's role in the team.

        Raises:
            Forbidden: If the caller is not a member (or the team does not exist).
        """
        role = self._role(team_id, user_id) if user_id else None
        if role is None:
            raise Forbidden("Not a member of this team")
        return role

    def require_admin(self, team_id: str, user_id: str) -> None:
        """Raise Forbidden unless the caller is an admin of the team."""
        if self.require_member(team_id, user_id) != "admin":
            raise Forbidden("Only admins can perform this action")

    def create_team(self, user_id: str, name: str) -> dict[str, Any]:
        """Create a team; the creator becomes its first admin."""
        if not name or not name.strip():
            raise ValidationError("Team name is required")
        team_id = generate_id("team")
        timestamp = utc_now()
        with self._transaction() as cursor:
            cursor.execute(
                "INSERT INTO teams (id, name, created_by, created_at) VALUES (?, ?, ?, ?)",
                (team_id, name.strip(), user_id, timestamp),
            )
            cursor.execute(
                """
                INSERT INTO team_members (team_id, user_id, role, joined_at)
                VALUES (?, ?, 'admin', ?)
                """,
                (team_id, user_id, timestamp),
            )
        logger.info("Team %s created by %s", team_id, user_id)
        return {"id": team_id, "name": name.strip(), "createdBy": user_id, "createdAt": timestamp}

    def add_member(
        self, user_id: str, team_id: str, member_id: str, role: str = "member"
    ) -> dict[str, Any]:
        """Add or re-role a member. Admin only."""
        self.require_admin(team_id, user_id)
        if role not in ROLES:
            raise ValidationError('Role must be "admin" or "member"')
        if not member_id:
            raise ValidationError("Member user ID is required")
        timestamp = utc_now()
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO team_members (team_id, user_id, role, joined_at) VALUES (?, ?, ?, ?)
                ON CONFLICT (team_id, user_id) DO UPDATE SET role = excluded.role
                """,
                (team_id, member_id, role, timestamp),
            )
        return {"teamId": team_id, "userId": member_id, "role": role}

    # Knowledge

    @staticmethod
    def _knowledge_out(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["id"],
            "fact": row["fact"],
            "category": row["category"],
            "modelSpecific": row["model_specific"],
            "approvedAt": row["approved_at"],
            "createdAt": row["created_at"],
            "createdBy": row["created_by"],
            "fromProposal": row["from_proposal"],
        }

    def _knowledge_since(
        self, team_id: str, since: str | None, category: str | None = None
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM knowledge WHERE team_id = ?"
        params: list[Any] = [team_id]
        if since:
            query += " AND approved_at > ?"
            params.append(since)
        if category:
            query += " AND category = ?"
            params.append(category)
        query += " ORDER BY approved_at, id"
        return [self._knowledge_out(row) for row in self._query(query, params)]

    def list_knowledge(
        self,
        user_id: str,
        team_id: str,
        since: str | None = None,
        category: str | None = None,
    ) -> list[dict[str, Any]]:
        """List team knowledge, optionally only entries approved after ``since``."""
        self.require_member(team_id, user_id)
        return self._knowledge_since(team_id, _parse_since(since), category)

    def add_knowledge(
        self,
        user_id: str,
        team_id: str,
        fact: str,
        category: str,
        model_specific: str | None = None,
    ) -> dict[str, Any]:
        """Add knowledge directly, bypassing proposals. Admin only."""
        self.require_admin(team_id, user_id)
        if not fact or not fact.strip():
            raise ValidationError("fact is required")
        category = validate_category(category, "general")
        knowledge_id = generate_id("know")
        with self._transaction() as cursor:
            timestamp = utc_now()
            cursor.execute(
                """
                INSERT INTO knowledge (
                    id, team_id, fact, category, model_specific, created_by,
                    approved_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (knowledge_id, team_id, fact.strip(), category, model_specific, user_id,
                 timestamp, timestamp),
            )
        row = self._query_one("SELECT * FROM knowledge WHERE id = ?", (knowledge_id,))
        return self._knowledge_out(row)

    # Proposals

    def _proposal_out(self, row: dict[str, Any]) -> dict[str, Any]:
        votes = self._query(
            "SELECT user_id, vote, comment, voted_at FROM votes WHERE proposal_id = ?",
            (row["id"],),
        )
        return {
            "id": row["id"],
            "teamId": row["team_id"],
            "rule": row["rule"],
            "category": row["category"],
            "rationale": row["rationale"],
            "sourceContext": row["source_context"],
            "status": row["status"],
            "votes": tally_votes(votes),
            "createdBy": row["created_by"],
            "localId": row["local_id"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
            "decidedBy": row["decided_by"],
            "decidedAt": row["decided_at"],
            "decisionReason": row["decision_reason"],
        }

    def _get_proposal_row(self, team_id: str, proposal_id: str) -> dict[str, Any]:
        row = self._query_one(
            "SELECT * FROM proposals WHERE id = ? AND team_id = ?", (proposal_id, team_id)
        )
        if row is None:
            raise NotFound("Proposal not found")
        return row

    def _insert_proposal(
        self, cursor: sqlite3.Cursor, user_id: str, team_id: str, data: dict[str, Any]
    ) -> tuple[str, bool]:
        """Insert a proposal unless this user already pushed the same local ID.

        Returns:
            ``(proposal_id, created)``.
        """
        rule = (data.get("rule") or "").strip()
        if not rule:
            raise ValidationError("Rule text is required")
        category = validate_category(data.get("category"), DEFAULT_PROPOSAL_CATEGORY)
        local_id = data.get("localId")

        if local_id:
            cursor.execute(
                "SELECT id FROM proposals WHERE team_id = ? AND created_by = ? AND local_id = ?",
                (team_id, user_id, local_id),
            )
            existing = cursor.fetchone()
            if existing:
                return existing["id"], False

        proposal_id = generate_id("prop")
        timestamp = utc_now()
        cursor.execute(
            """
            INSERT INTO proposals (
                id, team_id, rule, category, rationale, source_context, status,
                created_by, local_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?, ?)
            """,
            (
                proposal_id,
                team_id,
                rule,
                category,
                data.get("rationale") or "",
                data.get("sourceContext"),
                user_id,
                local_id,
                timestamp,
                timestamp,
            ),
        )
        return proposal_id, True

    def create_proposal(
        self, user_id: str, team_id: str, data: dict[str, Any]
    ) -> tuple[dict[str, Any], bool]:
        """Create a proposal.

        Pushing the same ``localId`` twice returns the existing proposal.

        Returns:
            ``(proposal, created)``.
        """
        self.require_member(team_id, user_id)
        with self._transaction() as cursor:
            proposal_id, created = self._insert_proposal(cursor, user_id, team_id, data)
        return self._proposal_out(self._get_proposal_row(team_id, proposal_id)), created

    def list_proposals(
        self,
        user_id: str,
        team_id: str,
        status: str | None = None,
        since: str | None = None,
        decided: bool = False,
    ) -> list[dict[str, Any]]:
        """List proposals, newest first.

        Args:
            status: Optional status filter.
            since: Only proposals created or decided after this timestamp.
            decided: Only approved/rejected proposals, filtered by ``decidedAt``.
        """
        self.require_member(team_id, user_id)
        return self._proposals_since(team_id, status, _parse_since(since), decided)

    def _proposals_since(
        self, team_id: str, status: str | None, since: str | None, decided: bool
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM proposals WHERE team_id = ?"
        params: list[Any] = [team_id]
        if status:
            query += " AND status = ?"
            params.append(status)
        if decided:
            query += " AND status != 'pending'"
            if since:
                query += " AND decided_at > ?"
                params.append(since)
            query += " ORDER BY decided_at, id"
        else:
            if since:
                query += " AND COALESCE(decided_at, created_at) > ?"
                params.append(since)
            query += " ORDER BY created_at DESC"
        return [self._proposal_out(row) for row in self._query(query, params)]

    def get_proposal(self, user_id: str, team_id: str, proposal_id: str) -> dict[str, Any]:
        """Get a proposal with its per-voter details and the caller's own vote."""
        role = self.require_member(team_id, user_id)
        proposal = self._proposal_out(self._get_proposal_row(team_id, proposal_id))
        details = self._query(
            """
            SELECT user_id, vote, comment, voted_at FROM votes
            WHERE proposal_id = ? ORDER BY voted_at
            """,
            (proposal_id,),
        )
        proposal["voteDetails"] = [
            {"userId": v["user_id"], "vote": v["vote"], "comment": v["comment"],
             "votedAt": v["voted_at"]}
            for v in details
        ]
        proposal["userVote"] = next(
            (v["vote"] for v in details if v["user_id"] == user_id), None
        )
        proposal["userRole"] = role
        return proposal

    def _closed_or_missing(self, team_id: str, proposal_id: str) -> Exception:
        row = self._query_one(
            "SELECT status FROM proposals WHERE id = ? AND team_id = ?", (proposal_id, team_id)
        )
        if row is None:
            return NotFound("Proposal not found")
        return ProposalClosed(f"Proposal is already {row['status']}")

    def cast_vote(
        self,
        user_id: str,
        team_id: str,
        proposal_id: str,
        vote: str,
        comment: str | None = None,
    ) -> dict[str, Any]:
        """Cast or change the caller's vote on a pending proposal.

        The write is one conditional statement: a first vote inserts only while
        the proposal is pending; a changed vote updates only if the stored vote
        still equals the value read (compare-and-swap) and the proposal is
        still pending.

        Raises:
            Forbidden: If the caller is not a team member.
            ValidationError: If the vote is not "approve" or "reject".
            NotFound: If the proposal does not exist in this team.
            ProposalClosed: If the proposal has been decided.
        """
        self.require_member(team_id, user_id)
        validate_vote(vote)

        with self._transaction() as cursor:
            timestamp = utc_now()
            cursor.execute(
                "SELECT vote FROM votes WHERE proposal_id = ? AND user_id = ?",
                (proposal_id, user_id),
            )
            row = cursor.fetchone()
            previous = row["vote"] if row else None

            if previous is None:
                cursor.execute(
                    """
                    INSERT INTO votes (proposal_id, user_id, vote, comment, voted_at)
                    SELECT id, ?, ?, ?, ? FROM proposals
                    WHERE id = ? AND team_id = ? AND status = 'pending'
                    ON CONFLICT (proposal_id, user_id) DO NOTHING
                    """,
                    (user_id, vote, comment or "", timestamp, proposal_id, team_id),
                )
            else:
                cursor.execute(
                    """
                    UPDATE votes SET vote = ?, comment = ?, voted_at = ?
                    WHERE proposal_id = ? AND user_id = ? AND vote = ?
                      AND EXISTS (
                          SELECT 1 FROM proposals
                          WHERE id = ? AND team_id = ? AND status = 'pending'
                      )
                    """,
                    (vote, comment or "", timestamp, proposal_id, user_id, previous,
                     proposal_id, team_id),
                )
            applied = cursor.rowcount > 0
            if applied:
                cursor.execute(
                    "UPDATE proposals SET updated_at = ? WHERE id = ?", (timestamp, proposal_id)
                )

        if not applied:
            raise self._closed_or_missing(team_id, proposal_id)

        votes = self._query("SELECT vote FROM votes WHERE proposal_id = ?", (proposal_id,))
        return {
            "vote": vote,
            "previousVote": previous,
            "changed": previous is not None and previous != vote,
            "votes": tally_votes(votes),
        }

    def decide(
        self,
        user_id: str,
        team_id: str,
        proposal_id: str,
        decision: str,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Approve or reject a pending proposal. Admin only.

        On approval exactly one Knowledge entry is created, keyed by the
        proposal ID.

        Raises:
            Forbidden: If the caller is not an admin of the team.
            ValidationError: If the decision is not "approved" or "rejected".
            NotFound: If the proposal does not exist in this team.
            InvalidState: If the proposal has already been decided.
        """
        self.require_admin(team_id, user_id)
        validate_decision(decision)
        knowledge_id = None

        # Stamped under the write lock so decidedAt follows commit order
        with self._transaction() as cursor:
            timestamp = utc_now()
            cursor.execute(
                """
                UPDATE proposals
                SET status = ?, decided_by = ?, decided_at = ?, decision_reason = ?,
                    updated_at = ?
                WHERE id = ? AND team_id = ? AND status = 'pending'
                """,
                (decision, user_id, timestamp, reason or "", timestamp, proposal_id, team_id),
            )
            decided = cursor.rowcount > 0
            if decided and decision == "approved":
                knowledge_id = self._ensure_knowledge(cursor, proposal_id, timestamp)

        if not decided:
            error = self._closed_or_missing(team_id, proposal_id)
            if isinstance(error, ProposalClosed):
                raise InvalidState(str(error))
            raise error

        logger.info("Proposal %s %s by %s", proposal_id, decision, user_id)
        proposal = self._proposal_out(self._get_proposal_row(team_id, proposal_id))
        proposal["knowledgeId"] = knowledge_id
        return proposal

    def _ensure_knowledge(self, cursor: sqlite3.Cursor, proposal_id: str, approved_at: str) -> str:
        """Create the Knowledge entry for an approved proposal, at most once."""
        cursor.execute(
            """
            INSERT OR IGNORE INTO knowledge (
                id, team_id, fact, category, model_specific, created_by,
                approved_at, created_at, from_proposal
            )
            SELECT ?, team_id, rule, category, NULL, created_by, ?, created_at, id
            FROM proposals WHERE id = ?
            """,
            (generate_id("know"), approved_at, proposal_id),
        )
        cursor.execute("SELECT id FROM knowledge WHERE from_proposal = ?", (proposal_id,))
        return cursor.fetchone()["id"]

    # Shared memory

    @staticmethod
    def _memory_out(row: dict[str, Any]) -> dict[str, Any]:
        return {
            "factId": row["fact_id"],
            "fact": row["fact"],
            "category": row["category"],
            "relevanceScore": row["relevance_score"],
            "scope": row["scope"],
            "source": row["source"],
            "sourceUserId": row["source_user_id"],
            "tags": json.loads(row["tags"] or "[]"),
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    def _upsert_memory(
        self, user_id: str, team_id: str, facts: list[dict[str, Any]]
    ) -> dict[str, Any]:
        results: dict[str, Any] = {"added": 0, "updated": 0, "errors": []}
        for fact in facts:
            text = fact.get("fact")
            if not text or not isinstance(text, str):
                results["errors"].append({"fact": fact.get("factId"), "error": "Invalid fact format"})
                continue
            fact_id = fact.get("factId") or generate_id("fact")
            with self._transaction() as cursor:
                timestamp = utc_now()
                cursor.execute(
                    "SELECT 1 FROM shared_memory WHERE team_id = ? AND fact_id = ?",
                    (team_id, fact_id),
                )
                exists = cursor.fetchone() is not None
                cursor.execute(
                    """
                    INSERT INTO shared_memory (
                        team_id, fact_id, fact, category, relevance_score, scope, source,
                        source_user_id, tags, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (team_id, fact_id) DO UPDATE SET
                        fact = excluded.fact,
                        category = excluded.category,
                        relevance_score = excluded.relevance_score,
                        scope = excluded.scope,
                        source = excluded.source,
                        source_user_id = excluded.source_user_id,
                        tags = excluded.tags,
                        updated_at = excluded.updated_at
                    """,
                    (
                        team_id,
                        fact_id,
                        text,
                        fact.get("category") or "general",
                        float(fact.get("relevanceScore") or 0.5),
                        fact.get("scope") or "team",
                        fact.get("source") or "member",
                        user_id,
                        json.dumps(fact.get("tags") or []),
                        timestamp,
                        timestamp,
                    ),
                )
            results["updated" if exists else "added"] += 1
        return results

    def push_memory(
        self, user_id: str, team_id: str, facts: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Upsert shared facts keyed by ``factId``.

        Returns:
            Counts of added and updated facts plus per-fact errors.
        """
        self.require_member(team_id, user_id)
        return self._upsert_memory(user_id, team_id, facts)

    def _memory_since(
        self, team_id: str, since: str | None, category: str | None, limit: int
    ) -> list[dict[str, Any]]:
        query = "SELECT * FROM shared_memory WHERE team_id = ?"
        params: list[Any] = [team_id]
        if category:
            query += " AND category = ?"
            params.append(category)
        if since:
            query += " AND updated_at > ?"
            params.append(since)
        query += " ORDER BY relevance_score DESC, updated_at DESC LIMIT ?"
        params.append(min(max(limit, 1), MAX_PULL_LIMIT))
        return [self._memory_out(row) for row in self._query(query, params)]

    def pull_memory(
        self,
        user_id: str,
        team_id: str,
        since: str | None = None,
        category: str | None = None,
        limit: int = 100,
    ) -> dict[str, Any]:
        """Pull shared facts, most relevant first."""
        self.require_member(team_id, user_id)
        facts = self._memory_since(team_id, _parse_since(since), category, limit)
        return {"facts": facts, "count": len(facts), "syncedAt": utc_now()}

    # Combined sync

    def sync(
        self,
        user_id: str,
        team_id: str,
        proposals: list[dict[str, Any]] | None = None,
        facts: list[dict[str, Any]] | None = None,
        since: str | None = None,
    ) -> dict[str, Any]:
        """Push proposals and shared facts, then pull everything newer than ``since``.

        Each pushed proposal is handled on its own; a bad item is reported in
        ``pushed.errors`` without affecting the others.
        """
        self.require_member(team_id, user_id)
        since = _parse_since(since)
        sync_timestamp = utc_now()

        mappings = []
        errors = []
        for proposal in proposals or []:
            try:
                with self._transaction() as cursor:
                    remote_id, created = self._insert_proposal(cursor, user_id, team_id, proposal)
                mappings.append(
                    {"localId": proposal.get("localId"), "remoteId": remote_id, "created": created}
                )
            except ValidationError as e:
                errors.append({"localId": proposal.get("localId"), "error": str(e)})

        memory = self._upsert_memory(user_id, team_id, facts or [])
        decided = self._proposals_since(team_id, None, since, decided=True)

        return {
            "pushed": {
                "proposals": mappings,
                "errors": errors,
                "facts": {"added": memory["added"], "updated": memory["updated"]},
            },
            "pulled": {
                "knowledge": self._knowledge_since(team_id, since),
                "proposalUpdates": [
                    {
                        "id": p["id"],
                        "localId": p["localId"],
                        "status": p["status"],
                        "decidedAt": p["decidedAt"],
                        "decidedBy": p["decidedBy"],
                        "decisionReason": p["decisionReason"],
                    }
                    for p in decided
                ],
                "facts": self._memory_since(team_id, since, None, MAX_PULL_LIMIT),
            },
            "syncTimestamp": sync_timestamp,
        }

    def close(self) -> None:
        """Close the database connection."""
        if getattr(self, "conn", None) is not None:
            self.conn.close()
            self.conn = None


def _parse_since(since: str | None) -> str | None:
    try:
        return normalize_timestamp(since)
    except ValueError as e:
        raise ValidationError(f"Invalid 'since' timestamp: {since}") from e

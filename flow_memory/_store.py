"""File-backed local store for facts, proposals, votes and PRD chunks.

One SQLite file per project. All writes go through a single connection guarded
by a lock; reads use per-thread connections and see the latest committed
snapshot (WAL mode), so lookups are never blocked by a writer.
"""

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from flow_memory.utils import embedding_to_json, json_to_embedding, utc_now

FACT_CATEGORIES = frozenset(
    {"project", "skill", "decision", "pattern", "anti-pattern", "model-specific", "general"}
)
FACT_SCOPES = frozenset({"local", "team"})
PROPOSAL_STATUSES = frozenset({"pending", "approved", "rejected"})
VOTE_CHOICES = frozenset({"approve", "reject"})


class LocalStore:
    """Single-writer SQLite store for one project."""

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path) -> None:
        """Open (and create if needed) the store.

        Args:
            db_path: Path of the SQLite database file.
        """
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = threading.RLock()
        self._local = threading.local()
        self._readers: list[sqlite3.Connection] = []
        self._readers_lock = threading.Lock()

        self.conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        with self._write_lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS facts (
                    id TEXT PRIMARY KEY,
                    fact TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'general',
                    scope TEXT NOT NULL DEFAULT 'local',
                    model TEXT,
                    embedding TEXT,
                    source_context TEXT,
                    remote_id TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_facts_category ON facts(category)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_facts_scope ON facts(scope)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_facts_model ON facts(model)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS proposals (
                    id TEXT PRIMARY KEY,
                    rule TEXT NOT NULL,
                    category TEXT NOT NULL DEFAULT 'pattern',
                    rationale TEXT NOT NULL DEFAULT '',
                    source_context TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_by TEXT,
                    fact_id TEXT,
                    synced INTEGER NOT NULL DEFAULT 0,
                    remote_id TEXT UNIQUE,
                    push_error TEXT,
                    created_at TEXT NOT NULL,
                    decided_at TEXT,
                    decided_by TEXT,
                    decision_reason TEXT
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_proposals_status ON proposals(status)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS proposal_votes (
                    proposal_id TEXT NOT NULL REFERENCES proposals(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    vote TEXT NOT NULL,
                    comment TEXT NOT NULL DEFAULT '',
                    voted_at TEXT NOT NULL,
                    synced INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (proposal_id, user_id)
                )
            """)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS prd_chunks (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    section TEXT NOT NULL,
                    content TEXT NOT NULL,
                    chunk_type TEXT NOT NULL,
                    embedding TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_prd_project ON prd_chunks(project_id)")
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            self.conn.commit()

    # Connection handling

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """Serialize a write transaction through the single writer connection.

        Commits on success and rolls back on any exception.
        """
        with self._write_lock:
            cursor = self.conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                yield cursor
                self.conn.commit()
            except BaseException:
                self.conn.rollback()
                raise

    def _reader(self) -> sqlite3.Connection:
        """Return this thread's read connection, opening it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._readers_lock:
                self._readers.append(conn)
        return conn

    def _query(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        cursor = self._reader().execute(sql, params)
        return [dict(row) for row in cursor.fetchall()]

    def _query_one(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        row = self._reader().execute(sql, params).fetchone()
        return dict(row) if row else None

    # Facts

    @staticmethod
    def _decode_embedding(row: dict[str, Any]) -> dict[str, Any]:
        row["embedding"] = json_to_embedding(row.get("embedding"))
        return row

    def insert_fact(
        self,
        fact: dict[str, Any],
        proposal: dict[str, Any] | None = None,
    ) -> None:
        """Insert a fact, and its team proposal in the same transaction.

        Args:
            fact: Fact fields (id, fact, category, scope, model, embedding,
                source_context, created_at).
            proposal: Optional proposal created from the fact.
        """
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO facts (
                    id, fact, category, scope, model, embedding, source_context,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fact["id"],
                    fact["fact"],
                    fact["category"],
                    fact["scope"],
                    fact.get("model"),
                    embedding_to_json(fact.get("embedding")),
                    fact.get("source_context"),
                    fact["created_at"],
                    fact["created_at"],
                ),
            )
            if proposal is not None:
                self._insert_proposal(cursor, proposal)

    def insert_knowledge_fact(self, knowledge: dict[str, Any], embedding: list[float] | None) -> bool:
        """Merge a pulled Knowledge entry as a team-scope fact.

        Args:
            knowledge: Remote knowledge entry (id, fact, category, modelSpecific,
                approvedAt).
            embedding: Embedding for the fact text, or None.

        Returns:
            True if inserted, False if this knowledge entry was already merged.
        """
        timestamp = utc_now()
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO facts (
                    id, fact, category, scope, model, embedding, source_context,
                    remote_id, created_at, updated_at
                ) VALUES (?, ?, ?, 'team', ?, ?, ?, ?, ?, ?)
                """,
                (
                    f"team_{knowledge['id']}",
                    knowledge["fact"],
                    knowledge.get("category") or "general",
                    knowledge.get("modelSpecific"),
                    embedding_to_json(embedding),
                    "team knowledge",
                    knowledge["id"],
                    knowledge.get("approvedAt") or timestamp,
                    timestamp,
                ),
            )
            return cursor.rowcount > 0

    def has_knowledge(self, remote_id: str) -> bool:
        """Check whether a remote Knowledge entry has been merged locally."""
        return self._query_one("SELECT 1 FROM facts WHERE remote_id = ?", (remote_id,)) is not None

    def get_fact(self, fact_id: str) -> dict[str, Any] | None:
        row = self._query_one("SELECT * FROM facts WHERE id = ?", (fact_id,))
        return self._decode_embedding(row) if row else None

    def delete_fact(self, fact_id: str) -> bool:
        """Hard-delete a fact.

        Returns:
            True if deleted, False if not found.
        """
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM facts WHERE id = ?", (fact_id,))
            return cursor.rowcount > 0

    def list_facts(
        self,
        category: str | None = None,
        scope: str | None = None,
        model: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List facts with decoded embeddings, newest first.

        Args:
            category: Optional category filter.
            scope: Optional scope filter ("local" or "team").
            model: Optional model filter; facts without a model always match.
            limit: Optional maximum number of rows.
        """
        query = "SELECT * FROM facts WHERE 1=1"
        params: list[Any] = []

        if category:
            query += " AND category = ?"
            params.append(category)
        if scope:
            query += " AND scope = ?"
            params.append(scope)
        if model:
            query += " AND (model IS NULL OR model = ?)"
            params.append(model)

        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        return [self._decode_embedding(row) for row in self._query(query, params)]

    def facts_missing_embedding(self) -> list[dict[str, Any]]:
        return self._query("SELECT id, fact FROM facts WHERE embedding IS NULL")

    def update_fact_embedding(self, fact_id: str, embedding: list[float]) -> None:
        """Store a recomputed embedding; the only mutation a fact ever sees."""
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE facts SET embedding = ?, updated_at = ? WHERE id = ?",
                (embedding_to_json(embedding), utc_now(), fact_id),
            )

    # Proposals

    @staticmethod
    def _insert_proposal(cursor: sqlite3.Cursor, proposal: dict[str, Any]) -> None:
        cursor.execute(
            """
            INSERT INTO proposals (
                id, rule, category, rationale, source_context, status,
                created_by, fact_id, created_at
            ) VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)
            """,
            (
                proposal["id"],
                proposal["rule"],
                proposal["category"],
                proposal.get("rationale") or "",
                proposal.get("source_context"),
                proposal.get("created_by"),
                proposal.get("fact_id"),
                proposal["created_at"],
            ),
        )

    def insert_proposal(self, proposal: dict[str, Any]) -> None:
        with self.transaction() as cursor:
            self._insert_proposal(cursor, proposal)

    def get_proposal(self, proposal_id: str) -> dict[str, Any] | None:
        """Get a proposal by local or remote ID."""
        return self._query_one(
            "SELECT * FROM proposals WHERE id = ? OR remote_id = ?",
            (proposal_id, proposal_id),
        )

    def list_proposals(self, status: str | None = None) -> list[dict[str, Any]]:
        if status:
            return self._query(
                "SELECT * FROM proposals WHERE status = ? ORDER BY created_at DESC", (status,)
            )
        return self._query("SELECT * FROM proposals ORDER BY created_at DESC")

    def unsynced_proposals(self) -> list[dict[str, Any]]:
        return self._query("SELECT * FROM proposals WHERE synced = 0 ORDER BY created_at")

    def mark_proposal_synced(self, proposal_id: str, remote_id: str) -> None:
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE proposals SET synced = 1, remote_id = ?, push_error = NULL
                WHERE id = ?
                """,
                (remote_id, proposal_id),
            )

    def record_push_error(self, proposal_id: str, error: str) -> None:
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE proposals SET push_error = ? WHERE id = ?", (error, proposal_id)
            )

    def apply_proposal_decision(
        self,
        remote_id: str,
        status: str,
        decided_at: str | None,
        decided_by: str | None = None,
        reason: str | None = None,
        local_id: str | None = None,
    ) -> bool:
        """Update a local shadow copy with a remote decision.

        Only pending proposals are updated, so a decision is applied at most
        once and never reversed.

        Returns:
            True if a local proposal changed status.
        """
        if status not in ("approved", "rejected"):
            return False
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE proposals
                SET status = ?, decided_at = ?, decided_by = ?, decision_reason = ?
                WHERE (remote_id = ? OR (? IS NOT NULL AND id = ?)) AND status = 'pending'
                """,
                (status, decided_at, decided_by, reason, remote_id, local_id, local_id),
            )
            return cursor.rowcount > 0

    # Votes

    def upsert_vote(
        self,
        proposal_id: str,
        user_id: str,
        vote: str,
        comment: str = "",
    ) -> str | None:
        """Record a member's vote, replacing any earlier vote by the same member.

        The write only happens while the proposal is pending.

        Returns:
            The member's previous vote, or None if this is their first.

        Raises:
            LookupError: If the proposal is missing or no longer pending.
        """
        with self.transaction() as cursor:
            cursor.execute(
                "SELECT vote FROM proposal_votes WHERE proposal_id = ? AND user_id = ?",
                (proposal_id, user_id),
            )
            previous = cursor.fetchone()
            cursor.execute(
                """
                INSERT INTO proposal_votes (proposal_id, user_id, vote, comment, voted_at, synced)
                SELECT id, ?, ?, ?, ?, 0 FROM proposals WHERE id = ? AND status = 'pending'
                ON CONFLICT (proposal_id, user_id) DO UPDATE SET
                    vote = excluded.vote,
                    comment = excluded.comment,
                    voted_at = excluded.voted_at,
                    synced = 0
                """,
                (user_id, vote, comment, utc_now(), proposal_id),
            )
            if cursor.rowcount == 0:
                raise LookupError(proposal_id)
        return previous["vote"] if previous else None

    def list_votes(self, proposal_id: str) -> list[dict[str, Any]]:
        return self._query(
            """
            SELECT user_id, vote, comment, voted_at FROM proposal_votes
            WHERE proposal_id = ? ORDER BY voted_at
            """,
            (proposal_id,),
        )

    def unsynced_votes(self) -> list[dict[str, Any]]:
        """Votes not yet forwarded, for proposals that already exist remotely."""
        return self._query(
            """
            SELECT v.proposal_id, v.user_id, v.vote, v.comment, v.voted_at, p.remote_id
            FROM proposal_votes v JOIN proposals p ON p.id = v.proposal_id
            WHERE v.synced = 0 AND p.remote_id IS NOT NULL
            ORDER BY v.voted_at
            """
        )

    def count_unsynced_votes(self) -> int:
        row = self._query_one("SELECT COUNT(*) AS n FROM proposal_votes WHERE synced = 0")
        return row["n"] if row else 0

    def mark_vote_synced(self, proposal_id: str, user_id: str, voted_at: str) -> None:
        """Mark a vote as forwarded unless it was changed after being read."""
        with self.transaction() as cursor:
            cursor.execute(
                """
                UPDATE proposal_votes SET synced = 1
                WHERE proposal_id = ? AND user_id = ? AND voted_at = ?
                """,
                (proposal_id, user_id, voted_at),
            )

    # PRD chunks

    def replace_prd_chunks(self, project_id: str, chunks: list[dict[str, Any]]) -> None:
        """Replace all chunks of a project's PRD in one transaction."""
        timestamp = utc_now()
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM prd_chunks WHERE project_id = ?", (project_id,))
            cursor.executemany(
                """
                INSERT INTO prd_chunks (
                    id, project_id, section, content, chunk_type, embedding, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk["id"],
                        project_id,
                        chunk["section"],
                        chunk["content"],
                        chunk["chunk_type"],
                        embedding_to_json(chunk.get("embedding")),
                        timestamp,
                    )
                    for chunk in chunks
                ],
            )

    def list_prd_chunks(self, project_id: str | None = None) -> list[dict[str, Any]]:
        if project_id:
            rows = self._query(
                "SELECT * FROM prd_chunks WHERE project_id = ? ORDER BY rowid", (project_id,)
            )
        else:
            rows = self._query("SELECT * FROM prd_chunks ORDER BY rowid")
        return [self._decode_embedding(row) for row in rows]

    def list_prds(self) -> list[dict[str, Any]]:
        return self._query(
            """
            SELECT project_id, COUNT(*) AS chunks, MIN(created_at) AS created_at
            FROM prd_chunks GROUP BY project_id ORDER BY project_id
            """
        )

    def delete_prd(self, project_id: str) -> bool:
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM prd_chunks WHERE project_id = ?", (project_id,))
            return cursor.rowcount > 0

    def clear_prds(self) -> int:
        with self.transaction() as cursor:
            cursor.execute("DELETE FROM prd_chunks")
            return cursor.rowcount

    def chunks_missing_embedding(self) -> list[dict[str, Any]]:
        return self._query("SELECT id, content FROM prd_chunks WHERE embedding IS NULL")

    def update_chunk_embedding(self, chunk_id: str, embedding: list[float]) -> None:
        with self.transaction() as cursor:
            cursor.execute(
                "UPDATE prd_chunks SET embedding = ? WHERE id = ?",
                (embedding_to_json(embedding), chunk_id),
            )

    # Sync state

    def get_state(self, key: str) -> str | None:
        row = self._query_one("SELECT value FROM sync_state WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO sync_state (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, utc_now()),
            )

    # Statistics

    def stats(self) -> dict[str, Any]:
        """Get counts for facts, proposals and PRD chunks."""
        total = self._query_one("SELECT COUNT(*) AS n FROM facts")
        by_category = self._query("SELECT category, COUNT(*) AS n FROM facts GROUP BY category")
        by_scope = self._query("SELECT scope, COUNT(*) AS n FROM facts GROUP BY scope")
        pending = self._query_one("SELECT COUNT(*) AS n FROM proposals WHERE status = 'pending'")
        chunks = self._query_one(
            "SELECT COUNT(*) AS n, COUNT(DISTINCT project_id) AS p FROM prd_chunks"
        )
        return {
            "facts": {
                "total": total["n"] if total else 0,
                "byCategory": {row["category"]: row["n"] for row in by_category},
                "byScope": {row["scope"]: row["n"] for row in by_scope},
            },
            "proposals": {"pending": pending["n"] if pending else 0},
            "prd": {
                "chunks": chunks["n"] if chunks else 0,
                "projects": chunks["p"] if chunks else 0,
            },
        }

    def close(self) -> None:
        """Close database connections."""
        with self._readers_lock:
            for conn in self._readers:
                conn.close()
            self._readers.clear()
        self._local = threading.local()
        if getattr(self, "conn", None) is not None:
            self.conn.close()
            self.conn = None  # Prevent double-close

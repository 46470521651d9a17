#!/usr/bin/env python3
"""
Memory Store — SQLite + sqlite-vec storage for clusters, members, links and messages.

Storage layout (memory.db):
  conversations    — id, title, created_at, updated_at, model_used
  messages         — id, conversation_id, role, content, timestamp, model
  memory_clusters  — id, name, description, created_at, updated_at
  cluster_members  — id, cluster_id, content, source, importance, created_at
  cluster_links    — id, cluster_a < cluster_b (normalized pair), strength in [0, 1]
  vector_records   — rowid shared with the vec0 tables; owner_id, group_id, role, text
  vec_members      — sqlite-vec virtual table, embedding float[D] distance_metric=cosine
  vec_messages     — same, for chat messages
  search_index     — FTS5 keyword index over member and message text (bm25 ranked)

The relational rows and the vector records are written separately. A vector
record may go missing or be duplicated if a write fails halfway; readers
collapse duplicates and the next edit/move of the same owner repairs it.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np
import sqlite_vec

logger = logging.getLogger(__name__)

MEMBERS = "members"
MESSAGES = "messages"
COLLECTIONS = {MEMBERS: "vec_members", MESSAGES: "vec_messages"}

# sqlite-vec refuses k above this
MAX_KNN = 4096


def now_stamp() -> str:
    """Timestamp format used for every created_at/updated_at column (DATE()-friendly)."""
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def new_id() -> str:
    return str(uuid.uuid4())


def _pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a < b else (b, a)


class MemoryStore:
    """Relational + vector + keyword persistence for the memory hub."""

    def __init__(self, db_file: Path, dimensions: int = 768):
        self.db_file = Path(db_file)
        self.dimensions = dimensions

        # Per-thread DB connections (WAL allows concurrent reads from multiple threads)
        self._local = threading.local()
        self._write_lock = threading.Lock()

        self._init_db()

    # ── DB connection ──────────────────────────────────────────────────────────

    def _get_conn(self) -> sqlite3.Connection:
        """Return the per-thread SQLite connection, creating it if needed."""
        if not hasattr(self._local, "conn"):
            conn = sqlite3.connect(str(self.db_file), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._local.conn = conn
        return self._local.conn

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            del self._local.conn

    # ── Schema ────────────────────────────────────────────────────────────────

    def _init_db(self):
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id          TEXT PRIMARY KEY,
                title       TEXT NOT NULL DEFAULT '',
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL,
                model_used  TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS messages (
                id               TEXT PRIMARY KEY,
                conversation_id  TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                role             TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                content          TEXT NOT NULL,
                timestamp        TEXT NOT NULL,
                model            TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS memory_clusters (
                id           TEXT PRIMARY KEY,
                name         TEXT NOT NULL,
                description  TEXT NOT NULL DEFAULT '',
                created_at   TEXT NOT NULL,
                updated_at   TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS cluster_members (
                id          TEXT PRIMARY KEY,
                cluster_id  TEXT NOT NULL REFERENCES memory_clusters(id),
                content     TEXT NOT NULL,
                source      TEXT NOT NULL DEFAULT 'conversation',
                importance  REAL NOT NULL DEFAULT 0.5,
                created_at  TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_members_cluster ON cluster_members(cluster_id);

            CREATE TABLE IF NOT EXISTS cluster_links (
                id          TEXT PRIMARY KEY,
                cluster_a   TEXT NOT NULL,
                cluster_b   TEXT NOT NULL,
                strength    REAL NOT NULL CHECK (strength >= 0 AND strength <= 1),
                created_at  TEXT NOT NULL,
                updated_at  TEXT NOT NULL,
                UNIQUE (cluster_a, cluster_b),
                CHECK (cluster_a < cluster_b)
            );

            CREATE TABLE IF NOT EXISTS vector_records (
                id          INTEGER PRIMARY KEY AUTOINCREMENT,
                collection  TEXT NOT NULL,
                owner_id    TEXT NOT NULL,
                group_id    TEXT NOT NULL,
                role        TEXT NOT NULL DEFAULT '',
                text        TEXT NOT NULL,
                created_at  TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_vector_owner ON vector_records(collection, owner_id);

            CREATE VIRTUAL TABLE IF NOT EXISTS search_index USING fts5(
                text,
                owner_id UNINDEXED,
                group_id UNINDEXED,
                collection UNINDEXED,
                role UNINDEXED
            );
        """)

        # sqlite-vec virtual tables (extension already loaded by _get_conn)
        for table in COLLECTIONS.values():
            conn.execute(f"""
                CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0(
                    embedding float[{self.dimensions}] distance_metric=cosine
                )
            """)
        conn.commit()

    # ── Conversations / messages ──────────────────────────────────────────────

    def ensure_conversation(self, conversation_id: str, title: str = "", model: str = ""):
        stamp = now_stamp()
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT INTO conversations (id, title, created_at, updated_at, model_used)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET updated_at = excluded.updated_at
            """, (conversation_id, title, stamp, stamp, model))
            conn.commit()

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        message_id: Optional[str] = None,
        model: str = "",
    ) -> str:
        """Insert a message and its keyword-index entry. Returns the message id."""
        message_id = message_id or new_id()
        self.ensure_conversation(conversation_id, model=model)
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT OR REPLACE INTO messages (id, conversation_id, role, content, timestamp, model)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (message_id, conversation_id, role, content, now_stamp(), model))
            conn.execute(
                "DELETE FROM search_index WHERE owner_id = ? AND collection = ?",
                (message_id, MESSAGES),
            )
            conn.execute("""
                INSERT INTO search_index (text, owner_id, group_id, collection, role)
                VALUES (?, ?, ?, ?, ?)
            """, (content, message_id, conversation_id, MESSAGES, role))
            conn.commit()
        return message_id

    def get_messages(self, conversation_id: str) -> list[dict]:
        rows = self._get_conn().execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp, rowid",
            (conversation_id,),
        ).fetchall()
        return [dict(r) for r in rows]

    # ── Clusters ──────────────────────────────────────────────────────────────

    def create_cluster(self, name: str, description: str = "") -> str:
        cluster_id = new_id()
        stamp = now_stamp()
        with self._write_lock:
            conn = self._get_conn()
            conn.execute("""
                INSERT INTO memory_clusters (id, name, description, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (cluster_id, name, description, stamp, stamp))
            conn.commit()
        return cluster_id

    def get_cluster(self, cluster_id: str) -> Optional[dict]:
        row = self._get_conn().execute(
            "SELECT * FROM memory_clusters WHERE id = ?", (cluster_id,)
        ).fetchone()
        return dict(row) if row else None

    def cluster_exists(self, cluster_id: str) -> bool:
        return self.get_cluster(cluster_id) is not None

    def list_clusters(self) -> list[dict]:
        """All clusters with member counts, most recently updated first."""
        rows = self._get_conn().execute("""
            SELECT c.*, COUNT(m.id) AS member_count
            FROM memory_clusters c
            LEFT JOIN cluster_members m ON m.cluster_id = c.id
            GROUP BY c.id
            ORDER BY c.updated_at DESC, c.created_at DESC
        """).fetchall()
        return [dict(r) for r in rows]

    def rename_cluster(self, cluster_id: str, name: str) -> bool:
        with self._write_lock:
            conn = self._get_conn()
            cur = conn.execute(
                "UPDATE memory_clusters SET name = ? WHERE id = ?", (name, cluster_id)
            )
            conn.commit()
        return cur.rowcount > 0

    def touch_cluster(self, cluster_id: str):
        with self._write_lock:
            conn = self._get_conn()
            conn.execute(
                "UPDATE memory_clusters SET updated_at = ? WHERE id = ?",
                (now_stamp(), cluster_id),
            )
            conn.commit()

    def _delete_cluster_rows(self, conn: sqlite3.Connection, cluster_id: str):
        conn.execute(
            "DELETE FROM cluster_links WHERE cluster_a = ? OR cluster_b = ?",
            (cluster_id, cluster_id),
        )
        conn.execute("DELETE FROM memory_clusters WHERE id = ?", (cluster_id,))

    def _delete_cluster_if_empty(self, conn: sqlite3.Connection, cluster_id: str) -> bool:
        count = conn.execute(
            "SELECT COUNT(*) FROM cluster_members WHERE cluster_id = ?", (cluster_id,)
        ).fetchone()[0]
        if count == 0:
            self._delete_cluster_rows(conn, cluster_id)
            logger.debug(f"[Store] Deleted empty cluster {cluster_id}")
            return True
        return False

    # ── Members ───────────────────────────────────────────────────────────────

    def add_member(
        self,
        cluster_id: str,
        content: str,
        source: str = "conversation",
        importance: float = 0.5,
        created_at: Optional[str] = None,
    ) -> Optional[str]:
        """Insert a member into an existing cluster and bump the cluster. None if the cluster is gone."""
        member_id = new_id()
        stamp = created_at or now_stamp()
        with self._write_lock:
            conn = self._get_conn()
            exists = conn.execute(
                "SELECT 1 FROM memory_clusters WHERE id = ?", (cluster_id,)
            ).fetchone()
            if not exists:
                return None
            conn.execute("""
                INSERT INTO cluster_members (id, cluster_id, content, source, importance, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (member_id, cluster_id, content, source, importance, stamp))
            conn.execute(
                "UPDATE memory_clusters SET updated_at = ? WHERE id = ?",
                (now_stamp(), cluster_id),
            )
            conn.execute("""
                INSERT INTO search_index (text, owner_id, group_id, collection, role)
                VALUES (?, ?, ?, ?, '')
            """, (content, member_id, cluster_id, MEMBERS))
            conn.commit()
        return member_id

    def get_member(self, member_id: str) -> Optional[dict]:
        row = self._get_conn().execute(
            "SELECT * FROM cluster_members WHERE id = ?", (member_id,)
        ).fetchone()
        return dict(row) if row else None

    def get_members(self, cluster_id: str, limit: Optional[int] = None) -> list[dict]:
        """Members of a cluster, most important first, then newest."""
        sql = """
            SELECT * FROM cluster_members WHERE cluster_id = ?
            ORDER BY importance DESC, created_at DESC, rowid DESC
        """
        params: tuple = (cluster_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (cluster_id, limit)
        return [dict(r) for r in self._get_conn().execute(sql, params).fetchall()]

    def all_members(self) -> list[dict]:
        rows = self._get_conn().execute(
            "SELECT * FROM cluster_members ORDER BY created_at, rowid"
        ).fetchall()
        return [dict(r) for r in rows]

    def find_members_by_content(self, content: str) -> list[dict]:
        rows = self._get_conn().execute(
            "SELECT * FROM cluster_members WHERE content = ? ORDER BY created_at, rowid", (content,)
        ).fetchall()
        return [dict(r) for r in rows]

    def count_members(self, cluster_id: str) -> int:
        return self._get_conn().execute(
            "SELECT COUNT(*) FROM cluster_members WHERE cluster_id = ?", (cluster_id,)
        ).fetchone()[0]

    def update_member_content(self, member_id: str, content: str) -> bool:
        with self._write_lock:
            conn = self._get_conn()
            cur = conn.execute(
                "UPDATE cluster_members SET content = ? WHERE id = ?", (content, member_id)
            )
            conn.execute(
                "UPDATE search_index SET text = ? WHERE owner_id = ? AND collection = ?",
                (content, member_id, MEMBERS),
            )
            conn.commit()
        return cur.rowcount > 0

    def move_member(self, member_id: str, target_cluster_id: str) -> bool:
        """
        Move a member to another existing cluster. The source cluster is deleted
        (with its links) when this leaves it empty. False for missing rows or a no-op.
        """
        with self._write_lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT cluster_id FROM cluster_members WHERE id = ?", (member_id,)
            ).fetchone()
            target = conn.execute(
                "SELECT 1 FROM memory_clusters WHERE id = ?", (target_cluster_id,)
            ).fetchone()
            if not row or not target or row["cluster_id"] == target_cluster_id:
                return False
            source_id = row["cluster_id"]
            conn.execute(
                "UPDATE cluster_members SET cluster_id = ? WHERE id = ?",
                (target_cluster_id, member_id),
            )
            conn.execute(
                "UPDATE search_index SET group_id = ? WHERE owner_id = ? AND collection = ?",
                (target_cluster_id, member_id, MEMBERS),
            )
            conn.execute(
                "UPDATE memory_clusters SET updated_at = ? WHERE id = ?",
                (now_stamp(), target_cluster_id),
            )
            self._delete_cluster_if_empty(conn, source_id)
            conn.commit()
        return True

    def delete_member(self, member_id: str) -> bool:
        """Delete a member, its index entries and vectors; cascade an emptied cluster."""
        with self._write_lock:
            conn = self._get_conn()
            row = conn.execute(
                "SELECT cluster_id FROM cluster_members WHERE id = ?", (member_id,)
            ).fetchone()
            if not row:
                return False
            conn.execute("DELETE FROM cluster_members WHERE id = ?", (member_id,))
            conn.execute(
                "DELETE FROM search_index WHERE owner_id = ? AND collection = ?",
                (member_id, MEMBERS),
            )
            self._delete_vector_rows(conn, MEMBERS, owner_id=member_id)
            self._delete_cluster_if_empty(conn, row["cluster_id"])
            conn.commit()
        return True

    # ── Links ─────────────────────────────────────────────────────────────────

    def create_or_strengthen_link(
        self, cluster_a: str, cluster_b: str, initial: float = 0.5, step: float = 0.1
    ) -> Optional[float]:
        """
        New links start at `initial`; an existing link gains `step`, capped at 1.0.
        Returns the resulting strength, or None for a self-link or missing cluster.
        """
        if cluster_a == cluster_b:
            return None
        a, b = _pair(cluster_a, cluster_b)
        stamp = now_stamp()
        with self._write_lock:
            conn = self._get_conn()
            found = conn.execute(
                "SELECT COUNT(*) FROM memory_clusters WHERE id IN (?, ?)", (a, b)
            ).fetchone()[0]
            if found != 2:
                return None
            conn.execute("""
                INSERT INTO cluster_links (id, cluster_a, cluster_b, strength, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(cluster_a, cluster_b) DO UPDATE SET
                    strength = MIN(1.0, cluster_links.strength + ?),
                    updated_at = excluded.updated_at
            """, (new_id(), a, b, min(1.0, initial), stamp, stamp, step))
            strength = conn.execute(
                "SELECT strength FROM cluster_links WHERE cluster_a = ? AND cluster_b = ?",
                (a, b),
            ).fetchone()[0]
            conn.commit()
        return strength

    def strengthen_link(self, cluster_a: str, cluster_b: str, step: float) -> bool:
        """Add `step` (capped at 1.0) to an existing link only. False if nothing changed."""
        if cluster_a == cluster_b:
            return False
        a, b = _pair(cluster_a, cluster_b)
        with self._write_lock:
            conn = self._get_conn()
            cur = conn.execute("""
                UPDATE cluster_links SET strength = MIN(1.0, strength + ?), updated_at = ?
                WHERE cluster_a = ? AND cluster_b = ? AND strength < 1.0
            """, (step, now_stamp(), a, b))
            conn.commit()
        return cur.rowcount > 0

    def get_link(self, cluster_a: str, cluster_b: str) -> Optional[dict]:
        a, b = _pair(cluster_a, cluster_b)
        row = self._get_conn().execute(
            "SELECT * FROM cluster_links WHERE cluster_a = ? AND cluster_b = ?", (a, b)
        ).fetchone()
        return dict(row) if row else None

    def get_linked_clusters(self, cluster_id: str, min_strength: float = 0.0) -> list[dict]:
        """[{cluster_id, name, strength}] for links above min_strength, strongest first."""
        rows = self._get_conn().execute("""
            SELECT CASE WHEN l.cluster_a = ? THEN l.cluster_b ELSE l.cluster_a END AS cluster_id,
                   c.name AS name, l.strength AS strength
            FROM cluster_links l
            JOIN memory_clusters c
              ON c.id = CASE WHEN l.cluster_a = ? THEN l.cluster_b ELSE l.cluster_a END
            WHERE (l.cluster_a = ? OR l.cluster_b = ?) AND l.strength > ?
            ORDER BY l.strength DESC
        """, (cluster_id, cluster_id, cluster_id, cluster_id, min_strength)).fetchall()
        return [dict(r) for r in rows]

    def all_links(self) -> list[dict]:
        return [dict(r) for r in self._get_conn().execute(
            "SELECT * FROM cluster_links ORDER BY strength DESC"
        ).fetchall()]

    def prune_links(self, below: float) -> int:
        with self._write_lock:
            conn = self._get_conn()
            cur = conn.execute("DELETE FROM cluster_links WHERE strength < ?", (below,))
            conn.commit()
        return cur.rowcount

    def clusters_by_member_date(self) -> dict[str, list[str]]:
        """Calendar date → clusters that gained members that day."""
        rows = self._get_conn().execute("""
            SELECT DATE(created_at) AS day, cluster_id
            FROM cluster_members
            GROUP BY day, cluster_id
            ORDER BY day
        """).fetchall()
        by_day: dict[str, list[str]] = {}
        for row in rows:
            by_day.setdefault(row["day"], []).append(row["cluster_id"])
        return by_day

    # ── Vector records ────────────────────────────────────────────────────────

    def _delete_vector_rows(
        self,
        conn: sqlite3.Connection,
        collection: str,
        owner_id: Optional[str] = None,
        group_id: Optional[str] = None,
    ) -> int:
        sql = "SELECT id FROM vector_records WHERE collection = ?"
        params: list = [collection]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        if group_id is not None:
            sql += " AND group_id = ?"
            params.append(group_id)
        ids = [r[0] for r in conn.execute(sql, params).fetchall()]
        table = COLLECTIONS[collection]
        for rowid in ids:
            conn.execute(f"DELETE FROM {table} WHERE rowid = ?", (rowid,))
            conn.execute("DELETE FROM vector_records WHERE id = ?", (rowid,))
        return len(ids)

    def add_vector(
        self,
        collection: str,
        owner_id: str,
        group_id: str,
        text: str,
        embedding,
        role: str = "",
    ) -> int:
        """Append one vector record. Returns its rowid."""
        emb_bytes = np.asarray(embedding, dtype=np.float32).tobytes()
        with self._write_lock:
            conn = self._get_conn()
            cur = conn.execute("""
                INSERT INTO vector_records (collection, owner_id, group_id, role, text, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (collection, owner_id, group_id, role, text, now_stamp()))
            rowid = cur.lastrowid
            try:
                conn.execute(
                    f"INSERT INTO {COLLECTIONS[collection]}(rowid, embedding) VALUES (?, ?)",
                    (rowid, emb_bytes),
                )
            except sqlite3.Error:
                conn.rollback()
                raise
            conn.commit()
        return rowid

    def delete_vectors(
        self, collection: str, owner_id: Optional[str] = None, group_id: Optional[str] = None
    ) -> int:
        """Delete every vector record matching the filter."""
        with self._write_lock:
            conn = self._get_conn()
            n = self._delete_vector_rows(conn, collection, owner_id=owner_id, group_id=group_id)
            conn.commit()
        return n

    def get_vector(self, collection: str, owner_id: str) -> Optional[np.ndarray]:
        """Most recent stored embedding for an owner, as a float32 array."""
        conn = self._get_conn()
        row = conn.execute("""
            SELECT id FROM vector_records WHERE collection = ? AND owner_id = ?
            ORDER BY id DESC LIMIT 1
        """, (collection, owner_id)).fetchone()
        if not row:
            return None
        emb = conn.execute(
            f"SELECT embedding FROM {COLLECTIONS[collection]} WHERE rowid = ?", (row[0],)
        ).fetchone()
        if emb and emb[0]:
            return np.frombuffer(emb[0], dtype=np.float32)
        return None

    def count_vectors(self, collection: str, owner_id: Optional[str] = None) -> int:
        sql = "SELECT COUNT(*) FROM vector_records WHERE collection = ?"
        params: list = [collection]
        if owner_id is not None:
            sql += " AND owner_id = ?"
            params.append(owner_id)
        return self._get_conn().execute(sql, params).fetchone()[0]

    def search_vectors(
        self,
        collection: str,
        embedding,
        limit: int,
        exclude_group: Optional[str] = None,
    ) -> list[dict]:
        """
        Cosine KNN over one collection.

        Returns [{owner_id, group_id, role, text, distance, similarity}] nearest
        first, one entry per owner (duplicate records collapse to the closest).
        """
        if limit <= 0:
            return []
        emb_bytes = np.asarray(embedding, dtype=np.float32).tobytes()
        conn = self._get_conn()
        k = min(MAX_KNN, limit * 3 if exclude_group else limit * 2)
        hits = conn.execute(f"""
            SELECT rowid, distance FROM {COLLECTIONS[collection]}
            WHERE embedding MATCH ? AND k = ?
            ORDER BY distance
        """, (emb_bytes, k)).fetchall()
        if not hits:
            return []

        placeholders = ",".join("?" * len(hits))
        records = {
            r["id"]: r for r in conn.execute(
                f"SELECT * FROM vector_records WHERE id IN ({placeholders})",
                [h[0] for h in hits],
            ).fetchall()
        }
        results, seen = [], set()
        for rowid, distance in hits:
            rec = records.get(rowid)
            if rec is None or rec["owner_id"] in seen:
                continue
            if exclude_group and rec["group_id"] == exclude_group:
                continue
            seen.add(rec["owner_id"])
            results.append({
                "owner_id": rec["owner_id"],
                "group_id": rec["group_id"],
                "role": rec["role"],
                "text": rec["text"],
                "distance": float(distance),
                "similarity": 1.0 - float(distance),
            })
            if len(results) >= limit:
                break
        return results

    # ── Keyword index ─────────────────────────────────────────────────────────

    def keyword_search(
        self,
        collection: str,
        fts_query: str,
        limit: int,
        exclude_group: Optional[str] = None,
    ) -> list[dict]:
        """
        BM25-ranked FTS5 search. `fts_query` must already be sanitized.
        Returns [{owner_id, group_id, role, text, score}] best first (score is negative).
        """
        sql = """
            SELECT owner_id, group_id, role, text, bm25(search_index) AS score
            FROM search_index
            WHERE search_index MATCH ? AND collection = ?
        """
        params: list = [fts_query, collection]
        if exclude_group:
            sql += " AND group_id != ?"
            params.append(exclude_group)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)
        return [dict(r) for r in self._get_conn().execute(sql, params).fetchall()]

    # ── Bulk ──────────────────────────────────────────────────────────────────

    def wipe_clusters(self) -> dict:
        """Remove all clusters, members, links and member vectors/index entries."""
        with self._write_lock:
            conn = self._get_conn()
            counts = {
                "clusters": conn.execute("SELECT COUNT(*) FROM memory_clusters").fetchone()[0],
                "members": conn.execute("SELECT COUNT(*) FROM cluster_members").fetchone()[0],
                "links": conn.execute("SELECT COUNT(*) FROM cluster_links").fetchone()[0],
            }
            conn.execute("DELETE FROM cluster_links")
            conn.execute("DELETE FROM cluster_members")
            conn.execute("DELETE FROM memory_clusters")
            conn.execute("DELETE FROM search_index WHERE collection = ?", (MEMBERS,))
            counts["vectors"] = self._delete_vector_rows(conn, MEMBERS)
            conn.commit()
        return counts

"""
Knowledge Store
Persistent entries, relations, the consolidation cursor and the processed-episode log
"""

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import numpy as np

from core.types.knowledge_types import (
    ConsolidationState,
    KnowledgeEntry,
    KnowledgeRelation,
    KnowledgeStatus,
    ProcessedRange,
    RelationType,
    clamp_confidence,
    clamp_knowledge_type,
    now_ms,
)
from modules.knowledge.schema import (
    CREATE_INDEXES,
    CREATE_TABLES,
    EXPECTED_COLUMNS,
    KNOWLEDGE_TABLES,
    SCHEMA_VERSION,
)

logger = logging.getLogger(__name__)

LIVE_STATUS_SQL = "('active', 'conflicted')"

# Columns update_entry() may touch
_UPDATABLE_FIELDS = {
    "type", "content", "topics", "confidence", "source", "scope", "status", "strength",
    "updated_at", "last_accessed_at", "access_count", "observation_count",
    "superseded_by", "derived_from", "embedding",
}

CONTRADICTION_RESOLUTIONS = ("supersede_old", "supersede_new", "merge", "irresolvable")


def new_id() -> str:
    return str(uuid.uuid4())


def _encode_embedding(embedding: Optional[List[float]]) -> Optional[bytes]:
    if embedding is None:
        return None
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _decode_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32).tolist()


def _encode_value(field: str, value: Any) -> Any:
    if field in ("topics", "derived_from"):
        return json.dumps(list(value or []))
    if field == "embedding":
        return _encode_embedding(value)
    if hasattr(value, "value"):  # str enums
        return value.value
    return value


class KnowledgeStore:
    """
    SQLite-backed knowledge graph.

    Single connection in autocommit mode: every plain call is its own short unit,
    multi-step changes go through _transaction().
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_database()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _init_database(self):
        """Create tables, rebuilding them if an older layout is found."""
        if self._schema_drifted():
            logger.warning(
                f"Knowledge database at {self.db_path} does not match schema v{SCHEMA_VERSION}; "
                f"rebuilding (a fresh consolidation will re-derive its contents)"
            )
            with self._transaction() as conn:
                for table in KNOWLEDGE_TABLES:
                    conn.execute(f"DROP TABLE IF EXISTS {table}")

        with self._transaction() as conn:
            for ddl in CREATE_TABLES:
                conn.execute(ddl)
            for ddl in CREATE_INDEXES:
                conn.execute(ddl)
            if conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 0:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            conn.execute("INSERT OR IGNORE INTO consolidation_state (id) VALUES (1)")

    def _schema_drifted(self) -> bool:
        for table, expected in EXPECTED_COLUMNS.items():
            columns = {row["name"] for row in self._conn.execute(f"PRAGMA table_info({table})")}
            if columns and not expected <= columns:
                return True

        has_version_table = self._conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'schema_version'"
        ).fetchone()
        if has_version_table:
            row = self._conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
            if row[0] is not None and row[0] != SCHEMA_VERSION:
                return True
        return False

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")

    def close(self):
        self._conn.close()
        logger.info("Knowledge store closed")

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            type=row["type"],
            content=row["content"],
            topics=json.loads(row["topics"] or "[]"),
            confidence=row["confidence"],
            source=row["source"],
            scope=row["scope"],
            status=row["status"],
            strength=row["strength"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed_at=row["last_accessed_at"],
            access_count=row["access_count"],
            observation_count=row["observation_count"],
            superseded_by=row["superseded_by"],
            derived_from=json.loads(row["derived_from"] or "[]"),
            embedding=_decode_embedding(row["embedding"]),
        )

    def insert_entry(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        self._conn.execute(
            '''
            INSERT INTO knowledge_entry (
                id, type, content, topics, confidence, source, scope, status, strength,
                created_at, updated_at, last_accessed_at, access_count, observation_count,
                superseded_by, derived_from, embedding
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''',
            (
                entry.id,
                clamp_knowledge_type(entry.type.value).value,
                entry.content,
                json.dumps(entry.topics),
                clamp_confidence(entry.confidence),
                entry.source,
                entry.scope.value,
                entry.status.value,
                entry.strength,
                entry.created_at,
                entry.updated_at,
                entry.last_accessed_at,
                entry.access_count,
                entry.observation_count,
                entry.superseded_by,
                json.dumps(entry.derived_from),
                _encode_embedding(entry.embedding),
            ),
        )
        return entry

    def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        row = self._conn.execute("SELECT * FROM knowledge_entry WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def update_entry(self, entry_id: str, **fields) -> None:
        """Overwrite the given columns. updated_at is bumped unless supplied."""
        self._update_fields(self._conn, entry_id, fields)

    def _update_fields(self, conn: sqlite3.Connection, entry_id: str, fields: Dict[str, Any]) -> None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update knowledge_entry fields: {sorted(unknown)}")
        fields = dict(fields)
        fields.setdefault("updated_at", now_ms())
        assignments = ", ".join(f"{name} = ?" for name in fields)
        values = [_encode_value(name, value) for name, value in fields.items()]
        conn.execute(f"UPDATE knowledge_entry SET {assignments} WHERE id = ?", (*values, entry_id))

    def get_entries(
        self,
        status: Optional[str] = None,
        type: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> List[KnowledgeEntry]:
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if type:
            clauses.append("type = ?")
            params.append(type)
        if scope:
            clauses.append("scope = ?")
            params.append(scope)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"SELECT * FROM knowledge_entry {where} ORDER BY created_at DESC", params
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def get_entries_by_status(self, status: KnowledgeStatus) -> List[KnowledgeEntry]:
        return self.get_entries(status=status.value)

    def get_live_entries(self) -> List[KnowledgeEntry]:
        rows = self._conn.execute(
            f"SELECT * FROM knowledge_entry WHERE status IN {LIVE_STATUS_SQL} ORDER BY created_at"
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def get_live_entries_with_embeddings(self) -> List[KnowledgeEntry]:
        rows = self._conn.execute(
            f"""SELECT * FROM knowledge_entry
                WHERE status IN {LIVE_STATUS_SQL} AND embedding IS NOT NULL
                ORDER BY created_at"""
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def get_live_entries_missing_embeddings(self) -> List[KnowledgeEntry]:
        rows = self._conn.execute(
            f"""SELECT * FROM knowledge_entry
                WHERE status IN {LIVE_STATUS_SQL} AND embedding IS NULL
                ORDER BY created_at"""
        ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count_live_entries(self) -> int:
        return self._conn.execute(
            f"SELECT COUNT(*) FROM knowledge_entry WHERE status IN {LIVE_STATUS_SQL}"
        ).fetchone()[0]

    def get_entries_with_overlapping_topics(
        self, topics: Iterable[str], exclude_ids: Iterable[str] = ()
    ) -> List[KnowledgeEntry]:
        """Live entries sharing at least one topic label (case-insensitive)."""
        wanted = sorted({t.strip().lower() for t in topics if t and t.strip()})
        if not wanted:
            return []
        placeholders = ", ".join("?" for _ in wanted)
        rows = self._conn.execute(
            f"""
            SELECT DISTINCT e.* FROM knowledge_entry e, json_each(e.topics) t
            WHERE e.status IN {LIVE_STATUS_SQL}
              AND lower(trim(t.value)) IN ({placeholders})
            ORDER BY e.created_at
            """,
            wanted,
        ).fetchall()
        excluded = set(exclude_ids)
        return [self._row_to_entry(r) for r in rows if r["id"] not in excluded]

    def record_access(self, entry_ids: Iterable[str], now: Optional[int] = None) -> None:
        """Retrieval reinforcement for every id, in one transaction."""
        ids = list(entry_ids)
        if not ids:
            return
        now = now if now is not None else now_ms()
        with self._transaction() as conn:
            conn.executemany(
                '''UPDATE knowledge_entry
                   SET access_count = access_count + 1, last_accessed_at = ?
                   WHERE id = ?''',
                [(now, entry_id) for entry_id in ids],
            )

    def reinforce_observation(self, entry_id: str, now: Optional[int] = None) -> None:
        """Evidence reinforcement: the same knowledge was observed again."""
        now = now if now is not None else now_ms()
        self._conn.execute(
            '''UPDATE knowledge_entry
               SET observation_count = observation_count + 1, last_accessed_at = ?
               WHERE id = ?''',
            (now, entry_id),
        )

    def update_strength(self, entry_id: str, strength: float) -> None:
        # Not a content change, so updated_at stays put
        self._conn.execute("UPDATE knowledge_entry SET strength = ? WHERE id = ?", (strength, entry_id))

    def set_embedding(self, entry_id: str, embedding: List[float]) -> None:
        self._conn.execute(
            "UPDATE knowledge_entry SET embedding = ? WHERE id = ?",
            (_encode_embedding(embedding), entry_id),
        )

    def merge_entry(
        self,
        entry_id: str,
        content: str,
        type: str,
        topics: List[str],
        confidence: float,
        additional_sources: Iterable[str] = (),
        embedding: Optional[List[float]] = None,
    ) -> Optional[KnowledgeEntry]:
        """
        Overwrite an entry's content in place and union its provenance.

        The vector is written in the same UPDATE as the content. Without one the
        stale embedding is cleared for the backfill to pick up.
        """
        existing = self.get_entry(entry_id)
        if existing is None:
            return None
        derived_from = list(dict.fromkeys([*existing.derived_from, *additional_sources]))
        self.update_entry(
            entry_id,
            content=content,
            type=clamp_knowledge_type(type),
            topics=list(topics),
            confidence=clamp_confidence(confidence, default=existing.confidence),
            derived_from=derived_from,
            embedding=embedding,
        )
        return self.get_entry(entry_id)

    def archive_entry(self, entry_id: str, strength: float, now: Optional[int] = None) -> None:
        """Archive a faded entry; an open conflict it was part of is settled first."""
        now = now if now is not None else now_ms()
        with self._transaction() as conn:
            self._clear_conflicts(conn, entry_id, now)
            self._update_fields(conn, entry_id, {
                "status": KnowledgeStatus.ARCHIVED,
                "strength": strength,
                "updated_at": now,
            })

    def tombstone_entry(self, entry_id: str, now: Optional[int] = None) -> None:
        now = now if now is not None else now_ms()
        self.update_entry(entry_id, status=KnowledgeStatus.TOMBSTONED, updated_at=now)

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def insert_relation(
        self, source_id: str, target_id: str, type: RelationType, now: Optional[int] = None
    ) -> KnowledgeRelation:
        return self._insert_relation(self._conn, source_id, target_id, type, now or now_ms())

    @staticmethod
    def _insert_relation(
        conn: sqlite3.Connection, source_id: str, target_id: str, type: RelationType, now: int
    ) -> KnowledgeRelation:
        relation = KnowledgeRelation(
            id=new_id(), source_id=source_id, target_id=target_id, type=type, created_at=now
        )
        conn.execute(
            "INSERT INTO knowledge_relation (id, source_id, target_id, type, created_at) VALUES (?, ?, ?, ?, ?)",
            (relation.id, source_id, target_id, type.value, now),
        )
        return relation

    def get_relations_for(self, entry_id: str) -> List[KnowledgeRelation]:
        rows = self._conn.execute(
            '''SELECT * FROM knowledge_relation
               WHERE source_id = ? OR target_id = ?
               ORDER BY created_at''',
            (entry_id, entry_id),
        ).fetchall()
        return [KnowledgeRelation(**dict(r)) for r in rows]

    def get_contradiction_counterparts(self, entry_id: str) -> List[str]:
        return self._contradiction_counterparts(self._conn, entry_id)

    @staticmethod
    def _contradiction_counterparts(conn: sqlite3.Connection, entry_id: str) -> List[str]:
        rows = conn.execute(
            '''SELECT CASE WHEN source_id = ? THEN target_id ELSE source_id END AS other
               FROM knowledge_relation
               WHERE type = 'contradicts' AND (source_id = ? OR target_id = ?)''',
            (entry_id, entry_id, entry_id),
        ).fetchall()
        return list(dict.fromkeys(r["other"] for r in rows))

    # ------------------------------------------------------------------
    # Contradiction resolution
    # ------------------------------------------------------------------

    def _restore_counterpart(
        self, conn: sqlite3.Connection, counterpart_id: str, resolved_id: str, now: int
    ) -> None:
        """
        Drop the contradicts edge between the pair and, if the counterpart was
        conflicted only because of this pair, put it back to active.
        """
        conn.execute(
            '''DELETE FROM knowledge_relation
               WHERE type = 'contradicts'
                 AND ((source_id = ? AND target_id = ?) OR (source_id = ? AND target_id = ?))''',
            (counterpart_id, resolved_id, resolved_id, counterpart_id),
        )
        row = conn.execute("SELECT status FROM knowledge_entry WHERE id = ?", (counterpart_id,)).fetchone()
        if row is None or row["status"] != KnowledgeStatus.CONFLICTED.value:
            return
        if self._contradiction_counterparts(conn, counterpart_id):
            return
        self._update_fields(conn, counterpart_id, {"status": KnowledgeStatus.ACTIVE, "updated_at": now})
        logger.info(f"[contradiction] Restored {counterpart_id} to active (conflict with {resolved_id} settled)")

    def _clear_conflicts(self, conn: sqlite3.Connection, entry_id: str, now: int) -> None:
        for counterpart_id in self._contradiction_counterparts(conn, entry_id):
            self._restore_counterpart(conn, counterpart_id, entry_id, now)

    def apply_contradiction_resolution(
        self,
        resolution: str,
        new_id: str,
        existing_id: str,
        merge_data: Optional[Dict[str, Any]] = None,
        now: Optional[int] = None,
    ) -> None:
        """
        Apply one contradiction outcome atomically.

        supersede_old / merge: the new entry wins. supersede_new: the existing one wins.
        irresolvable: both become conflicted with a contradicts edge between them.
        """
        if resolution not in CONTRADICTION_RESOLUTIONS:
            raise ValueError(f"Unknown contradiction resolution: {resolution}")
        now = now if now is not None else now_ms()

        with self._transaction() as conn:
            if resolution == "irresolvable":
                # One contradicts edge per pair
                if existing_id not in self._contradiction_counterparts(conn, new_id):
                    self._insert_relation(conn, new_id, existing_id, RelationType.CONTRADICTS, now)
                for entry_id in (new_id, existing_id):
                    self._update_fields(conn, entry_id, {"status": KnowledgeStatus.CONFLICTED, "updated_at": now})
                return

            if resolution == "supersede_new":
                winner_id, loser_id = existing_id, new_id
            else:
                winner_id, loser_id = new_id, existing_id

            if resolution == "merge":
                self._apply_merge_fields(conn, new_id, existing_id, merge_data or {}, now)

            self._clear_conflicts(conn, loser_id, now)
            self._clear_conflicts(conn, winner_id, now)

            self._update_fields(conn, loser_id, {
                "status": KnowledgeStatus.SUPERSEDED,
                "superseded_by": winner_id,
                "updated_at": now,
            })
            self._insert_relation(conn, winner_id, loser_id, RelationType.SUPERSEDES, now)

            winner = conn.execute("SELECT status FROM knowledge_entry WHERE id = ?", (winner_id,)).fetchone()
            if winner is not None and winner["status"] == KnowledgeStatus.CONFLICTED.value:
                self._update_fields(conn, winner_id, {"status": KnowledgeStatus.ACTIVE, "updated_at": now})

    def _apply_merge_fields(
        self, conn: sqlite3.Connection, new_id: str, existing_id: str, merge_data: Dict[str, Any], now: int
    ) -> None:
        # Partial merge payloads keep whatever fields were omitted
        fields: Dict[str, Any] = {"embedding": None, "updated_at": now}
        if merge_data.get("content"):
            fields["content"] = merge_data["content"]
        if merge_data.get("type"):
            fields["type"] = clamp_knowledge_type(merge_data["type"])
        if merge_data.get("topics"):
            fields["topics"] = [str(t) for t in merge_data["topics"]]
        if merge_data.get("confidence") is not None:
            fields["confidence"] = clamp_confidence(merge_data["confidence"])

        rows = conn.execute(
            "SELECT id, derived_from FROM knowledge_entry WHERE id IN (?, ?)", (new_id, existing_id)
        ).fetchall()
        sources: List[str] = []
        for target in (new_id, existing_id):
            for r in rows:
                if r["id"] == target:
                    sources.extend(json.loads(r["derived_from"] or "[]"))
        fields["derived_from"] = list(dict.fromkeys(sources))

        self._update_fields(conn, new_id, fields)

    # ------------------------------------------------------------------
    # Consolidation state and episode log
    # ------------------------------------------------------------------

    def get_consolidation_state(self) -> ConsolidationState:
        row = self._conn.execute("SELECT * FROM consolidation_state WHERE id = 1").fetchone()
        data = dict(row)
        data.pop("id", None)
        return ConsolidationState(**data)

    def advance_consolidation_state(
        self,
        cursor: int,
        sessions_processed: int = 0,
        entries_created: int = 0,
        entries_updated: int = 0,
        now: Optional[int] = None,
    ) -> ConsolidationState:
        """Move the cursor (never backward) and add run counters to the totals."""
        now = now if now is not None else now_ms()
        self._conn.execute(
            '''
            UPDATE consolidation_state SET
                last_consolidated_at = ?,
                last_message_time_created = MAX(last_message_time_created, ?),
                total_sessions_processed = total_sessions_processed + ?,
                total_entries_created = total_entries_created + ?,
                total_entries_updated = total_entries_updated + ?
            WHERE id = 1
            ''',
            (now, cursor, sessions_processed, entries_created, entries_updated),
        )
        return self.get_consolidation_state()

    def record_episode(
        self,
        session_id: str,
        start_message_id: str,
        end_message_id: str,
        content_type: str,
        entries_created: int = 0,
        now: Optional[int] = None,
    ) -> None:
        self._conn.execute(
            '''
            INSERT OR IGNORE INTO consolidated_episode
                (session_id, start_message_id, end_message_id, content_type, processed_at, entries_created)
            VALUES (?, ?, ?, ?, ?, ?)
            ''',
            (session_id, start_message_id, end_message_id, content_type,
             now if now is not None else now_ms(), entries_created),
        )

    def get_processed_episode_ranges(self, session_ids: Iterable[str]) -> Dict[str, List[ProcessedRange]]:
        ids = list(session_ids)
        ranges: Dict[str, List[ProcessedRange]] = {}
        if not ids:
            return ranges
        placeholders = ", ".join("?" for _ in ids)
        rows = self._conn.execute(
            f'''SELECT session_id, start_message_id, end_message_id FROM consolidated_episode
                WHERE session_id IN ({placeholders})
                ORDER BY processed_at''',
            ids,
        ).fetchall()
        for r in rows:
            ranges.setdefault(r["session_id"], []).append(
                ProcessedRange(r["start_message_id"], r["end_message_id"])
            )
        return ranges

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in KnowledgeStatus}
        for r in self._conn.execute("SELECT status, COUNT(*) AS n FROM knowledge_entry GROUP BY status"):
            by_status[r["status"]] = r["n"]
        relations = self._conn.execute("SELECT COUNT(*) FROM knowledge_relation").fetchone()[0]
        episodes = self._conn.execute("SELECT COUNT(*) FROM consolidated_episode").fetchone()[0]
        return {
            "total": sum(by_status.values()),
            "byStatus": by_status,
            "relations": relations,
            "episodesProcessed": episodes,
        }

    def reinitialize(self) -> None:
        """Delete every entry, relation and episode record and reset the cursor to zero."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM knowledge_relation")
            conn.execute("DELETE FROM knowledge_entry")
            conn.execute("DELETE FROM consolidated_episode")
            conn.execute(
                '''UPDATE consolidation_state SET
                       last_consolidated_at = 0, last_message_time_created = 0,
                       total_sessions_processed = 0, total_entries_created = 0,
                       total_entries_updated = 0
                   WHERE id = 1'''
            )
        logger.warning("Knowledge store reinitialized: all entries, relations and episode records removed")

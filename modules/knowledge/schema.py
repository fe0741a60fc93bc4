"""
Knowledge store schema.

The episode source is the system of record: when an existing database does not
match these tables it is dropped and rebuilt, and a fresh consolidation re-derives it.
"""

from typing import Dict, Set

SCHEMA_VERSION = 5

CREATE_TABLES = [
    '''
    CREATE TABLE IF NOT EXISTS knowledge_entry (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL CHECK(type IN ('fact', 'principle', 'pattern', 'decision', 'procedure')),
        content TEXT NOT NULL,
        topics TEXT NOT NULL DEFAULT '[]',  -- JSON array
        confidence REAL NOT NULL DEFAULT 0.5 CHECK(confidence >= 0 AND confidence <= 1),
        source TEXT NOT NULL DEFAULT '',
        scope TEXT NOT NULL DEFAULT 'personal' CHECK(scope IN ('personal', 'team')),
        status TEXT NOT NULL DEFAULT 'active'
            CHECK(status IN ('active', 'archived', 'superseded', 'conflicted', 'tombstoned')),
        strength REAL NOT NULL DEFAULT 1.0,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL,
        last_accessed_at INTEGER NOT NULL,
        access_count INTEGER NOT NULL DEFAULT 0,
        observation_count INTEGER NOT NULL DEFAULT 1,
        superseded_by TEXT,
        derived_from TEXT NOT NULL DEFAULT '[]',  -- JSON array
        embedding BLOB  -- float32
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS knowledge_relation (
        id TEXT PRIMARY KEY,
        source_id TEXT NOT NULL REFERENCES knowledge_entry(id) ON DELETE CASCADE,
        target_id TEXT NOT NULL REFERENCES knowledge_entry(id) ON DELETE CASCADE,
        type TEXT NOT NULL CHECK(type IN ('supports', 'contradicts', 'refines', 'depends_on', 'supersedes')),
        created_at INTEGER NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS consolidation_state (
        id INTEGER PRIMARY KEY CHECK(id = 1),
        last_consolidated_at INTEGER NOT NULL DEFAULT 0,
        last_message_time_created INTEGER NOT NULL DEFAULT 0,
        total_sessions_processed INTEGER NOT NULL DEFAULT 0,
        total_entries_created INTEGER NOT NULL DEFAULT 0,
        total_entries_updated INTEGER NOT NULL DEFAULT 0
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS consolidated_episode (
        session_id TEXT NOT NULL,
        start_message_id TEXT NOT NULL,
        end_message_id TEXT NOT NULL,
        content_type TEXT NOT NULL CHECK(content_type IN ('compaction_summary', 'messages')),
        processed_at INTEGER NOT NULL,
        entries_created INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (session_id, start_message_id, end_message_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER NOT NULL
    )
    ''',
]

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_entry_status ON knowledge_entry(status)",
    "CREATE INDEX IF NOT EXISTS idx_relation_source ON knowledge_relation(source_id)",
    "CREATE INDEX IF NOT EXISTS idx_relation_target ON knowledge_relation(target_id)",
    "CREATE INDEX IF NOT EXISTS idx_episode_session ON consolidated_episode(session_id)",
]

# Drop order respects the relation foreign keys
KNOWLEDGE_TABLES = [
    "knowledge_relation",
    "knowledge_entry",
    "consolidation_state",
    "consolidated_episode",
    "schema_version",
]

EXPECTED_COLUMNS: Dict[str, Set[str]] = {
    "knowledge_entry": {
        "id", "type", "content", "topics", "confidence", "source", "scope", "status",
        "strength", "created_at", "updated_at", "last_accessed_at", "access_count",
        "observation_count", "superseded_by", "derived_from", "embedding",
    },
    "knowledge_relation": {"id", "source_id", "target_id", "type", "created_at"},
    "consolidation_state": {
        "id", "last_consolidated_at", "last_message_time_created",
        "total_sessions_processed", "total_entries_created", "total_entries_updated",
    },
    "consolidated_episode": {
        "session_id", "start_message_id", "end_message_id", "content_type",
        "processed_at", "entries_created",
    },
}

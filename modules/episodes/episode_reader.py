"""
Episode Reader
Segments OpenCode sessions into episodes for consolidation.

The OpenCode database is owned by another program and is only ever opened read-only.
Episodes are keyed by (start message id, end message id) rather than by position,
so appending to a session never invalidates what was already recorded.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from core.types.knowledge_types import ProcessedRange

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 2000
TRUNCATION_MARKER = "\n[...truncated]"

CONTENT_TYPE_SUMMARY = "compaction_summary"
CONTENT_TYPE_MESSAGES = "messages"


def approx_tokens(text: str) -> int:
    """Roughly four characters per token."""
    return math.ceil(len(text) / 4)


@dataclass
class EpisodeMessage:
    message_id: str
    role: str
    content: str
    timestamp: int


@dataclass
class CandidateSession:
    id: str
    max_message_time: int


@dataclass
class Episode:
    session_id: str
    start_message_id: str
    end_message_id: str
    session_title: str
    project_name: str
    directory: str
    time_created: int
    max_message_time: int
    content: str
    content_type: str
    approx_tokens: int


@dataclass
class _SessionInfo:
    id: str
    title: str
    directory: str
    time_created: int
    project_name: str


@dataclass
class _CompactionPoint:
    compaction_time: int
    summary: EpisodeMessage


def format_messages(messages: Sequence[EpisodeMessage]) -> str:
    lines = []
    for m in messages:
        content = m.content
        if len(content) > MAX_MESSAGE_CHARS:
            content = content[:MAX_MESSAGE_CHARS] + TRUNCATION_MARKER
        lines.append(f"  {m.role}: {content}")
    return "\n".join(lines)


def chunk_by_token_budget(messages: Sequence[EpisodeMessage], max_tokens: int) -> List[List[EpisodeMessage]]:
    """
    Group consecutive messages into windows of at most max_tokens.

    The budget is soft: a message that alone exceeds it is never split and gets
    a window of its own.
    """
    chunks: List[List[EpisodeMessage]] = []
    current: List[EpisodeMessage] = []
    current_tokens = 0

    for msg in messages:
        msg_tokens = approx_tokens(msg.content)
        if current and current_tokens + msg_tokens > max_tokens:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(msg)
        current_tokens += msg_tokens

    if current:
        chunks.append(current)
    return chunks


class EpisodeReader:

    def __init__(self, db_path: Path, min_session_messages: int = 4, max_tokens_per_episode: int = 50_000):
        self.db_path = Path(db_path)
        self.min_session_messages = min_session_messages
        self.max_tokens_per_episode = max_tokens_per_episode

        uri = f"{self.db_path.resolve().as_uri()}?mode=ro"
        self._conn = sqlite3.connect(uri, uri=True, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row

    def close(self):
        self._conn.close()

    # ------------------------------------------------------------------
    # Session discovery
    # ------------------------------------------------------------------

    def get_candidate_sessions(self, after: int, limit: int) -> List[CandidateSession]:
        """Top-level sessions with messages newer than `after`, oldest activity first."""
        rows = self._conn.execute(
            '''
            SELECT m.session_id AS id, MAX(m.time_created) AS max_message_time
            FROM message m
            JOIN session s ON s.id = m.session_id
            WHERE m.time_created > ?
              AND s.parent_id IS NULL
            GROUP BY m.session_id
            ORDER BY max_message_time ASC
            LIMIT ?
            ''',
            (after, limit),
        ).fetchall()
        return [CandidateSession(id=r["id"], max_message_time=r["max_message_time"]) for r in rows]

    def count_new_sessions(self, after: int) -> int:
        row = self._conn.execute(
            '''
            SELECT COUNT(DISTINCT m.session_id) AS n
            FROM message m
            JOIN session s ON s.id = m.session_id
            WHERE m.time_created > ?
              AND s.parent_id IS NULL
            ''',
            (after,),
        ).fetchone()
        return row["n"] or 0

    def get_new_episodes(
        self,
        candidate_ids: Sequence[str],
        processed_ranges: Dict[str, List[ProcessedRange]],
    ) -> List[Episode]:
        """Segment each candidate session, leaving out episodes already recorded."""
        if not candidate_ids:
            return []

        placeholders = ", ".join("?" for _ in candidate_ids)
        rows = self._conn.execute(
            f'''
            SELECT s.id, s.title, s.directory, s.time_created,
                   COALESCE(p.name, 'unknown') AS project_name
            FROM session s
            LEFT JOIN project p ON s.project_id = p.id
            WHERE s.id IN ({placeholders})
            ORDER BY s.time_created ASC
            ''',
            list(candidate_ids),
        ).fetchall()

        episodes: List[Episode] = []
        for r in rows:
            session = _SessionInfo(
                id=r["id"],
                title=r["title"] or "Untitled",
                directory=r["directory"] or "",
                time_created=r["time_created"],
                project_name=r["project_name"],
            )
            episodes.extend(self.segment_session(session, processed_ranges.get(session.id, [])))
        return episodes

    # ------------------------------------------------------------------
    # Segmentation
    # ------------------------------------------------------------------

    def segment_session(self, session: _SessionInfo, processed: List[ProcessedRange]) -> List[Episode]:
        messages = self._load_messages(session.id)
        compaction_times = self._compaction_times(session.id)
        points = self._compaction_points(messages, compaction_times)

        episodes: List[Episode] = []
        if points:
            for point in points:
                summary = point.summary
                episodes.append(Episode(
                    session_id=session.id,
                    start_message_id=summary.message_id,
                    end_message_id=summary.message_id,
                    session_title=session.title,
                    project_name=session.project_name,
                    directory=session.directory,
                    time_created=session.time_created,
                    max_message_time=summary.timestamp,
                    content=summary.content,
                    content_type=CONTENT_TYPE_SUMMARY,
                    approx_tokens=approx_tokens(summary.content),
                ))
            last = points[-1]
            tail = [
                m for m in messages
                if m.timestamp > last.compaction_time and m.message_id != last.summary.message_id
            ]
        else:
            tail = messages

        if len(tail) >= self.min_session_messages:
            tail = self._after_last_processed(tail, processed)
            for chunk in chunk_by_token_budget(tail, self.max_tokens_per_episode):
                content = format_messages(chunk)
                if not content.strip():
                    continue
                episodes.append(Episode(
                    session_id=session.id,
                    start_message_id=chunk[0].message_id,
                    end_message_id=chunk[-1].message_id,
                    session_title=session.title,
                    project_name=session.project_name,
                    directory=session.directory,
                    time_created=session.time_created,
                    max_message_time=chunk[-1].timestamp,
                    content=content,
                    content_type=CONTENT_TYPE_MESSAGES,
                    approx_tokens=approx_tokens(content),
                ))

        if not processed:
            return episodes
        done = {(r.start_message_id, r.end_message_id) for r in processed}
        return [e for e in episodes if (e.start_message_id, e.end_message_id) not in done]

    @staticmethod
    def _after_last_processed(messages: List[EpisodeMessage], processed: List[ProcessedRange]) -> List[EpisodeMessage]:
        """Drop everything up to the furthest recorded end id, so only new tail content is chunked."""
        if not processed:
            return messages
        ends = {r.end_message_id for r in processed}
        last_index: Optional[int] = None
        for i, m in enumerate(messages):
            if m.message_id in ends:
                last_index = i
        if last_index is None:
            return messages
        return messages[last_index + 1:]

    @staticmethod
    def _compaction_points(messages: List[EpisodeMessage], compaction_times: List[int]) -> List[_CompactionPoint]:
        # The continuation summary is the first assistant message after each marker
        points: List[_CompactionPoint] = []
        for compaction_time in compaction_times:
            summary = next(
                (m for m in messages if m.role == "assistant" and m.timestamp > compaction_time),
                None,
            )
            if summary is not None:
                points.append(_CompactionPoint(compaction_time=compaction_time, summary=summary))
        return points

    def _compaction_times(self, session_id: str) -> List[int]:
        rows = self._conn.execute(
            '''
            SELECT m.time_created
            FROM part p
            JOIN message m ON m.id = p.message_id
            WHERE json_extract(p.data, '$.type') = 'compaction'
              AND m.session_id = ?
            ORDER BY m.time_created ASC
            ''',
            (session_id,),
        ).fetchall()
        return [r["time_created"] for r in rows]

    def _load_messages(self, session_id: str) -> List[EpisodeMessage]:
        """User and assistant messages with their text parts joined, oldest first."""
        rows = self._conn.execute(
            '''
            SELECT m.id, json_extract(m.data, '$.role') AS role, m.time_created,
                   json_extract(p.data, '$.text') AS text
            FROM message m
            LEFT JOIN part p ON p.message_id = m.id AND json_extract(p.data, '$.type') = 'text'
            WHERE m.session_id = ?
            ORDER BY m.time_created ASC, m.id ASC, p.time_created ASC
            ''',
            (session_id,),
        ).fetchall()

        messages: List[EpisodeMessage] = []
        texts: Dict[str, List[str]] = {}
        order: List[sqlite3.Row] = []
        for r in rows:
            if r["role"] not in ("user", "assistant"):
                continue
            if r["id"] not in texts:
                texts[r["id"]] = []
                order.append(r)
            if r["text"]:
                texts[r["id"]].append(r["text"])

        for r in order:
            content = "\n".join(texts[r["id"]]).strip()
            if content:
                messages.append(EpisodeMessage(
                    message_id=r["id"],
                    role=r["role"],
                    content=content,
                    timestamp=r["time_created"],
                ))
        return messages

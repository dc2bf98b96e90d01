"""
Analysis record persistence layer.

Stores every graded call in SQLite so a result can be re-read after the
storage endpoint has (or has not) accepted it.
"""

import asyncio
import json
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from call_trainer.logging_config import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AnalysisRecord:
    """Persisted outcome of one graded call."""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    call_id: str = ""
    stream_id: Optional[str] = None
    scenario_id: Optional[Any] = None
    scenario_name: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    conversation_id: Optional[str] = None

    conversation: List[Dict[str, str]] = field(default_factory=list)
    formatted_transcript: str = ""
    analysis: Dict[str, Any] = field(default_factory=dict)

    outcome: str = "graded"  # graded | fallback
    error: Optional[str] = None  # fallback reason

    def to_dict(self) -> Dict[str, Any]:
        """Response body for GET /analysis/{call_id}."""
        return {
            "callId": self.call_id,
            "streamId": self.stream_id,
            "scenarioId": self.scenario_id,
            "scenarioName": self.scenario_name,
            "timestamp": self.timestamp.isoformat(),
            "conversationId": self.conversation_id,
            "conversation": self.conversation,
            "formattedTranscript": self.formatted_transcript,
            "analysis": self.analysis,
            "outcome": self.outcome,
            "error": self.error,
        }

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AnalysisRecord":
        data = dict(row)
        try:
            timestamp = datetime.fromisoformat(data["timestamp"])
        except (TypeError, ValueError):
            timestamp = _utcnow()
        return cls(
            id=data["id"],
            call_id=data["call_id"],
            stream_id=data["stream_id"],
            scenario_id=json.loads(data["scenario_id"]) if data["scenario_id"] else None,
            scenario_name=data["scenario_name"] or "",
            timestamp=timestamp,
            conversation_id=data["conversation_id"],
            conversation=json.loads(data["conversation"] or "[]"),
            formatted_transcript=data["formatted_transcript"] or "",
            analysis=json.loads(data["analysis"] or "{}"),
            outcome=data["outcome"] or "graded",
            error=data.get("error"),
        )


class AnalysisStore:
    """SQLite-based analysis record storage."""

    _CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS analysis_records (
        id TEXT PRIMARY KEY,
        call_id TEXT NOT NULL,
        stream_id TEXT,
        scenario_id TEXT,
        scenario_name TEXT,
        timestamp TEXT NOT NULL,
        conversation_id TEXT,
        conversation TEXT,
        formatted_transcript TEXT,
        analysis TEXT,
        outcome TEXT,
        error TEXT
    )
    """

    _CREATE_INDEXES_SQL = [
        "CREATE INDEX IF NOT EXISTS idx_analysis_records_call_id ON analysis_records(call_id)",
        "CREATE INDEX IF NOT EXISTS idx_analysis_records_timestamp ON analysis_records(timestamp)",
    ]

    def __init__(self, db_path: str, enabled: bool = True):
        """
        Args:
            db_path: Path to the SQLite database file
            enabled: When False every operation is a no-op
        """
        self._db_path = db_path
        self._enabled = enabled
        self._lock = threading.Lock()
        if self._enabled:
            self._init_db()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _init_db(self) -> None:
        """Initialize database and create tables."""
        try:
            db_dir = os.path.dirname(self._db_path)
            if db_dir:
                Path(db_dir).mkdir(parents=True, exist_ok=True)

            with self._lock:
                conn = sqlite3.connect(self._db_path)
                try:
                    cursor = conn.cursor()
                    cursor.execute(self._CREATE_TABLE_SQL)
                    for idx_sql in self._CREATE_INDEXES_SQL:
                        cursor.execute(idx_sql)
                    conn.commit()
                    logger.info("Analysis database initialized", db_path=self._db_path)
                finally:
                    conn.close()
        except (OSError, sqlite3.Error) as e:
            logger.error("Failed to initialize analysis database", error=str(e), exc_info=True)
            self._enabled = False

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    async def save(self, record: AnalysisRecord) -> bool:
        """
        Save an analysis record.

        Returns:
            True if successful, False otherwise
        """
        if not self._enabled:
            return False

        def _save_sync() -> bool:
            with self._lock:
                conn = self._get_connection()
                try:
                    conn.execute("""
                        INSERT OR REPLACE INTO analysis_records (
                            id, call_id, stream_id, scenario_id, scenario_name, timestamp,
                            conversation_id, conversation, formatted_transcript, analysis, outcome, error
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        record.id,
                        record.call_id,
                        record.stream_id,
                        json.dumps(record.scenario_id) if record.scenario_id is not None else None,
                        record.scenario_name,
                        record.timestamp.isoformat(),
                        record.conversation_id,
                        json.dumps(record.conversation),
                        record.formatted_transcript,
                        json.dumps(record.analysis),
                        record.outcome,
                        record.error,
                    ))
                    conn.commit()
                    return True
                except sqlite3.Error as e:
                    logger.error("Failed to save analysis record", call_id=record.call_id, error=str(e))
                    return False
                finally:
                    conn.close()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _save_sync)

    async def get_latest(self, call_id: str) -> Optional[AnalysisRecord]:
        """Most recent record for a call, or None."""
        if not self._enabled:
            return None

        def _get_sync() -> Optional[AnalysisRecord]:
            with self._lock:
                conn = self._get_connection()
                try:
                    row = conn.execute(
                        "SELECT * FROM analysis_records WHERE call_id = ? "
                        "ORDER BY timestamp DESC, rowid DESC LIMIT 1",
                        (call_id,),
                    ).fetchone()
                    return AnalysisRecord.from_row(row) if row else None
                finally:
                    conn.close()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _get_sync)

    async def count(self) -> int:
        if not self._enabled:
            return 0

        def _count_sync() -> int:
            with self._lock:
                conn = self._get_connection()
                try:
                    return conn.execute("SELECT COUNT(*) FROM analysis_records").fetchone()[0]
                finally:
                    conn.close()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _count_sync)

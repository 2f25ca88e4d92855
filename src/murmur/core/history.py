"""
Transcript history persisted as JSON in the config directory.

Newest records come first when listed. The file is capped at
``MAX_HISTORY_ENTRIES`` records.
"""

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ValidationError

from ..utils.logger import get_logger
from .session.models import TranscriptResult
from .settings import get_config_dir
from .settings.config import DEFAULT_HISTORY_LIMIT, MAX_HISTORY_ENTRIES

logger = get_logger(__name__)


class HistoryRecord(BaseModel):
    id: str
    text: str
    duration_ms: int
    model: str
    created_at: datetime

    @classmethod
    def from_result(cls, result: TranscriptResult) -> "HistoryRecord":
        return cls(
            id=result.id,
            text=result.text,
            duration_ms=result.duration_ms,
            model=result.model,
            created_at=result.created_at,
        )


def get_history_file() -> Path:
    return get_config_dir() / "history.json"


class JsonHistoryStore:
    def __init__(self, path: Optional[Path] = None, max_entries: int = MAX_HISTORY_ENTRIES):
        self.path = Path(path) if path is not None else get_history_file()
        self.max_entries = max_entries
        self._lock = threading.Lock()

    def add(self, result: TranscriptResult) -> Optional[HistoryRecord]:
        """Store a finished transcript. Empty transcripts are not kept."""
        if result.is_empty:
            return None
        record = HistoryRecord.from_result(result)
        with self._lock:
            records = self._load()
            records.append(record)
            self._save(records)
        return record

    __call__ = add

    def list(self, limit: int = DEFAULT_HISTORY_LIMIT) -> List[HistoryRecord]:
        limit = max(1, min(int(limit), self.max_entries))
        with self._lock:
            records = self._load()
        return list(reversed(records))[:limit]

    def delete(self, record_id: str) -> bool:
        with self._lock:
            records = self._load()
            kept = [r for r in records if r.id != record_id]
            if len(kept) == len(records):
                return False
            self._save(kept)
        return True

    def clear(self) -> None:
        with self._lock:
            if self.path.exists():
                self.path.unlink()

    def _load(self) -> List[HistoryRecord]:
        if not self.path.exists():
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return [HistoryRecord.model_validate(item) for item in data]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Could not load history: {e}. Starting fresh.")
            return []

    def _save(self, records: List[HistoryRecord]) -> None:
        records = records[-self.max_entries :]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([r.model_dump(mode="json") for r in records], f, indent=2)
        os.replace(tmp, self.path)

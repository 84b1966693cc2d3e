"""
Domain memory storage for Agentic Tab.

Persists reusable per-domain tool sequences (e.g. how to dismiss a site's
cookie banner) as JSON so later sessions can look them up.
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import get_memory_path
from .utils import normalize_domain

logger = logging.getLogger(__name__)


class MemoryRecord(BaseModel):
    """A reusable tool sequence for one domain."""

    domain: str = Field(description="Normalized domain, e.g. 'example.com'")
    task_description: str = Field(description="What the tool sequence accomplishes")
    tool_sequence: list[str] = Field(default_factory=list, description="Tool names in order")
    created_at: datetime = Field(default_factory=datetime.now)

    @field_validator("domain")
    @classmethod
    def validate_domain(cls, v: str) -> str:
        v = normalize_domain(v)
        if not v:
            raise ValueError("Domain cannot be empty")
        return v


class MemoryStore:
    """Thread-safe JSON file of memory records."""

    def __init__(self, path: Optional[Path] = None):
        self.path = path or get_memory_path()
        self._lock = threading.Lock()
        self._records: list[MemoryRecord] = []
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text())
            self._records = [MemoryRecord(**item) for item in data]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable memory file {self.path}: {e}")
            self._records = []

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = [record.model_dump(mode="json") for record in self._records]
        self.path.write_text(json.dumps(data, indent=2))

    def add(self, record: MemoryRecord) -> MemoryRecord:
        """Store a record, replacing any record for the same domain and task."""
        with self._lock:
            self._records = [
                r for r in self._records
                if not (r.domain == record.domain and r.task_description == record.task_description)
            ]
            self._records.append(record)
            self._save()
        logger.info(f"Stored memory for {record.domain}: {record.task_description}")
        return record

    def for_domain(self, url_or_domain: str) -> list[MemoryRecord]:
        """Get all records for a URL's or host's normalized domain."""
        domain = normalize_domain(url_or_domain)
        with self._lock:
            return [r for r in self._records if r.domain == domain]

    def all(self) -> list[MemoryRecord]:
        with self._lock:
            return list(self._records)

    def clear(self) -> None:
        with self._lock:
            self._records = []
            self._save()

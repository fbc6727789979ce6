from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterator, List, Protocol

from .contracts import AuditRecord

logger = logging.getLogger(__name__)


class AuditLog(Protocol):
    def append(self, record: AuditRecord) -> None: ...


class JsonlAuditLog:
    """Append-only JSON-lines audit file; one record per line, flushed per write."""

    def __init__(self, path: str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        line = record.model_dump_json()
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as fp:
                fp.write(line + "\n")
                fp.flush()


class InMemoryAuditLog:
    def __init__(self):
        self._lock = threading.Lock()
        self._records: List[AuditRecord] = []

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> List[AuditRecord]:
        with self._lock:
            return list(self._records)


def read_audit_log(path: str) -> Iterator[AuditRecord]:
    with open(path, "r", encoding="utf-8") as fp:
        for line_no, line in enumerate(fp, start=1):
            s = line.strip()
            if not s:
                continue
            try:
                yield AuditRecord.model_validate(json.loads(s))
            except (json.JSONDecodeError, ValueError) as e:
                raise ValueError(f"Invalid audit record on line {line_no}: {path}") from e

"""
SHIPGATE Audit Recorder

Append-only, per-task JSONL log of every stage transition and external
side effect. Entries are buffered in memory and flushed when the batch
fills, and at the latest when the Task completes or aborts.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path

from loguru import logger

from shipgate.event_bus import EventBus
from shipgate.models import AuditEntry


class AuditRecorder:
    def __init__(self, audit_dir: Path, batch_size: int = 20, event_bus: EventBus | None = None):
        self.audit_dir = audit_dir
        self.batch_size = batch_size
        self.event_bus = event_bus
        self._buffers: dict[str, list[AuditEntry]] = {}
        self._lock = threading.Lock()
        self.audit_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, task_id: str) -> Path:
        return self.audit_dir / f"{task_id}.jsonl"

    def append(self, entry: AuditEntry) -> None:
        with self._lock:
            buffer = self._buffers.setdefault(entry.task_id, [])
            buffer.append(entry)
            should_flush = len(buffer) >= self.batch_size

        logger.debug(f"[AUDIT] {entry.task_id} {entry.stage_name}: {entry.outcome}")
        if self.event_bus:
            self.event_bus.emit("audit", entry.task_id, entry.model_dump(mode="json"))
        if should_flush:
            self.flush(entry.task_id)

    def record(
        self,
        task_id: str,
        stage_name: str,
        outcome: str,
        side_effects: list[str] | tuple[str, ...] = (),
    ) -> AuditEntry:
        entry = AuditEntry(
            task_id=task_id,
            stage_name=stage_name,
            outcome=outcome,
            side_effects_performed=tuple(side_effects),
        )
        self.append(entry)
        return entry

    def flush(self, task_id: str | None = None) -> None:
        with self._lock:
            task_ids = [task_id] if task_id else list(self._buffers)
            for tid in task_ids:
                buffer = self._buffers.get(tid)
                if not buffer:
                    continue
                with open(self.path_for(tid), "a", encoding="utf-8") as f:
                    f.writelines(e.model_dump_json() + "\n" for e in buffer)
                # Only drop entries once they are on disk.
                buffer.clear()

    def entries(self, task_id: str) -> list[AuditEntry]:
        persisted: list[AuditEntry] = []
        path = self.path_for(task_id)
        if path.exists():
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    persisted.append(AuditEntry.model_validate(json.loads(line)))
        with self._lock:
            return persisted + list(self._buffers.get(task_id, []))

    def has_side_effect(self, task_id: str, marker: str) -> bool:
        return any(marker in entry.side_effects_performed for entry in self.entries(task_id))

    def close(self) -> None:
        self.flush()

    def __del__(self):
        try:
            self.close()
        except Exception as e:
            logger.error(f"[AUDIT] Final flush failed: {e}")

"""
SHIPGATE Task Store

Tasks are persisted as JSON after every transition so a crashed or
interrupted run resumes from the same stage.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from shipgate.errors import TaskNotFoundError
from shipgate.models import Task


class TaskStore:
    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, task_id: str) -> Path:
        return self.state_dir / f"{task_id}.json"

    def save(self, task: Task) -> Path:
        task.touch()
        path = self.path_for(task.task_id)
        fd, tmp = tempfile.mkstemp(dir=self.state_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(task.model_dump_json(indent=2))
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        return path

    def load(self, task_id: str) -> Task:
        path = self.path_for(task_id)
        if not path.exists():
            raise TaskNotFoundError(f"No task state for {task_id}", artifact=str(path))
        return Task.model_validate_json(path.read_text(encoding="utf-8"))

    def exists(self, task_id: str) -> bool:
        return self.path_for(task_id).exists()

    def list(self) -> list[Task]:
        return [
            Task.model_validate_json(p.read_text(encoding="utf-8"))
            for p in sorted(self.state_dir.glob("*.json"))
        ]

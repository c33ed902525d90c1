"""Output and log files of background script tasks."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..models.session import utc_now_iso
from ..models.task import BackgroundTask

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class TaskLog:
    """Append-only progress log next to a task's output file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def write(self, text: str) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(text)
        except OSError as e:
            logger.warning(f"Could not append to task log {self.path}: {e}")

    def line(self, message: str) -> None:
        self.write(f"[{utc_now_iso()}] {message}\n")

    def read(self) -> str:
        return self.path.read_text(encoding="utf-8") if self.path.exists() else ""


def write_task_record(task: BackgroundTask) -> None:
    Path(task.output_file).write_text(json.dumps(task.to_record(), indent=2, default=str), encoding="utf-8")


def read_task_record(path: str | Path) -> Optional[BackgroundTask]:
    """The settled task record at ``path``, or None while it is missing or incomplete."""
    target = Path(path)
    if not target.exists():
        return None
    try:
        record = BackgroundTask.model_validate(json.loads(target.read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.info(f"Output file {target} not readable yet: {e}")
        return None
    return record if record.is_settled else None

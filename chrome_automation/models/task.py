"""Pydantic model for background script task records."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..constants import TASK_STARTED


class BackgroundTask(BaseModel):
    """The file-persisted outcome of a backgrounded script execution.

    Returned with status ``started`` as soon as the task is scheduled and
    rewritten exactly once, to ``completed`` or ``failed``, when it settles.
    """

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    script_name: str = Field(alias="scriptName")
    script_source: str = Field(alias="scriptSource")
    start_time: str = Field(alias="startTime")
    timestamp: int
    output_dir: str = Field(alias="outputDir")
    output_file: str = Field(alias="outputFile")
    log_file: str = Field(alias="logFile")
    status: str = TASK_STARTED
    auto_close_browser: bool = Field(default=True, alias="autoCloseBrowser")
    end_time: Optional[str] = Field(default=None, alias="endTime")
    result: Any = None
    error: Optional[str] = None

    def to_record(self) -> dict:
        return self.model_dump(by_alias=True)

    @property
    def is_settled(self) -> bool:
        return self.status != TASK_STARTED and self.end_time is not None

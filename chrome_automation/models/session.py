"""Pydantic models for session state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SessionInfo(BaseModel):
    """One registry entry, keyed by session id in the registry file.

    Only pids, ports and paths are persisted; live browser handles never are.
    """

    model_config = ConfigDict(populate_by_name=True)

    pid: int
    debug_port: int = Field(alias="debugPort")
    session_dir: str = Field(alias="sessionDir")
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    chrome_process_pid: Optional[int] = Field(default=None, alias="chromeProcessPid")

    def to_registry(self) -> dict:
        return self.model_dump(by_alias=True)


class ActiveSession(BaseModel):
    """A live session as reported by ``list_sessions``."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    pid: int
    debug_port: int = Field(alias="debugPort")
    session_dir: str = Field(alias="sessionDir")
    created_at: str = Field(alias="createdAt")
    chrome_process_pid: Optional[int] = Field(default=None, alias="chromeProcessPid")
    is_current_session: bool = Field(default=False, alias="isCurrentSession")

    @classmethod
    def from_info(cls, session_id: str, info: SessionInfo, current_id: Optional[str]) -> "ActiveSession":
        return cls(
            session_id=session_id,
            pid=info.pid,
            debug_port=info.debug_port,
            session_dir=info.session_dir,
            created_at=info.created_at,
            chrome_process_pid=info.chrome_process_pid,
            is_current_session=session_id == current_id,
        )


class SweepResult(BaseModel):
    """Outcome of a registry liveness sweep."""

    active: dict[str, SessionInfo] = Field(default_factory=dict)
    removed: list[str] = Field(default_factory=list)
    dirs_deleted: int = 0


class LaunchResult(BaseModel):
    session_id: str = Field(alias="sessionId")
    debug_port: int = Field(alias="debugPort")
    chrome_process_pid: Optional[int] = Field(default=None, alias="chromeProcessPid")
    session_dir: str = Field(alias="sessionDir")

    model_config = ConfigDict(populate_by_name=True)


class CloseResult(BaseModel):
    """Which stages of a teardown succeeded."""

    session_id: Optional[str] = None
    browser_closed: bool = False
    process_closed: bool = False
    forced: bool = False
    unregistered: bool = False
    dir_deleted: bool = False

    @property
    def status(self) -> str:
        if self.browser_closed and self.process_closed and not self.forced:
            return "Browser and process closed gracefully, session directory cleaned"
        if self.browser_closed:
            return "Browser closed gracefully, process terminated, session directory cleaned"
        return "Browser force closed, session directory cleaned"

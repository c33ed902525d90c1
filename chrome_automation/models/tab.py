"""Pydantic models for tab tracking."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TabInfo(BaseModel):
    tab_id: str = Field(alias="tabId")
    created_at: int = Field(alias="createdAt")  # unix millis
    initial_url: str = Field(default="", alias="initialUrl")

    model_config = ConfigDict(populate_by_name=True)


class TabSummary(BaseModel):
    """One entry of the ``get_tabs`` listing."""

    index: int
    url: str
    title: str = ""
    is_current: bool = Field(default=False, alias="isCurrent")
    tab_id: Optional[str] = Field(default=None, alias="tabId")

    model_config = ConfigDict(populate_by_name=True)

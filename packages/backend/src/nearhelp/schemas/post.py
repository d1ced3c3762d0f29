"""Pydantic schemas for the helper toggle and proximity announcements."""

from typing import Optional

from nearhelp.schemas.chat import CamelModel


class HelperToggleRequest(CamelModel):
    buyer_id: Optional[str] = None


class HelperToggleRead(CamelModel):
    message: str
    added: bool
    helper_ids: list[str]
    helper_count: int
    post_status: str


class AnnounceResult(CamelModel):
    post_id: str
    notified: int

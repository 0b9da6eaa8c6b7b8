"""Transient, dismissable user-facing notices."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Notice(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:8])
    text: str
    created_at: float


class NoticeBoard:
    """Holds notices until dismissed or, when ``ttl_seconds`` is set, until they expire."""

    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._notices: list[Notice] = []

    def post(self, text: str) -> Notice:
        notice = Notice(text=text, created_at=self._clock())
        self._notices.append(notice)
        logger.warning("Notice: %s", text)
        return notice

    def dismiss(self, notice_id: str) -> bool:
        before = len(self._notices)
        self._notices = [n for n in self._notices if n.id != notice_id]
        return len(self._notices) != before

    def active(self) -> list[Notice]:
        if self.ttl_seconds is not None:
            cutoff = self._clock() - self.ttl_seconds
            self._notices = [n for n in self._notices if n.created_at > cutoff]
        return list(self._notices)

"""Notifier protocols: per-channel delivery and the leveled sink."""
from typing import Any, Mapping, Protocol

from ..models import NotificationLevel


class Notifier(Protocol):
    """Abstract interface for one notification channel."""

    async def send_alert(self, message: str, subject: str = "") -> bool: ...

    async def send_log(self, message: str, silent: bool = True) -> bool: ...


class NotificationSink(Protocol):
    """Fire-and-forget leveled notifications. Must never raise."""

    async def notify(
        self,
        level: NotificationLevel,
        title: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None: ...

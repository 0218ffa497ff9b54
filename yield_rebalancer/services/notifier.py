"""Leveled notification dispatcher fanning out to notification channels."""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence

from ..config import NotificationsConfig
from ..interfaces.notifier import Notifier
from ..models import NotificationLevel, new_id
from ..notifications import EmailNotifier, TelegramNotifier

logger = logging.getLogger(__name__)

MAX_HISTORY = 100

LEVEL_EMOJI = {
    NotificationLevel.INFO: "ℹ️",
    NotificationLevel.SUCCESS: "✅",
    NotificationLevel.WARNING: "⚠️",
    NotificationLevel.ERROR: "❌",
    NotificationLevel.CRITICAL: "🚨",
}

_LOG_LEVELS = {
    NotificationLevel.INFO: logging.INFO,
    NotificationLevel.SUCCESS: logging.INFO,
    NotificationLevel.WARNING: logging.WARNING,
    NotificationLevel.ERROR: logging.ERROR,
    NotificationLevel.CRITICAL: logging.CRITICAL,
}


@dataclass(frozen=True)
class Notification:
    id: str
    timestamp: float
    level: NotificationLevel
    title: str
    message: str
    data: Mapping[str, Any] = field(default_factory=dict)
    channels: tuple[str, ...] = ()


def format_notification(level: NotificationLevel, title: str, message: str, data: Mapping[str, Any]) -> str:
    text = f"{LEVEL_EMOJI[level]} {title}\n\n{message}"
    if data:
        text += "\n\nDetails:"
        for key, value in data.items():
            text += f"\n• {key}: {value}"
    return text


class NotificationDispatcher:
    """``NotificationSink`` implementation.

    Filters by minimum level, logs every accepted notification, forwards it
    to each channel and keeps a bounded history. Channel failures are logged
    and never raised.
    """

    def __init__(
        self,
        channels: Sequence[Notifier] = (),
        min_level: NotificationLevel | str = NotificationLevel.INFO,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._channels = list(channels)
        self._min_level = NotificationLevel(min_level)
        self._clock = clock
        self._history: deque[Notification] = deque(maxlen=MAX_HISTORY)

    @property
    def min_level(self) -> NotificationLevel:
        return self._min_level

    def set_min_level(self, level: NotificationLevel | str) -> None:
        self._min_level = NotificationLevel(level)

    def should_notify(self, level: NotificationLevel) -> bool:
        return level.rank >= self._min_level.rank

    async def notify(
        self,
        level: NotificationLevel,
        title: str,
        message: str,
        data: Mapping[str, Any] | None = None,
    ) -> None:
        level = NotificationLevel(level)
        if not self.should_notify(level):
            return

        data = dict(data or {})
        logger.log(_LOG_LEVELS[level], "%s: %s", title, message)

        text = format_notification(level, title, message, data)
        delivered = []
        for channel in self._channels:
            name = type(channel).__name__
            try:
                if level.rank >= NotificationLevel.ERROR.rank:
                    sent = await channel.send_alert(text, subject=title)
                else:
                    sent = await channel.send_log(text, silent=level is NotificationLevel.INFO)
            except Exception as e:
                logger.error("Notifier %s failed: %s", name, e)
                continue
            if sent:
                delivered.append(name)

        self._history.append(
            Notification(
                id=new_id(),
                timestamp=self._clock(),
                level=level,
                title=title,
                message=message,
                data=data,
                channels=tuple(delivered),
            )
        )

    def get_history(self, limit: int | None = None) -> list[Notification]:
        """Newest first."""
        history = list(reversed(self._history))
        return history if limit is None else history[:limit]

    def clear_history(self) -> None:
        self._history.clear()


def build_notification_dispatcher(config: NotificationsConfig) -> NotificationDispatcher:
    """Build a dispatcher with every enabled channel from ``config``."""
    channels: list[Notifier] = []
    if config.telegram.enabled:
        channels.append(TelegramNotifier(config.telegram))
    if config.email.enabled:
        channels.append(EmailNotifier(config.email))
    return NotificationDispatcher(channels, min_level=config.min_level)

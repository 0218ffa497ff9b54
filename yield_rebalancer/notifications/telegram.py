"""Telegram notification channel."""
import html
import logging
import ssl

import aiohttp
import certifi

from ..config import TelegramConfig

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
REQUEST_TIMEOUT_SECONDS = 10
MAX_MESSAGE_LENGTH = 4096
TRUNCATION_MARKER = "\n\n[truncated]"


def _fit_message(text: str) -> str:
    """Cut escaped text to the Bot API limit without splitting an entity."""
    if len(text) <= MAX_MESSAGE_LENGTH:
        return text
    head = text[: MAX_MESSAGE_LENGTH - len(TRUNCATION_MARKER)]
    amp = head.rfind("&")
    if amp != -1 and ";" not in head[amp:]:
        head = head[:amp]
    return head + TRUNCATION_MARKER


class TelegramNotifier:
    """Post agent notifications through two Telegram bots.

    The alert bot is unmuted and carries error / critical notifications; the
    log bot carries everything else.
    """

    def __init__(self, config: TelegramConfig) -> None:
        self.alert_bot_token = config.alert_bot_token
        self.log_bot_token = config.log_bot_token
        self.chat_id = config.chat_id

    async def _send_message(
        self, message: str, bot_token: str, silent: bool = False
    ) -> bool:
        if not bot_token or not self.chat_id:
            logger.warning("Telegram credentials not configured")
            return False

        url = TELEGRAM_API_URL.format(token=bot_token)
        payload = {
            "chat_id": self.chat_id,
            "text": _fit_message(html.escape(message, quote=False)),
            "parse_mode": "HTML",
            "disable_notification": silent,
        }

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS)

        async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
            async with session.post(url, json=payload) as response:
                if response.status == 200:
                    return True
                logger.error("Telegram API error: %s", response.status)
                return False

    async def send_alert(self, message: str, subject: str = "") -> bool:
        if await self._send_message(message, self.alert_bot_token, silent=False):
            logger.debug("Telegram alert sent")
            return True
        return False

    async def send_log(self, message: str, silent: bool = True) -> bool:
        if await self._send_message(message, self.log_bot_token, silent=silent):
            logger.debug("Telegram log sent")
            return True
        return False

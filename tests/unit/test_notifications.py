"""Unit tests for notification channels and the leveled dispatcher."""
from __future__ import annotations

import smtplib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from yield_rebalancer.config import EmailConfig, NotificationsConfig, TelegramConfig
from yield_rebalancer.models import NotificationLevel
from yield_rebalancer.notifications.email import EmailNotifier
from yield_rebalancer.notifications.telegram import MAX_MESSAGE_LENGTH, TelegramNotifier
from yield_rebalancer.services.notifier import (
    MAX_HISTORY,
    NotificationDispatcher,
    build_notification_dispatcher,
    format_notification,
)


def _mock_session(status: int) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.post = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


# ---------------------------------------------------------------------------
# TelegramNotifier
# ---------------------------------------------------------------------------


@pytest.fixture()
def telegram_notifier() -> TelegramNotifier:
    return TelegramNotifier(
        TelegramConfig(
            enabled=True,
            alert_bot_token="alert-tok",
            log_bot_token="log-tok",
            chat_id="12345",
        )
    )


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_uses_alert_bot(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("yield_rebalancer.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_rebalancer.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("Rebalance <failed> & paused")

        assert result is True
        url = mock_session.post.call_args.args[0]
        payload = mock_session.post.call_args.kwargs["json"]
        assert url == "https://api.telegram.org/botalert-tok/sendMessage"
        assert payload["chat_id"] == "12345"
        assert payload["text"] == "Rebalance &lt;failed&gt; &amp; paused"
        assert payload["disable_notification"] is False

    @pytest.mark.asyncio
    async def test_send_log_uses_log_bot(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("yield_rebalancer.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_rebalancer.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_log("scan done", silent=True)

        assert result is True
        assert "botlog-tok" in mock_session.post.call_args.args[0]
        assert mock_session.post.call_args.kwargs["json"]["disable_notification"] is True

    @pytest.mark.asyncio
    async def test_api_error_returns_false(self, telegram_notifier: TelegramNotifier) -> None:
        with patch("yield_rebalancer.notifications.telegram.aiohttp.ClientSession", return_value=_mock_session(403)):
            with patch("yield_rebalancer.notifications.telegram.aiohttp.TCPConnector"):
                result = await telegram_notifier.send_alert("test alert")

        assert result is False

    @pytest.mark.asyncio
    async def test_long_message_truncated(self, telegram_notifier: TelegramNotifier) -> None:
        mock_session = _mock_session(200)

        with patch("yield_rebalancer.notifications.telegram.aiohttp.ClientSession", return_value=mock_session):
            with patch("yield_rebalancer.notifications.telegram.aiohttp.TCPConnector"):
                await telegram_notifier.send_log("x" * 4078 + "&" * 10)

        text = mock_session.post.call_args.kwargs["json"]["text"]
        assert len(text) <= MAX_MESSAGE_LENGTH
        assert text.endswith("&amp;\n\n[truncated]")

    @pytest.mark.asyncio
    async def test_unconfigured_returns_false(self) -> None:
        notifier = TelegramNotifier(TelegramConfig(enabled=True))

        assert await notifier.send_alert("test") is False
        assert await notifier.send_log("test") is False


# ---------------------------------------------------------------------------
# EmailNotifier
# ---------------------------------------------------------------------------


@pytest.fixture()
def email_notifier() -> EmailNotifier:
    return EmailNotifier(
        EmailConfig(
            enabled=True,
            alert_email="ops@example.com",
            smtp_server="smtp.example.com",
            smtp_port=587,
            sender_email="agent@example.com",
            sender_password="password123",
        )
    )


class TestEmailNotifier:
    @pytest.mark.asyncio
    async def test_send_alert_success(self, email_notifier: EmailNotifier) -> None:
        mock_smtp = MagicMock()
        with patch("yield_rebalancer.notifications.email.smtplib.SMTP", return_value=mock_smtp) as smtp_cls:
            result = await email_notifier.send_alert("agent paused", subject="Agent Paused")

        assert result is True
        smtp_cls.assert_called_once_with("smtp.example.com", 587)
        mock_smtp.starttls.assert_called_once()
        mock_smtp.login.assert_called_once_with("agent@example.com", "password123")
        sent = mock_smtp.send_message.call_args.args[0]
        assert sent["Subject"] == "[yield-rebalancer] Agent Paused"
        assert sent["To"] == "ops@example.com"
        mock_smtp.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_login_failure_still_quits(self, email_notifier: EmailNotifier) -> None:
        mock_smtp = MagicMock()
        mock_smtp.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad creds")
        with patch("yield_rebalancer.notifications.email.smtplib.SMTP", return_value=mock_smtp):
            result = await email_notifier.send_alert("body", subject="Test")

        assert result is False
        mock_smtp.quit.assert_called_once()

    @pytest.mark.asyncio
    async def test_connection_error_returns_false(self, email_notifier: EmailNotifier) -> None:
        with patch(
            "yield_rebalancer.notifications.email.smtplib.SMTP",
            side_effect=ConnectionError("SMTP down"),
        ):
            result = await email_notifier.send_alert("body", subject="Test")
        assert result is False

    @pytest.mark.asyncio
    async def test_no_alert_email_returns_false(self) -> None:
        assert await EmailNotifier(EmailConfig(enabled=True)).send_alert("test") is False

    @pytest.mark.asyncio
    async def test_no_credentials_returns_false(self) -> None:
        notifier = EmailNotifier(EmailConfig(enabled=True, alert_email="ops@example.com"))
        assert await notifier.send_alert("test") is False

    @pytest.mark.asyncio
    async def test_send_log_is_noop(self, email_notifier: EmailNotifier) -> None:
        assert await email_notifier.send_log("test") is False


# ---------------------------------------------------------------------------
# NotificationDispatcher
# ---------------------------------------------------------------------------


def _channel(delivered: bool = True) -> AsyncMock:
    channel = AsyncMock()
    channel.send_alert.return_value = delivered
    channel.send_log.return_value = delivered
    return channel


class TestFormatNotification:
    def test_without_data(self) -> None:
        assert format_notification(NotificationLevel.SUCCESS, "Started", "ok", {}) == "✅ Started\n\nok"

    def test_with_data(self) -> None:
        text = format_notification(NotificationLevel.WARNING, "Stopped", "bye", {"reason": "manual"})
        assert text.startswith("⚠️ Stopped\n\nbye\n\nDetails:")
        assert "• reason: manual" in text


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_info_goes_to_silent_log(self, clock) -> None:
        channel = _channel()
        dispatcher = NotificationDispatcher([channel], clock=clock)

        await dispatcher.notify(NotificationLevel.INFO, "Scan", "3 pools")

        channel.send_log.assert_awaited_once()
        assert channel.send_log.call_args.kwargs["silent"] is True
        channel.send_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_log_is_not_silent(self) -> None:
        channel = _channel()
        await NotificationDispatcher([channel]).notify(NotificationLevel.SUCCESS, "Done", "ok")
        assert channel.send_log.call_args.kwargs["silent"] is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("level", [NotificationLevel.ERROR, NotificationLevel.CRITICAL])
    async def test_errors_go_to_alert(self, level: NotificationLevel) -> None:
        channel = _channel()
        await NotificationDispatcher([channel]).notify(level, "Agent Paused", "too many errors")

        channel.send_alert.assert_awaited_once()
        assert channel.send_alert.call_args.kwargs["subject"] == "Agent Paused"
        channel.send_log.assert_not_called()

    @pytest.mark.asyncio
    async def test_below_min_level_is_dropped(self) -> None:
        channel = _channel()
        dispatcher = NotificationDispatcher([channel], min_level="warning")

        await dispatcher.notify(NotificationLevel.INFO, "Scan", "quiet")

        channel.send_log.assert_not_called()
        assert dispatcher.get_history() == []

    @pytest.mark.asyncio
    async def test_set_min_level(self) -> None:
        dispatcher = NotificationDispatcher()
        dispatcher.set_min_level("error")
        assert dispatcher.min_level is NotificationLevel.ERROR
        assert not dispatcher.should_notify(NotificationLevel.WARNING)
        assert dispatcher.should_notify(NotificationLevel.CRITICAL)

    @pytest.mark.asyncio
    async def test_channel_failure_is_isolated(self) -> None:
        broken = _channel()
        broken.send_log.side_effect = RuntimeError("channel down")
        working = _channel()
        dispatcher = NotificationDispatcher([broken, working])

        await dispatcher.notify(NotificationLevel.WARNING, "Stopped", "manual")

        working.send_log.assert_awaited_once()
        (entry,) = dispatcher.get_history()
        assert len(entry.channels) == 1

    @pytest.mark.asyncio
    async def test_history_records_delivery(self, clock) -> None:
        dispatcher = NotificationDispatcher([_channel(delivered=False)], clock=clock)

        await dispatcher.notify(NotificationLevel.INFO, "First", "a", {"k": 1})
        await dispatcher.notify(NotificationLevel.INFO, "Second", "b")

        newest, oldest = dispatcher.get_history()
        assert newest.title == "Second"
        assert oldest.data == {"k": 1}
        assert oldest.channels == ()
        assert oldest.timestamp == clock.now
        assert dispatcher.get_history(limit=1) == [newest]

        dispatcher.clear_history()
        assert dispatcher.get_history() == []

    @pytest.mark.asyncio
    async def test_history_is_bounded(self) -> None:
        dispatcher = NotificationDispatcher()
        for i in range(MAX_HISTORY + 5):
            await dispatcher.notify(NotificationLevel.INFO, f"n{i}", "x")

        history = dispatcher.get_history()
        assert len(history) == MAX_HISTORY
        assert history[0].title == f"n{MAX_HISTORY + 4}"


class TestBuildNotificationDispatcher:
    def test_enabled_channels_only(self, agent_config) -> None:
        dispatcher = build_notification_dispatcher(agent_config.notifications)
        assert [type(c) for c in dispatcher._channels] == [TelegramNotifier]

    def test_both_channels_and_level(self) -> None:
        config = NotificationsConfig(
            min_level="warning",
            telegram=TelegramConfig(enabled=True),
            email=EmailConfig(enabled=True),
        )
        dispatcher = build_notification_dispatcher(config)
        assert [type(c) for c in dispatcher._channels] == [TelegramNotifier, EmailNotifier]
        assert dispatcher.min_level is NotificationLevel.WARNING

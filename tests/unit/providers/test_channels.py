"""通知チャンネル送信のユニットテスト。"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from berth.models.errors import NotificationDeliveryFailureError
from berth.models.notification import LifecycleEvent
from berth.models.pipeline import DiscordChannel, EmailChannel, SlackChannel
from berth.providers.channels import DefaultChannelSender, discord_payload, email_message, slack_payload


def _event(**overrides: object) -> LifecycleEvent:
    data: dict[str, object] = {
        "kind": "on_failure",
        "app": "myapp",
        "environment": "production",
        "run_id": "dep-1",
        "commit": "abc1234",
        "branch": "main",
        "status": "failed",
        "message": "Fix checkout",
        "error": "HealthCheckTimeout",
        "duration_seconds": 41.6,
    }
    data.update(overrides)
    return LifecycleEvent.model_validate(data)


class TestPayloads:
    def test_slack(self) -> None:
        payload = slack_payload(SlackChannel(webhook_url="https://hooks.slack.test/x", channel="#ops"), _event())
        attachment = payload["attachments"][0]
        assert payload["channel"] == "#ops"
        assert payload["username"] == "Berth"
        assert attachment["color"] == "#e74c3c"
        text = attachment["blocks"][0]["text"]["text"]
        assert text.startswith(":x: Deployment failed for *myapp* (production) in 42s")
        assert "> HealthCheckTimeout" in text
        assert "*By:* manual" in attachment["blocks"][1]["elements"][0]["text"]

    def test_discord(self) -> None:
        payload = discord_payload(
            DiscordChannel(webhook_url="https://discord.test/api/webhooks/x"),
            _event(status="rolled_back", error=None, triggered_by="alice", message="x" * 150),
        )
        embed = payload["embeds"][0]
        assert embed["color"] == 0x9B59B6
        assert "Deployment rolled back for **myapp**" in embed["description"]
        assert {"name": "Triggered by", "value": "alice", "inline": True} in embed["fields"]
        assert embed["footer"]["text"] == "x" * 97 + "..."

    def test_email(self) -> None:
        channel = EmailChannel(smtp_host="smtp.test", from_addr="berth@example.com", to_addrs=["a@x.test", "b@x.test"])
        message = email_message(channel, _event(status="succeeded", error=None))
        assert message["Subject"] == "[berth] myapp deployment succeeded"
        assert message["To"] == "a@x.test, b@x.test"
        body = message.get_payload(decode=True).decode()
        assert "Commit: abc1234" in body
        assert "Error:" not in body


class TestDefaultChannelSender:
    async def test_webhook_post(self) -> None:
        response = MagicMock(status_code=200, text="ok")
        with patch("berth.providers.channels.requests.post", return_value=response) as mock_post:
            await DefaultChannelSender().send(SlackChannel(webhook_url="https://hooks.slack.test/x"), _event())
        assert mock_post.call_args.args == ("https://hooks.slack.test/x",)
        assert "attachments" in mock_post.call_args.kwargs["json"]

    async def test_http_error_status(self) -> None:
        response = MagicMock(status_code=404, text="no_service")
        with (
            patch("berth.providers.channels.requests.post", return_value=response),
            pytest.raises(NotificationDeliveryFailureError, match="HTTP 404") as exc_info,
        ):
            await DefaultChannelSender().send(DiscordChannel(webhook_url="https://discord.test/api/webhooks/x"), _event())
        assert exc_info.value.channel == "discord"

    async def test_connection_error(self) -> None:
        with (
            patch("berth.providers.channels.requests.post", side_effect=requests.ConnectionError("refused")),
            pytest.raises(NotificationDeliveryFailureError, match="refused"),
        ):
            await DefaultChannelSender().send(SlackChannel(webhook_url="https://hooks.slack.test/x"), _event())

    async def test_email_delivery(self) -> None:
        channel = EmailChannel(
            smtp_host="smtp.test",
            smtp_user="berth",
            smtp_password="pw",
            from_addr="berth@example.com",
            to_addrs=["ops@example.com"],
        )
        with patch("berth.providers.channels.smtplib.SMTP") as mock_smtp:
            await DefaultChannelSender().send(channel, _event())

        mock_smtp.assert_called_once_with("smtp.test", 587, timeout=10)
        server = mock_smtp.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("berth", "pw")
        assert server.sendmail.call_args.args[:2] == ("berth@example.com", ["ops@example.com"])

    async def test_email_failure(self) -> None:
        channel = EmailChannel(smtp_host="smtp.test", from_addr="berth@example.com", to_addrs=["ops@example.com"])
        with (
            patch("berth.providers.channels.smtplib.SMTP", side_effect=OSError("connection refused")),
            pytest.raises(NotificationDeliveryFailureError, match="connection refused"),
        ):
            await DefaultChannelSender().send(channel, _event())

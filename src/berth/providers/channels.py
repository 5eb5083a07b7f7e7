"""通知チャンネルへの送信（Slack / Discord / メール）。"""

import asyncio
import logging
import smtplib
from email.mime.text import MIMEText
from typing import Any, Protocol

import requests

from berth.models.errors import NotificationDeliveryFailureError
from berth.models.notification import LifecycleEvent
from berth.models.pipeline import ChannelConfig, DiscordChannel, EmailChannel, SlackChannel

logger = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 10

# status -> (emoji, color)
_STYLES: dict[str, tuple[str, int]] = {
    "started": (":rocket:", 0x3498DB),
    "awaiting_approval": (":hourglass:", 0xF39C12),
    "succeeded": (":white_check_mark:", 0x2ECC71),
    "failed": (":x:", 0xE74C3C),
    "rolled_back": (":rewind:", 0x9B59B6),
}


class ChannelSender(Protocol):
    """通知チャンネルへの送信インターフェース。"""

    async def send(self, channel: ChannelConfig, event: LifecycleEvent) -> None: ...


def _truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else f"{text[: limit - 3]}..."


def _duration_text(event: LifecycleEvent) -> str:
    return f" in {round(event.duration_seconds)}s" if event.duration_seconds is not None else ""


def slack_payload(channel: SlackChannel, event: LifecycleEvent) -> dict[str, Any]:
    """Slack Incoming Webhook用のペイロードを組み立てる。"""
    emoji, color = _STYLES[event.status]
    error_text = f"\n> {event.error}" if event.error else ""
    payload: dict[str, Any] = {
        "username": channel.username or "Berth",
        "attachments": [
            {
                "color": f"#{color:06x}",
                "blocks": [
                    {
                        "type": "section",
                        "text": {
                            "type": "mrkdwn",
                            "text": f"{emoji} Deployment {event.status_text} for *{event.app}* "
                            f"({event.environment}){_duration_text(event)}{error_text}",
                        },
                    },
                    {
                        "type": "context",
                        "elements": [
                            {
                                "type": "mrkdwn",
                                "text": f"*Branch:* {event.branch or '-'} | *Commit:* `{event.commit}` "
                                f"| *By:* {event.triggered_by or 'manual'}",
                            }
                        ],
                    },
                    {
                        "type": "context",
                        "elements": [{"type": "mrkdwn", "text": f"_{_truncate(event.message)}_"}],
                    },
                ],
            }
        ],
    }
    if channel.channel:
        payload["channel"] = channel.channel
    return payload


def discord_payload(channel: DiscordChannel, event: LifecycleEvent) -> dict[str, Any]:
    """Discord Webhook用のペイロードを組み立てる。"""
    emoji, color = _STYLES[event.status]
    description = f"{emoji} Deployment {event.status_text} for **{event.app}** ({event.environment})"
    description += _duration_text(event)
    if event.error:
        description += f"\n> {event.error}"
    return {
        "username": channel.username or "Berth",
        "embeds": [
            {
                "color": color,
                "description": description,
                "fields": [
                    {"name": "Branch", "value": event.branch or "-", "inline": True},
                    {"name": "Commit", "value": f"`{event.commit}`", "inline": True},
                    {"name": "Triggered by", "value": event.triggered_by or "manual", "inline": True},
                ],
                "footer": {"text": _truncate(event.message)},
            }
        ],
    }


def email_message(channel: EmailChannel, event: LifecycleEvent) -> MIMEText:
    """通知メールを組み立てる。"""
    lines = [
        f"Deployment {event.status_text} for {event.app} ({event.environment}){_duration_text(event)}",
        "",
        f"Branch: {event.branch or '-'}",
        f"Commit: {event.commit}",
        f"Triggered by: {event.triggered_by or 'manual'}",
        f"Run: {event.run_id}",
    ]
    if event.message:
        lines.append(f"Message: {event.message}")
    if event.error:
        lines += ["", f"Error: {event.error}"]
    message = MIMEText("\n".join(lines), "plain", "utf-8")
    message["Subject"] = f"[berth] {event.app} deployment {event.status_text}"
    message["From"] = channel.from_addr
    message["To"] = ", ".join(channel.to_addrs)
    return message


class DefaultChannelSender:
    """チャンネル種別ごとの送信処理。ブロッキングI/Oはスレッドで実行する。"""

    async def send(self, channel: ChannelConfig, event: LifecycleEvent) -> None:
        """チャンネルにイベントを送信する。

        Raises:
            NotificationDeliveryFailureError: 送信に失敗した場合。
        """
        match channel:
            case SlackChannel():
                await asyncio.to_thread(
                    self._post_json, channel.label, channel.webhook_url, slack_payload(channel, event)
                )
            case DiscordChannel():
                await asyncio.to_thread(
                    self._post_json, channel.label, channel.webhook_url, discord_payload(channel, event)
                )
            case EmailChannel():
                await asyncio.to_thread(self._send_email, channel, email_message(channel, event))

    def _post_json(self, label: str, url: str, payload: dict[str, Any]) -> None:
        try:
            response = requests.post(url, json=payload, timeout=_REQUEST_TIMEOUT)
        except requests.RequestException as e:
            raise NotificationDeliveryFailureError(label, str(e)) from e
        if response.status_code >= 300:
            raise NotificationDeliveryFailureError(label, f"HTTP {response.status_code}: {response.text[:200]}")
        logger.debug("Delivered notification to %s", label)

    def _send_email(self, channel: EmailChannel, message: MIMEText) -> None:
        try:
            with smtplib.SMTP(channel.smtp_host, channel.smtp_port, timeout=_REQUEST_TIMEOUT) as server:
                if channel.use_tls:
                    server.starttls()
                if channel.smtp_user and channel.smtp_password:
                    server.login(channel.smtp_user, channel.smtp_password)
                server.sendmail(channel.from_addr, channel.to_addrs, message.as_string())
        except (smtplib.SMTPException, OSError) as e:
            raise NotificationDeliveryFailureError(channel.label, str(e)) from e

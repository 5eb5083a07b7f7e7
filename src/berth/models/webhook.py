"""Webhook受信関連のデータモデル。"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

DeliveryOutcome = Literal["admitted", "rejected", "ignored"]


class PushEvent(BaseModel):
    """GitHub互換のpushイベントから抽出した情報。"""

    branch: str
    commit: str
    message: str = ""
    pusher: str = "unknown"

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PushEvent":
        """pushペイロードを解釈する。

        Raises:
            ValueError: ref/afterが欠けている、またはブランチ以外のrefの場合。
        """
        ref = payload.get("ref")
        after = payload.get("after")
        if not isinstance(ref, str) or not isinstance(after, str) or not after:
            raise ValueError("Malformed push payload: 'ref' and 'after' are required")
        if not ref.startswith("refs/heads/"):
            raise ValueError(f"Unsupported ref: {ref}")
        head_commit = payload.get("head_commit") or {}
        message = str(head_commit.get("message") or "").split("\n", 1)[0]
        pusher = (payload.get("pusher") or {}).get("name") or "unknown"
        return cls(
            branch=ref.removeprefix("refs/heads/"),
            commit=after[:7],
            message=message,
            pusher=str(pusher),
        )


class WebhookDelivery(BaseModel):
    """受信したWebhook1件の記録。追記専用ログに書き込まれる。"""

    id: str
    app: str
    event: str
    outcome: DeliveryOutcome
    reason: str = ""
    branch: str | None = None
    commit: str | None = None
    environment: str | None = None
    run_id: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

"""通知関連のデータモデル。"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

EventKind = Literal["on_start", "on_success", "on_failure"]
EventStatus = Literal["started", "awaiting_approval", "succeeded", "failed", "rolled_back"]


class LifecycleEvent(BaseModel):
    """デプロイのライフサイクルイベント。ディスパッチャのキューに流れる。"""

    kind: EventKind
    app: str
    environment: str
    run_id: str
    commit: str
    branch: str | None = None
    status: EventStatus
    message: str = ""
    error: str | None = None
    triggered_by: str | None = None
    duration_seconds: float | None = None
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def status_text(self) -> str:
        return self.status.replace("_", " ")


class NotificationAttempt(BaseModel):
    """チャンネルへの配信試行1回の記録。"""

    app: str
    channel: str
    event: EventKind
    run_id: str
    attempt: int
    ok: bool
    error: str | None = None
    attempted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

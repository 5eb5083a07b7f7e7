"""リリース（デプロイ可能な1バージョン）のデータモデル。"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

ReleaseStatus = Literal["pending", "healthy", "failed", "rolled_back"]


class Release(BaseModel):
    """コミットとビルド成果物に紐づく不変のリリース記録。

    直前のリリースへの参照はIDで保持する（リリースはIDをキーとするアリーナに格納される）。
    変更されるのはstatusのみ。
    """

    id: str
    app: str
    environment: str
    commit: str
    artifact: str = ""
    status: ReleaseStatus = "pending"
    predecessor_id: str | None = None
    commit_message: str | None = None
    triggered_by: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def matches(self, commit: str) -> bool:
        """コミットIDの完全一致または前方一致（短縮SHA）を判定する。"""
        return bool(commit) and (self.commit == commit or self.commit.startswith(commit))

"""デプロイ実行（DeploymentRun）と承認リクエストのデータモデル。"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

Phase = Literal[
    "queued",
    "pre_build",
    "building",
    "test_gate",
    "pre_deploy",
    "approval_wait",
    "starting",
    "health_checking",
    "switching",
    "post_deploy",
    "completed",
    "on_failure_hooks",
    "failed",
    "rolling_back",
    "rolled_back",
]

TERMINAL_PHASES: frozenset[str] = frozenset({"completed", "failed", "rolled_back"})

# この位置以降で失敗した場合にのみ自動ロールバックの対象となる
ROLLOUT_PHASES: frozenset[str] = frozenset({"starting", "health_checking", "switching", "post_deploy"})

Trigger = Literal["manual", "webhook", "rollback"]


class PhaseOutcome(BaseModel):
    """フェーズ単位の実行結果。"""

    phase: Phase
    status: Literal["succeeded", "failed", "skipped"]
    detail: str = ""
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None


class RunFailure(BaseModel):
    """ランの失敗理由と運用者向けの対処方法。"""

    reason: str
    message: str
    remedy: str = ""
    previous_release_serving: bool = False


class DeploymentRun(BaseModel):
    """パイプラインの1回の実行記録。"""

    id: str
    app: str
    environment: str
    release_id: str
    trigger: Trigger = "manual"
    phase: Phase = "queued"
    outcomes: list[PhaseOutcome] = Field(default_factory=list)
    failure: RunFailure | None = None
    previous_release_id: str | None = None
    approval_id: str | None = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None

    @property
    def active(self) -> bool:
        return self.phase not in TERMINAL_PHASES

    def outcome(self, phase: Phase) -> PhaseOutcome | None:
        """指定フェーズの最新の結果を返す。"""
        for item in reversed(self.outcomes):
            if item.phase == phase:
                return item
        return None


ApprovalStatus = Literal["pending", "approved", "rejected", "timed_out"]


class ApprovalRequest(BaseModel):
    """承認待ちフェーズで作成される承認リクエスト。"""

    id: str
    app: str
    environment: str
    run_id: str
    commit: str
    status: ApprovalStatus = "pending"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime
    decided_at: datetime | None = None
    decided_by: str | None = None


class HookResult(BaseModel):
    """フック・テストコマンド1件の実行結果。"""

    name: str
    phase: str
    exit_code: int
    timed_out: bool = False
    required: bool = True
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

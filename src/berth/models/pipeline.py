"""パイプライン設定のデータモデル。

すべての項目は既定値を持ち、設定コマンドによってのみ変更される。
デプロイ開始時にスナップショットが取られ、実行中のランは途中の設定変更の影響を受けない。
"""

from typing import Annotated, Literal

from pydantic import BaseModel, Field

HookPhase = Literal["pre_build", "pre_deploy", "post_deploy", "on_failure"]


class HookDefinition(BaseModel):
    """ライフサイクルフック。"""

    name: str
    phase: HookPhase
    command: str
    timeout_seconds: int = Field(default=60, ge=1)
    required: bool = True


class TestConfig(BaseModel):
    """デプロイ前テストゲートの設定。"""

    __test__ = False

    enabled: bool = False
    command: str = "npm test"
    timeout_seconds: int = Field(default=300, ge=1)


class BlueGreenConfig(BaseModel):
    enabled: bool = True
    keep_old_seconds: int = Field(default=300, ge=0)


class RollbackConfig(BaseModel):
    enabled: bool = True
    auto_rollback: bool = False
    keep_versions: int = Field(default=3, ge=1)


class ApprovalConfig(BaseModel):
    enabled: bool = False
    timeout_minutes: int = Field(default=60, ge=1)


class RateLimitConfig(BaseModel):
    """スライディングウィンドウ方式のデプロイ回数制限。"""

    enabled: bool = True
    max_deploys: int = Field(default=5, ge=1)
    window_seconds: int = Field(default=300, ge=1)
    # Falseの場合、手動デプロイは制限の対象外（記録もしない）
    apply_to_manual: bool = False


class BuildConfig(BaseModel):
    cache_enabled: bool = True
    buildkit: bool = True
    cache_from: str | None = None


class NotificationEvents(BaseModel):
    """チャンネルが購読するイベント種別。"""

    on_start: bool = False
    on_success: bool = True
    on_failure: bool = True


class SlackChannel(BaseModel):
    type: Literal["slack"] = "slack"
    webhook_url: str
    channel: str | None = None
    username: str | None = None
    events: NotificationEvents = Field(default_factory=NotificationEvents)

    @property
    def label(self) -> str:
        return f"slack:{self.channel}" if self.channel else "slack"


class DiscordChannel(BaseModel):
    type: Literal["discord"] = "discord"
    webhook_url: str
    username: str | None = None
    events: NotificationEvents = Field(default_factory=NotificationEvents)

    @property
    def label(self) -> str:
        return "discord"


class EmailChannel(BaseModel):
    type: Literal["email"] = "email"
    smtp_host: str
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    from_addr: str
    to_addrs: list[str] = Field(min_length=1)
    use_tls: bool = True
    events: NotificationEvents = Field(default_factory=NotificationEvents)

    @property
    def label(self) -> str:
        return f"email:{','.join(self.to_addrs)}"


ChannelConfig = Annotated[SlackChannel | DiscordChannel | EmailChannel, Field(discriminator="type")]


class NotificationConfig(BaseModel):
    enabled: bool = True
    channels: list[ChannelConfig] = Field(default_factory=list)


class PipelineConfig(BaseModel):
    """アプリ単位のパイプライン設定。"""

    hooks: list[HookDefinition] = Field(default_factory=list)
    tests: TestConfig = Field(default_factory=TestConfig)
    blue_green: BlueGreenConfig = Field(default_factory=BlueGreenConfig)
    rollback: RollbackConfig = Field(default_factory=RollbackConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)

    def hooks_for(self, phase: HookPhase) -> list[HookDefinition]:
        """指定フェーズのフックを定義順に返す。"""
        return [hook for hook in self.hooks if hook.phase == phase]

"""運用コマンドのデータモデル。

コマンドはkindで識別される閉じた集合で、CommandDispatcherが単一のmatchで処理する。
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from berth.models.app import PRODUCTION
from berth.models.pipeline import ChannelConfig, HookPhase

# ----------------------------------------------------------------
# server / webhook
# ----------------------------------------------------------------


class ServerInitCommand(BaseModel):
    kind: Literal["server_init"] = "server_init"


class ServerStatusCommand(BaseModel):
    kind: Literal["server_status"] = "server_status"


class WebhookInstallCommand(BaseModel):
    kind: Literal["webhook_install"] = "webhook_install"
    domain: str
    port: int | None = None


class WebhookUninstallCommand(BaseModel):
    kind: Literal["webhook_uninstall"] = "webhook_uninstall"


class WebhookStatusCommand(BaseModel):
    kind: Literal["webhook_status"] = "webhook_status"


# ----------------------------------------------------------------
# アプリのライフサイクル
# ----------------------------------------------------------------


class InitCommand(BaseModel):
    kind: Literal["init"] = "init"
    descriptor: dict[str, Any] | str


class ListAppsCommand(BaseModel):
    kind: Literal["list_apps"] = "list_apps"


class DeployCommand(BaseModel):
    """コミット（省略時はブランチの先頭）をデプロイする。waitなら終端状態まで待つ。"""

    kind: Literal["deploy"] = "deploy"
    app: str
    environment: str = PRODUCTION
    commit: str | None = None
    wait: bool = True


class UpdateCommand(BaseModel):
    """環境のブランチの最新コミットを取得して再デプロイする。"""

    kind: Literal["update"] = "update"
    app: str
    environment: str = PRODUCTION
    wait: bool = True


class StopCommand(BaseModel):
    kind: Literal["stop"] = "stop"
    app: str


class StartCommand(BaseModel):
    kind: Literal["start"] = "start"
    app: str


class RestartCommand(BaseModel):
    kind: Literal["restart"] = "restart"
    app: str


class StatusCommand(BaseModel):
    kind: Literal["status"] = "status"
    app: str


class RunsCommand(BaseModel):
    kind: Literal["runs"] = "runs"
    app: str
    limit: int = Field(default=10, ge=1)


class DestroyCommand(BaseModel):
    kind: Literal["destroy"] = "destroy"
    app: str
    confirm: str | None = None
    keep_data: bool = False
    force: bool = False


class LogsCommand(BaseModel):
    kind: Literal["logs"] = "logs"
    app: str
    service: Literal["web", "db", "cache"] = "web"
    environment: str = PRODUCTION
    tail: int = Field(default=100, ge=1)
    since: str | None = None


class RollbackCommand(BaseModel):
    """保持中のリリースへ戻す。toを省略すると直前の正常なリリース。"""

    kind: Literal["rollback"] = "rollback"
    app: str
    environment: str = PRODUCTION
    to: str | None = None
    wait: bool = True


class VersionsCommand(BaseModel):
    kind: Literal["versions"] = "versions"
    app: str
    environment: str = PRODUCTION


# ----------------------------------------------------------------
# env / domain / auth
# ----------------------------------------------------------------


class EnvListCommand(BaseModel):
    kind: Literal["env_list"] = "env_list"
    app: str
    environment: str = PRODUCTION


class EnvSetCommand(BaseModel):
    kind: Literal["env_set"] = "env_set"
    app: str
    variables: dict[str, str]
    environment: str = PRODUCTION


class EnvRemoveCommand(BaseModel):
    kind: Literal["env_remove"] = "env_remove"
    app: str
    keys: list[str]
    environment: str = PRODUCTION


class EnvEditCommand(BaseModel):
    kind: Literal["env_edit"] = "env_edit"
    app: str
    text: str
    environment: str = PRODUCTION


class EnvCopyCommand(BaseModel):
    kind: Literal["env_copy"] = "env_copy"
    app: str
    source: str
    target: str
    overwrite: bool = False


class EnvsCommand(BaseModel):
    kind: Literal["envs"] = "envs"
    app: str


class DomainListCommand(BaseModel):
    kind: Literal["domain_list"] = "domain_list"
    app: str


class DomainAddCommand(BaseModel):
    kind: Literal["domain_add"] = "domain_add"
    app: str
    domain: str
    primary: bool = False


class DomainRemoveCommand(BaseModel):
    kind: Literal["domain_remove"] = "domain_remove"
    app: str
    domain: str


class AuthListCommand(BaseModel):
    kind: Literal["auth_list"] = "auth_list"
    app: str


class AuthAddCommand(BaseModel):
    kind: Literal["auth_add"] = "auth_add"
    app: str
    domain: str
    username: str
    password: str


class AuthUpdateCommand(BaseModel):
    kind: Literal["auth_update"] = "auth_update"
    app: str
    domain: str
    username: str
    password: str


class AuthRemoveCommand(BaseModel):
    kind: Literal["auth_remove"] = "auth_remove"
    app: str
    domain: str


# ----------------------------------------------------------------
# autodeploy
# ----------------------------------------------------------------


class AutodeployEnableCommand(BaseModel):
    kind: Literal["autodeploy_enable"] = "autodeploy_enable"
    app: str
    branch: str | None = None


class AutodeployDisableCommand(BaseModel):
    kind: Literal["autodeploy_disable"] = "autodeploy_disable"
    app: str


class AutodeployStatusCommand(BaseModel):
    kind: Literal["autodeploy_status"] = "autodeploy_status"
    app: str


class AutodeploySecretCommand(BaseModel):
    kind: Literal["autodeploy_secret"] = "autodeploy_secret"
    app: str
    regenerate: bool = False


class AutodeployLogsCommand(BaseModel):
    kind: Literal["autodeploy_logs"] = "autodeploy_logs"
    app: str
    limit: int = Field(default=20, ge=1)


class EnvironmentAddCommand(BaseModel):
    kind: Literal["environment_add"] = "environment_add"
    app: str
    name: str
    branch: str
    auto_deploy: bool = True
    domains: list[str] = Field(default_factory=list)


class EnvironmentListCommand(BaseModel):
    kind: Literal["environment_list"] = "environment_list"
    app: str


class EnvironmentRemoveCommand(BaseModel):
    kind: Literal["environment_remove"] = "environment_remove"
    app: str
    name: str


class TestsConfigCommand(BaseModel):
    __test__ = False

    kind: Literal["tests_config"] = "tests_config"
    app: str
    enabled: bool | None = None
    command: str | None = None
    timeout_seconds: int | None = None


class HookAddCommand(BaseModel):
    kind: Literal["hook_add"] = "hook_add"
    app: str
    name: str
    phase: HookPhase
    command: str
    timeout_seconds: int = 60
    required: bool = True


class HookListCommand(BaseModel):
    kind: Literal["hook_list"] = "hook_list"
    app: str
    phase: HookPhase | None = None


class HookRemoveCommand(BaseModel):
    kind: Literal["hook_remove"] = "hook_remove"
    app: str
    name: str
    phase: HookPhase | None = None


class BlueGreenConfigCommand(BaseModel):
    kind: Literal["blue_green_config"] = "blue_green_config"
    app: str
    enabled: bool | None = None
    keep_old_seconds: int | None = None


class RollbackConfigCommand(BaseModel):
    kind: Literal["rollback_config"] = "rollback_config"
    app: str
    enabled: bool | None = None
    auto_rollback: bool | None = None
    keep_versions: int | None = None


class ApprovalConfigCommand(BaseModel):
    kind: Literal["approval_config"] = "approval_config"
    app: str
    enabled: bool | None = None
    timeout_minutes: int | None = None


class BuildConfigCommand(BaseModel):
    kind: Literal["build_config"] = "build_config"
    app: str
    cache_enabled: bool | None = None
    buildkit: bool | None = None
    cache_from: str | None = None


class RateLimitConfigCommand(BaseModel):
    kind: Literal["rate_limit_config"] = "rate_limit_config"
    app: str
    enabled: bool | None = None
    max_deploys: int | None = None
    window_seconds: int | None = None
    apply_to_manual: bool | None = None


class ApprovalPendingCommand(BaseModel):
    kind: Literal["approval_pending"] = "approval_pending"
    app: str | None = None


class ApproveCommand(BaseModel):
    kind: Literal["approve"] = "approve"
    app: str
    approval_id: str | None = None
    decided_by: str | None = None


class RejectCommand(BaseModel):
    kind: Literal["reject"] = "reject"
    app: str
    approval_id: str | None = None
    decided_by: str | None = None


class NotifyAddCommand(BaseModel):
    """Slack / Discord / メールのチャンネルを設定する。"""

    kind: Literal["notify_add"] = "notify_add"
    app: str
    channel: ChannelConfig


class NotifyRemoveCommand(BaseModel):
    kind: Literal["notify_remove"] = "notify_remove"
    app: str
    label: str


class NotifyEventsCommand(BaseModel):
    kind: Literal["notify_events"] = "notify_events"
    app: str
    label: str | None = None
    on_start: bool | None = None
    on_success: bool | None = None
    on_failure: bool | None = None


class NotifyEnableCommand(BaseModel):
    kind: Literal["notify_enable"] = "notify_enable"
    app: str
    enabled: bool = True


class NotifyTestCommand(BaseModel):
    kind: Literal["notify_test"] = "notify_test"
    app: str


class PipelineShowCommand(BaseModel):
    kind: Literal["pipeline_show"] = "pipeline_show"
    app: str


Command = Annotated[
    ServerInitCommand
    | ServerStatusCommand
    | WebhookInstallCommand
    | WebhookUninstallCommand
    | WebhookStatusCommand
    | InitCommand
    | ListAppsCommand
    | DeployCommand
    | UpdateCommand
    | StopCommand
    | StartCommand
    | RestartCommand
    | StatusCommand
    | RunsCommand
    | DestroyCommand
    | LogsCommand
    | RollbackCommand
    | VersionsCommand
    | EnvListCommand
    | EnvSetCommand
    | EnvRemoveCommand
    | EnvEditCommand
    | EnvCopyCommand
    | EnvsCommand
    | DomainListCommand
    | DomainAddCommand
    | DomainRemoveCommand
    | AuthListCommand
    | AuthAddCommand
    | AuthUpdateCommand
    | AuthRemoveCommand
    | AutodeployEnableCommand
    | AutodeployDisableCommand
    | AutodeployStatusCommand
    | AutodeploySecretCommand
    | AutodeployLogsCommand
    | EnvironmentAddCommand
    | EnvironmentListCommand
    | EnvironmentRemoveCommand
    | TestsConfigCommand
    | HookAddCommand
    | HookListCommand
    | HookRemoveCommand
    | BlueGreenConfigCommand
    | RollbackConfigCommand
    | ApprovalConfigCommand
    | BuildConfigCommand
    | RateLimitConfigCommand
    | ApprovalPendingCommand
    | ApproveCommand
    | RejectCommand
    | NotifyAddCommand
    | NotifyRemoveCommand
    | NotifyEventsCommand
    | NotifyEnableCommand
    | NotifyTestCommand
    | PipelineShowCommand,
    Field(discriminator="kind"),
]

command_adapter: TypeAdapter[Command] = TypeAdapter(Command)


def parse_command(data: dict[str, Any]) -> Command:
    """dictからコマンドを組み立てる。

    Raises:
        pydantic.ValidationError: kindが不明、または引数が不正な場合。
    """
    return command_adapter.validate_python(data)

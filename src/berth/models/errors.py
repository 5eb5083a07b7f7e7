"""Berthのカスタム例外クラス。"""


class BerthError(Exception):
    """Berthの基底例外クラス。"""


class AppNotFoundError(BerthError):
    """アプリが見つからない場合の例外。"""

    def __init__(self, app: str) -> None:
        super().__init__(f"App not found: {app}")
        self.app = app


class AppAlreadyExistsError(BerthError):
    """同名のアプリが既に存在する場合の例外。"""

    def __init__(self, app: str) -> None:
        super().__init__(f"App already exists: {app}")
        self.app = app


class EnvironmentNotFoundError(BerthError):
    """指定された環境がアプリに存在しない場合の例外。"""

    def __init__(self, app: str, environment: str) -> None:
        super().__init__(f"Environment '{environment}' not found for app: {app}")
        self.app = app
        self.environment = environment


class ConfigValidationError(BerthError):
    """設定値の検証エラー。状態は変更されない。"""


class StorageError(BerthError):
    """ストレージ操作のエラー。"""


class RuntimeOperationError(BerthError):
    """コンテナランタイム操作のエラー。"""

    def __init__(self, message: str, command: str = "", stderr: str = "", exit_code: int = -1) -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr
        self.exit_code = exit_code


class RepositoryError(BerthError):
    """ソース管理操作（fetch/checkout/build）のエラー。"""


# ----------------------------------------------------------------
# 受付時エラー: DeploymentRunを作成せずにリクエストを拒否する
# ----------------------------------------------------------------


class AlreadyDeployingError(BerthError):
    """同一アプリで実行中のデプロイがある場合の例外。"""

    def __init__(self, app: str, run_id: str | None = None) -> None:
        super().__init__(f"Deployment already in progress for app: {app}")
        self.app = app
        self.run_id = run_id


class DeploymentInProgressError(BerthError):
    """手動のライフサイクル操作が実行中のデプロイと競合する場合の例外。"""

    def __init__(self, app: str, operation: str) -> None:
        super().__init__(f"Cannot {operation} app '{app}' while a deployment is in progress")
        self.app = app
        self.operation = operation


class RateLimitExceededError(BerthError):
    """レート制限の上限に達した場合の例外。"""

    def __init__(self, app: str, max_deploys: int, window_seconds: int) -> None:
        super().__init__(f"Rate limit exceeded for app '{app}' ({max_deploys} deploys in {window_seconds}s)")
        self.app = app
        self.max_deploys = max_deploys
        self.window_seconds = window_seconds


class InvalidSignatureError(BerthError):
    """Webhook署名の検証に失敗した場合の例外。"""

    def __init__(self, app: str) -> None:
        super().__init__(f"Invalid webhook signature for app: {app}")
        self.app = app


# ----------------------------------------------------------------
# パイプライン内エラー: ランの終端状態（failed/rolled_back）に回収される
# ----------------------------------------------------------------


class PipelineError(BerthError):
    """パイプライン内部で発生し、ランの失敗として記録される例外の基底クラス。"""

    reason = "PipelineError"


class HealthCheckTimeoutError(PipelineError):
    """新インスタンスが時間内にヘルシーにならなかった場合の例外。"""

    reason = "HealthCheckTimeout"

    def __init__(self, instance: str, attempts: int, logs: str = "") -> None:
        super().__init__(f"Health check failed for {instance} after {attempts} attempts")
        self.instance = instance
        self.attempts = attempts
        self.logs = logs


class HookFailureError(PipelineError):
    """フックコマンドが失敗した場合の例外。"""

    reason = "HookFailure"

    def __init__(self, name: str, phase: str, required: bool, detail: str = "") -> None:
        message = f"Hook '{name}' failed in phase {phase}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.name = name
        self.phase = phase
        self.required = required


class TestFailureError(PipelineError):
    """テストゲートが失敗した場合の例外。"""

    reason = "TestFailure"
    __test__ = False

    def __init__(self, command: str, detail: str = "") -> None:
        message = f"Tests failed: {command}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.command = command


class ApprovalRejectedError(PipelineError):
    """承認リクエストが却下された場合の例外。"""

    reason = "ApprovalRejected"

    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Deployment rejected: {approval_id}")
        self.approval_id = approval_id


class ApprovalTimedOutError(PipelineError):
    """承認リクエストが期限切れになった場合の例外。"""

    reason = "ApprovalTimedOut"

    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Approval request timed out: {approval_id}")
        self.approval_id = approval_id


class RoutingUpdateFailureError(PipelineError):
    """ルーティングテーブルの更新に失敗した場合の例外。以前のルートは維持される。"""

    reason = "RoutingUpdateFailure"


class BuildFailureError(PipelineError):
    """アーティファクトの取得・ビルドに失敗した場合の例外。"""

    reason = "BuildFailure"


class InstanceStartError(PipelineError):
    """新インスタンスの起動に失敗した場合の例外。"""

    reason = "InstanceStartFailure"


# ----------------------------------------------------------------
# その他
# ----------------------------------------------------------------


class RollbackNotFoundError(BerthError):
    """ロールバック対象のリリースが保持範囲に存在しない場合の例外。"""

    def __init__(self, app: str, environment: str, target: str | None) -> None:
        label = target or "previous release"
        super().__init__(f"Rollback target not found for {app}/{environment}: {label}")
        self.app = app
        self.environment = environment
        self.target = target


class ApprovalNotFoundError(BerthError):
    """保留中の承認リクエストが見つからない場合の例外。"""

    def __init__(self, app: str, approval_id: str | None = None) -> None:
        label = approval_id or "(latest)"
        super().__init__(f"No pending approval for app '{app}': {label}")
        self.app = app
        self.approval_id = approval_id


class NotificationDeliveryFailureError(BerthError):
    """通知の配信失敗。ディスパッチャ境界で必ず握りつぶされる。"""

    def __init__(self, channel: str, detail: str) -> None:
        super().__init__(f"Notification delivery to {channel} failed: {detail}")
        self.channel = channel
        self.detail = detail

"""Berthサーバーの設定管理。"""

from pathlib import Path

from pydantic_settings import BaseSettings

_PACKAGE_ROOT = Path(__file__).parent
_REPO_ROOT = _PACKAGE_ROOT.parent.parent


class ServerConfig(BaseSettings):
    """サーバー設定。環境変数（BERTH_*）から読み込み可能。"""

    model_config = {"env_prefix": "BERTH_"}

    data_dir: Path = _REPO_ROOT / ".berth"
    host: str = "0.0.0.0"
    port: int = 9876
    url_token: str = ""
    log_level: str = "INFO"

    # ルーティング（Traefik動的設定の出力先。未指定時は data_dir/routing）
    routing_dir: Path | None = None

    # 外部コマンド
    docker_binary: str = "docker"
    git_binary: str = "git"

    # 通知
    notification_retries: int = 3
    notification_retry_delay: float = 2.0

    # ヘルスチェックの待機間隔の増加率
    health_backoff_factor: float = 1.5

    @property
    def resolved_routing_dir(self) -> Path:
        return self.routing_dir or self.data_dir / "routing"

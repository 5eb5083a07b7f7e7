"""アプリ・環境関連のデータモデル。"""

import re
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from berth.models.pipeline import PipelineConfig

AppLifecycle = Literal["running", "stopped"]
DatabaseType = Literal["postgresql", "mysql", "mongodb"]
CacheType = Literal["redis"]

APP_NAME_RE = re.compile(r"^[a-z][a-z0-9-]{1,62}$")

PRODUCTION = "production"


def validate_app_name(name: str) -> str:
    """アプリ名を検証する。

    Raises:
        ValueError: 英小文字で始まり英小文字・数字・ハイフンのみの2〜63文字でない場合。
    """
    if not APP_NAME_RE.match(name) or name.endswith("-"):
        raise ValueError(
            f"Invalid app name '{name}': use 2-63 lowercase letters, digits or hyphens, starting with a letter"
        )
    return name


def check_branch_mapping(environments: "Iterable[Environment]") -> None:
    """自動デプロイ対象の環境間でブランチが重複していないことを検証する。

    Raises:
        ValueError: 同じブランチを2つ以上の環境が要求している場合。
    """
    claimed: dict[str, str] = {}
    for env in environments:
        if not env.auto_deploy:
            continue
        if env.branch in claimed:
            raise ValueError(
                f"Branch '{env.branch}' is already mapped to environment '{claimed[env.branch]}'"
            )
        claimed[env.branch] = env.name


class HealthCheckSpec(BaseModel):
    """ヘルスチェック設定。"""

    path: str = "/"
    interval: int = Field(default=5, ge=1)
    timeout: int = Field(default=30, ge=1)
    retries: int = Field(default=3, ge=1)

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        return value if value.startswith("/") else f"/{value}"


class DatabaseSpec(BaseModel):
    type: DatabaseType


class CacheSpec(BaseModel):
    type: CacheType


class Domain(BaseModel):
    """アプリに割り当てられたドメイン。"""

    domain: str
    primary: bool = False
    auth_username: str | None = None


class Environment(BaseModel):
    """デプロイ先環境。ブランチとの対応づけと自動デプロイ可否を持つ。"""

    name: str
    branch: str = "main"
    auto_deploy: bool = True
    domains: list[str] = Field(default_factory=list)


class InstanceHandle(BaseModel):
    """ランタイム上で起動したアプリインスタンスへの参照。"""

    id: str
    app: str
    environment: str
    release_id: str
    artifact: str
    port: int
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class StandbyInstance(BaseModel):
    """切り替え後もkeep_old秒間保持する旧インスタンス。"""

    handle: InstanceHandle
    retire_at: datetime


class AutodeploySettings(BaseModel):
    """Webhook起点の自動デプロイ設定。"""

    enabled: bool = False
    webhook_path: str | None = None


class App(BaseModel):
    """デプロイ対象アプリ。環境・リリース参照・パイプライン設定を所有する。"""

    name: str
    port: int = Field(ge=1, le=65535)
    repository: str | None = None
    domains: list[Domain] = Field(default_factory=list)
    database: DatabaseSpec | None = None
    cache: CacheSpec | None = None
    healthcheck: HealthCheckSpec = Field(default_factory=HealthCheckSpec)
    status: AppLifecycle = "stopped"
    environments: dict[str, Environment] = Field(
        default_factory=lambda: {PRODUCTION: Environment(name=PRODUCTION)}
    )
    active_releases: dict[str, str] = Field(default_factory=dict)
    instances: dict[str, InstanceHandle] = Field(default_factory=dict)
    standby: dict[str, StandbyInstance] = Field(default_factory=dict)
    autodeploy: AutodeploySettings = Field(default_factory=AutodeploySettings)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    deployed_at: datetime | None = None

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return validate_app_name(value)

    @model_validator(mode="after")
    def _unique_branch_mapping(self) -> "App":
        check_branch_mapping(self.environments.values())
        return self

    @property
    def primary_domain(self) -> str | None:
        for domain in self.domains:
            if domain.primary:
                return domain.domain
        return self.domains[0].domain if self.domains else None

    def domains_for(self, environment: str) -> list[str]:
        """環境のルーティング対象ドメインを返す。productionはアプリのドメインを使う。"""
        if environment == PRODUCTION:
            return [d.domain for d in self.domains]
        env = self.environments.get(environment)
        return list(env.domains) if env else []

    def environment_for_branch(self, branch: str) -> Environment | None:
        """ブランチに対応づけられた自動デプロイ対象の環境を返す。"""
        for env in self.environments.values():
            if env.auto_deploy and env.branch == branch:
                return env
        return None


class AppSecrets(BaseModel):
    """アプリのシークレット。app.jsonとは別ファイルに保存する。"""

    webhook_secret: str | None = None
    database_password: str | None = None
    cache_password: str | None = None
    auth: dict[str, str] = Field(default_factory=dict)


class AppDescriptor(BaseModel):
    """初期化時に読み込むアプリ記述子。"""

    name: str
    port: int = Field(ge=1, le=65535)
    repository: str | None = None
    domains: list[str] = Field(default_factory=list)
    database: DatabaseSpec | None = None
    cache: CacheSpec | None = None
    healthcheck: HealthCheckSpec | None = None

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return validate_app_name(value)


class AppStatusReport(BaseModel):
    """statusコマンドの結果。"""

    app: str
    status: AppLifecycle
    deploying: bool
    active_releases: dict[str, str]
    instances: dict[str, str]
    standby: dict[str, str]
    current_run: dict[str, object] | None = None
    last_run: dict[str, object] | None = None

"""アプリの登録・削除と、環境変数・ドメイン・認証・自動デプロイ・パイプライン設定の管理。"""

import base64
import hashlib
import io
import logging
import re
import secrets
from collections.abc import Callable
from typing import Any, TypeVar

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ValidationError

from berth.models.app import (
    PRODUCTION,
    App,
    AppDescriptor,
    AppSecrets,
    Domain,
    Environment,
    HealthCheckSpec,
    validate_app_name,
)
from berth.models.errors import (
    AppAlreadyExistsError,
    ConfigValidationError,
    DeploymentInProgressError,
    EnvironmentNotFoundError,
    RuntimeOperationError,
)
from berth.models.pipeline import ChannelConfig, HookDefinition, HookPhase, NotificationEvents
from berth.providers.repository import Repository
from berth.providers.routing import Router
from berth.providers.runtime import Runtime
from berth.services.deployment import DeploymentService
from berth.services.notifications import NotificationService
from berth.services.ratelimit import RateLimiter
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")


def load_descriptor(text: str) -> AppDescriptor:
    """YAML形式のアプリ記述子を読み込む。

    Raises:
        ConfigValidationError: YAMLとして不正、または必須項目が欠けている場合。
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigValidationError(f"Invalid app descriptor: {e}") from e
    if not isinstance(data, dict):
        raise ConfigValidationError("Invalid app descriptor: expected a mapping")
    try:
        return AppDescriptor.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid app descriptor: {e}") from e


def htpasswd_line(username: str, password: str) -> str:
    """Traefikのbasic認証が受け付ける {SHA} 形式のhtpasswd行を返す。"""
    digest = base64.b64encode(hashlib.sha1(password.encode()).digest()).decode()
    return f"{username}:{{SHA}}{digest}"


def _check_domain(domain: str) -> str:
    domain = domain.strip().lower()
    if not DOMAIN_RE.match(domain):
        raise ConfigValidationError(f"Invalid domain: {domain}")
    return domain


def _check_env_keys(keys: list[str]) -> None:
    invalid = [key for key in keys if not ENV_KEY_RE.match(key)]
    if invalid:
        raise ConfigValidationError(f"Invalid variable name(s): {', '.join(invalid)}")


class AppService:
    """アプリ単位の設定操作を扱う。実行中のランは開始時の設定スナップショットを使うため影響を受けない。"""

    def __init__(
        self,
        storage: StorageService,
        runtime: Runtime,
        router: Router,
        repository: Repository,
        deployment: DeploymentService,
        rate_limiter: RateLimiter,
        notifications: NotificationService,
    ) -> None:
        self._storage = storage
        self._runtime = runtime
        self._router = router
        self._repository = repository
        self._deployment = deployment
        self._rate_limiter = rate_limiter
        self._notifications = notifications

    async def _update(self, app_name: str, mutate: Callable[[App], T]) -> tuple[App, T]:
        """update_appの検証エラーをConfigValidationErrorに変換する。"""
        try:
            return await self._storage.update_app(app_name, mutate)
        except ValueError as e:
            raise ConfigValidationError(str(e)) from e

    # ------------------------------------------------------------------
    # 登録・削除
    # ------------------------------------------------------------------

    async def init_app(self, descriptor: AppDescriptor | dict[str, Any] | str) -> App:
        """アプリ記述子からアプリを登録する。

        データベース・キャッシュの資格情報はここで生成し、secrets.jsonに保存する。

        Args:
            descriptor: AppDescriptor、dict、またはYAML文字列。

        Returns:
            登録したApp。

        Raises:
            AppAlreadyExistsError: 同名のアプリが既に存在する場合。
            ConfigValidationError: 記述子が不正な場合。
            RepositoryError: リポジトリのクローンに失敗した場合。
        """
        if isinstance(descriptor, str):
            descriptor = load_descriptor(descriptor)
        elif isinstance(descriptor, dict):
            try:
                descriptor = AppDescriptor.model_validate(descriptor)
            except ValidationError as e:
                raise ConfigValidationError(f"Invalid app descriptor: {e}") from e

        if await self._storage.app_exists(descriptor.name):
            raise AppAlreadyExistsError(descriptor.name)

        domains = [_check_domain(domain) for domain in descriptor.domains]
        if len(set(domains)) != len(domains):
            raise ConfigValidationError("Duplicate domain in descriptor")

        app = App(
            name=descriptor.name,
            port=descriptor.port,
            repository=descriptor.repository,
            domains=[Domain(domain=domain, primary=i == 0) for i, domain in enumerate(domains)],
            database=descriptor.database,
            cache=descriptor.cache,
            healthcheck=descriptor.healthcheck or HealthCheckSpec(),
        )
        app_secrets = AppSecrets(
            database_password=secrets.token_urlsafe(24) if app.database else None,
            cache_password=secrets.token_urlsafe(24) if app.cache else None,
        )

        if app.repository:
            await self._repository.clone(app.name, app.repository)
        await self._storage.save_app(app)
        await self._storage.save_secrets(app.name, app_secrets)
        await self._storage.save_env(app.name, PRODUCTION, {})
        logger.info("Initialized app %s", app.name)
        return app

    async def get(self, app_name: str) -> App:
        return await self._storage.load_app(app_name)

    async def list_apps(self) -> list[dict[str, Any]]:
        """登録済みアプリの概要を返す。"""
        summaries: list[dict[str, Any]] = []
        for name in await self._storage.list_apps():
            app = await self._storage.load_app(name)
            summaries.append(
                {
                    "name": app.name,
                    "status": app.status,
                    "domain": app.primary_domain,
                    "environments": sorted(app.environments),
                    "deploying": self._deployment.is_deploying(app.name),
                    "autodeploy": app.autodeploy.enabled,
                }
            )
        return summaries

    async def destroy(
        self, app_name: str, confirm: str | None = None, keep_data: bool = False, force: bool = False
    ) -> dict[str, Any]:
        """アプリを削除する。

        Args:
            app_name: アプリ名。
            confirm: 確認のためのアプリ名。forceでない場合はapp_nameと一致する必要がある。
            keep_data: Trueの場合、データベース・キャッシュのボリュームを残す。
            force: 確認を省略する。

        Raises:
            ConfigValidationError: 確認が一致しない場合。
            DeploymentInProgressError: 実行中のランがある場合。
        """
        await self._storage.load_app(app_name)
        if not force and confirm != app_name:
            raise ConfigValidationError(f"Type the app name to confirm: destroy {app_name} --confirm {app_name}")
        if self._deployment.is_deploying(app_name):
            raise DeploymentInProgressError(app_name, "destroy")

        await self._deployment.stop(app_name)
        await self._runtime.remove_services(app_name, keep_data)
        await self._storage.delete_app(app_name)
        self._rate_limiter.reset(app_name)
        logger.info("Destroyed app %s (keep_data=%s)", app_name, keep_data)
        return {"app": app_name, "destroyed": True, "data_kept": keep_data}

    # ------------------------------------------------------------------
    # 環境変数
    # ------------------------------------------------------------------

    async def _require_env(self, app_name: str, environment: str) -> App:
        app = await self._storage.load_app(app_name)
        if environment not in app.environments:
            raise EnvironmentNotFoundError(app_name, environment)
        return app

    async def env_list(self, app_name: str, environment: str = PRODUCTION) -> dict[str, str]:
        await self._require_env(app_name, environment)
        return await self._storage.load_env(app_name, environment)

    async def env_set(self, app_name: str, variables: dict[str, str], environment: str = PRODUCTION) -> dict[str, str]:
        """環境変数を追加・上書きする。次回のデプロイから反映される。"""
        await self._require_env(app_name, environment)
        _check_env_keys(list(variables))
        current = await self._storage.load_env(app_name, environment)
        current.update({key: str(value) for key, value in variables.items()})
        await self._storage.save_env(app_name, environment, current)
        return current

    async def env_remove(self, app_name: str, keys: list[str], environment: str = PRODUCTION) -> list[str]:
        """環境変数を削除し、実際に削除したキーを返す。"""
        await self._require_env(app_name, environment)
        current = await self._storage.load_env(app_name, environment)
        removed = [key for key in keys if current.pop(key, None) is not None]
        await self._storage.save_env(app_name, environment, current)
        return removed

    async def env_edit(self, app_name: str, text: str, environment: str = PRODUCTION) -> dict[str, str]:
        """dotenv形式のテキストで環境変数セットを置き換える。"""
        await self._require_env(app_name, environment)
        parsed = dotenv_values(stream=io.StringIO(text))
        variables = {key: value or "" for key, value in parsed.items()}
        _check_env_keys(list(variables))
        await self._storage.save_env(app_name, environment, variables)
        return variables

    async def env_copy(
        self, app_name: str, source: str, target: str, overwrite: bool = False
    ) -> dict[str, str]:
        """環境間で環境変数をコピーする。overwriteでない場合は既存のキーを残す。"""
        await self._require_env(app_name, source)
        await self._require_env(app_name, target)
        copied = await self._storage.load_env(app_name, source)
        current = await self._storage.load_env(app_name, target)
        merged = {**current, **copied} if overwrite else {**copied, **current}
        await self._storage.save_env(app_name, target, merged)
        return merged

    async def envs(self, app_name: str) -> list[dict[str, Any]]:
        """環境ごとのブランチ・自動デプロイ可否・変数の数を返す。"""
        app = await self._storage.load_app(app_name)
        result: list[dict[str, Any]] = []
        for env in app.environments.values():
            variables = await self._storage.load_env(app_name, env.name)
            result.append(
                {
                    "name": env.name,
                    "branch": env.branch,
                    "auto_deploy": env.auto_deploy,
                    "variables": len(variables),
                    "active_release": app.active_releases.get(env.name),
                }
            )
        return result

    # ------------------------------------------------------------------
    # ドメイン・basic認証
    # ------------------------------------------------------------------

    async def domain_list(self, app_name: str) -> list[Domain]:
        app = await self._storage.load_app(app_name)
        return app.domains

    async def domain_add(self, app_name: str, domain: str, primary: bool = False) -> list[Domain]:
        """ドメインを追加する。稼働中ならルートを再適用する。"""
        domain = _check_domain(domain)

        def _mutate(app: App) -> None:
            if any(d.domain == domain for d in app.domains):
                raise ConfigValidationError(f"Domain already assigned to {app.name}: {domain}")
            make_primary = primary or not app.domains
            if make_primary:
                for d in app.domains:
                    d.primary = False
            app.domains.append(Domain(domain=domain, primary=make_primary))

        app, _ = await self._update(app_name, _mutate)
        await self._deployment.reroute(app_name)
        logger.info("Added domain %s to %s", domain, app_name)
        return app.domains

    async def domain_remove(self, app_name: str, domain: str) -> list[Domain]:
        """ドメインを削除する。唯一のドメインは削除できない。主ドメインを削除すると次のドメインが主になる。"""
        domain = domain.strip().lower()

        def _mutate(app: App) -> None:
            target = next((d for d in app.domains if d.domain == domain), None)
            if target is None:
                raise ConfigValidationError(f"Domain not assigned to {app.name}: {domain}")
            if target.primary and len(app.domains) == 1:
                raise ConfigValidationError(f"Cannot remove the only domain of {app.name}")
            app.domains.remove(target)
            if target.primary:
                app.domains[0].primary = True

        app, _ = await self._update(app_name, _mutate)
        app_secrets = await self._storage.load_secrets(app_name)
        if app_secrets.auth.pop(domain, None) is not None:
            await self._storage.save_secrets(app_name, app_secrets)
        await self._deployment.reroute(app_name)
        logger.info("Removed domain %s from %s", domain, app_name)
        return app.domains

    async def auth_list(self, app_name: str) -> list[dict[str, str]]:
        app_secrets = await self._storage.load_secrets(app_name)
        return [
            {"domain": domain, "username": line.split(":", 1)[0]}
            for domain, line in sorted(app_secrets.auth.items())
        ]

    async def _set_auth(self, app_name: str, domain: str, username: str, password: str, replace: bool) -> None:
        domain = domain.strip().lower()
        if not username or ":" in username:
            raise ConfigValidationError("Username must be non-empty and must not contain ':'")
        if not password:
            raise ConfigValidationError("Password must not be empty")
        app = await self._storage.load_app(app_name)
        known = {d.domain for d in app.domains} | {d for env in app.environments.values() for d in env.domains}
        if domain not in known:
            raise ConfigValidationError(f"Domain not assigned to {app_name}: {domain}")

        app_secrets = await self._storage.load_secrets(app_name)
        if replace and domain not in app_secrets.auth:
            raise ConfigValidationError(f"No basic auth configured for {domain}")
        if not replace and domain in app_secrets.auth:
            raise ConfigValidationError(f"Basic auth already configured for {domain}; use update")
        app_secrets.auth[domain] = htpasswd_line(username, password)
        await self._storage.save_secrets(app_name, app_secrets)

        def _mutate(app: App) -> None:
            for d in app.domains:
                if d.domain == domain:
                    d.auth_username = username

        await self._update(app_name, _mutate)
        await self._deployment.reroute(app_name)

    async def auth_add(self, app_name: str, domain: str, username: str, password: str) -> dict[str, str]:
        """ドメインにbasic認証を設定する。パスワードはハッシュのみ保存する。"""
        await self._set_auth(app_name, domain, username, password, replace=False)
        return {"domain": domain, "username": username}

    async def auth_update(self, app_name: str, domain: str, username: str, password: str) -> dict[str, str]:
        await self._set_auth(app_name, domain, username, password, replace=True)
        return {"domain": domain, "username": username}

    async def auth_remove(self, app_name: str, domain: str) -> bool:
        domain = domain.strip().lower()
        app_secrets = await self._storage.load_secrets(app_name)
        if app_secrets.auth.pop(domain, None) is None:
            raise ConfigValidationError(f"No basic auth configured for {domain}")
        await self._storage.save_secrets(app_name, app_secrets)

        def _mutate(app: App) -> None:
            for d in app.domains:
                if d.domain == domain:
                    d.auth_username = None

        await self._update(app_name, _mutate)
        await self._deployment.reroute(app_name)
        return True

    # ------------------------------------------------------------------
    # 自動デプロイ・環境
    # ------------------------------------------------------------------

    async def autodeploy_enable(self, app_name: str, branch: str | None = None) -> dict[str, Any]:
        """自動デプロイを有効にする。Webhookシークレットとパスは未発行の場合のみ生成する。"""
        app_secrets = await self._storage.load_secrets(app_name)
        if not app_secrets.webhook_secret:
            app_secrets.webhook_secret = secrets.token_hex(32)
            await self._storage.save_secrets(app_name, app_secrets)

        def _mutate(app: App) -> None:
            if branch:
                app.environments[PRODUCTION].branch = branch
            app.autodeploy.enabled = True
            if not app.autodeploy.webhook_path:
                app.autodeploy.webhook_path = f"{app.name}-{secrets.token_hex(6)}"

        app, _ = await self._update(app_name, _mutate)
        logger.info("Enabled autodeploy for %s", app_name)
        return {
            "app": app_name,
            "enabled": True,
            "webhook_path": f"/webhook/{app.autodeploy.webhook_path}",
            "secret": app_secrets.webhook_secret,
            "branch": app.environments[PRODUCTION].branch,
        }

    async def autodeploy_disable(self, app_name: str) -> dict[str, Any]:
        def _mutate(app: App) -> None:
            app.autodeploy.enabled = False

        await self._update(app_name, _mutate)
        logger.info("Disabled autodeploy for %s", app_name)
        return {"app": app_name, "enabled": False}

    async def autodeploy_status(self, app_name: str) -> dict[str, Any]:
        """自動デプロイの設定・ブランチ対応・レート制限の利用状況・直近の配信を返す。"""
        app = await self._storage.load_app(app_name)
        deliveries = await self._storage.read_deliveries(app_name, limit=5)
        return {
            "app": app_name,
            "enabled": app.autodeploy.enabled,
            "webhook_path": f"/webhook/{app.autodeploy.webhook_path}" if app.autodeploy.webhook_path else None,
            "environments": {
                env.name: env.branch for env in app.environments.values() if env.auto_deploy
            },
            "rate_limit": self._rate_limiter.usage(app_name, app.pipeline.rate_limit),
            "recent_deliveries": [d.model_dump(mode="json") for d in deliveries],
        }

    async def autodeploy_secret(self, app_name: str, regenerate: bool = False) -> str:
        """Webhookシークレットを返す。regenerateまたは未発行の場合は新しく生成する。"""
        await self._storage.load_app(app_name)
        app_secrets = await self._storage.load_secrets(app_name)
        if regenerate or not app_secrets.webhook_secret:
            app_secrets.webhook_secret = secrets.token_hex(32)
            await self._storage.save_secrets(app_name, app_secrets)
            logger.info("Generated webhook secret for %s", app_name)
        return app_secrets.webhook_secret

    async def environment_add(
        self,
        app_name: str,
        name: str,
        branch: str,
        auto_deploy: bool = True,
        domains: list[str] | None = None,
    ) -> Environment:
        """環境を追加する。自動デプロイ対象の環境間でブランチは一意でなければならない。

        Raises:
            ConfigValidationError: 環境が既に存在する、またはブランチが重複する場合。
        """
        try:
            validate_app_name(name)
        except ValueError as e:
            raise ConfigValidationError(f"Invalid environment name: {name}") from e
        env = Environment(
            name=name,
            branch=branch,
            auto_deploy=auto_deploy,
            domains=[_check_domain(domain) for domain in domains or []],
        )

        def _mutate(app: App) -> None:
            if name in app.environments:
                raise ConfigValidationError(f"Environment already exists: {name}")
            app.environments[name] = env

        await self._update(app_name, _mutate)
        await self._storage.save_env(app_name, name, {})
        logger.info("Added environment %s (%s) to %s", name, branch, app_name)
        return env

    async def environment_list(self, app_name: str) -> list[Environment]:
        app = await self._storage.load_app(app_name)
        return list(app.environments.values())

    async def environment_remove(self, app_name: str, name: str) -> bool:
        """環境を削除する。稼働中のインスタンスとルートも取り除く。productionは削除できない。"""
        if name == PRODUCTION:
            raise ConfigValidationError("The production environment cannot be removed")
        if self._deployment.is_deploying(app_name):
            raise DeploymentInProgressError(app_name, "remove an environment of")
        app = await self._require_env(app_name, name)

        handles = [app.instances[name]] if name in app.instances else []
        if name in app.standby:
            handles.append(app.standby[name].handle)
        if handles:
            await self._router.remove_route(app_name, name)
        for handle in handles:
            try:
                await self._runtime.stop_instance(handle)
            except RuntimeOperationError as e:
                logger.warning("Failed to stop %s: %s", handle.id, e)

        def _mutate(app: App) -> None:
            app.environments.pop(name, None)
            app.active_releases.pop(name, None)
            app.instances.pop(name, None)
            app.standby.pop(name, None)

        await self._update(app_name, _mutate)
        await self._storage.delete_env(app_name, name)
        logger.info("Removed environment %s from %s", name, app_name)
        return True

    # ------------------------------------------------------------------
    # パイプライン設定
    # ------------------------------------------------------------------

    async def pipeline_config(self, app_name: str) -> dict[str, Any]:
        app = await self._storage.load_app(app_name)
        return app.pipeline.model_dump(mode="json")

    async def _configure(self, app_name: str, section: str, **changes: Any) -> BaseModel:
        """PipelineConfigの1セクションを部分更新する。Noneの項目は変更しない。"""
        changes = {key: value for key, value in changes.items() if value is not None}

        def _mutate(app: App) -> BaseModel:
            current = getattr(app.pipeline, section)
            try:
                updated = type(current).model_validate({**current.model_dump(), **changes})
            except ValidationError as e:
                raise ConfigValidationError(f"Invalid {section} setting: {e}") from e
            setattr(app.pipeline, section, updated)
            return updated

        _app, updated = await self._update(app_name, _mutate)
        logger.info("Updated %s settings of %s: %s", section, app_name, changes)
        return updated

    async def set_tests(
        self,
        app_name: str,
        enabled: bool | None = None,
        command: str | None = None,
        timeout_seconds: int | None = None,
    ) -> BaseModel:
        return await self._configure(
            app_name, "tests", enabled=enabled, command=command, timeout_seconds=timeout_seconds
        )

    async def set_blue_green(
        self, app_name: str, enabled: bool | None = None, keep_old_seconds: int | None = None
    ) -> BaseModel:
        return await self._configure(app_name, "blue_green", enabled=enabled, keep_old_seconds=keep_old_seconds)

    async def set_rollback(
        self,
        app_name: str,
        enabled: bool | None = None,
        auto_rollback: bool | None = None,
        keep_versions: int | None = None,
    ) -> BaseModel:
        return await self._configure(
            app_name, "rollback", enabled=enabled, auto_rollback=auto_rollback, keep_versions=keep_versions
        )

    async def set_approval(
        self, app_name: str, enabled: bool | None = None, timeout_minutes: int | None = None
    ) -> BaseModel:
        return await self._configure(app_name, "approval", enabled=enabled, timeout_minutes=timeout_minutes)

    async def set_build(
        self,
        app_name: str,
        cache_enabled: bool | None = None,
        buildkit: bool | None = None,
        cache_from: str | None = None,
    ) -> BaseModel:
        return await self._configure(
            app_name, "build", cache_enabled=cache_enabled, buildkit=buildkit, cache_from=cache_from
        )

    async def set_rate_limit(
        self,
        app_name: str,
        enabled: bool | None = None,
        max_deploys: int | None = None,
        window_seconds: int | None = None,
        apply_to_manual: bool | None = None,
    ) -> BaseModel:
        return await self._configure(
            app_name,
            "rate_limit",
            enabled=enabled,
            max_deploys=max_deploys,
            window_seconds=window_seconds,
            apply_to_manual=apply_to_manual,
        )

    async def hook_add(
        self,
        app_name: str,
        name: str,
        phase: HookPhase,
        command: str,
        timeout_seconds: int = 60,
        required: bool = True,
    ) -> HookDefinition:
        """フックを追加する。同じフェーズに同名のフックは登録できない。"""
        try:
            hook = HookDefinition(
                name=name, phase=phase, command=command, timeout_seconds=timeout_seconds, required=required
            )
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid hook: {e}") from e

        def _mutate(app: App) -> None:
            if any(h.name == name and h.phase == phase for h in app.pipeline.hooks):
                raise ConfigValidationError(f"Hook '{name}' already exists in phase {phase}")
            app.pipeline.hooks.append(hook)

        await self._update(app_name, _mutate)
        return hook

    async def hook_list(self, app_name: str, phase: HookPhase | None = None) -> list[HookDefinition]:
        app = await self._storage.load_app(app_name)
        return app.pipeline.hooks_for(phase) if phase else list(app.pipeline.hooks)

    async def hook_remove(self, app_name: str, name: str, phase: HookPhase | None = None) -> int:
        """フックを削除し、削除した件数を返す。"""

        def _mutate(app: App) -> int:
            kept = [h for h in app.pipeline.hooks if not (h.name == name and (phase is None or h.phase == phase))]
            removed = len(app.pipeline.hooks) - len(kept)
            if removed == 0:
                raise ConfigValidationError(f"Hook not found: {name}")
            app.pipeline.hooks = kept
            return removed

        _app, removed = await self._update(app_name, _mutate)
        return removed

    async def notify_add(self, app_name: str, channel: ChannelConfig) -> list[str]:
        """通知チャンネルを追加する。同じラベルのチャンネルは置き換える。"""

        def _mutate(app: App) -> list[str]:
            channels = [c for c in app.pipeline.notifications.channels if c.label != channel.label]
            channels.append(channel)
            app.pipeline.notifications.channels = channels
            return [c.label for c in channels]

        _app, labels = await self._update(app_name, _mutate)
        logger.info("Configured %s notifications for %s", channel.label, app_name)
        return labels

    async def notify_remove(self, app_name: str, label: str) -> list[str]:
        """ラベル（slack / discord / email:... など）またはチャンネル種別で通知チャンネルを削除する。"""

        def _mutate(app: App) -> list[str]:
            channels = app.pipeline.notifications.channels
            kept = [c for c in channels if c.label != label and c.type != label]
            if len(kept) == len(channels):
                raise ConfigValidationError(f"Notification channel not found: {label}")
            app.pipeline.notifications.channels = kept
            return [c.label for c in kept]

        _app, labels = await self._update(app_name, _mutate)
        return labels

    async def notify_events(
        self,
        app_name: str,
        label: str | None = None,
        on_start: bool | None = None,
        on_success: bool | None = None,
        on_failure: bool | None = None,
    ) -> dict[str, dict[str, bool]]:
        """チャンネル（省略時は全チャンネル）の購読イベントを変更する。"""
        changes = {
            key: value
            for key, value in {"on_start": on_start, "on_success": on_success, "on_failure": on_failure}.items()
            if value is not None
        }

        def _mutate(app: App) -> dict[str, dict[str, bool]]:
            matched = False
            for channel in app.pipeline.notifications.channels:
                if label is not None and label not in (channel.label, channel.type):
                    continue
                channel.events = NotificationEvents.model_validate({**channel.events.model_dump(), **changes})
                matched = True
            if label is not None and not matched:
                raise ConfigValidationError(f"Notification channel not found: {label}")
            return {c.label: c.events.model_dump() for c in app.pipeline.notifications.channels}

        _app, events = await self._update(app_name, _mutate)
        return events

    async def notify_enable(self, app_name: str, enabled: bool) -> BaseModel:
        return await self._configure(app_name, "notifications", enabled=enabled)

    async def notify_test(self, app_name: str) -> list[dict[str, object]]:
        """全チャンネルにテスト通知を送り、チャンネルごとの結果を返す。"""
        app = await self._storage.load_app(app_name)
        if not app.pipeline.notifications.channels:
            raise ConfigValidationError(f"No notification channels configured for {app_name}")
        return await self._notifications.send_test(app_name, app.pipeline.notifications)

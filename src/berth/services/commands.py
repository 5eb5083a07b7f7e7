"""運用コマンドのディスパッチャ。"""

import logging
from typing import Any, assert_never

from pydantic import BaseModel

from berth.models.commands import (
    ApprovalConfigCommand,
    ApprovalPendingCommand,
    ApproveCommand,
    AuthAddCommand,
    AuthListCommand,
    AuthRemoveCommand,
    AuthUpdateCommand,
    AutodeployDisableCommand,
    AutodeployEnableCommand,
    AutodeployLogsCommand,
    AutodeploySecretCommand,
    AutodeployStatusCommand,
    BlueGreenConfigCommand,
    BuildConfigCommand,
    Command,
    DeployCommand,
    DestroyCommand,
    DomainAddCommand,
    DomainListCommand,
    DomainRemoveCommand,
    EnvCopyCommand,
    EnvEditCommand,
    EnvironmentAddCommand,
    EnvironmentListCommand,
    EnvironmentRemoveCommand,
    EnvListCommand,
    EnvRemoveCommand,
    EnvsCommand,
    EnvSetCommand,
    HookAddCommand,
    HookListCommand,
    HookRemoveCommand,
    InitCommand,
    ListAppsCommand,
    LogsCommand,
    NotifyAddCommand,
    NotifyEnableCommand,
    NotifyEventsCommand,
    NotifyRemoveCommand,
    NotifyTestCommand,
    PipelineShowCommand,
    RateLimitConfigCommand,
    RejectCommand,
    RestartCommand,
    RollbackCommand,
    RollbackConfigCommand,
    RunsCommand,
    ServerInitCommand,
    ServerStatusCommand,
    StartCommand,
    StatusCommand,
    StopCommand,
    TestsConfigCommand,
    UpdateCommand,
    VersionsCommand,
    WebhookInstallCommand,
    WebhookStatusCommand,
    WebhookUninstallCommand,
)
from berth.models.run import DeploymentRun
from berth.services.apps import AppService
from berth.services.approval import ApprovalService
from berth.services.deployment import DeploymentService
from berth.services.server import ServerService
from berth.services.versions import VersionService
from berth.services.webhook import WebhookService

logger = logging.getLogger(__name__)


def to_jsonable(value: Any) -> Any:
    """モデル・リスト・dictをJSONに変換可能な値にする。"""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [to_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {key: to_jsonable(item) for key, item in value.items()}
    return value


def run_result(run: DeploymentRun) -> dict[str, Any]:
    """ランの記録に、運用者向けの要約（失敗時は対処方法）を添えて返す。"""
    result: dict[str, Any] = {"run": run.model_dump(mode="json"), "phase": run.phase}
    if run.failure is not None:
        result["reason"] = run.failure.reason
        result["message"] = run.failure.message
        result["remedy"] = run.failure.remedy
        result["previous_release_serving"] = run.failure.previous_release_serving
    return result


class CommandDispatcher:
    """コマンドを対応するサービス操作に振り分ける。"""

    def __init__(
        self,
        deployment: DeploymentService,
        apps: AppService,
        versions: VersionService,
        approvals: ApprovalService,
        webhook: WebhookService,
        server: ServerService,
    ) -> None:
        self._deployment = deployment
        self._apps = apps
        self._versions = versions
        self._approvals = approvals
        self._webhook = webhook
        self._server = server

    async def _deploy(self, app: str, environment: str, commit: str | None, wait: bool) -> dict[str, Any]:
        run = await self._deployment.start_deployment(app, environment, commit)
        if wait:
            run = await self._deployment.wait(app, run.id)
        return run_result(run)

    async def execute(self, command: Command) -> Any:
        """コマンドを実行し、JSONに変換可能な結果を返す。

        Raises:
            BerthError: 各操作が送出するエラー。
        """
        logger.debug("Executing %s", command.kind)
        match command:
            case ServerInitCommand():
                return await self._server.init()
            case ServerStatusCommand():
                return await self._server.status()
            case WebhookInstallCommand(domain=domain, port=port):
                return await self._server.webhook_install(domain, port)
            case WebhookUninstallCommand():
                return await self._server.webhook_uninstall()
            case WebhookStatusCommand():
                return await self._server.webhook_status()

            case InitCommand(descriptor=descriptor):
                return to_jsonable(await self._apps.init_app(descriptor))
            case ListAppsCommand():
                return {"apps": await self._apps.list_apps()}
            case DeployCommand(app=app, environment=environment, commit=commit, wait=wait):
                return await self._deploy(app, environment, commit, wait)
            case UpdateCommand(app=app, environment=environment, wait=wait):
                return await self._deploy(app, environment, None, wait)
            case StopCommand(app=app):
                return to_jsonable(await self._deployment.stop(app))
            case StartCommand(app=app):
                return to_jsonable(await self._deployment.start(app))
            case RestartCommand(app=app):
                return to_jsonable(await self._deployment.restart(app))
            case StatusCommand(app=app):
                return to_jsonable(await self._deployment.status(app))
            case RunsCommand(app=app, limit=limit):
                return {"runs": to_jsonable(await self._deployment.list_runs(app, limit))}
            case DestroyCommand(app=app, confirm=confirm, keep_data=keep_data, force=force):
                return await self._apps.destroy(app, confirm, keep_data, force)
            case LogsCommand(app=app, service=service, environment=environment, tail=tail, since=since):
                return {"lines": await self._server.logs(app, service, environment, tail, since)}
            case RollbackCommand(app=app, environment=environment, to=to, wait=wait):
                run = await self._deployment.start_rollback(app, environment, to)
                if wait:
                    run = await self._deployment.wait(app, run.id)
                return run_result(run)
            case VersionsCommand(app=app, environment=environment):
                return {"versions": to_jsonable(await self._versions.list_versions(app, environment))}

            case EnvListCommand(app=app, environment=environment):
                return {"variables": await self._apps.env_list(app, environment)}
            case EnvSetCommand(app=app, variables=variables, environment=environment):
                return {"variables": await self._apps.env_set(app, variables, environment)}
            case EnvRemoveCommand(app=app, keys=keys, environment=environment):
                return {"removed": await self._apps.env_remove(app, keys, environment)}
            case EnvEditCommand(app=app, text=text, environment=environment):
                return {"variables": await self._apps.env_edit(app, text, environment)}
            case EnvCopyCommand(app=app, source=source, target=target, overwrite=overwrite):
                return {"variables": await self._apps.env_copy(app, source, target, overwrite)}
            case EnvsCommand(app=app):
                return {"environments": await self._apps.envs(app)}
            case DomainListCommand(app=app):
                return {"domains": to_jsonable(await self._apps.domain_list(app))}
            case DomainAddCommand(app=app, domain=domain, primary=primary):
                return {"domains": to_jsonable(await self._apps.domain_add(app, domain, primary))}
            case DomainRemoveCommand(app=app, domain=domain):
                return {"domains": to_jsonable(await self._apps.domain_remove(app, domain))}
            case AuthListCommand(app=app):
                return {"auth": await self._apps.auth_list(app)}
            case AuthAddCommand(app=app, domain=domain, username=username, password=password):
                return await self._apps.auth_add(app, domain, username, password)
            case AuthUpdateCommand(app=app, domain=domain, username=username, password=password):
                return await self._apps.auth_update(app, domain, username, password)
            case AuthRemoveCommand(app=app, domain=domain):
                return {"removed": await self._apps.auth_remove(app, domain)}

            case AutodeployEnableCommand(app=app, branch=branch):
                return await self._apps.autodeploy_enable(app, branch)
            case AutodeployDisableCommand(app=app):
                return await self._apps.autodeploy_disable(app)
            case AutodeployStatusCommand(app=app):
                return await self._apps.autodeploy_status(app)
            case AutodeploySecretCommand(app=app, regenerate=regenerate):
                return {"secret": await self._apps.autodeploy_secret(app, regenerate)}
            case AutodeployLogsCommand(app=app, limit=limit):
                return {"deliveries": to_jsonable(await self._webhook.logs(app, limit))}
            case EnvironmentAddCommand(app=app, name=name, branch=branch, auto_deploy=auto_deploy, domains=domains):
                return to_jsonable(await self._apps.environment_add(app, name, branch, auto_deploy, domains))
            case EnvironmentListCommand(app=app):
                return {"environments": to_jsonable(await self._apps.environment_list(app))}
            case EnvironmentRemoveCommand(app=app, name=name):
                return {"removed": await self._apps.environment_remove(app, name)}
            case TestsConfigCommand(app=app, enabled=enabled, command=test_command, timeout_seconds=timeout):
                return to_jsonable(await self._apps.set_tests(app, enabled, test_command, timeout))
            case HookAddCommand() as hook:
                return to_jsonable(
                    await self._apps.hook_add(
                        hook.app, hook.name, hook.phase, hook.command, hook.timeout_seconds, hook.required
                    )
                )
            case HookListCommand(app=app, phase=phase):
                return {"hooks": to_jsonable(await self._apps.hook_list(app, phase))}
            case HookRemoveCommand(app=app, name=name, phase=phase):
                return {"removed": await self._apps.hook_remove(app, name, phase)}
            case BlueGreenConfigCommand(app=app, enabled=enabled, keep_old_seconds=keep_old):
                return to_jsonable(await self._apps.set_blue_green(app, enabled, keep_old))
            case RollbackConfigCommand(app=app, enabled=enabled, auto_rollback=auto, keep_versions=keep):
                return to_jsonable(await self._apps.set_rollback(app, enabled, auto, keep))
            case ApprovalConfigCommand(app=app, enabled=enabled, timeout_minutes=timeout):
                return to_jsonable(await self._apps.set_approval(app, enabled, timeout))
            case BuildConfigCommand(app=app, cache_enabled=cache_enabled, buildkit=buildkit, cache_from=cache_from):
                return to_jsonable(await self._apps.set_build(app, cache_enabled, buildkit, cache_from))
            case RateLimitConfigCommand() as rate:
                return to_jsonable(
                    await self._apps.set_rate_limit(
                        rate.app, rate.enabled, rate.max_deploys, rate.window_seconds, rate.apply_to_manual
                    )
                )
            case ApprovalPendingCommand(app=app):
                return {"pending": to_jsonable(self._approvals.pending(app))}
            case ApproveCommand(app=app, approval_id=approval_id, decided_by=decided_by):
                return to_jsonable(await self._approvals.approve(app, approval_id, decided_by))
            case RejectCommand(app=app, approval_id=approval_id, decided_by=decided_by):
                return to_jsonable(await self._approvals.reject(app, approval_id, decided_by))
            case NotifyAddCommand(app=app, channel=channel):
                return {"channels": await self._apps.notify_add(app, channel)}
            case NotifyRemoveCommand(app=app, label=label):
                return {"channels": await self._apps.notify_remove(app, label)}
            case NotifyEventsCommand() as events:
                return {
                    "events": await self._apps.notify_events(
                        events.app, events.label, events.on_start, events.on_success, events.on_failure
                    )
                }
            case NotifyEnableCommand(app=app, enabled=enabled):
                return to_jsonable(await self._apps.notify_enable(app, enabled))
            case NotifyTestCommand(app=app):
                return {"results": await self._apps.notify_test(app)}
            case PipelineShowCommand(app=app):
                return await self._apps.pipeline_config(app)
            case _:
                assert_never(command)

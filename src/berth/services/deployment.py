"""デプロイのステートマシン。

1回のリリースを build → gate → 新インスタンス起動 → ヘルスチェック → ルート切り替え →
旧インスタンス退役 の順に進め、失敗時はon_failureフックと（条件を満たせば）自動ロールバックで
終端状態に回収する。アプリ単位のロックで同時に実行中のランを高々1つに保ち、
ルーティングテーブルの書き換えは全アプリでグローバルに直列化する。
"""

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from berth.models.app import PRODUCTION, App, AppStatusReport, HealthCheckSpec, InstanceHandle, StandbyInstance
from berth.models.errors import (
    AlreadyDeployingError,
    AppNotFoundError,
    BuildFailureError,
    DeploymentInProgressError,
    EnvironmentNotFoundError,
    HealthCheckTimeoutError,
    InstanceStartError,
    PipelineError,
    RepositoryError,
    RoutingUpdateFailureError,
    RuntimeOperationError,
)
from berth.models.notification import EventKind, EventStatus, LifecycleEvent
from berth.models.pipeline import PipelineConfig
from berth.models.release import Release
from berth.models.run import ROLLOUT_PHASES, TERMINAL_PHASES, DeploymentRun, Phase, PhaseOutcome, RunFailure, Trigger
from berth.providers.repository import Repository
from berth.providers.routing import Router
from berth.providers.runtime import Runtime
from berth.services.approval import ApprovalService
from berth.services.hooks import HookRunner
from berth.services.notifications import NotificationService
from berth.services.ratelimit import RateLimiter
from berth.services.versions import VersionService
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)


def new_run_id() -> str:
    return f"dep-{int(time.time() * 1000):x}{secrets.token_hex(2)}"


def new_release_id() -> str:
    return f"rel-{int(time.time() * 1000):x}{secrets.token_hex(2)}"


@dataclass
class _RunContext:
    """実行中のランの作業状態。PipelineConfigはラン開始時のスナップショット。"""

    app: App
    run: DeploymentRun
    release: Release
    config: PipelineConfig
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None
    branch: str | None = None
    triggered_by: str | None = None
    started: float = field(default_factory=time.monotonic)
    new_handle: InstanceHandle | None = None
    reused_standby: bool = False
    switched: bool = False
    failed_phase: Phase | None = None


class DeploymentService:
    """デプロイ・ロールバック・手動ライフサイクル操作を扱う。"""

    def __init__(
        self,
        storage: StorageService,
        runtime: Runtime,
        router: Router,
        repository: Repository,
        hooks: HookRunner,
        versions: VersionService,
        approvals: ApprovalService,
        notifications: NotificationService,
        rate_limiter: RateLimiter,
        health_backoff_factor: float = 1.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._storage = storage
        self._runtime = runtime
        self._router = router
        self._repository = repository
        self._hooks = hooks
        self._versions = versions
        self._approvals = approvals
        self._notifications = notifications
        self._rate_limiter = rate_limiter
        self._backoff = health_backoff_factor
        self._sleep = sleep
        # アプリ単位の排他ロック（パイプライン全体の間保持する）
        self._app_locks: dict[str, asyncio.Lock] = {}
        # ルーティングテーブルは全アプリ共有のためグローバルに直列化する
        self._switch_lock = asyncio.Lock()
        self._active_runs: dict[str, str] = {}
        self._tasks: dict[str, asyncio.Task[DeploymentRun]] = {}
        self._retirements: dict[str, asyncio.Task[None]] = {}

    def _get_app_lock(self, app_name: str) -> asyncio.Lock:
        """アプリ単位のasyncio.Lockを取得する。"""
        if app_name not in self._app_locks:
            self._app_locks[app_name] = asyncio.Lock()
        return self._app_locks[app_name]

    def is_deploying(self, app_name: str) -> bool:
        return self._get_app_lock(app_name).locked()

    def active_run_id(self, app_name: str) -> str | None:
        return self._active_runs.get(app_name)

    # ------------------------------------------------------------------
    # 受付
    # ------------------------------------------------------------------

    async def start_deployment(
        self,
        app_name: str,
        environment: str = PRODUCTION,
        commit: str | None = None,
        trigger: Trigger = "manual",
        message: str | None = None,
        triggered_by: str | None = None,
        branch: str | None = None,
    ) -> DeploymentRun:
        """デプロイを受け付け、パイプラインをバックグラウンドで開始する。

        Args:
            app_name: アプリ名。
            environment: デプロイ先の環境名。
            commit: デプロイするコミット。省略時は環境のブランチの先頭を解決する。
            trigger: 起点（manual / webhook）。
            message: コミットメッセージ（通知用）。
            triggered_by: 起点となったユーザー名。
            branch: pushされたブランチ名（通知用）。

        Returns:
            作成されたDeploymentRun（phase=queued）。

        Raises:
            AppNotFoundError: アプリが存在しない場合。
            EnvironmentNotFoundError: 環境が存在しない場合。
            AlreadyDeployingError: 実行中のランがある場合。リリースもランも作成しない。
            RateLimitExceededError: 手動デプロイにもレート制限を適用する設定で上限に達した場合。
            RepositoryError: コミットを解決できない場合。
        """
        app = await self._storage.load_app(app_name)
        env = app.environments.get(environment)
        if env is None:
            raise EnvironmentNotFoundError(app_name, environment)

        lock = self._get_app_lock(app_name)
        if lock.locked():
            raise AlreadyDeployingError(app_name, self._active_runs.get(app_name))
        await lock.acquire()

        stamp = None
        try:
            app = await self._storage.load_app(app_name)
            if trigger == "manual":
                stamp = self._rate_limiter.admit_manual(app_name, app.pipeline.rate_limit)

            if commit is None:
                commit = await self._repository.resolve_commit(app_name, env.branch)
            if message is None:
                try:
                    message = await self._repository.commit_message(app_name, commit)
                except RepositoryError:
                    message = ""

            previous_id = app.active_releases.get(environment)
            release = Release(
                id=new_release_id(),
                app=app_name,
                environment=environment,
                commit=commit,
                predecessor_id=previous_id,
                commit_message=message,
                triggered_by=triggered_by,
            )
            run = DeploymentRun(
                id=new_run_id(),
                app=app_name,
                environment=environment,
                release_id=release.id,
                trigger=trigger,
                previous_release_id=previous_id,
            )
            await self._storage.put_release(release)
            await self._storage.save_run(run)
        except BaseException:
            lock.release()
            self._rate_limiter.revoke(app_name, stamp)
            raise

        ctx = _RunContext(
            app=app,
            run=run,
            release=release,
            config=app.pipeline.model_copy(deep=True),
            branch=branch or env.branch,
            triggered_by=triggered_by,
        )
        self._launch(ctx, lock)
        return run

    async def start_rollback(
        self,
        app_name: str,
        environment: str = PRODUCTION,
        commit: str | None = None,
        triggered_by: str | None = None,
    ) -> DeploymentRun:
        """保持中のリリースへのロールバックを受け付ける。

        対象リリースの成果物を使い、starting以降の同じプロトコル（ヘルスチェック付き切り替え）を通す。
        新しいリリースは作成しない。

        Raises:
            RollbackNotFoundError: 対象が保持範囲に存在しない場合。状態は変更しない。
            AlreadyDeployingError: 実行中のランがある場合。
        """
        app = await self._storage.load_app(app_name)
        if environment not in app.environments:
            raise EnvironmentNotFoundError(app_name, environment)

        lock = self._get_app_lock(app_name)
        if lock.locked():
            raise AlreadyDeployingError(app_name, self._active_runs.get(app_name))
        await lock.acquire()

        try:
            # ロック取得前に完了したランが有効リリースを変えている可能性があるため読み直す
            app = await self._storage.load_app(app_name)
            active_id = app.active_releases.get(environment)
            target = await self._versions.resolve_target(app_name, environment, active_id, commit)
            run = DeploymentRun(
                id=new_run_id(),
                app=app_name,
                environment=environment,
                release_id=target.id,
                trigger="rollback",
                previous_release_id=active_id,
            )
            await self._storage.save_run(run)
        except BaseException:
            lock.release()
            raise

        ctx = _RunContext(
            app=app,
            run=run,
            release=target,
            config=app.pipeline.model_copy(deep=True),
            branch=app.environments[environment].branch,
            triggered_by=triggered_by,
        )
        self._launch(ctx, lock)
        return run

    def _launch(self, ctx: _RunContext, lock: asyncio.Lock) -> None:
        self._active_runs[ctx.run.app] = ctx.run.id
        self._publish(ctx, "on_start", "started")
        task = asyncio.get_running_loop().create_task(self._execute(ctx, lock))
        self._tasks[ctx.run.id] = task

    async def _execute(self, ctx: _RunContext, lock: asyncio.Lock) -> DeploymentRun:
        try:
            return await self._run_pipeline(ctx)
        finally:
            self._active_runs.pop(ctx.run.app, None)
            self._tasks.pop(ctx.run.id, None)
            lock.release()

    async def wait(self, app_name: str, run_id: str) -> DeploymentRun:
        """ランが終端状態になるまで待ち、その記録を返す。"""
        task = self._tasks.get(run_id)
        if task is not None:
            return await asyncio.shield(task)
        run = await self._storage.load_run(app_name, run_id)
        if run is None:
            raise ValueError(f"Run not found: {run_id}")
        return run

    async def deploy(
        self,
        app_name: str,
        environment: str = PRODUCTION,
        commit: str | None = None,
        trigger: Trigger = "manual",
    ) -> DeploymentRun:
        """デプロイを開始し、終端状態まで待つ。"""
        run = await self.start_deployment(app_name, environment, commit, trigger)
        return await self.wait(app_name, run.id)

    async def rollback(self, app_name: str, environment: str = PRODUCTION, commit: str | None = None) -> DeploymentRun:
        """ロールバックを開始し、終端状態まで待つ。"""
        run = await self.start_rollback(app_name, environment, commit)
        return await self.wait(app_name, run.id)

    # ------------------------------------------------------------------
    # パイプライン
    # ------------------------------------------------------------------

    async def _run_pipeline(self, ctx: _RunContext) -> DeploymentRun:
        ctx.env = await self._storage.load_env(ctx.run.app, ctx.run.environment)
        ctx.env.update(
            {"BERTH_APP": ctx.run.app, "BERTH_ENVIRONMENT": ctx.run.environment, "BERTH_COMMIT": ctx.release.commit}
        )
        ctx.cwd = self._repository.checkout_dir(ctx.run.app)
        config = ctx.config
        try:
            if ctx.run.trigger != "rollback":
                await self._phase(ctx, "pre_build", self._pre_build, skip=not config.hooks_for("pre_build"))
                await self._phase(ctx, "building", self._build)
                await self._phase(ctx, "test_gate", self._test_gate, skip=not config.tests.enabled)
                await self._phase(ctx, "pre_deploy", self._pre_deploy, skip=not config.hooks_for("pre_deploy"))
                if config.approval.enabled:
                    await self._phase(ctx, "approval_wait", self._approval_wait)
            await self._phase(ctx, "starting", self._start)
            await self._phase(ctx, "health_checking", self._health_check)
            await self._phase(ctx, "switching", self._switch)
            await self._phase(ctx, "post_deploy", self._post_deploy, skip=not config.hooks_for("post_deploy"))
            await self._complete(ctx)
        except PipelineError as e:
            await self._fail(ctx, e.reason, str(e))
        except Exception as e:
            logger.exception("Unexpected error in run %s", ctx.run.id, extra=self._log_extra(ctx))
            if ctx.new_handle is not None and not ctx.switched and not ctx.reused_standby:
                await self._discard(ctx.new_handle)
            await self._fail(ctx, "InternalError", str(e) or type(e).__name__)
        return ctx.run

    def _log_extra(self, ctx: _RunContext) -> dict[str, str]:
        return {"app": ctx.run.app, "run_id": ctx.run.id}

    async def _phase(
        self,
        ctx: _RunContext,
        phase: Phase,
        step: Callable[[_RunContext], Awaitable[str]],
        skip: bool = False,
    ) -> None:
        ctx.run.phase = phase
        outcome = PhaseOutcome(phase=phase, status="skipped" if skip else "succeeded")
        ctx.run.outcomes.append(outcome)
        if skip:
            outcome.finished_at = outcome.started_at
            await self._storage.save_run(ctx.run)
            return
        await self._storage.save_run(ctx.run)
        logger.info("Run %s entered %s", ctx.run.id, phase, extra=self._log_extra(ctx))
        try:
            outcome.detail = await step(ctx)
        except Exception as e:
            outcome.status = "failed"
            outcome.detail = str(e)
            ctx.failed_phase = phase
            raise
        finally:
            outcome.finished_at = datetime.now(UTC)

    async def _pre_build(self, ctx: _RunContext) -> str:
        results = await self._hooks.run_phase("pre_build", ctx.config.hooks_for("pre_build"), ctx.cwd, ctx.env)
        return f"{len(results)} hook(s) run"

    async def _build(self, ctx: _RunContext) -> str:
        try:
            artifact = await self._repository.fetch_artifact_for(ctx.run.app, ctx.release.commit, ctx.config.build)
        except (RepositoryError, RuntimeOperationError) as e:
            raise BuildFailureError(str(e)) from e
        # 成果物の参照はビルド時に一度だけ確定する
        ctx.release = ctx.release.model_copy(update={"artifact": artifact})
        await self._storage.put_release(ctx.release)
        return artifact

    async def _test_gate(self, ctx: _RunContext) -> str:
        await self._hooks.run_tests(ctx.config.tests, ctx.cwd, ctx.env)
        return f"'{ctx.config.tests.command}' passed"

    async def _pre_deploy(self, ctx: _RunContext) -> str:
        results = await self._hooks.run_phase("pre_deploy", ctx.config.hooks_for("pre_deploy"), ctx.cwd, ctx.env)
        return f"{len(results)} hook(s) run"

    async def _approval_wait(self, ctx: _RunContext) -> str:
        request = await self._approvals.open(ctx.run, ctx.release.commit, ctx.config.approval)
        ctx.run.approval_id = request.id
        await self._storage.save_run(ctx.run)
        self._publish(ctx, "on_start", "awaiting_approval")
        await self._approvals.wait(request, ctx.config.approval)
        return f"approved ({request.id})"

    async def _start(self, ctx: _RunContext) -> str:
        app = await self._storage.load_app(ctx.run.app)
        standby = app.standby.get(ctx.run.environment)
        if (
            standby is not None
            and standby.handle.release_id == ctx.release.id
            and await self._runtime.is_running(standby.handle)
        ):
            # ロールバック対象の旧インスタンスがまだ稼働中ならそのまま使う
            ctx.new_handle = standby.handle
            ctx.reused_standby = True
            return f"reusing warm instance {standby.handle.id}"

        ctx.new_handle = await self._start_instance(app, ctx.run.environment, ctx.release, ctx.env)
        return f"started {ctx.new_handle.id}"

    async def _start_instance(
        self, app: App, environment: str, release: Release, env: dict[str, str]
    ) -> InstanceHandle:
        """サービスを確保し、リリースから新インスタンスを起動する。既存インスタンスは止めない。"""
        try:
            app_secrets = await self._storage.load_secrets(app.name)
            service_env = await self._runtime.ensure_services(app, app_secrets)
            return await self._runtime.start_instance(app, environment, release, {**service_env, **env})
        except RuntimeOperationError as e:
            raise InstanceStartError(str(e)) from e

    async def _wait_healthy(self, spec: HealthCheckSpec, handle: InstanceHandle) -> tuple[bool, int]:
        """ヘルスチェックを最大retries回行う。待機間隔はinterval × backoff^(n-1)、合計はtimeout以内。

        Returns:
            (ヘルシーになったか, 試行回数) のタプル。
        """
        waited = 0.0
        attempt = 0
        for attempt in range(1, spec.retries + 1):
            try:
                if await self._runtime.check_health(handle, spec):
                    return True, attempt
            except RuntimeOperationError as e:
                logger.debug("Health check error for %s: %s", handle.id, e)
            if attempt == spec.retries:
                break
            delay = spec.interval * self._backoff ** (attempt - 1)
            if waited + delay > spec.timeout:
                break
            await self._sleep(delay)
            waited += delay
        return False, attempt

    async def _health_check(self, ctx: _RunContext) -> str:
        assert ctx.new_handle is not None
        healthy, attempts = await self._wait_healthy(ctx.app.healthcheck, ctx.new_handle)
        if healthy:
            return f"healthy after {attempts} attempt(s)"
        handle = ctx.new_handle
        if not ctx.reused_standby:
            # 新インスタンスのみ破棄し、稼働中の旧インスタンスには触れない
            await self._discard(handle)
        raise HealthCheckTimeoutError(handle.id, attempts)

    async def _switch(self, ctx: _RunContext) -> str:
        assert ctx.new_handle is not None
        try:
            await self._route(ctx.app, ctx.run.environment, ctx.new_handle)
        except RoutingUpdateFailureError:
            if not ctx.reused_standby:
                await self._discard(ctx.new_handle)
            raise
        ctx.switched = True
        await self._promote(ctx.run.app, ctx.run.environment, ctx.new_handle, ctx.release.id, ctx.config)
        return f"routing to {ctx.new_handle.id}"

    async def _route(self, app: App, environment: str, handle: InstanceHandle) -> None:
        """ルーティングテーブルを新しいインスタンスに向ける（グローバルに直列化）。

        Raises:
            RoutingUpdateFailureError: 書き込みに失敗した場合。以前のルートはそのまま残る。
        """
        app_secrets = await self._storage.load_secrets(app.name)
        domains = app.domains_for(environment)
        auth = {domain: line for domain, line in app_secrets.auth.items() if domain in domains}
        async with self._switch_lock:
            try:
                await self._router.set_route(app.name, environment, domains, handle, auth)
            except OSError as e:
                raise RoutingUpdateFailureError(f"Failed to update route for {app.name}: {e}") from e

    async def _promote(
        self, app_name: str, environment: str, handle: InstanceHandle, release_id: str, config: PipelineConfig
    ) -> None:
        """切り替え後の状態を記録し、旧インスタンスを待機または退役させる。"""
        keep_old = config.blue_green.keep_old_seconds if config.blue_green.enabled else 0
        retire_at = datetime.now(UTC) + timedelta(seconds=keep_old)
        displaced: list[InstanceHandle] = []

        def _mutate(app: App) -> StandbyInstance | None:
            old = app.instances.get(environment)
            previous_standby = app.standby.pop(environment, None)
            if previous_standby is not None and previous_standby.handle.id != handle.id:
                displaced.append(previous_standby.handle)
            app.instances[environment] = handle
            app.active_releases[environment] = release_id
            app.status = "running"
            app.deployed_at = datetime.now(UTC)
            if old is None or old.id == handle.id:
                return None
            if keep_old == 0:
                displaced.append(old)
                return None
            standby = StandbyInstance(handle=old, retire_at=retire_at)
            app.standby[environment] = standby
            return standby

        _app, standby = await self._storage.update_app(app_name, _mutate)
        for old_handle in displaced:
            await self._discard(old_handle)
        if standby is not None:
            self._schedule_retirement(app_name, environment, standby)

    async def _post_deploy(self, ctx: _RunContext) -> str:
        results = await self._hooks.run_phase("post_deploy", ctx.config.hooks_for("post_deploy"), ctx.cwd, ctx.env)
        return f"{len(results)} hook(s) run"

    async def _complete(self, ctx: _RunContext) -> None:
        run = ctx.run
        if run.trigger == "rollback" and run.previous_release_id and run.previous_release_id != ctx.release.id:
            await self._storage.set_release_status(run.app, run.previous_release_id, "rolled_back")
        await self._storage.set_release_status(run.app, ctx.release.id, "healthy")
        run.phase = "completed"
        run.finished_at = datetime.now(UTC)
        await self._storage.save_run(run)
        logger.info("Run %s completed", run.id, extra=self._log_extra(ctx))
        await self._prune(run.app, run.environment, ctx.config.rollback.keep_versions)
        self._publish(ctx, "on_success", "succeeded")

    async def _prune(self, app_name: str, environment: str, keep_versions: int) -> list[str]:
        app = await self._storage.load_app(app_name)
        protected = {standby.handle.release_id for standby in app.standby.values()}
        return await self._versions.prune(
            app_name, environment, app.active_releases.get(environment), keep_versions, protected
        )

    # ------------------------------------------------------------------
    # 失敗・自動ロールバック
    # ------------------------------------------------------------------

    def _auto_rollback_applies(self, ctx: _RunContext) -> bool:
        rollback = ctx.config.rollback
        return (
            rollback.enabled
            and rollback.auto_rollback
            and ctx.run.trigger != "rollback"
            and ctx.failed_phase in ROLLOUT_PHASES
            and ctx.run.previous_release_id is not None
        )

    async def _fail(self, ctx: _RunContext, reason: str, message: str) -> None:
        run = ctx.run
        run.failure = RunFailure(reason=reason, message=message)
        logger.warning("Run %s failed: %s (%s)", run.id, reason, message, extra=self._log_extra(ctx))

        run.phase = "on_failure_hooks"
        outcome = PhaseOutcome(phase="on_failure_hooks", status="succeeded")
        run.outcomes.append(outcome)
        await self._storage.save_run(run)
        results = await self._hooks.run_on_failure(ctx.config.hooks_for("on_failure"), ctx.cwd, ctx.env)
        failed_hooks = [r.name for r in results if not r.ok]
        outcome.detail = f"{len(results)} hook(s) run" + (f", failed: {', '.join(failed_hooks)}" if failed_hooks else "")
        outcome.finished_at = datetime.now(UTC)

        if run.trigger != "rollback":
            await self._storage.set_release_status(run.app, ctx.release.id, "failed")

        terminal: Phase = "failed"
        if self._auto_rollback_applies(ctx):
            run.phase = "rolling_back"
            await self._storage.save_run(run)
            try:
                detail = await self._restore_previous(ctx)
                run.outcomes.append(
                    PhaseOutcome(phase="rolling_back", status="succeeded", detail=detail, finished_at=datetime.now(UTC))
                )
                terminal = "rolled_back"
            except Exception as e:
                logger.exception("Automatic rollback of %s failed", run.app, extra=self._log_extra(ctx))
                run.outcomes.append(
                    PhaseOutcome(phase="rolling_back", status="failed", detail=str(e), finished_at=datetime.now(UTC))
                )

        app = await self._storage.load_app(run.app)
        serving = app.instances.get(run.environment)
        previous_serving = serving is not None and serving.release_id != ctx.release.id
        if run.trigger == "rollback":
            previous_serving = serving is not None and serving.release_id == run.previous_release_id
        run.failure.previous_release_serving = previous_serving
        run.failure.remedy = await self._remedy(ctx, previous_serving)

        run.phase = terminal
        run.finished_at = datetime.now(UTC)
        await self._storage.save_run(run)
        self._publish(ctx, "on_failure", "rolled_back" if terminal == "rolled_back" else "failed", error=message)

    async def _remedy(self, ctx: _RunContext, previous_serving: bool) -> str:
        app_name = ctx.run.app
        env_flag = "" if ctx.run.environment == PRODUCTION else f" --env {ctx.run.environment}"
        if previous_serving:
            app = await self._storage.load_app(app_name)
            serving_id = app.active_releases.get(ctx.run.environment)
            serving = await self._versions.get(app_name, serving_id) if serving_id else None
            label = f" ({serving.commit})" if serving else ""
            remedy = (
                f"The previous release{label} is still serving. "
                f"Fix the problem and retry with `update {app_name}{env_flag}`"
            )
            prior = (
                await self._versions.get(app_name, serving.predecessor_id)
                if serving is not None and serving.predecessor_id
                else None
            )
            if prior is None:
                return f"{remedy}."
            return f"{remedy}, or roll back with `rollback {app_name}{env_flag} --to {prior.commit}`."
        if ctx.switched:
            return (
                f"The new release is serving but the pipeline did not finish. "
                f"Roll back with `rollback {app_name}{env_flag}` if it misbehaves."
            )
        return f"No release is serving. Fix the problem and retry with `deploy {app_name}{env_flag}`."

    async def _restore_previous(self, ctx: _RunContext) -> str:
        """直前の正常なリリースを再昇格させる（ヘルスチェック付き）。"""
        run = ctx.run
        assert run.previous_release_id is not None
        previous = await self._versions.get(run.app, run.previous_release_id)
        if previous is None:
            raise RuntimeOperationError(f"Previous release {run.previous_release_id} is no longer retained")

        app = await self._storage.load_app(run.app)
        current = app.instances.get(run.environment)
        if current is not None and current.release_id == previous.id and await self._runtime.is_running(current):
            return f"previous release {previous.commit} still serving"

        standby = app.standby.get(run.environment)
        if (
            standby is not None
            and standby.handle.release_id == previous.id
            and await self._runtime.is_running(standby.handle)
        ):
            handle = standby.handle
        else:
            handle = await self._start_instance(app, run.environment, previous, ctx.env)
            healthy, attempts = await self._wait_healthy(app.healthcheck, handle)
            if not healthy:
                await self._discard(handle)
                raise HealthCheckTimeoutError(handle.id, attempts)

        await self._route(app, run.environment, handle)
        no_keep = ctx.config.model_copy(update={"blue_green": ctx.config.blue_green.model_copy(update={"enabled": False})})
        await self._promote(run.app, run.environment, handle, previous.id, no_keep)
        return f"re-promoted {previous.commit} on {handle.id}"

    async def _discard(self, handle: InstanceHandle) -> None:
        try:
            await self._runtime.stop_instance(handle)
        except RuntimeOperationError as e:
            logger.warning("Failed to remove instance %s: %s", handle.id, e)

    # ------------------------------------------------------------------
    # 旧インスタンスの退役
    # ------------------------------------------------------------------

    def _schedule_retirement(self, app_name: str, environment: str, standby: StandbyInstance) -> None:
        key = f"{app_name}/{environment}"
        existing = self._retirements.pop(key, None)
        if existing is not None and not existing.done():
            existing.cancel()
        delay = max((standby.retire_at - datetime.now(UTC)).total_seconds(), 0.0)
        self._retirements[key] = asyncio.get_running_loop().create_task(
            self._retire_later(app_name, environment, standby.handle.id, delay)
        )

    async def _retire_later(self, app_name: str, environment: str, instance_id: str, delay: float) -> None:
        await self._sleep(delay)
        try:
            await self.retire_standby(app_name, environment, instance_id)
        except AppNotFoundError:
            logger.debug("App %s was removed before its standby instance retired", app_name)
        finally:
            key = f"{app_name}/{environment}"
            if self._retirements.get(key) is asyncio.current_task():
                del self._retirements[key]

    async def retire_standby(self, app_name: str, environment: str, instance_id: str | None = None) -> bool:
        """待機中の旧インスタンスを停止し、保留していたリリースの削除を行う。"""

        def _mutate(app: App) -> StandbyInstance | None:
            standby = app.standby.get(environment)
            if standby is None or (instance_id is not None and standby.handle.id != instance_id):
                return None
            return app.standby.pop(environment)

        app, standby = await self._storage.update_app(app_name, _mutate)
        if standby is None:
            return False
        await self._discard(standby.handle)
        logger.info("Retired standby instance %s of %s/%s", standby.handle.id, app_name, environment)
        await self._prune(app_name, environment, app.pipeline.rollback.keep_versions)
        return True

    # ------------------------------------------------------------------
    # 手動ライフサイクル操作
    # ------------------------------------------------------------------

    def _guard(self, app_name: str, operation: str) -> asyncio.Lock:
        lock = self._get_app_lock(app_name)
        if lock.locked():
            raise DeploymentInProgressError(app_name, operation)
        return lock

    async def stop(self, app_name: str) -> App:
        """アプリの全インスタンスを停止し、ルートを外す。

        Raises:
            DeploymentInProgressError: 実行中のランがある場合。
        """
        lock = self._guard(app_name, "stop")
        async with lock:
            app = await self._storage.load_app(app_name)
            for environment, handle in app.instances.items():
                async with self._switch_lock:
                    await self._router.remove_route(app_name, environment)
                await self._discard(handle)
            for standby in app.standby.values():
                await self._discard(standby.handle)

            def _mutate(app: App) -> None:
                app.instances.clear()
                app.standby.clear()
                app.status = "stopped"

            updated, _ = await self._storage.update_app(app_name, _mutate)
            logger.info("Stopped %s", app_name)
            return updated

    async def start(self, app_name: str) -> App:
        """停止中のアプリをアクティブなリリースから起動する。

        Raises:
            DeploymentInProgressError: 実行中のランがある場合。
            HealthCheckTimeoutError: 起動したインスタンスがヘルシーにならなかった場合。
        """
        lock = self._guard(app_name, "start")
        async with lock:
            app = await self._storage.load_app(app_name)
            for environment in app.active_releases:
                handle = app.instances.get(environment)
                if handle is not None and await self._runtime.is_running(handle):
                    continue
                await self._relaunch(app, environment)
            updated, _ = await self._storage.update_app(app_name, lambda a: setattr(a, "status", "running"))
            logger.info("Started %s", app_name)
            return updated

    async def restart(self, app_name: str) -> App:
        """アクティブなリリースのインスタンスを入れ替える。新インスタンスがヘルシーになってから切り替える。

        Raises:
            DeploymentInProgressError: 実行中のランがある場合。
        """
        lock = self._guard(app_name, "restart")
        async with lock:
            app = await self._storage.load_app(app_name)
            for environment in app.active_releases:
                await self._relaunch(app, environment)
            updated, _ = await self._storage.update_app(app_name, lambda a: setattr(a, "status", "running"))
            logger.info("Restarted %s", app_name)
            return updated

    async def reroute(self, app_name: str) -> list[str]:
        """稼働中のインスタンスに対してルートを再適用する（ドメイン・認証設定の変更後に使う）。

        Returns:
            ルートを再適用した環境名のリスト。
        """
        app = await self._storage.load_app(app_name)
        if app.status != "running":
            return []
        for environment, handle in app.instances.items():
            await self._route(app, environment, handle)
        return sorted(app.instances)

    async def _relaunch(self, app: App, environment: str) -> InstanceHandle:
        release = await self._versions.get(app.name, app.active_releases[environment])
        if release is None:
            raise RuntimeOperationError(f"Active release of {app.name}/{environment} is missing")
        env = await self._storage.load_env(app.name, environment)
        handle = await self._start_instance(app, environment, release, env)
        healthy, attempts = await self._wait_healthy(app.healthcheck, handle)
        if not healthy:
            await self._discard(handle)
            raise HealthCheckTimeoutError(handle.id, attempts)
        await self._route(app, environment, handle)
        no_keep = app.pipeline.model_copy(
            update={"blue_green": app.pipeline.blue_green.model_copy(update={"enabled": False})}
        )
        await self._promote(app.name, environment, handle, release.id, no_keep)
        return handle

    # ------------------------------------------------------------------
    # 参照・復旧
    # ------------------------------------------------------------------

    async def list_runs(self, app_name: str, limit: int | None = None) -> list[DeploymentRun]:
        """ランを新しい順に返す。"""
        runs = list(reversed(await self._storage.list_runs(app_name)))
        return runs[:limit] if limit is not None else runs

    async def status(self, app_name: str) -> AppStatusReport:
        """アプリの状態・アクティブなリリース・稼働中のインスタンス・ランを返す。"""
        app = await self._storage.load_app(app_name)
        runs = await self.list_runs(app_name)
        current = next((run for run in runs if run.phase not in TERMINAL_PHASES), None)
        last = next((run for run in runs if run.phase in TERMINAL_PHASES), None)
        releases = await self._storage.load_releases(app_name)
        return AppStatusReport(
            app=app.name,
            status=app.status,
            deploying=self.is_deploying(app_name),
            active_releases={
                env: releases[release_id].commit if release_id in releases else release_id
                for env, release_id in app.active_releases.items()
            },
            instances={env: handle.id for env, handle in app.instances.items()},
            standby={env: standby.handle.id for env, standby in app.standby.items()},
            current_run=current.model_dump(mode="json") if current else None,
            last_run=last.model_dump(mode="json") if last else None,
        )

    async def recover(self) -> int:
        """クラッシュで非終端のまま残ったランを失敗として回収し、待機中の旧インスタンスの退役を再設定する。

        Returns:
            回収したランの数。
        """
        recovered = 0
        for app_name in await self._storage.list_apps():
            for run in await self._storage.list_runs(app_name):
                if run.phase in TERMINAL_PHASES or run.id in self._tasks:
                    continue
                run.failure = RunFailure(reason="Interrupted", message="Server stopped while the run was in progress")
                run.phase = "failed"
                run.finished_at = datetime.now(UTC)
                await self._storage.save_run(run)
                if run.trigger != "rollback":
                    await self._storage.set_release_status(app_name, run.release_id, "failed")
                recovered += 1
                logger.warning("Recovered interrupted run %s of %s", run.id, app_name)
            await self._approvals.expire_stale(app_name)
            app = await self._storage.load_app(app_name)
            for environment, standby in app.standby.items():
                self._schedule_retirement(app_name, environment, standby)
        return recovered

    def _publish(self, ctx: _RunContext, kind: EventKind, status: EventStatus, error: str | None = None) -> None:
        event = LifecycleEvent(
            kind=kind,
            app=ctx.run.app,
            environment=ctx.run.environment,
            run_id=ctx.run.id,
            commit=ctx.release.commit,
            branch=ctx.branch,
            status=status,
            message=ctx.release.commit_message or "",
            error=error,
            triggered_by=ctx.triggered_by or ctx.run.trigger,
            duration_seconds=None if kind == "on_start" else time.monotonic() - ctx.started,
        )
        self._notifications.publish(event, ctx.config.notifications)

    async def close(self) -> None:
        """退役待ちのタスクを停止する（旧インスタンスは次回起動時に再設定される）。"""
        for task in self._retirements.values():
            task.cancel()
        self._retirements.clear()

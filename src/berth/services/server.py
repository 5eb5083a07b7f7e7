"""サーバー全体の初期化・状態確認と、Webhookリスナーのルート管理。"""

import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any, Literal

from berth.config import ServerConfig
from berth.models.app import PRODUCTION
from berth.models.errors import ConfigValidationError
from berth.providers.routing import TraefikRouter
from berth.providers.runtime import Runtime, cache_container_name, db_container_name
from berth.services.approval import ApprovalService
from berth.services.deployment import DeploymentService
from berth.storage.service import StorageService

logger = logging.getLogger(__name__)

LogService = Literal["web", "db", "cache"]


class ServerService:
    """server / webhook / logs コマンドを扱う。"""

    def __init__(
        self,
        storage: StorageService,
        runtime: Runtime,
        router: TraefikRouter,
        deployment: DeploymentService,
        approvals: ApprovalService,
        config: ServerConfig,
    ) -> None:
        self._storage = storage
        self._runtime = runtime
        self._router = router
        self._deployment = deployment
        self._approvals = approvals
        self._config = config

    async def init(self) -> dict[str, Any]:
        """データディレクトリとルーティングディレクトリを作成し、server.jsonを書き出す。

        既に初期化済みの場合は既存の記録を返す。
        """
        record = await self._storage.load_server_record()
        if record is not None:
            return {**record, "created": False}
        (self._config.data_dir / "apps").mkdir(parents=True, exist_ok=True)
        self._config.resolved_routing_dir.mkdir(parents=True, exist_ok=True)
        record = {
            "initialized_at": datetime.now(UTC).isoformat(),
            "data_dir": str(self._config.data_dir),
            "routing_dir": str(self._config.resolved_routing_dir),
            "webhook": None,
        }
        await self._storage.save_server_record(record)
        logger.info("Initialized server data at %s", self._config.data_dir)
        return {**record, "created": True}

    async def status(self) -> dict[str, Any]:
        """アプリ数・稼働状況・実行中のラン・保留中の承認・Webhookリスナーの状態を返す。"""
        record = await self._storage.load_server_record()
        apps: list[dict[str, Any]] = []
        for name in await self._storage.list_apps():
            app = await self._storage.load_app(name)
            apps.append(
                {
                    "name": name,
                    "status": app.status,
                    "deploying": self._deployment.is_deploying(name),
                    "run_id": self._deployment.active_run_id(name),
                }
            )
        return {
            "initialized": record is not None,
            "apps": apps,
            "running": sum(1 for app in apps if app["status"] == "running"),
            "active_runs": [app["run_id"] for app in apps if app["run_id"]],
            "pending_approvals": len(self._approvals.pending()),
            "webhook": record.get("webhook") if record else None,
        }

    async def _require_record(self) -> dict[str, Any]:
        record = await self._storage.load_server_record()
        if record is None:
            raise ConfigValidationError("Server is not initialized; run server init first")
        return record

    async def webhook_install(self, domain: str, port: int | None = None) -> dict[str, Any]:
        """Webhookリスナーへのルートを書き出し、設定をserver.jsonに記録する。"""
        record = await self._require_record()
        port = port or self._config.port
        route_file = await self._router.write_listener_route(domain, port)
        record["webhook"] = {
            "domain": domain,
            "port": port,
            "route_file": str(route_file),
            "installed_at": datetime.now(UTC).isoformat(),
        }
        await self._storage.save_server_record(record)
        logger.info("Installed webhook listener route for %s -> :%d", domain, port)
        return record["webhook"]

    async def webhook_uninstall(self) -> dict[str, Any]:
        record = await self._require_record()
        removed = await self._router.remove_listener_route()
        record["webhook"] = None
        await self._storage.save_server_record(record)
        return {"removed": removed}

    async def webhook_status(self) -> dict[str, Any]:
        """リスナーの設定と、自動デプロイが有効なアプリのWebhook URLを返す。"""
        record = await self._storage.load_server_record() or {}
        listener = record.get("webhook")
        base = f"https://{listener['domain']}" if listener else f"http://{self._config.host}:{self._config.port}"
        apps: list[dict[str, Any]] = []
        for name in await self._storage.list_apps():
            app = await self._storage.load_app(name)
            if app.autodeploy.enabled and app.autodeploy.webhook_path:
                apps.append({"app": name, "url": f"{base}/webhook/{app.autodeploy.webhook_path}"})
        return {"installed": listener is not None, "listener": listener, "apps": apps}

    async def _container(self, app_name: str, service: LogService, environment: str) -> str:
        app = await self._storage.load_app(app_name)
        match service:
            case "web":
                handle = app.instances.get(environment)
                if handle is None:
                    raise ConfigValidationError(f"No running instance for {app_name}/{environment}")
                return handle.id
            case "db":
                if app.database is None:
                    raise ConfigValidationError(f"{app_name} has no database")
                return db_container_name(app_name)
            case "cache":
                if app.cache is None:
                    raise ConfigValidationError(f"{app_name} has no cache")
                return cache_container_name(app_name)

    async def iter_logs(
        self,
        app_name: str,
        service: LogService = "web",
        environment: str = PRODUCTION,
        follow: bool = False,
        tail: int | None = 100,
        since: str | None = None,
    ) -> AsyncIterator[str]:
        """ランタイムからログを1行ずつ返す。followの場合は呼び出し側が止めるまで続く。"""
        container = await self._container(app_name, service, environment)
        async for line in self._runtime.stream_logs(container, follow=follow, tail=tail, since=since):
            yield line

    async def logs(
        self,
        app_name: str,
        service: LogService = "web",
        environment: str = PRODUCTION,
        tail: int = 100,
        since: str | None = None,
    ) -> list[str]:
        """ログの末尾を取得する。"""
        return [line async for line in self.iter_logs(app_name, service, environment, False, tail, since)]
